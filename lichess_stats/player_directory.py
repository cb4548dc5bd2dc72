"""
Player Directory
Best-effort cache of the latest profile snapshot per username.

Never the source of truth for a live query. Usernames are matched
case-insensitively (Lichess semantics) but stored case-preserved.

Two stores with the same API surface:
- InMemoryPlayerDirectory for tests and single-process runs
- SupabasePlayerDirectory backed by a `players` table with a unique
  `username_key` column, so concurrent upserts for one player stay correct
  without any in-process locking
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

from pydantic import BaseModel, ConfigDict

from .config import config
from .models import TIME_CONTROLS, PlayerSnapshot

logger = logging.getLogger(__name__)


class StoredPlayer(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    snapshot: PlayerSnapshot
    updated_at: datetime

    @property
    def username(self) -> str:
        return self.snapshot.username


class PlayerDirectory(Protocol):
    def upsert(self, snapshot: PlayerSnapshot) -> StoredPlayer: ...

    def get_by_username(self, username: str) -> Optional[StoredPlayer]: ...

    def delete(self, player_id: str) -> None: ...


def username_key(username: str) -> str:
    return username.casefold()


class InMemoryPlayerDirectory:
    """Dict-backed directory. Upserts keep the row id stable per username."""

    def __init__(self):
        self._players: Dict[str, StoredPlayer] = {}

    def upsert(self, snapshot: PlayerSnapshot) -> StoredPlayer:
        key = username_key(snapshot.username)
        existing = self._players.get(key)
        stored = StoredPlayer(
            id=existing.id if existing else uuid.uuid4().hex,
            snapshot=snapshot,
            updated_at=datetime.now(timezone.utc),
        )
        self._players[key] = stored
        return stored

    def get_by_username(self, username: str) -> Optional[StoredPlayer]:
        return self._players.get(username_key(username))

    def delete(self, player_id: str) -> None:
        for key, stored in list(self._players.items()):
            if stored.id == player_id:
                del self._players[key]

    def __len__(self) -> int:
        return len(self._players)


# ============================================================================
# SUPABASE
# ============================================================================

def snapshot_to_row(snapshot: PlayerSnapshot) -> Dict[str, Any]:
    row: Dict[str, Any] = {
        "username": snapshot.username,
        "username_key": username_key(snapshot.username),
        "title": snapshot.title,
        "flag": snapshot.flag,
        "games_count": snapshot.games_count,
        "created_at": snapshot.created_at.isoformat() if snapshot.created_at else None,
        "last_seen_at": snapshot.last_seen_at.isoformat() if snapshot.last_seen_at else None,
        "fetched_at": snapshot.fetched_at.isoformat(),
    }
    for control in TIME_CONTROLS:
        row[f"rating_{control}"] = snapshot.ratings.get(control)
        row[f"games_{control}"] = snapshot.variant_games.get(control)
    return row


def row_to_stored(row: Dict[str, Any]) -> StoredPlayer:
    ratings = {c: row[f"rating_{c}"] for c in TIME_CONTROLS if row.get(f"rating_{c}") is not None}
    variant_games = {c: row[f"games_{c}"] for c in TIME_CONTROLS if row.get(f"games_{c}") is not None}
    snapshot = PlayerSnapshot(
        username=row["username"],
        title=row.get("title"),
        flag=row.get("flag"),
        ratings=ratings,
        variant_games=variant_games,
        games_count=row.get("games_count") or 0,
        created_at=row.get("created_at"),
        last_seen_at=row.get("last_seen_at"),
        fetched_at=row["fetched_at"],
    )
    return StoredPlayer(
        id=str(row["id"]),
        snapshot=snapshot,
        updated_at=row.get("updated_at") or row["fetched_at"],
    )


class SupabasePlayerDirectory:
    """
    Supabase-backed directory.

    Errors propagate to the caller; the stats service decides whether a
    failure matters (it never does for the cache write).
    """

    def __init__(
        self,
        client: Any = None,
        *,
        url: Optional[str] = None,
        service_role_key: Optional[str] = None,
        table: Optional[str] = None,
    ):
        if client is None:
            from supabase import create_client

            url = url or config.SUPABASE_URL
            service_role_key = service_role_key or config.SUPABASE_SERVICE_ROLE_KEY
            if not url or not service_role_key:
                raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required")
            client = create_client(url, service_role_key)
            logger.info("Supabase player directory initialized: %s", url)
        self.client = client
        self.table = table or config.PLAYER_TABLE

    def upsert(self, snapshot: PlayerSnapshot) -> StoredPlayer:
        """Atomic insert-or-update keyed on username_key"""
        row = snapshot_to_row(snapshot)
        row["updated_at"] = datetime.now(timezone.utc).isoformat()
        result = self.client.table(self.table).upsert(row, on_conflict="username_key").execute()
        if not result.data:
            raise RuntimeError(f"Upsert of '{snapshot.username}' returned no row")
        return row_to_stored(result.data[0])

    def get_by_username(self, username: str) -> Optional[StoredPlayer]:
        result = (
            self.client.table(self.table)
            .select("*")
            .eq("username_key", username_key(username))
            .limit(1)
            .execute()
        )
        if not result.data:
            return None
        return row_to_stored(result.data[0])

    def delete(self, player_id: str) -> None:
        self.client.table(self.table).delete().eq("id", player_id).execute()
