"""
Game Normalizer
Decodes raw Lichess payloads (profile JSON, ndjson game lines, PGN text,
rating history) into the internal models.

Malformed game records are counted and skipped, never fatal to a batch.
"""

from __future__ import annotations

import json
import logging
from contextlib import aclosing
from datetime import datetime, timezone
from io import StringIO
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Optional, Union

import chess
import chess.pgn
from pydantic import ValidationError

from .models import TIME_CONTROLS, Game, GameBatch, PlayerSnapshot, RatingPoint

logger = logging.getLogger(__name__)

RawRecord = Union[str, bytes, Mapping[str, Any]]

# Lichess speeds folded into the four tracked categories; anything else is ignored.
SPEED_ALIASES = {
    "ultraBullet": "bullet",
    "bullet": "bullet",
    "blitz": "blitz",
    "rapid": "rapid",
    "classical": "classical",
}

UNFINISHED_STATUSES = {"created", "started", "aborted", "noStart", "unknownFinish"}

PGN_RESULTS = {"1-0": "white", "0-1": "black", "1/2-1/2": None}


class NormalizationError(ValueError):
    """Raised when a raw record cannot be decoded."""


def from_millis(value: Any) -> datetime:
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError) as e:
        raise NormalizationError(f"Bad epoch millis: {value!r}") from e


def _optional_millis(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return from_millis(value)


def classify_time_control(initial_seconds: int, increment_seconds: int) -> Optional[str]:
    """Lichess speed buckets over the estimated game duration (initial + 40 * increment)."""
    estimate = initial_seconds + 40 * increment_seconds
    if estimate < 180:
        return "bullet"
    if estimate < 480:
        return "blitz"
    if estimate < 1500:
        return "rapid"
    return "classical"


def _result_for(winner: Optional[str], player_color: str) -> str:
    if winner is None:
        return "draw"
    return "win" if winner == player_color else "loss"


def _resolve_color(white: str, black: str, username: str) -> str:
    key = username.casefold()
    if white.casefold() == key:
        return "white"
    if black.casefold() == key:
        return "black"
    raise NormalizationError(f"'{username}' did not play in this game ({white} vs {black})")


# ============================================================================
# PROFILE
# ============================================================================

def normalize_profile(payload: Any, fetched_at: Optional[datetime] = None) -> PlayerSnapshot:
    """Decode the /api/user/{username} payload"""
    if not isinstance(payload, Mapping):
        raise NormalizationError("Profile payload is not an object")

    username = payload.get("username") or payload.get("id")
    if not username:
        raise NormalizationError("Profile payload has no username")

    ratings: Dict[str, int] = {}
    variant_games: Dict[str, int] = {}
    perfs = payload.get("perfs") or {}
    try:
        for control in TIME_CONTROLS:
            perf = perfs.get(control)
            if not isinstance(perf, Mapping):
                continue
            games = int(perf.get("games") or 0)
            variant_games[control] = games
            rating = perf.get("rating")
            # A perf with no games is Lichess' placeholder rating, not a real one.
            if rating is not None and ("games" not in perf or games > 0):
                ratings[control] = int(rating)

        profile = payload.get("profile") or {}
        flag = payload.get("flag") or profile.get("flag") or profile.get("country")
        count = payload.get("count") or {}

        return PlayerSnapshot(
            username=str(username),
            title=payload.get("title") or None,
            flag=flag or None,
            ratings=ratings,
            variant_games=variant_games,
            games_count=int(count.get("all") or 0),
            created_at=_optional_millis(payload.get("createdAt")),
            last_seen_at=_optional_millis(payload.get("seenAt")),
            fetched_at=fetched_at or datetime.now(timezone.utc),
        )
    except NormalizationError:
        raise
    except (AttributeError, TypeError, ValueError) as e:
        raise NormalizationError(f"Malformed profile payload: {e}") from e


# ============================================================================
# GAMES
# ============================================================================

def _player_name(side: Any) -> str:
    if not isinstance(side, Mapping):
        return ""
    user = side.get("user") or {}
    name = user.get("name") or user.get("id")
    if name:
        return str(name)
    if side.get("aiLevel") is not None:
        return f"Stockfish level {side['aiLevel']}"
    return ""


def normalize_game(payload: RawRecord, username: str) -> Optional[Game]:
    """
    Decode one ndjson game export record.

    Returns None for well-formed games the stats do not track (unfinished,
    correspondence, variants other than standard chess). Raises
    NormalizationError for anything undecodable.
    """
    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except ValueError as e:
            raise NormalizationError(f"Invalid JSON line: {e}") from e
    if not isinstance(payload, Mapping):
        raise NormalizationError("Game record is not an object")

    try:
        game_id = payload["id"]
        if payload.get("status") in UNFINISHED_STATUSES:
            return None
        if (payload.get("variant") or "standard") != "standard":
            return None
        time_control = SPEED_ALIASES.get(payload.get("speed") or payload.get("perf") or "")
        if time_control is None:
            return None

        players = payload.get("players") or {}
        white = _player_name(players.get("white"))
        black = _player_name(players.get("black"))
        player_color = _resolve_color(white, black, username)

        opening = payload.get("opening") or {}
        return Game(
            id=str(game_id),
            white=white,
            black=black,
            player_color=player_color,
            result=_result_for(payload.get("winner"), player_color),
            time_control=time_control,
            played_at=from_millis(payload["createdAt"]),
            eco=opening.get("eco") or None,
            opening_name=opening.get("name") or None,
            moves=payload.get("moves") or "",
            pgn=payload.get("pgn") or None,
        )
    except NormalizationError:
        raise
    except (KeyError, TypeError, AttributeError, ValidationError) as e:
        raise NormalizationError(f"Malformed game record: {e}") from e


def _pgn_played_at(headers: chess.pgn.Headers) -> datetime:
    day = headers.get("UTCDate") or headers.get("Date") or ""
    clock = headers.get("UTCTime") or "00:00:00"
    try:
        return datetime.strptime(f"{day} {clock}", "%Y.%m.%d %H:%M:%S").replace(tzinfo=timezone.utc)
    except ValueError as e:
        raise NormalizationError(f"Bad PGN date {day!r} {clock!r}") from e


def _pgn_time_control(raw: str) -> Optional[str]:
    if not raw or raw == "-":
        return None  # correspondence
    base, _, inc = raw.partition("+")
    try:
        return classify_time_control(int(base), int(inc or 0))
    except ValueError as e:
        raise NormalizationError(f"Bad TimeControl header {raw!r}") from e


def _pgn_game_id(headers: chess.pgn.Headers) -> str:
    game_id = headers.get("GameId")
    if game_id:
        return game_id
    site = headers.get("Site", "")
    tail = site.rstrip("/").rsplit("/", 1)[-1]
    if not tail or tail == "?":
        raise NormalizationError("PGN has no game id")
    return tail


def _header(headers: chess.pgn.Headers, key: str) -> Optional[str]:
    value = headers.get(key, "").strip()
    return value if value and value != "?" else None


def normalize_pgn_game(text: str, username: str) -> Optional[Game]:
    """Decode one game from a PGN export"""
    game = chess.pgn.read_game(StringIO(text))
    if game is None:
        raise NormalizationError("Empty PGN record")
    if game.errors:
        raise NormalizationError(f"PGN parse error: {game.errors[0]}")

    headers = game.headers
    if (headers.get("Variant") or "Standard").casefold() != "standard":
        return None
    result_header = headers.get("Result", "*")
    if result_header not in PGN_RESULTS:
        return None
    time_control = _pgn_time_control(headers.get("TimeControl", ""))
    if time_control is None:
        return None

    white = headers.get("White", "")
    black = headers.get("Black", "")
    player_color = _resolve_color(white, black, username)

    board = game.board()
    sans: List[str] = []
    for move in game.mainline_moves():
        sans.append(board.san(move))
        board.push(move)

    try:
        return Game(
            id=_pgn_game_id(headers),
            white=white,
            black=black,
            player_color=player_color,
            result=_result_for(PGN_RESULTS[result_header], player_color),
            time_control=time_control,
            played_at=_pgn_played_at(headers),
            eco=_header(headers, "ECO"),
            opening_name=_header(headers, "Opening"),
            moves=" ".join(sans),
            pgn=text.strip(),
        )
    except ValidationError as e:
        raise NormalizationError(f"Malformed PGN game: {e}") from e


# ============================================================================
# BATCHES
# ============================================================================

class _BatchBuilder:
    def __init__(self, username: str, fmt: str = "json"):
        if fmt not in ("json", "pgn"):
            raise ValueError(f"Unknown game format: {fmt}")
        self.username = username
        self.fmt = fmt
        self.games: List[Game] = []
        self.skipped = 0
        self.ignored = 0

    def add(self, record: RawRecord) -> Optional[Game]:
        try:
            if self.fmt == "pgn":
                text = record.decode("utf-8") if isinstance(record, bytes) else record
                game = normalize_pgn_game(str(text), self.username)
            else:
                game = normalize_game(record, self.username)
        except NormalizationError as e:
            self.skipped += 1
            logger.debug("Skipping malformed %s record for %s: %s", self.fmt, self.username, e)
            return None
        if game is None:
            self.ignored += 1
            return None
        self.games.append(game)
        return game

    def build(self) -> GameBatch:
        return GameBatch(games=self.games, skipped=self.skipped, ignored=self.ignored)


def normalize_games(records: Iterable[RawRecord], username: str, fmt: str = "json") -> GameBatch:
    """Normalize an in-memory batch of raw records"""
    builder = _BatchBuilder(username, fmt)
    for record in records:
        builder.add(record)
    return builder.build()


async def collect_games(
    records: AsyncIterator[RawRecord],
    username: str,
    fmt: str = "json",
    limit: Optional[int] = None,
) -> GameBatch:
    """
    Normalize a streamed export one record at a time.

    Stops after `limit` normalized games; the stream is closed on exit so the
    underlying HTTP response is released without reading the rest of it.
    """
    builder = _BatchBuilder(username, fmt)
    async with aclosing(records):
        async for record in records:
            builder.add(record)
            if limit is not None and len(builder.games) >= limit:
                break
    batch = builder.build()
    if batch.skipped:
        logger.warning(
            "Skipped %d malformed game record(s) of %d for %s", batch.skipped, batch.seen, username
        )
    return batch


# ============================================================================
# RATING HISTORY
# ============================================================================

def normalize_rating_history(payload: Any, control: str) -> List[RatingPoint]:
    """
    Decode /api/user/{username}/rating-history for one time control.

    Lichess encodes points as [year, month (0-based), day, rating].
    Returns an empty list when the player has no history for the control.
    """
    if not isinstance(payload, list):
        raise NormalizationError("Rating history payload is not a list")

    wanted = control.casefold()
    for entry in payload:
        if not isinstance(entry, Mapping) or str(entry.get("name", "")).casefold() != wanted:
            continue
        points: List[RatingPoint] = []
        for raw in entry.get("points") or []:
            try:
                year, month, day, rating = raw
                points.append(
                    RatingPoint(
                        timestamp=datetime(int(year), int(month) + 1, int(day), tzinfo=timezone.utc),
                        rating=int(rating),
                    )
                )
            except (TypeError, ValueError) as e:
                raise NormalizationError(f"Malformed rating point {raw!r}") from e
        # sorted() is stable: same-day duplicates keep upstream order
        return sorted(points, key=lambda p: p.timestamp)
    return []
