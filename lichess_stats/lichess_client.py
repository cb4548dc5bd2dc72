"""
Lichess API client.
Profile lookup, streamed game export and rating history, with upstream HTTP
status translated into typed errors. Nothing here retries.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional
from urllib.parse import quote

import aiohttp

from .config import config
from .errors import NotFoundError, RateLimitedError, UpstreamUnavailableError
from .game_normalizer import NormalizationError, normalize_profile, normalize_rating_history
from .models import PlayerSnapshot, RatingPoint
from .models.player_stats import as_utc

logger = logging.getLogger(__name__)

ACCEPT_JSON = "application/json"
ACCEPT_NDJSON = "application/x-ndjson"
ACCEPT_PGN = "application/x-chess-pgn"


def _to_millis(ts: datetime) -> int:
    return int(as_utc(ts).timestamp() * 1000)


def raise_for_status(status: int, subject: str) -> None:
    """Map a non-2xx upstream status onto the error taxonomy"""
    if 200 <= status < 300:
        return
    if status == 404:
        raise NotFoundError(subject)
    if status == 429:
        raise RateLimitedError(f"Lichess rate limited the request for '{subject}'")
    raise UpstreamUnavailableError(
        f"Lichess returned HTTP {status} for '{subject}'", cause="status", status=status
    )


class LichessClient:
    """Async client for the Lichess public API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout_s: Optional[float] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = (base_url or config.LICHESS_BASE_URL).rstrip("/")
        self.token = token if token is not None else config.LICHESS_TOKEN
        timeout_s = timeout_s or config.REQUEST_TIMEOUT_SECONDS
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)
        # Streams can legitimately run long; bound each read instead of the whole body.
        self.stream_timeout = aiohttp.ClientTimeout(total=None, sock_connect=timeout_s, sock_read=timeout_s)
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "LichessClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self):
        """Close the aiohttp session."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    def _headers(self, accept: str) -> Dict[str, str]:
        headers = {"Accept": accept, "User-Agent": config.USER_AGENT}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    @asynccontextmanager
    async def _request(
        self,
        path: str,
        *,
        subject: str,
        params: Optional[Dict[str, str]] = None,
        accept: str = ACCEPT_JSON,
        timeout: Optional[aiohttp.ClientTimeout] = None,
    ) -> AsyncIterator[aiohttp.ClientResponse]:
        session = await self._get_session()
        url = f"{self.base_url}{path}"
        try:
            async with session.get(
                url, params=params, headers=self._headers(accept), timeout=timeout or self.timeout
            ) as response:
                raise_for_status(response.status, subject)
                yield response
        except asyncio.TimeoutError as e:
            logger.warning("Lichess request timed out: %s", path)
            raise UpstreamUnavailableError(f"Lichess request for '{subject}' timed out", cause="timeout") from e
        except aiohttp.ClientError as e:
            logger.warning("Lichess request failed: %s (%s)", path, e)
            raise UpstreamUnavailableError(f"Could not reach Lichess: {e}", cause="network") from e

    @staticmethod
    async def _read_json(response: aiohttp.ClientResponse, subject: str) -> Any:
        try:
            return await response.json(content_type=None)
        except ValueError as e:
            raise UpstreamUnavailableError(
                f"Lichess sent a malformed body for '{subject}'", cause="malformed"
            ) from e

    # ============================================================================
    # PROFILE
    # ============================================================================

    async def fetch_profile(self, username: str) -> PlayerSnapshot:
        """Fetch a fresh profile snapshot. Raises NotFoundError for unknown or closed accounts."""
        async with self._request(f"/api/user/{quote(username)}", subject=username) as response:
            payload = await self._read_json(response, username)

        if isinstance(payload, dict) and payload.get("disabled"):
            raise NotFoundError(username, f"Account '{username}' is closed")
        try:
            return normalize_profile(payload)
        except NormalizationError as e:
            raise UpstreamUnavailableError(str(e), cause="malformed") from e

    # ============================================================================
    # GAMES
    # ============================================================================

    async def stream_games(
        self,
        username: str,
        max_count: Optional[int] = None,
        time_control: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        color: Optional[str] = None,
        fmt: str = "json",
    ) -> AsyncIterator[str]:
        """
        Stream a player's games, most recent first.

        Yields one ndjson line per game (fmt="json") or one PGN game text per
        game (fmt="pgn"). The generator is single-use; closing it early
        releases the HTTP response without reading the remaining body.
        """
        if fmt not in ("json", "pgn"):
            raise ValueError(f"Unknown game format: {fmt}")

        params: Dict[str, str] = {"moves": "true", "opening": "true"}
        if fmt == "json":
            params["pgnInJson"] = "true"
        if max_count is not None:
            params["max"] = str(int(max_count))
        if time_control:
            params["perfType"] = time_control
        if since is not None:
            params["since"] = str(_to_millis(since))
        if until is not None:
            params["until"] = str(_to_millis(until))
        if color:
            params["color"] = color

        async with self._request(
            f"/api/games/user/{quote(username)}",
            subject=username,
            params=params,
            accept=ACCEPT_NDJSON if fmt == "json" else ACCEPT_PGN,
            timeout=self.stream_timeout,
        ) as response:
            if fmt == "json":
                async for raw in response.content:
                    line = raw.decode("utf-8", errors="replace").strip()
                    if line:
                        yield line
            else:
                buffer: List[str] = []
                async for raw in response.content:
                    line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                    if line.startswith("[Event ") and any(buffer_line.strip() for buffer_line in buffer):
                        yield "\n".join(buffer).strip()
                        buffer = []
                    buffer.append(line)
                if any(buffer_line.strip() for buffer_line in buffer):
                    yield "\n".join(buffer).strip()

    # ============================================================================
    # RATING HISTORY
    # ============================================================================

    async def fetch_rating_history(self, username: str, control: str) -> List[RatingPoint]:
        """Rating points for one time control, ascending by date. Empty if never played."""
        async with self._request(f"/api/user/{quote(username)}/rating-history", subject=username) as response:
            payload = await self._read_json(response, username)
        try:
            return normalize_rating_history(payload, control)
        except NormalizationError as e:
            raise UpstreamUnavailableError(str(e), cause="malformed") from e
