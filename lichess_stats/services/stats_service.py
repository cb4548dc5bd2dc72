"""
Stats Service
Entry point per query type: validates the request, pulls what it needs from
Lichess (concurrently where reads are independent), hands normalized data to
the aggregator or chart renderer, and returns a tagged Outcome.

Profile lookups also refresh the player directory in a detached task whose
failures are logged and never reach the caller.
"""

from __future__ import annotations

import asyncio
import logging
import random
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Set, Tuple

from ..chart_renderer import ChartRenderer
from ..config import StatsConfig, config
from ..errors import (
    CANCELLED,
    DirectoryUnavailableError,
    InvalidArgumentError,
    InvalidRangeError,
    NotFoundError,
    StatsError,
    UpstreamUnavailableError,
)
from ..game_normalizer import collect_games
from ..models import (
    COLORS,
    TIME_CONTROLS,
    ComparisonResult,
    DateWindow,
    FavoriteControl,
    GameBatch,
    OpeningStat,
    PerformanceWindow,
    PgnExport,
    PlayerSnapshot,
    RandomGame,
    RatingPoint,
)
from ..outcome import Outcome
from ..player_directory import PlayerDirectory, StoredPlayer
from ..stats_aggregator import compare_players, favorite_control, performance_window, rank_openings

logger = logging.getLogger(__name__)


async def gather_all(*aws: Awaitable[Any]) -> List[Any]:
    """gather() that cancels the remaining reads as soon as one fails."""
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class StatsService:
    """Runs one stats query per call; holds no per-request state."""

    def __init__(
        self,
        client,
        directory: Optional[PlayerDirectory] = None,
        cfg: Optional[StatsConfig] = None,
        seeds: Optional[Sequence[str]] = None,
        rng: Optional[random.Random] = None,
        renderer: Optional[ChartRenderer] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.client = client
        self.directory = directory
        self.cfg = cfg or config
        self.seeds: Tuple[str, ...] = tuple(seeds if seeds is not None else self.cfg.RANDOM_GAME_SEEDS)
        self.rng = rng or random.Random()
        self.renderer = renderer or ChartRenderer()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._background: Set[asyncio.Task] = set()

    # ============================================================================
    # PLUMBING
    # ============================================================================

    async def _run(self, op: str, work: Awaitable[Outcome]) -> Outcome:
        try:
            return await work
        except StatsError as e:
            logger.info("%s failed: %s (%s)", op, e.code.code, e)
            return Outcome.from_error(e)
        except asyncio.CancelledError:
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                # The caller's own task is being cancelled: let it unwind.
                logger.info("%s cancelled by caller", op)
                raise
            logger.info("%s aborted by a cancelled upstream read", op)
            return Outcome.failure(CANCELLED, f"{op} was cancelled")

    def resolve_window(
        self,
        window: Optional[DateWindow] = None,
        days: Optional[int] = None,
        default_days: Optional[int] = None,
    ) -> DateWindow:
        """
        Explicit window, or the last `days` days, or the default span.
        Raises InvalidRangeError before anything touches the network.
        """
        max_days = self.cfg.MAX_WINDOW_DAYS
        if window is None:
            if days is None:
                days = default_days or self.cfg.DEFAULT_WINDOW_DAYS
            if not self.cfg.MIN_WINDOW_DAYS <= days <= max_days:
                raise InvalidRangeError(f"Day count must be between {self.cfg.MIN_WINDOW_DAYS} and {max_days}")
            return DateWindow.last_days(days, now=self._clock())

        if not window.is_ordered:
            raise InvalidRangeError(
                f"Window start {window.start:%Y-%m-%d} is after end {window.end:%Y-%m-%d}"
            )
        if window.span_days > max_days:
            raise InvalidRangeError(f"Window spans {window.span_days} days, limit is {max_days}")
        return window

    async def _fetch_profile(self, username: str) -> PlayerSnapshot:
        snapshot = await self.client.fetch_profile(username)
        self._remember(snapshot)
        return snapshot

    def _remember(self, snapshot: PlayerSnapshot) -> None:
        if self.directory is None:
            return
        task = asyncio.create_task(self._store_snapshot(snapshot))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _store_snapshot(self, snapshot: PlayerSnapshot) -> None:
        try:
            await asyncio.to_thread(self.directory.upsert, snapshot)
        except Exception:
            logger.exception("Player directory upsert failed for %s", snapshot.username)

    async def drain(self) -> None:
        """Wait for pending directory writes (shutdown and tests)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _collect(self, username: str, limit: Optional[int] = None, **filters: Any) -> GameBatch:
        stream = self.client.stream_games(username, max_count=limit, **filters)
        return await collect_games(stream, username, fmt="json", limit=limit)

    @staticmethod
    def _check_control(control: str) -> str:
        control = (control or "").lower()
        if control not in TIME_CONTROLS:
            raise InvalidArgumentError(f"Unknown time control '{control}', expected one of {', '.join(TIME_CONTROLS)}")
        return control

    # ============================================================================
    # QUERIES
    # ============================================================================

    async def player_info(self, username: str) -> Outcome[PlayerSnapshot]:
        async def work() -> Outcome[PlayerSnapshot]:
            return Outcome.success(await self._fetch_profile(username))

        return await self._run("player_info", work())

    async def performance(
        self, username: str, window: Optional[DateWindow] = None, days: Optional[int] = None
    ) -> Outcome[PerformanceWindow]:
        """W/D/L over a window (default: last 30 days)."""

        async def work() -> Outcome[PerformanceWindow]:
            resolved = self.resolve_window(window, days)
            batch = await self._collect(username, since=resolved.start, until=resolved.end)
            perf = performance_window(batch.games, resolved)
            if not perf.has_data:
                return Outcome.no_data(
                    f"No games for '{username}' in range", value=perf, skipped=batch.skipped
                )
            return Outcome.success(perf, skipped=batch.skipped)

        return await self._run("performance", work())

    async def favorite_control(self, username: str, fetch: Optional[int] = None) -> Outcome[FavoriteControl]:
        """Most played time control among recent games, rated from the live profile."""

        async def work() -> Outcome[FavoriteControl]:
            budget = self.cfg.clamp_fetch(fetch, self.cfg.FAVORITE_FETCH)
            snapshot, batch = await gather_all(
                self._fetch_profile(username),
                self._collect(username, limit=budget),
            )
            fav = favorite_control(batch.games, ratings=snapshot.ratings)
            if fav is None:
                return Outcome.no_data(f"No games found for '{username}'", skipped=batch.skipped)
            return Outcome.success(fav, skipped=batch.skipped)

        return await self._run("favorite_control", work())

    async def openings(
        self,
        username: str,
        color: Optional[str] = None,
        top: Optional[int] = None,
        fetch: Optional[int] = None,
    ) -> Outcome[List[OpeningStat]]:
        """
        Top openings over the `fetch` most recent games.
        `top` only limits how many ranked entries come back.
        """

        async def work() -> Outcome[List[OpeningStat]]:
            side = color.lower() if color else None
            if side is not None and side not in COLORS:
                raise InvalidArgumentError(f"Unknown color '{color}', expected white or black")
            budget = self.cfg.clamp_fetch(fetch, self.cfg.OPENINGS_FETCH)
            batch = await self._collect(username, limit=budget, color=side)
            ranking = rank_openings(batch.games, color=side, top=self.cfg.clamp_top(top))
            if not ranking:
                return Outcome.no_data(f"No opening data for '{username}'", value=[], skipped=batch.skipped)
            return Outcome.success(ranking, skipped=batch.skipped)

        return await self._run("openings", work())

    async def compare(
        self,
        first: str,
        second: str,
        window: Optional[DateWindow] = None,
        days: Optional[int] = None,
    ) -> Outcome[ComparisonResult]:
        """Both players over the same window (default: last COMPARE_WINDOW_DAYS days)."""

        async def side(label: str, username: str, resolved: DateWindow):
            try:
                return await gather_all(
                    self._fetch_profile(username),
                    self._collect(username, since=resolved.start, until=resolved.end),
                )
            except NotFoundError as e:
                raise NotFoundError(username, f"{label} player '{username}' not found") from e

        async def work() -> Outcome[ComparisonResult]:
            resolved = self.resolve_window(window, days, default_days=self.cfg.COMPARE_WINDOW_DAYS)
            (snap_a, batch_a), (snap_b, batch_b) = await gather_all(
                side("first", first, resolved),
                side("second", second, resolved),
            )
            result = compare_players((snap_a, batch_a.games), (snap_b, batch_b.games), resolved)
            return Outcome.success(result, skipped=batch_a.skipped + batch_b.skipped)

        return await self._run("compare", work())

    async def rating_history(
        self,
        username: str,
        control: str,
        window: Optional[DateWindow] = None,
        days: Optional[int] = None,
    ) -> Outcome[List[RatingPoint]]:
        async def work() -> Outcome[List[RatingPoint]]:
            checked = self._check_control(control)
            resolved = self.resolve_window(window, days)
            history = await self.client.fetch_rating_history(username, checked)
            if not history:
                return Outcome.no_data(f"'{username}' has never played {checked}", value=[])
            points = [p for p in history if resolved.contains_day(p.timestamp)]
            if not points:
                return Outcome.no_data(f"No {checked} rating changes for '{username}' in range", value=[])
            return Outcome.success(points)

        return await self._run("rating_history", work())

    async def rating_chart(
        self,
        username: str,
        control: str,
        window: Optional[DateWindow] = None,
        days: Optional[int] = None,
    ) -> Outcome[bytes]:
        """PNG rating chart; NO_DATA when there is nothing to plot."""

        async def work() -> Outcome[bytes]:
            checked = self._check_control(control)
            resolved = self.resolve_window(window, days)
            history = await self.client.fetch_rating_history(username, checked)
            if not history:
                return Outcome.no_data(f"'{username}' has never played {checked}")
            png = await asyncio.to_thread(self.renderer.render, history, resolved, checked)
            if png is None:
                return Outcome.no_data(f"No {checked} rating changes for '{username}' in range")
            return Outcome.success(png)

        return await self._run("rating_chart", work())

    async def export_pgn(self, username: str, count: Optional[int] = None) -> Outcome[PgnExport]:
        """The last `count` games (1..50, default 5) as one PGN document."""

        async def work() -> Outcome[PgnExport]:
            wanted = self.cfg.clamp_pgn_count(count)
            texts: List[str] = []
            stream = self.client.stream_games(username, max_count=wanted, fmt="pgn")
            try:
                async for text in stream:
                    texts.append(text)
                    if len(texts) >= wanted:
                        break
            finally:
                await stream.aclose()
            if not texts:
                return Outcome.no_data(f"No games found for '{username}'")
            return Outcome.success(
                PgnExport(username=username, count=wanted, games=len(texts), pgn="\n\n".join(texts) + "\n")
            )

        return await self._run("export_pgn", work())

    async def random_game(self) -> Outcome[RandomGame]:
        """Latest blitz game of a randomly chosen seed player."""

        async def work() -> Outcome[RandomGame]:
            if not self.seeds:
                return Outcome.no_data("No seed players configured")
            seed = self.rng.choice(self.seeds)
            control = self.cfg.RANDOM_GAME_CONTROL
            stream = self.client.stream_games(seed, max_count=1, time_control=control)
            batch = await collect_games(stream, seed, fmt="json", limit=1)
            if not batch.games:
                if batch.skipped:
                    raise UpstreamUnavailableError(f"Unreadable game record for '{seed}'", cause="malformed")
                return Outcome.no_data(f"'{seed}' has no {control} games yet")
            game = batch.games[0]
            return Outcome.success(
                RandomGame(
                    username=seed,
                    game_id=game.id,
                    url=f"{self.cfg.LICHESS_BASE_URL.rstrip('/')}/{game.id}",
                    game=game,
                )
            )

        return await self._run("random_game", work())

    async def delete_player(self, username: str) -> Outcome[StoredPlayer]:
        """Admin removal of a cached snapshot."""

        async def work() -> Outcome[StoredPlayer]:
            if self.directory is None:
                raise DirectoryUnavailableError("No player directory configured")
            try:
                existing = await asyncio.to_thread(self.directory.get_by_username, username)
                if existing is None:
                    raise NotFoundError(username, f"'{username}' is not in the player directory")
                await asyncio.to_thread(self.directory.delete, existing.id)
            except StatsError:
                raise
            except Exception as e:
                logger.exception("Player directory delete failed for %s", username)
                raise DirectoryUnavailableError(str(e)) from e
            logger.info("Deleted %s (id=%s) from player directory", username, existing.id)
            return Outcome.success(existing)

        return await self._run("delete_player", work())
