"""
Stats Aggregator
Pure computations over normalized games: performance windows, favorite time
control, opening rankings and head-to-head comparison.

No I/O here. Every function gives the same answer for any ordering of its
input games.
"""

from __future__ import annotations

from collections import Counter, defaultdict
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .config import StatsConfig
from .errors import InvalidArgumentError, InvalidRangeError
from .models import (
    COLORS,
    TIME_CONTROLS,
    ComparisonResult,
    DateWindow,
    FavoriteControl,
    Game,
    OpeningStat,
    PerformanceWindow,
    PlayerComparison,
    PlayerSnapshot,
)

# bullet > blitz > rapid > classical when counts tie
CONTROL_PRIORITY: Dict[str, int] = {control: rank for rank, control in enumerate(TIME_CONTROLS)}


def performance_window(games: Iterable[Game], window: DateWindow) -> PerformanceWindow:
    """Count W/D/L for games played inside the inclusive window."""
    if not window.is_ordered:
        raise InvalidRangeError(f"Window start {window.start:%Y-%m-%d} is after end {window.end:%Y-%m-%d}")

    counts: Counter = Counter(game.result for game in games if window.contains(game.played_at))
    wins, draws, losses = counts["win"], counts["draw"], counts["loss"]
    return PerformanceWindow(
        start=window.start,
        end=window.end,
        wins=wins,
        draws=draws,
        losses=losses,
        total=wins + draws + losses,
    )


def count_by_control(games: Iterable[Game]) -> Dict[str, int]:
    return dict(Counter(game.time_control for game in games))


def favorite_control(
    games: Iterable[Game], ratings: Optional[Mapping[str, int]] = None
) -> Optional[FavoriteControl]:
    """Most played time control, or None when there are no games at all."""
    counts = count_by_control(games)
    if not counts:
        return None
    best = min(counts, key=lambda control: (-counts[control], CONTROL_PRIORITY[control]))
    return FavoriteControl(
        time_control=best,
        games_count=counts[best],
        rating=(ratings or {}).get(best),
    )


def _sort_key(stat: OpeningStat) -> Tuple[int, float, str, str]:
    return (-stat.games_count, -stat.win_rate, stat.eco, stat.name)


def rank_openings(
    games: Iterable[Game], color: Optional[str] = None, top: int = StatsConfig.DEFAULT_TOP
) -> List[OpeningStat]:
    """
    Top openings from the player's side of the board.

    Groups by (ECO, name) and orders by games played, then win rate, then ECO.
    `top` is clamped to [1, 10]. Games without opening metadata are left out.
    """
    if color is not None and color not in COLORS:
        raise InvalidArgumentError(f"Unknown color '{color}'")

    groups: Dict[Tuple[str, str], Counter] = defaultdict(Counter)
    for game in games:
        if color is not None and game.player_color != color:
            continue
        if not game.eco or not game.opening_name:
            continue
        groups[(game.eco, game.opening_name)][game.result] += 1

    stats = [
        OpeningStat(
            eco=eco,
            name=name,
            games_count=sum(results.values()),
            wins=results["win"],
            draws=results["draw"],
            losses=results["loss"],
        )
        for (eco, name), results in groups.items()
    ]
    stats.sort(key=_sort_key)
    return stats[: StatsConfig.clamp_top(top)]


def compare_players(
    first: Tuple[PlayerSnapshot, Sequence[Game]],
    second: Tuple[PlayerSnapshot, Sequence[Game]],
    window: DateWindow,
) -> ComparisonResult:
    """Two independent performance windows over the same range."""
    sides = []
    for snapshot, games in (first, second):
        sides.append(PlayerComparison(snapshot=snapshot, performance=performance_window(games, window)))
    return ComparisonResult(window=window, first=sides[0], second=sides[1])
