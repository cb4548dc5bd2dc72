from .player_stats import (
    COLORS,
    TIME_CONTROLS,
    ComparisonResult,
    DateWindow,
    FavoriteControl,
    Game,
    GameBatch,
    OpeningStat,
    PerformanceWindow,
    PgnExport,
    PlayerComparison,
    PlayerSnapshot,
    RandomGame,
    RatingPoint,
)

__all__ = [
    "COLORS",
    "TIME_CONTROLS",
    "ComparisonResult",
    "DateWindow",
    "FavoriteControl",
    "Game",
    "GameBatch",
    "OpeningStat",
    "PerformanceWindow",
    "PgnExport",
    "PlayerComparison",
    "PlayerSnapshot",
    "RandomGame",
    "RatingPoint",
]
