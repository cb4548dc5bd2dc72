"""
Configuration for the Lichess stats engine
Centralized configuration with environment variable support
"""

import os
from typing import Optional, Tuple

from dotenv import load_dotenv

load_dotenv()


# Seed players for random game selection (top Lichess blitz accounts).
DEFAULT_RANDOM_GAME_SEEDS: Tuple[str, ...] = (
    "penguingim1",
    "Craze",
    "HomayooonT",
    "Infinity-Stones",
    "Ratkovic_Miloje",
    "ABachmann",
    "AnishGiri",
    "MasterAssasin123",
    "dalmatinac101",
    "Experience_Chess",
    "RealDavidNavara",
    "Dr-CRO",
    "gmmoranda",
    "FakeBruceLee",
    "S2Pac",
    "Vladimirovich9000",
    "venajalainen",
    "Chewbacca18",
    "Sigma_Tauri",
    "DrawDenied_Twitch",
    "dr_dre08",
    "Andrey11976",
    "Bestinblitz",
)


def _seeds_from_env() -> Tuple[str, ...]:
    raw = os.getenv("RANDOM_GAME_SEEDS", "")
    seeds = tuple(name.strip() for name in raw.split(",") if name.strip())
    return seeds or DEFAULT_RANDOM_GAME_SEEDS


class StatsConfig:
    """Configuration for the stats engine"""

    # Upstream
    LICHESS_BASE_URL: str = os.getenv("LICHESS_BASE_URL", "https://lichess.org")
    LICHESS_TOKEN: Optional[str] = os.getenv("LICHESS_TOKEN") or None
    USER_AGENT: str = os.getenv("LICHESS_USER_AGENT", "lichess-stats/1.0")
    REQUEST_TIMEOUT_SECONDS: float = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "15"))

    # Windows (days)
    DEFAULT_WINDOW_DAYS: int = int(os.getenv("DEFAULT_WINDOW_DAYS", "30"))
    COMPARE_WINDOW_DAYS: int = int(os.getenv("COMPARE_WINDOW_DAYS", "30"))
    MIN_WINDOW_DAYS: int = 1
    MAX_WINDOW_DAYS: int = int(os.getenv("MAX_WINDOW_DAYS", "365"))

    # Fetch budgets (games pulled from upstream per aggregation)
    OPENINGS_FETCH: int = int(os.getenv("OPENINGS_FETCH", "100"))
    FAVORITE_FETCH: int = int(os.getenv("FAVORITE_FETCH", "200"))
    MAX_FETCH: int = int(os.getenv("MAX_FETCH", "500"))

    # Openings display count
    DEFAULT_TOP: int = 5
    MIN_TOP: int = 1
    MAX_TOP: int = 10

    # PGN export
    PGN_DEFAULT_COUNT: int = 5
    PGN_MAX_COUNT: int = 50

    RANDOM_GAME_SEEDS: Tuple[str, ...] = _seeds_from_env()
    RANDOM_GAME_CONTROL: str = "blitz"

    # Player directory
    SUPABASE_URL: Optional[str] = os.getenv("SUPABASE_URL") or None
    SUPABASE_SERVICE_ROLE_KEY: Optional[str] = os.getenv("SUPABASE_SERVICE_ROLE_KEY") or None
    PLAYER_TABLE: str = os.getenv("PLAYER_TABLE", "players")

    # Directory deletes are refused when unset
    ADMIN_TOKEN: Optional[str] = os.getenv("ADMIN_TOKEN") or None

    @classmethod
    def clamp_top(cls, top: Optional[int]) -> int:
        """Clamp the openings display count to [MIN_TOP, MAX_TOP]"""
        if top is None:
            return cls.DEFAULT_TOP
        return max(cls.MIN_TOP, min(cls.MAX_TOP, int(top)))

    @classmethod
    def clamp_fetch(cls, fetch: Optional[int], default: int) -> int:
        """Clamp a fetch budget to [1, MAX_FETCH]"""
        if fetch is None:
            return default
        return max(1, min(cls.MAX_FETCH, int(fetch)))

    @classmethod
    def clamp_pgn_count(cls, count: Optional[int]) -> int:
        if count is None:
            return cls.PGN_DEFAULT_COUNT
        return max(1, min(cls.PGN_MAX_COUNT, int(count)))


# Global config instance
config = StatsConfig()
