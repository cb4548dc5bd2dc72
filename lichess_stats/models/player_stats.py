"""
Pydantic models for the Lichess stats engine
Normalized records and derived statistics
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator


TimeControl = Literal["bullet", "blitz", "rapid", "classical"]
Color = Literal["white", "black"]
GameResult = Literal["win", "draw", "loss"]

# Order doubles as the favorite-control tie-break priority.
TIME_CONTROLS: Tuple[str, ...] = ("bullet", "blitz", "rapid", "classical")
COLORS: Tuple[str, ...] = ("white", "black")


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class PlayerSnapshot(_Frozen):
    """Point-in-time copy of a Lichess profile"""
    username: str
    title: Optional[str] = None
    flag: Optional[str] = None
    ratings: Dict[str, int] = Field(default_factory=dict)  # unrated variants are absent
    variant_games: Dict[str, int] = Field(default_factory=dict)
    games_count: int = Field(default=0, ge=0)
    created_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None
    fetched_at: datetime = Field(default_factory=utc_now)

    def rating_for(self, control: str) -> Optional[int]:
        return self.ratings.get(control)


class Game(_Frozen):
    """A finished game seen from one player's side"""
    id: str
    white: str
    black: str
    player_color: Color
    result: GameResult
    time_control: TimeControl
    played_at: datetime
    eco: Optional[str] = None
    opening_name: Optional[str] = None
    moves: str = ""
    pgn: Optional[str] = None

    @field_validator("played_at")
    @classmethod
    def _played_at_utc(cls, v: datetime) -> datetime:
        return as_utc(v)

    @property
    def player(self) -> str:
        return self.white if self.player_color == "white" else self.black

    @property
    def opponent(self) -> str:
        return self.black if self.player_color == "white" else self.white


class GameBatch(_Frozen):
    """Normalized games plus bookkeeping about records that did not make it"""
    games: List[Game] = Field(default_factory=list)
    skipped: int = 0  # malformed records
    ignored: int = 0  # well-formed but outside the four time controls, or unfinished

    @property
    def seen(self) -> int:
        return len(self.games) + self.skipped + self.ignored


class DateWindow(_Frozen):
    """Inclusive UTC range. Ordering is checked by callers before use, not here."""
    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return as_utc(v)

    @classmethod
    def last_days(cls, days: int, now: Optional[datetime] = None) -> "DateWindow":
        end = as_utc(now) if now is not None else utc_now()
        return cls(start=end - timedelta(days=days), end=end)

    @classmethod
    def from_dates(cls, start: date, end: date) -> "DateWindow":
        """Whole calendar days, end day included up to its last microsecond."""
        return cls(
            start=datetime.combine(start, time.min, tzinfo=timezone.utc),
            end=datetime.combine(end, time.max, tzinfo=timezone.utc),
        )

    @property
    def is_ordered(self) -> bool:
        return self.start <= self.end

    @property
    def span_days(self) -> int:
        return (self.end.date() - self.start.date()).days

    def contains(self, ts: datetime) -> bool:
        return self.start <= as_utc(ts) <= self.end

    def contains_day(self, ts: datetime) -> bool:
        return self.start.date() <= as_utc(ts).date() <= self.end.date()

    def day_bounds(self) -> Tuple[datetime, datetime]:
        """Start of the first day through the end of the last day covered."""
        return (
            datetime.combine(self.start.date(), time.min, tzinfo=timezone.utc),
            datetime.combine(self.end.date(), time.max, tzinfo=timezone.utc),
        )


class PerformanceWindow(_Frozen):
    """W/D/L over a window. Zero total means no games, not an error."""
    start: datetime
    end: datetime
    wins: int = Field(default=0, ge=0)
    draws: int = Field(default=0, ge=0)
    losses: int = Field(default=0, ge=0)
    total: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _check_total(self) -> "PerformanceWindow":
        if self.total != self.wins + self.draws + self.losses:
            raise ValueError("total must equal wins + draws + losses")
        return self

    @computed_field  # type: ignore[misc]
    @property
    def win_rate(self) -> Optional[float]:
        if self.total == 0:
            return None
        return self.wins / self.total

    @property
    def has_data(self) -> bool:
        return self.total > 0


class FavoriteControl(_Frozen):
    time_control: TimeControl
    games_count: int = Field(ge=1)
    rating: Optional[int] = None


class OpeningStat(_Frozen):
    eco: str
    name: str
    games_count: int = Field(ge=1)
    wins: int = 0
    draws: int = 0
    losses: int = 0

    @computed_field  # type: ignore[misc]
    @property
    def win_rate(self) -> float:
        return self.wins / self.games_count


class PlayerComparison(_Frozen):
    snapshot: PlayerSnapshot
    performance: PerformanceWindow


class ComparisonResult(_Frozen):
    window: DateWindow
    first: PlayerComparison
    second: PlayerComparison


class RatingPoint(_Frozen):
    timestamp: datetime
    rating: int

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return as_utc(v)


class PgnExport(_Frozen):
    username: str
    count: int  # requested
    games: int  # delivered
    pgn: str

    @property
    def filename(self) -> str:
        return f"{self.username}_last_{self.count}.pgn"


class RandomGame(_Frozen):
    username: str
    game_id: str
    url: str
    game: Optional[Game] = None
