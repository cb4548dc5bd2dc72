"""
Chart Renderer
Rating-vs-time PNG for one time control over a requested window.
"""

from __future__ import annotations

import logging
from io import BytesIO
from typing import Dict, Iterable, Optional, Tuple

import matplotlib

matplotlib.use("Agg")

import matplotlib.dates as mdates  # noqa: E402
from matplotlib.figure import Figure  # noqa: E402

from .errors import ChartRenderError  # noqa: E402
from .models import DateWindow, RatingPoint  # noqa: E402

logger = logging.getLogger(__name__)

PALETTE = {
    "line": "#69923e",
    "marker": "#4e7837",
    "bg": "#2c2b29",
    "grid": "#4b4847",
    "fg": "#ffffff",
}

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


def points_in_window(points: Iterable[RatingPoint], window: DateWindow) -> Dict:
    """
    Observed points inside the window keyed by timestamp.

    Same-timestamp duplicates collapse to the last value seen.
    """
    collapsed: Dict = {}
    for point in points:
        if window.contains_day(point.timestamp):
            collapsed[point.timestamp] = point.rating
    return dict(sorted(collapsed.items()))


class ChartRenderer:
    """Renders rating history as PNG bytes"""

    def __init__(self, palette: Optional[Dict[str, str]] = None, figsize: Tuple[float, float] = (9.5, 3.6), dpi: int = 120):
        self.p = palette or PALETTE
        self.figsize = figsize
        self.dpi = dpi

    def render(self, points: Iterable[RatingPoint], window: DateWindow, control: str) -> Optional[bytes]:
        """
        Returns None when nothing falls inside the window, never an empty image.
        Raises ChartRenderError if matplotlib fails.
        """
        series = points_in_window(points, window)
        if not series:
            return None

        try:
            return self._draw(list(series.keys()), list(series.values()), window, control)
        except Exception as e:
            logger.exception("Rating chart rendering failed for %s", control)
            raise ChartRenderError(f"Could not render {control} chart: {e}") from e

    def _draw(self, timestamps, ratings, window: DateWindow, control: str) -> bytes:
        fig = self._build_figure(timestamps, ratings, window, control)
        buf = BytesIO()
        fig.savefig(buf, format="png", facecolor=fig.get_facecolor())
        return buf.getvalue()

    def _build_figure(self, timestamps, ratings, window: DateWindow, control: str) -> Figure:
        # Figure API instead of pyplot: no global state, safe off the event loop thread.
        fig = Figure(figsize=self.figsize, dpi=self.dpi)
        fig.patch.set_facecolor(self.p["bg"])
        ax = fig.subplots()
        ax.set_facecolor(self.p["bg"])

        # Observed points only; the line joins them but nothing is invented in gaps.
        ax.plot(timestamps, ratings, linewidth=2.0, color=self.p["line"])
        ax.plot(timestamps, ratings, linestyle="none", marker="o", markersize=3.5, color=self.p["marker"])

        # Fixed time axis over whole days, matching the day-level point filter.
        ax.set_xlim(*window.day_bounds())
        ax.xaxis.set_major_locator(mdates.AutoDateLocator())
        ax.xaxis.set_major_formatter(mdates.DateFormatter("%d.%m.%y"))

        low, high = min(ratings), max(ratings)
        pad = max(10, (high - low) * 0.1)
        ax.set_ylim(low - pad, high + pad)

        for spine in ax.spines.values():
            spine.set_visible(False)
        ax.tick_params(colors=self.p["fg"], labelsize=9)
        ax.grid(True, alpha=0.25, color=self.p["grid"], linewidth=0.8)
        ax.set_ylabel("Rating", color=self.p["fg"])
        ax.set_title(
            f"{control.capitalize()} rating ({window.start:%d.%m.%Y} - {window.end:%d.%m.%Y})",
            color=self.p["fg"],
            fontsize=12,
            pad=10,
        )
        fig.autofmt_xdate()
        fig.tight_layout()
        return fig


def render_rating_chart(points: Iterable[RatingPoint], window: DateWindow, control: str) -> Optional[bytes]:
    return ChartRenderer().render(points, window, control)
