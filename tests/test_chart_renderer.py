from datetime import date, datetime, timezone

import matplotlib.dates as mdates
import pytest

from lichess_stats.chart_renderer import (
    PALETTE,
    PNG_SIGNATURE,
    ChartRenderer,
    points_in_window,
    render_rating_chart,
)
from lichess_stats.errors import ChartRenderError
from lichess_stats.models import DateWindow, RatingPoint

WINDOW = DateWindow.from_dates(date(2024, 1, 1), date(2024, 1, 31))


def _point(day, rating, month=1):
    return RatingPoint(timestamp=datetime(2024, month, day, tzinfo=timezone.utc), rating=rating)


def test_render_returns_png():
    points = [_point(3, 1500), _point(10, 1520), _point(25, 1490)]

    png = render_rating_chart(points, WINDOW, "blitz")

    assert png is not None
    assert png.startswith(PNG_SIGNATURE)


def test_single_point_still_renders():
    png = ChartRenderer().render([_point(15, 1800)], WINDOW, "rapid")
    assert png.startswith(PNG_SIGNATURE)


def test_no_points_is_none():
    assert ChartRenderer().render([], WINDOW, "blitz") is None


def test_points_outside_window_are_dropped():
    outside = [_point(5, 1500, month=2), RatingPoint(timestamp=datetime(2023, 12, 31, tzinfo=timezone.utc), rating=1400)]

    assert points_in_window(outside, WINDOW) == {}
    assert ChartRenderer().render(outside, WINDOW, "blitz") is None


def test_window_edges_are_inclusive():
    series = points_in_window([_point(1, 1500), _point(31, 1510)], WINDOW)
    assert list(series.values()) == [1500, 1510]


def test_duplicate_timestamps_collapse_to_last_value():
    series = points_in_window([_point(10, 1500), _point(4, 1450), _point(10, 1530)], WINDOW)

    assert list(series.values()) == [1450, 1530]
    assert list(series.keys()) == sorted(series.keys())


def test_render_failure_is_typed():
    palette = dict(PALETTE, line="not-a-colour")

    with pytest.raises(ChartRenderError):
        ChartRenderer(palette=palette).render([_point(3, 1500), _point(4, 1510)], WINDOW, "blitz")


def test_first_day_of_a_day_count_window_is_on_the_axis():
    window = DateWindow.last_days(1, now=datetime(2024, 3, 10, 15, 0, tzinfo=timezone.utc))
    midnight = datetime(2024, 3, 9, tzinfo=timezone.utc)
    series = points_in_window([RatingPoint(timestamp=midnight, rating=1500)], window)
    assert list(series) == [midnight]

    fig = ChartRenderer()._build_figure(list(series.keys()), list(series.values()), window, "blitz")

    left, right = fig.axes[0].get_xlim()
    assert left <= mdates.date2num(midnight) <= right
    assert right >= mdates.date2num(window.end)
