"""
HTTP surface for the stats engine.
Each route hands (username, parameters) to StatsService and maps the Outcome
onto a status code; formatting for humans is the front-end's job.
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import date
from typing import List, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Response
from fastapi.responses import PlainTextResponse

from . import __version__
from .config import config
from .errors import BAD_REQUEST, ErrorCode, format_error
from .lichess_client import LichessClient
from .models import (
    ComparisonResult,
    DateWindow,
    FavoriteControl,
    OpeningStat,
    PerformanceWindow,
    PlayerSnapshot,
    RandomGame,
    RatingPoint,
)
from .outcome import Outcome
from .player_directory import InMemoryPlayerDirectory, PlayerDirectory, SupabasePlayerDirectory
from .services import StatsService

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

STATUS_BY_CODE = {
    "not_found": 404,
    "no_data": 404,
    "rate_limited": 429,
    "upstream_unavailable": 503,
    "directory_unavailable": 503,
    "invalid_range": 400,
    "bad_request": 400,
    "render_failed": 500,
    "cancelled": 499,
}

# Global service instance (initialized in lifespan)
service: Optional[StatsService] = None


def build_directory() -> PlayerDirectory:
    if config.SUPABASE_URL and config.SUPABASE_SERVICE_ROLE_KEY:
        return SupabasePlayerDirectory()
    logger.warning("Supabase not configured, using in-memory player directory")
    return InMemoryPlayerDirectory()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the Lichess client and service; close them on shutdown."""
    global service
    client = LichessClient()
    service = StatsService(client, directory=build_directory())
    logger.info("Stats service ready (upstream %s)", client.base_url)

    yield

    await service.drain()
    await client.close()
    service = None


app = FastAPI(title="Lichess Stats Backend", version=__version__, lifespan=lifespan)


# ============================================================================
# Helper Functions
# ============================================================================

def get_service() -> StatsService:
    if service is None:
        raise HTTPException(status_code=503, detail="Stats service is not initialized")
    return service


def _fail(code: ErrorCode, detail: Optional[str] = None) -> HTTPException:
    return HTTPException(status_code=STATUS_BY_CODE.get(code.code, 500), detail=format_error(code, detail=detail))


def unwrap(outcome: Outcome, response: Optional[Response] = None):
    """Outcome value on success, HTTPException carrying the error code otherwise."""
    if response is not None and outcome.skipped:
        response.headers["X-Skipped-Records"] = str(outcome.skipped)
    if not outcome.ok:
        raise _fail(outcome.error, outcome.detail)
    return outcome.value


def window_from_query(start: Optional[date], end: Optional[date]) -> Optional[DateWindow]:
    if start is None and end is None:
        return None
    if start is None or end is None:
        raise _fail(BAD_REQUEST, "Both start and end are required for an explicit range")
    return DateWindow.from_dates(start, end)


# ============================================================================
# Routes
# ============================================================================

@app.get("/")
async def root():
    return {"status": "ok"}


@app.get("/meta")
async def meta():
    return {
        "name": "Lichess Stats",
        "version": __version__,
        "upstream": config.LICHESS_BASE_URL,
        "defaults": {
            "window_days": config.DEFAULT_WINDOW_DAYS,
            "compare_window_days": config.COMPARE_WINDOW_DAYS,
            "max_window_days": config.MAX_WINDOW_DAYS,
            "openings_fetch": config.OPENINGS_FETCH,
            "openings_top": config.DEFAULT_TOP,
            "pgn_count": config.PGN_DEFAULT_COUNT,
        },
    }


@app.get("/players/{username}", response_model=PlayerSnapshot)
async def player_info(username: str, stats: StatsService = Depends(get_service)):
    return unwrap(await stats.player_info(username))


@app.get("/players/{username}/performance", response_model=PerformanceWindow)
async def performance(
    username: str,
    response: Response,
    days: Optional[int] = Query(None),
    start: Optional[date] = Query(None),
    end: Optional[date] = Query(None),
    stats: StatsService = Depends(get_service),
):
    window = window_from_query(start, end)
    return unwrap(await stats.performance(username, window=window, days=days), response)


@app.get("/players/{username}/favorite", response_model=FavoriteControl)
async def favorite(
    username: str,
    response: Response,
    fetch: Optional[int] = Query(None, ge=1),
    stats: StatsService = Depends(get_service),
):
    return unwrap(await stats.favorite_control(username, fetch=fetch), response)


@app.get("/players/{username}/openings", response_model=List[OpeningStat])
async def openings(
    username: str,
    response: Response,
    color: Optional[str] = Query(None),
    top: Optional[int] = Query(None),
    fetch: Optional[int] = Query(None, ge=1),
    stats: StatsService = Depends(get_service),
):
    return unwrap(await stats.openings(username, color=color, top=top, fetch=fetch), response)


@app.get("/compare", response_model=ComparisonResult)
async def compare(
    response: Response,
    first: str = Query(...),
    second: str = Query(...),
    days: Optional[int] = Query(None),
    start: Optional[date] = Query(None),
    end: Optional[date] = Query(None),
    stats: StatsService = Depends(get_service),
):
    window = window_from_query(start, end)
    return unwrap(await stats.compare(first, second, window=window, days=days), response)


@app.get("/players/{username}/rating-history/{control}", response_model=List[RatingPoint])
async def rating_history(
    username: str,
    control: str,
    days: Optional[int] = Query(None),
    start: Optional[date] = Query(None),
    end: Optional[date] = Query(None),
    stats: StatsService = Depends(get_service),
):
    window = window_from_query(start, end)
    return unwrap(await stats.rating_history(username, control, window=window, days=days))


@app.get("/players/{username}/rating-chart/{control}")
async def rating_chart(
    username: str,
    control: str,
    days: Optional[int] = Query(None),
    start: Optional[date] = Query(None),
    end: Optional[date] = Query(None),
    stats: StatsService = Depends(get_service),
):
    window = window_from_query(start, end)
    png = unwrap(await stats.rating_chart(username, control, window=window, days=days))
    return Response(
        content=png,
        media_type="image/png",
        headers={"Content-Disposition": f'inline; filename="{username}_{control.lower()}.png"'},
    )


@app.get("/players/{username}/pgn")
async def export_pgn(
    username: str,
    count: Optional[int] = Query(None),
    stats: StatsService = Depends(get_service),
):
    export = unwrap(await stats.export_pgn(username, count=count))
    return PlainTextResponse(
        export.pgn,
        media_type="application/x-chess-pgn",
        headers={"Content-Disposition": f'attachment; filename="{export.filename}"'},
    )


@app.get("/random-game", response_model=RandomGame)
async def random_game(stats: StatsService = Depends(get_service)):
    return unwrap(await stats.random_game())


@app.delete("/directory/{username}")
async def delete_player(
    username: str,
    x_admin_token: Optional[str] = Header(None),
    stats: StatsService = Depends(get_service),
):
    if not config.ADMIN_TOKEN or x_admin_token != config.ADMIN_TOKEN:
        raise HTTPException(status_code=403, detail="Admin token required")
    stored = unwrap(await stats.delete_player(username))
    return {"deleted": stored.username, "id": stored.id}
