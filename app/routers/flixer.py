from fastapi import APIRouter
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
import logging
import traceback
from datetime import datetime, timezone
from typing import Optional
from app.exceptions import ExtractionFailed, ResolverError, UpstreamError, FATAL_ERRORS
from app.providers.common import ProviderFactory
from app.providers.flixer import FlixerProvider, SERVERS
from app.schemas.flixer import ErrorResponse, ExtractResponse, HealthResponse, Source

router = APIRouter()
logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _error(status_code: int, message: str, exc: Optional[Exception] = None, server: Optional[str] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": message,
            "type": type(exc).__name__ if exc else None,
            "server": server,
            "timestamp": _now(),
        },
    )


def _parse_int(name: str, raw: Optional[str]) -> Optional[int]:
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


@router.get(
    "/flixer/extract",
    response_model=ExtractResponse,
    responses={code: {"model": ErrorResponse} for code in (400, 404, 500, 503)},
)
async def extract(
    tmdbId: Optional[str] = None,
    type: str = "movie",
    season: Optional[str] = None,
    episode: Optional[str] = None,
    server: Optional[str] = None,
):
    """Resolve an HLS source for a TMDB movie or episode."""
    logger.info(f"🔍 EXTRACT REQUEST: tmdbId={tmdbId}, type={type}, season={season}, episode={episode}, server={server}")

    if not tmdbId:
        return _error(400, "Missing tmdbId parameter")

    try:
        season_no = _parse_int("season", season)
        episode_no = _parse_int("episode", episode)
        provider = ProviderFactory.create_provider("flixer")
        stream = await run_in_threadpool(
            provider.resolve_stream, tmdbId, type, season_no, episode_no, server
        )
    except ValueError as e:
        logger.warning(f"⚠️ Bad extract request: {e}")
        return _error(400, str(e), e, server)
    except ExtractionFailed as e:
        logger.warning(f"⚠️ {e}")
        return _error(404, str(e), e, server)
    except UpstreamError as e:
        logger.error(f"❌ Upstream unavailable (status={e.status}): {e}")
        return _error(503, str(e), e, server)
    except FATAL_ERRORS as e:
        logger.error(f"❌ Module host failure: {e.__class__.__name__}: {e}")
        logger.error(traceback.format_exc())
        return _error(500, str(e), e, server)
    except ResolverError as e:
        logger.error(f"❌ Extraction error: {e}")
        return _error(500, str(e), e, server)

    source = Source(**stream.to_source(provider.settings.referer))
    logger.info(f"✅ Flixer returned stream from {stream.server_id}")
    return ExtractResponse(success=True, sources=[source], server=stream.server_id, timestamp=_now())


@router.get("/flixer/health", response_model=HealthResponse)
async def health():
    return HealthResponse(
        status="ok",
        wasmLoaded=FlixerProvider.module_loaded(),
        serverTimeOffset=FlixerProvider.last_clock_offset_ms,
        servers=[server_id for server_id, _ in SERVERS],
        timestamp=_now(),
    )
