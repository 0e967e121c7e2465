import logging
import os
import sys
import tempfile
import traceback
from datetime import datetime

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config.settings import load_settings
from app.providers.flixer import FlixerProvider
from app.routers import flixer

LOG_FILE_PATH = os.getenv('LOG_FILE', os.path.join(tempfile.gettempdir(), 'flixer_resolver.log'))
LOG_TO_FILE = os.getenv('LOG_TO_FILE', 'false').lower() in ('1', 'true', 'yes', 'on')
LOG_LEVEL = os.getenv('LOG_LEVEL', 'info').upper()


def _configure_logging() -> bool:
    """Console always; file only when LOG_TO_FILE is set and the path is writable."""
    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    handlers = [console]

    file_enabled = False
    if LOG_TO_FILE:
        try:
            os.makedirs(os.path.dirname(LOG_FILE_PATH) or '.', exist_ok=True)
            file_handler = logging.FileHandler(LOG_FILE_PATH, encoding='utf-8')
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)
            file_enabled = True
        except OSError:
            pass

    logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO), handlers=handlers)
    return file_enabled


FILE_LOG_ENABLED = _configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Flixer Stream Resolver",
    description="Resolves TMDB movies and episodes to HLS sources through the Flixer upstream",
    version="1.0.0"
)

# Wildcard origins cannot be combined with credentials
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["GET", "OPTIONS"],
    allow_headers=["*"],
)


def _failure_body(request: Request, exc: Exception) -> dict:
    return {
        "success": False,
        "error": str(exc),
        "type": type(exc).__name__,
        "timestamp": datetime.now().isoformat(),
        "path": request.url.path,
    }


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = datetime.now()
    logger.info(f"🔍 {request.method} {request.url.path}")
    if request.query_params:
        logger.debug(f"   query: {dict(request.query_params)}")

    try:
        response = await call_next(request)
    except Exception as e:
        elapsed = (datetime.now() - started).total_seconds()
        logger.error(f"❌ {type(e).__name__} in {request.method} {request.url.path} after {elapsed:.3f}s: {e}")
        logger.error(traceback.format_exc())
        return JSONResponse(status_code=500, content=_failure_body(request, e))

    elapsed = (datetime.now() - started).total_seconds()
    logger.info(f"✅ {response.status_code} {request.url.path} in {elapsed:.3f}s")
    return response


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"🚨 Unhandled {type(exc).__name__} on {request.method} {request.url}: {exc}")
    logger.error(traceback.format_exc())
    body = _failure_body(request, exc)
    body["note"] = f"See {LOG_FILE_PATH}" if FILE_LOG_ENABLED else "See server logs"
    return JSONResponse(status_code=500, content=body)


app.include_router(flixer.router, tags=["flixer"])


@app.on_event("startup")
async def startup_diagnostics():
    settings = load_settings()
    logger.info(f"🔧 Upstream: {settings.api_base}")
    logger.info(f"🔧 Module source: {settings.wasm_path or settings.wasm_url}")
    logger.info(f"🔧 Servers: {', '.join(settings.servers) or 'all'}")
    if settings.fingerprint:
        logger.info(f"🔧 Fingerprint overrides: {sorted(settings.fingerprint)}")


@app.get("/")
async def root():
    return {"message": "Flixer Stream Resolver API", "endpoints": ["/flixer/extract", "/flixer/health"]}


@app.get("/debug/status")
async def debug_status():
    """Runtime configuration snapshot."""
    settings = load_settings()
    return {
        "status": "running",
        "timestamp": datetime.now().isoformat(),
        "upstream": settings.api_base,
        "module": {
            "source": settings.wasm_path or settings.wasm_url,
            "loaded": FlixerProvider.module_loaded(),
        },
        "retries": {"empty": settings.empty_retries, "backoffMs": settings.empty_backoff_ms},
        "logging": {"level": LOG_LEVEL, "file_enabled": FILE_LOG_ENABLED, "log_file_path": LOG_FILE_PATH},
    }
