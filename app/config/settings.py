"""
Resolver configuration.
Built once from environment variables (``.env`` is loaded by run_server.py)
plus the optional resolver JSON config for fingerprint overrides.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from app.utils.resolver_config import get_fingerprint_overrides, load_resolver_config
from app.wasm.browser import FingerprintProfile
from app.wasm.host import DEFAULT_WASM_URL

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://plsdontscrapemelove.flixer.sh"
DEFAULT_REFERER = "https://flixer.sh/"

# camelCase keys accepted in the JSON config, mapped to profile fields
_FINGERPRINT_ALIASES = {
    "screenWidth": "screen_width",
    "screenHeight": "screen_height",
    "colorDepth": "color_depth",
    "userAgent": "user_agent",
    "timezoneOffsetMinutes": "timezone_offset_minutes",
    "canvasSignature": "canvas_signature",
    "sessionId": "session_id",
    "clockAnchor": "clock_anchor_ms",
}


@dataclass
class ResolverSettings:
    api_base: str = DEFAULT_API_BASE
    referer: str = DEFAULT_REFERER
    wasm_path: Optional[str] = None
    wasm_url: str = DEFAULT_WASM_URL
    request_timeout: float = 15.0
    empty_retries: int = 5
    empty_backoff_ms: int = 200
    warmup_settle_ms: int = 100
    servers: Tuple[str, ...] = ()
    fingerprint: Dict[str, Any] = field(default_factory=dict)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"⚠️ {name}={raw!r} is not an integer, using {default}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"⚠️ {name}={raw!r} is not a number, using {default}")
        return default


def _parse_servers(raw: Optional[str]) -> Tuple[str, ...]:
    if not raw:
        return ()
    return tuple(s.strip().lower() for s in raw.split(",") if s.strip())


def normalize_fingerprint(overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Map camelCase config keys onto profile field names; unknown keys are dropped."""
    known = set(FingerprintProfile.__dataclass_fields__)
    normalized: Dict[str, Any] = {}
    for key, value in overrides.items():
        name = _FINGERPRINT_ALIASES.get(key, key)
        if name in known:
            normalized[name] = value
        else:
            logger.warning(f"⚠️ Ignoring unknown fingerprint override '{key}'")
    return normalized


def load_settings(config: Optional[Dict[str, Any]] = None) -> ResolverSettings:
    """Build settings from the environment and the resolver JSON config."""
    if config is None:
        config = load_resolver_config()

    settings = ResolverSettings(
        api_base=os.getenv("FLIXER_API_BASE", DEFAULT_API_BASE).rstrip("/"),
        referer=os.getenv("FLIXER_REFERER", DEFAULT_REFERER),
        wasm_path=os.getenv("FLIXER_WASM_PATH") or None,
        wasm_url=os.getenv("FLIXER_WASM_URL", DEFAULT_WASM_URL),
        request_timeout=_env_float("FLIXER_REQUEST_TIMEOUT", 15.0),
        empty_retries=max(1, _env_int("FLIXER_EMPTY_RETRIES", 5)),
        empty_backoff_ms=max(0, _env_int("FLIXER_EMPTY_BACKOFF_MS", 200)),
        servers=_parse_servers(os.getenv("FLIXER_SERVERS")),
        fingerprint=normalize_fingerprint(get_fingerprint_overrides(config)),
    )
    logger.debug(f"Resolver settings: api_base={settings.api_base} servers={list(settings.servers) or 'all'}")
    return settings


def server_ids(settings: ResolverSettings, available: List[str]) -> List[str]:
    """Configured server order restricted to ids that exist, or all of ``available``."""
    if not settings.servers:
        return list(available)
    unknown = [s for s in settings.servers if s not in available]
    if unknown:
        logger.warning(f"⚠️ Unknown servers in FLIXER_SERVERS ignored: {unknown}")
    known = [s for s in settings.servers if s in available]
    if not known:
        logger.warning(f"⚠️ FLIXER_SERVERS names no known server, using all {len(available)}")
        return list(available)
    return known
