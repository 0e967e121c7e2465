"""
Optional JSON config for the resolver.

Read from RESOLVER_CONFIG_JSON when set, else from ``resolver.json`` at the
repo root. Hand-edited files are accepted with single quotes or bare keys;
anything still unparsable is logged and treated as no config.
"""

import json
import logging
import os
import re
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = 'RESOLVER_CONFIG_JSON'
CONFIG_FILENAME = 'resolver.json'

_BARE_KEY = re.compile(r'([{,])\s*([A-Za-z_][A-Za-z0-9_]*)\s*:')

# Each repair is tried on the original text, in order
_REPAIRS: Dict[str, Callable[[str], str]] = {
    "single quotes": lambda text: text.replace("'", '"'),
    "bare keys": lambda text: _BARE_KEY.sub(r'\1"\2":', text),
}


def _lenient_parse(text: str, context: str) -> Optional[Any]:
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        start, end = max(0, e.pos - 60), e.pos + 60
        logger.error(f"{context} - {e.msg} at line {e.lineno} column {e.colno}: ...{text[start:end]}...")

    for label, repair in _REPAIRS.items():
        candidate = repair(text)
        if candidate == text:
            continue
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        logger.warning(f"{context} - Parsed after fixing {label}")
        return parsed

    logger.error(f"{context} - Could not parse config")
    return None


def _load_from_env() -> Optional[Any]:
    raw = os.getenv(CONFIG_ENV_VAR)
    if not raw:
        return None
    logger.info(f"config: Using {CONFIG_ENV_VAR}")
    return _lenient_parse(raw, f"config.env:{CONFIG_ENV_VAR}")


def _load_from_file(path: str) -> Optional[Any]:
    if not os.path.exists(path):
        logger.debug(f"config: No config file at {path}")
        return None
    try:
        with open(path, 'r', encoding='utf-8') as f:
            content = f.read()
    except OSError as e:
        logger.error(f"config: Could not read {path}: {e}")
        return None
    logger.info(f"config: Loading {path} ({len(content)} bytes)")
    return _lenient_parse(content, f"config.file:{path}")


def load_resolver_config(path: Optional[str] = None) -> Dict[str, Any]:
    """The parsed config object; empty when absent, unparsable or not an object."""
    config = _load_from_env()
    if config is None:
        if path is None:
            repo_root = os.path.dirname(os.path.dirname(os.path.dirname(__file__)))
            path = os.path.join(repo_root, CONFIG_FILENAME)
        config = _load_from_file(path)

    if config is None:
        return {}
    if not isinstance(config, dict):
        logger.error(f"config: Top level must be an object; got {type(config).__name__}")
        return {}
    return config


def get_fingerprint_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    section = config.get('fingerprint', {})
    if not isinstance(section, dict):
        logger.error(f"config: 'fingerprint' must be an object; got {type(section).__name__}")
        return {}
    return section
