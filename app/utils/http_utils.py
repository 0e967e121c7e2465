"""
Shared HTTP plumbing: a pooled ``requests`` session with urllib3 retries,
plus lenient JSON decoding for upstream bodies.
"""

import json
import logging
import re
from typing import Any, Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from app.utils.safe_print import safe_print
from app.utils.user_agent import DEFAULT_USER_AGENT

logger = logging.getLogger(__name__)

RETRY_STATUSES = (429, 500, 502, 503, 504)


class RobustHTTPClient:
    """Session owner for unsigned upstream calls (clock sync, module download)."""

    def __init__(self, timeout: float = 10, max_retries: int = 3):
        self.timeout = timeout
        self.max_retries = max_retries
        self.session = self._create_session()

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        # GET only; after the last retry the response is handed back, not raised
        adapter = HTTPAdapter(max_retries=Retry(
            total=self.max_retries,
            status_forcelist=RETRY_STATUSES,
            allowed_methods=["GET"],
            backoff_factor=0.5,
            raise_on_status=False,
        ))
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        session.headers['User-Agent'] = DEFAULT_USER_AGENT
        return session

    def get(
        self,
        url: str,
        context: str = "",
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Optional[requests.Response]:
        """GET ``url``; transport failures are logged and give None."""
        timeout = self.timeout if timeout is None else timeout
        try:
            response = self.session.get(url, headers=headers, params=params, timeout=timeout)
        except requests.exceptions.Timeout:
            safe_print(f"⏰ [{context}] Timed out after {timeout}s: {url}")
            return None
        except requests.exceptions.ConnectionError as e:
            safe_print(f"🔌 [{context}] Connection failed: {url}")
            logger.debug(f"{context} - {e}")
            return None
        except requests.exceptions.RequestException as e:
            logger.error(f"{context} - Request error for {url}: {e}")
            return None
        logger.debug(f"{context} - HTTP {response.status_code} from {url}")
        return response

    def get_json(self, url: str, context: str = "", **kwargs) -> Optional[Any]:
        response = self.get(url, context=context, **kwargs)
        return json_payload(response, context) if response is not None else None


def json_payload(response: requests.Response, context: str = "") -> Optional[Any]:
    """Decoded JSON body of a 200 response; None for errors, empty bodies and HTML pages."""
    if response.status_code != 200:
        logger.warning(f"{context} - HTTP {response.status_code}: {response.reason}")
        return None

    body = response.text.strip()
    if not body:
        logger.warning(f"{context} - Empty body")
        return None
    if body[:15].lower().startswith(('<!doctype', '<html')):
        logger.warning(f"{context} - Got an HTML page where JSON was expected")
        return None

    return parse_json_text(body, context)


def parse_json_text(text_content: str, context: str = "") -> Optional[Any]:
    """
    Parse JSON text, falling back to extracting the outermost object.

    Upstream payloads are sometimes wrapped (JSONP, trailing junk); the
    fallback pulls the first ``{...}`` span out before giving up.
    """
    try:
        return json.loads(text_content)
    except json.JSONDecodeError as e:
        logger.debug(f"{context} - JSON decode error at line {e.lineno} col {e.colno}: {e.msg}")

    wrapped = re.search(r'\{.*\}', text_content, re.DOTALL)
    if wrapped:
        try:
            return json.loads(wrapped.group(0))
        except json.JSONDecodeError:
            pass

    logger.warning(f"{context} - Not JSON; preview: {text_content[:120]!r}")
    return None
