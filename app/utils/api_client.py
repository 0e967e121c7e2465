"""
Signed upstream client.

Extends RobustHTTPClient for session management, adding the request
signature the upstream checks on every resource call: an HMAC over the
derived key, the server-aligned timestamp, a single-use nonce and the path.
Signed requests are never retried here; failures go back to the caller as
UpstreamError so it can decide whether to re-sync the clock or re-derive
the key.
"""

import base64
import hashlib
import hmac
import logging
import os
import re
from dataclasses import dataclass
from typing import Dict, Optional

import requests

from app.exceptions import UpstreamError
from app.utils.clock import ClockSynchronizer
from app.utils.http_utils import RobustHTTPClient
from app.utils.safe_print import safe_print
from app.utils.user_agent import DEFAULT_USER_AGENT, SEC_CH_UA, SEC_CH_UA_PLATFORM

logger = logging.getLogger(__name__)

NONCE_LENGTH = 22


@dataclass(frozen=True)
class RequestSignature:
    timestamp: int
    nonce: str
    hmac: str


def generate_nonce() -> str:
    """16 random bytes, base64 without ``+/=``, cut to 22 characters."""
    encoded = base64.b64encode(os.urandom(16)).decode('ascii')
    return re.sub(r'[/+=]', '', encoded)[:NONCE_LENGTH]


def compute_signature(key: str, timestamp: int, nonce: str, path: str) -> str:
    message = f"{key}:{timestamp}:{nonce}:{path}"
    digest = hmac.new(key.encode('utf-8'), message.encode('utf-8'), hashlib.sha256).digest()
    return base64.b64encode(digest).decode('ascii')


class SignedAPIClient(RobustHTTPClient):
    """
    Upstream client bound to one session's key, fingerprint and clock.

    Inherits the pooled ``requests`` session from RobustHTTPClient, but with
    transport retries disabled: a replayed nonce or a stale timestamp would
    only fail again.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        fingerprint: str,
        clock: ClockSynchronizer,
        user_agent: str = DEFAULT_USER_AGENT,
        referer: str = "https://flixer.sh/",
        timeout: float = 15,
    ):
        super().__init__(timeout=timeout, max_retries=0)
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.fingerprint = fingerprint
        self.clock = clock
        self.user_agent = user_agent
        self.referer = referer

    def sign(self, path: str, timestamp: Optional[int] = None, nonce: Optional[str] = None) -> RequestSignature:
        if timestamp is None:
            timestamp = self.clock.server_timestamp()
        if nonce is None:
            nonce = generate_nonce()
        return RequestSignature(
            timestamp=timestamp,
            nonce=nonce,
            hmac=compute_signature(self.api_key, timestamp, nonce, path),
        )

    def build_headers(self, path: str, extra_headers: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        signature = self.sign(path)
        # No Origin or sec-fetch-* headers: the upstream rejects requests carrying them
        headers = {
            'X-Api-Key': self.api_key,
            'X-Request-Timestamp': str(signature.timestamp),
            'X-Request-Nonce': signature.nonce,
            'X-Request-Signature': signature.hmac,
            'X-Client-Fingerprint': self.fingerprint,
            'Accept': 'text/plain',
            'Accept-Language': 'en-US,en;q=0.9',
            'User-Agent': self.user_agent,
            'Referer': self.referer,
            'sec-ch-ua': SEC_CH_UA,
            'sec-ch-ua-mobile': '?0',
            'sec-ch-ua-platform': SEC_CH_UA_PLATFORM,
        }
        if extra_headers:
            headers.update(extra_headers)
        return headers

    def request(self, path: str, extra_headers: Optional[Dict[str, str]] = None) -> str:
        """GET ``path`` with a fresh signature and return the raw body."""
        url = f"{self.base_url}{path}"
        headers = self.build_headers(path, extra_headers)
        server = headers.get('X-Server', 'any')
        logger.debug(f"🔍 [Flixer] GET {path} (server={server})")

        try:
            response = self.session.get(url, headers=headers, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            safe_print(f"⏰ [Flixer] Timeout after {self.timeout}s: {path}")
            raise UpstreamError(f"Timeout after {self.timeout}s for {path}") from e
        except requests.exceptions.RequestException as e:
            safe_print(f"🔌 [Flixer] Connection error: {path}")
            raise UpstreamError(f"Request to {path} failed: {e}") from e

        if not 200 <= response.status_code < 300:
            body = response.text[:500]
            logger.warning(f"⚠️ [Flixer] HTTP {response.status_code} for {path}: {body[:120]}")
            raise UpstreamError(f"HTTP {response.status_code} for {path}",
                                status=response.status_code, body=body)

        return response.text
