"""
Flixer stream resolver.

Each resolution opens its own session: sync the clock, instantiate the
key-derivation module against a fresh fingerprint, derive the key, prime
the upstream with one unscoped request, then try candidate servers in
priority order until one returns a stream URL.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from app.config.settings import ResolverSettings, server_ids
from app.exceptions import ExtractionFailed, TransformError, UpstreamError
from app.providers.base_provider import BaseProvider
from app.schemas.type_defs import SourceInfo
from app.utils.api_client import SignedAPIClient
from app.utils.clock import ClockSynchronizer
from app.utils.http_utils import parse_json_text
from app.utils.safe_print import safe_print
from app.wasm.browser import FingerprintProfile, MockBrowser
from app.wasm.host import ModuleHost, fetch_module_bytes, load_module

logger = logging.getLogger(__name__)

# NATO id -> display name, in priority order
SERVERS: List[Tuple[str, str]] = [
    ("alpha", "Ares"),
    ("bravo", "Balder"),
    ("charlie", "Circe"),
    ("delta", "Dionysus"),
    ("echo", "Eros"),
    ("foxtrot", "Freya"),
]
SERVER_NAMES: Dict[str, str] = dict(SERVERS)

URL_KEYS = ("url", "file", "stream")


@dataclass(frozen=True)
class SourceCandidate:
    server_id: str
    display_name: str
    priority: int


@dataclass
class ResolvedStream:
    server_id: str
    url: str
    raw_payload: Any

    @property
    def display_name(self) -> str:
        return SERVER_NAMES.get(self.server_id, self.server_id)

    def to_source(self, referer: str) -> SourceInfo:
        return {
            "quality": "auto",
            "title": f"Flixer {self.display_name}",
            "url": self.url,
            "type": "hls",
            "referer": referer,
            "requiresSegmentProxy": True,
            "status": "working",
            "language": "en",
            "server": self.server_id,
        }


def candidates_for(kind: str, settings: ResolverSettings, server: Optional[str] = None) -> List[SourceCandidate]:
    """Ordered candidate servers for ``kind``; ``server`` restricts the list to that one."""
    available = [server_id for server_id, _ in SERVERS]
    if server:
        server = server.lower()
        if server not in SERVER_NAMES:
            raise ValueError(f"Unknown server {server!r}; expected one of {', '.join(available)}")
        order = [server]
    else:
        order = server_ids(settings, available)
    return [SourceCandidate(s, SERVER_NAMES[s], priority) for priority, s in enumerate(order)]


def build_path(tmdb_id: str, kind: str, season: Optional[int] = None, episode: Optional[int] = None) -> str:
    if kind == "movie":
        return f"/api/tmdb/movie/{tmdb_id}/images"
    return f"/api/tmdb/tv/{tmdb_id}/season/{season}/episode/{episode}/images"


def _first_url(entry: Any, keys=URL_KEYS) -> Optional[str]:
    if not isinstance(entry, dict):
        return None
    for key in keys:
        value = entry.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return None


def extract_stream_url(data: Any, server_id: Optional[str] = None) -> Optional[str]:
    """
    Find the stream URL in a decrypted payload.

    Looks at flat keys first, then the ``sources`` list (preferring the entry
    for ``server_id``), then ``servers[server_id]``.
    """
    if not isinstance(data, dict):
        return None

    url = _first_url(data)
    if url:
        return url

    sources = data.get("sources")
    if isinstance(sources, dict):
        url = _first_url(sources, keys=("file", "url"))
        if url:
            return url

    if isinstance(sources, list) and sources:
        entries = [s for s in sources if isinstance(s, dict)]
        match = next((s for s in entries if s.get("server") == server_id), None)
        if match is None and entries:
            match = entries[0]
        if match is not None:
            url = _first_url(match)
            if url:
                return url
            nested = match.get("sources")
            if isinstance(nested, list) and nested:
                url = _first_url(nested[0], keys=("url", "file"))
                if url:
                    return url

    servers = data.get("servers")
    if isinstance(servers, dict) and server_id in servers:
        entry = servers[server_id]
        if isinstance(entry, list):
            return _first_url(entry[0], keys=("url", "file")) if entry else None
        if isinstance(entry, str) and entry.strip():
            return entry
        return _first_url(entry)

    return None


class ResolutionSession:
    """
    One resolution attempt with its own profile, clock, module host and key.

    Sessions are never shared between threads; the module host's handle
    table and memory are single-threaded.
    """

    def __init__(
        self,
        settings: ResolverSettings,
        profile: FingerprintProfile,
        clock: ClockSynchronizer,
        host_factory: Callable[[FingerprintProfile], Any],
        client_factory: Callable[..., SignedAPIClient] = SignedAPIClient,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.profile = profile
        self.clock = clock
        self.host_factory = host_factory
        self.client_factory = client_factory
        self.sleep = sleep
        self.host = None
        self.client: Optional[SignedAPIClient] = None
        self.key: Optional[str] = None
        self.attempts = 0
        self._clock_resynced = False
        self._key_rederived = False

    def open(self) -> None:
        self.clock.sync()
        self.host = self.host_factory(self.profile)
        self.key = self.host.derive_key()
        self.client = self.client_factory(
            base_url=self.settings.api_base,
            api_key=self.key,
            fingerprint=MockBrowser(self.profile).client_fingerprint(),
            clock=self.clock,
            user_agent=self.profile.user_agent,
            referer=self.settings.referer,
            timeout=self.settings.request_timeout,
        )

    def warmup(self, path: str) -> None:
        """Unscoped request that primes upstream session state; its outcome is irrelevant."""
        try:
            self.client.request(path)
        except UpstreamError as e:
            logger.debug(f"Warmup request failed (ignored): {e}")
        if self.settings.warmup_settle_ms:
            self.sleep(self.settings.warmup_settle_ms / 1000)

    def _rederive_key(self) -> None:
        self._key_rederived = True
        self.host.reset_key()
        self.key = self.host.derive_key()
        self.client.api_key = self.key
        logger.warning("🔑 Re-derived key after transform failure")

    def fetch_payload(self, path: str, candidate: SourceCandidate) -> Any:
        """Signed, decrypted and parsed reply for one candidate, with one clock and one key escalation."""
        headers = {"X-Only-Sources": "1", "X-Server": candidate.server_id}
        while True:
            self.attempts += 1
            try:
                ciphertext = self.client.request(path, headers)
            except UpstreamError as e:
                if e.is_auth_failure and not self._clock_resynced:
                    self._clock_resynced = True
                    logger.warning(f"🕒 HTTP {e.status} from {candidate.server_id}, re-syncing clock")
                    self.clock.sync()
                    continue
                raise

            try:
                plaintext = self.host.transform(ciphertext, self.key)
                data = parse_json_text(plaintext, context=f"Flixer {candidate.server_id}")
                if data is None:
                    raise TransformError("Decrypted payload is not JSON")
                return data
            except TransformError:
                if not self._key_rederived:
                    self._rederive_key()
                    continue
                raise

    def try_candidate(self, path: str, candidate: SourceCandidate) -> Optional[ResolvedStream]:
        retries = self.settings.empty_retries
        for attempt in range(1, retries + 1):
            data = self.fetch_payload(path, candidate)
            url = extract_stream_url(data, candidate.server_id)
            if url:
                return ResolvedStream(server_id=candidate.server_id, url=url, raw_payload=data)
            logger.debug(f"Empty URL from {candidate.server_id} (attempt {attempt}/{retries})")
            if attempt < retries and self.settings.empty_backoff_ms:
                self.sleep(self.settings.empty_backoff_ms / 1000)
        return None

    def resolve(self, tmdb_id: str, path: str, candidates: List[SourceCandidate]) -> ResolvedStream:
        self.open()
        self.warmup(path)

        last_upstream: Optional[UpstreamError] = None
        only_upstream_failures = True
        for candidate in candidates:
            safe_print(f"🔍 [Flixer] Probing {candidate.display_name} ({candidate.server_id}) for {tmdb_id}")
            try:
                stream = self.try_candidate(path, candidate)
            except UpstreamError as e:
                logger.warning(f"⚠️ [Flixer] {candidate.server_id} failed: {e}")
                last_upstream = e
                continue
            except TransformError as e:
                logger.warning(f"⚠️ [Flixer] {candidate.server_id} payload undecryptable: {e}")
                only_upstream_failures = False
                continue

            only_upstream_failures = False
            if stream is not None:
                safe_print(f"✅ [Flixer] Stream found on {candidate.display_name}")
                return stream

        if candidates and only_upstream_failures and last_upstream is not None:
            raise last_upstream
        raise ExtractionFailed(tmdb_id, [c.server_id for c in candidates])


class FlixerProvider(BaseProvider):
    """Resolves TMDB titles to HLS manifests through the Flixer upstream."""

    provider_name = "flixer"
    display_name = "Flixer"

    _module = None
    _module_lock = threading.Lock()
    last_clock_offset_ms: Optional[int] = None

    def __init__(
        self,
        settings: Optional[ResolverSettings] = None,
        host_factory: Optional[Callable[[FingerprintProfile], Any]] = None,
        clock_factory: Optional[Callable[[], ClockSynchronizer]] = None,
        client_factory: Callable[..., SignedAPIClient] = SignedAPIClient,
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__(settings)
        self.host_factory = host_factory or self._default_host
        self.clock_factory = clock_factory or self._default_clock
        self.client_factory = client_factory
        self.sleep = sleep

    @classmethod
    def module_loaded(cls) -> bool:
        return cls._module is not None

    def _get_module(self):
        with self._module_lock:
            if FlixerProvider._module is None:
                data = fetch_module_bytes(self.settings.wasm_path, self.settings.wasm_url,
                                          referer=self.settings.referer)
                FlixerProvider._module = load_module(data)
            return FlixerProvider._module

    def _default_host(self, profile: FingerprintProfile) -> ModuleHost:
        return ModuleHost(self._get_module(), profile=profile)

    def _default_clock(self) -> ClockSynchronizer:
        return ClockSynchronizer(self.settings.api_base, timeout=self.settings.request_timeout)

    def new_profile(self) -> FingerprintProfile:
        return FingerprintProfile.create(**self.settings.fingerprint)

    def resolve_stream(self, tmdb_id: str, kind: str, season: Optional[int] = None,
                       episode: Optional[int] = None, server: Optional[str] = None) -> ResolvedStream:
        self.validate_request(tmdb_id, kind, season, episode)
        candidates = candidates_for(kind, self.settings, server)

        path = build_path(tmdb_id, kind, season, episode)
        safe_print(f"🎬 {self.log_prefix} Resolving {kind} {tmdb_id} via {len(candidates)} server(s)")

        session = ResolutionSession(
            settings=self.settings,
            profile=self.new_profile(),
            clock=self.clock_factory(),
            host_factory=self.host_factory,
            client_factory=self.client_factory,
            sleep=self.sleep,
        )
        try:
            return session.resolve(tmdb_id, path, candidates)
        finally:
            FlixerProvider.last_clock_offset_ms = session.clock.offset_ms
            logger.info(f"{self.log_prefix} Session finished after {session.attempts} attempt(s)")
