"""
Error taxonomy for the resolver.

Lower layers normalise whatever they hit (wasmtime traps, requests errors,
host-side exceptions) into one of these before raising upward.
"""

from typing import Optional, Sequence


class ResolverError(Exception):
    """Base class for every error the resolver surfaces."""
    pass


class LinkError(ResolverError):
    """The module could not be linked: an import or export does not match. Never retried."""

    def __init__(self, message: str, missing: Optional[Sequence[str]] = None):
        super().__init__(message)
        self.missing = list(missing or [])


class DerivationError(ResolverError):
    """The module failed to derive a key. Fatal for the session."""
    pass


class DecodeError(ResolverError):
    """Bytes read out of linear memory were not valid UTF-8."""
    pass


class AllocationError(ResolverError):
    """The module allocator could not provide memory."""
    pass


class TransformError(ResolverError):
    """The module could not decrypt a payload (ciphertext/key mismatch)."""
    pass


class UpstreamError(ResolverError):
    """HTTP failure talking to the upstream (non-2xx, timeout, connection)."""

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body

    @property
    def is_auth_failure(self) -> bool:
        return self.status in (401, 403)


class ExtractionFailed(ResolverError):
    """Every candidate server was tried and none produced a stream."""

    def __init__(self, tmdb_id: str, servers: Sequence[str]):
        super().__init__(f"No stream URL found for {tmdb_id} on servers: {', '.join(servers) or 'none'}")
        self.tmdb_id = tmdb_id
        self.servers = list(servers)


# Errors that indicate a broken host or module rather than a bad request
FATAL_ERRORS = (LinkError, DerivationError, DecodeError, AllocationError)
