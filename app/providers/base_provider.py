"""
Base provider class with common functionality.
All stream providers should inherit from this class.
"""

from abc import ABC, abstractmethod
from typing import Optional

from app.config.settings import ResolverSettings, load_settings

MEDIA_KINDS = ("movie", "tv")


class BaseProvider(ABC):
    """
    Abstract base class for stream providers.

    Provides settings loading, input validation and the logging prefix;
    subclasses implement ``resolve_stream``.
    """

    # Subclasses should override these
    provider_name: str = "base"
    display_name: str = "Base"

    def __init__(self, settings: Optional[ResolverSettings] = None):
        self.settings = settings or load_settings()

    @property
    def log_prefix(self) -> str:
        """Get formatted logging prefix with provider display name."""
        return f"[{self.display_name}]"

    @staticmethod
    def validate_request(tmdb_id: str, kind: str, season: Optional[int], episode: Optional[int]) -> None:
        """Raise ValueError for an identifier/kind combination the upstream cannot serve."""
        if not tmdb_id or not str(tmdb_id).strip():
            raise ValueError("tmdbId is required")
        if not str(tmdb_id).isdigit():
            raise ValueError(f"tmdbId must be numeric, got {tmdb_id!r}")
        if kind not in MEDIA_KINDS:
            raise ValueError(f"type must be one of {', '.join(MEDIA_KINDS)}, got {kind!r}")
        if kind == "tv":
            if season is None or episode is None:
                raise ValueError("season and episode are required for tv")
            if season < 0 or episode < 0:
                raise ValueError("season and episode must be non-negative")

    @abstractmethod
    def resolve_stream(self, tmdb_id: str, kind: str, season: Optional[int] = None,
                       episode: Optional[int] = None, server: Optional[str] = None):
        """Resolve a title to a playable stream. Raises on failure."""
        pass
