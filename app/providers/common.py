from typing import Optional

from app.config.settings import ResolverSettings
from app.providers.base_provider import BaseProvider
from app.providers.registry import get_provider_class


class ProviderFactory:
    """Builds providers by registry key."""

    @staticmethod
    def create_provider(provider_name: str, settings: Optional[ResolverSettings] = None) -> BaseProvider:
        provider_cls = get_provider_class(provider_name)
        if provider_cls is None:
            raise ValueError(f"Unknown provider: {provider_name}")
        return provider_cls(settings)
