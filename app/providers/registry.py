from typing import Dict, Optional, Type

from app.providers.base_provider import BaseProvider
from app.providers.flixer import FlixerProvider

PROVIDER_CLASSES: Dict[str, Type[BaseProvider]] = {
    FlixerProvider.provider_name: FlixerProvider,
}


def get_provider_class(key: str) -> Optional[Type[BaseProvider]]:
    return PROVIDER_CLASSES.get(key.strip().lower())
