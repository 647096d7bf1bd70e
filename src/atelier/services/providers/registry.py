"""Provider resolution, done once when a worker starts."""

import httpx

from atelier.core.config import Settings
from atelier.services.providers.base import Provider, ProviderKind
from atelier.services.providers.gemini_client import GeminiImageClient
from atelier.services.providers.nanobanana_client import NanoBananaClient
from atelier.services.providers.replicate_client import ReplicateImageClient


def build_provider(
    kind: ProviderKind | str, settings: Settings, http_client: httpx.AsyncClient
) -> Provider:
    """Instantiate the adapter for a provider kind from settings.

    Args:
        kind: Provider kind (enum member or its value)
        settings: Application settings holding keys, base URLs and timeouts
        http_client: Shared httpx client

    Returns:
        A SyncProvider or AsyncProvider instance

    Raises:
        ValueError: If the kind is unknown
    """
    kind = ProviderKind(kind)
    if kind == ProviderKind.GEMINI:
        return GeminiImageClient(
            http_client,
            api_key=settings.gemini_api_key,
            base_url=settings.gemini_base_url,
            model=settings.gemini_model,
            timeout=settings.gemini_timeout_seconds,
        )
    if kind == ProviderKind.NANOBANANA:
        return NanoBananaClient(
            http_client,
            api_key=settings.nanobanana_api_key,
            callback_url=settings.nanobanana_callback_url,
            base_url=settings.nanobanana_base_url,
            timeout=settings.nanobanana_timeout_seconds,
        )
    return ReplicateImageClient(
        http_client,
        api_token=settings.replicate_api_token,
        model_version=settings.replicate_model_version,
        timeout=settings.download_timeout_seconds,
    )
