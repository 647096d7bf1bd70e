"""Artifact download helper for provider output URLs."""

import httpx
import structlog

from atelier.services.exceptions import (
    ProviderNetworkError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)

logger = structlog.get_logger(__name__)


async def fetch_bytes(
    client: httpx.AsyncClient, url: str, timeout: float = 60.0
) -> tuple[bytes, str]:
    """Download an artifact.

    Args:
        client: Shared httpx client
        url: Artifact URL reported by the provider
        timeout: Download timeout in seconds

    Returns:
        Tuple of (content, mime type)

    Raises:
        ProviderTimeoutError: Download timed out
        ProviderUnavailableError: Non-2xx response
        ProviderNetworkError: Connection failure or empty body
    """
    try:
        response = await client.get(url, timeout=timeout, follow_redirects=True)
    except httpx.TimeoutException as e:
        raise ProviderTimeoutError(f"Artifact download timed out after {timeout}s") from e
    except httpx.TransportError as e:
        raise ProviderNetworkError(f"Artifact download failed: {e}") from e

    if response.status_code >= 400:
        raise ProviderUnavailableError(
            f"Artifact download failed with HTTP {response.status_code}",
            status_code=response.status_code,
        )
    if not response.content:
        raise ProviderNetworkError("Artifact download returned an empty body")

    mime_type = response.headers.get("content-type", "image/jpeg").split(";")[0].strip()
    logger.debug("artifact.downloaded", url=url, size_bytes=len(response.content))
    return response.content, mime_type
