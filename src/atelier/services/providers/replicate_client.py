"""Replicate client for text-to-image design synthesis with error classification."""

import asyncio
from typing import Any

import httpx
import replicate
import structlog
from replicate.exceptions import ReplicateError as ReplicateAPIError

from atelier.services.exceptions import (
    ContentPolicyError,
    MalformedResponseError,
    ProviderAuthError,
    ProviderNetworkError,
    ProviderRequestError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    ServiceError,
)
from atelier.services.providers.base import GeneratedImage, GenerationRequest, ProviderKind

logger = structlog.get_logger(__name__)


def classify_error(exception: Exception) -> ServiceError:
    """Classify exception into retry category.

    Args:
        exception: Original exception from Replicate SDK or network layer

    Returns:
        Classified ServiceError subclass instance

    Classification rules:
        - Timeout errors → ProviderTimeoutError
        - 429 (rate limit), 5xx → ProviderUnavailableError
        - 401/403 (authentication) → ProviderAuthError
        - Content policy violations → ContentPolicyError
        - Connection errors → ProviderNetworkError
        - Other errors → ProviderRequestError
    """
    error_message = str(exception)
    error_message_lower = error_message.lower()

    if "timeout" in error_message_lower or isinstance(
        exception, (TimeoutError, httpx.TimeoutException)
    ):
        return ProviderTimeoutError(f"Network timeout: {error_message}")

    if "429" in error_message or "rate limit" in error_message_lower:
        return ProviderUnavailableError(f"Rate limit exceeded: {error_message}", status_code=429)

    if (
        "500" in error_message
        or "502" in error_message
        or "503" in error_message
        or "service unavailable" in error_message_lower
    ):
        return ProviderUnavailableError(f"Service unavailable: {error_message}")

    if (
        "401" in error_message
        or "403" in error_message
        or "unauthorized" in error_message_lower
        or "forbidden" in error_message_lower
        or "authentication" in error_message_lower
        or "invalid api token" in error_message_lower
    ):
        return ProviderAuthError(f"Authentication failed: {error_message}")

    if (
        "content policy" in error_message_lower
        or "nsfw" in error_message_lower
        or "safety" in error_message_lower
        or "inappropriate" in error_message_lower
    ):
        return ContentPolicyError(error_message, reason="content_policy")

    if isinstance(exception, (ConnectionError, OSError, httpx.TransportError)):
        return ProviderNetworkError(f"Connection error: {error_message}")

    return ProviderRequestError(f"Permanent error: {error_message}")


class ReplicateImageClient:
    """Synchronous text-to-image generation through Replicate.

    The SDK is synchronous, so runs happen in a worker thread. The produced image is
    downloaded from Replicate's CDN within ``timeout``.

    Args:
        http_client: Shared httpx client used for the artifact download
        api_token: Replicate API token
        model_version: Model identifier
        timeout: Timeout for the artifact download in seconds
    """

    kind = ProviderKind.REPLICATE

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        api_token: str,
        model_version: str = "black-forest-labs/flux-schnell",
        timeout: float = 60.0,
    ):
        self.http_client = http_client
        self.api_token = api_token
        self.model_version = model_version
        self.timeout = timeout
        # Token is bound to this client, not to the process environment
        self._client = replicate.Client(api_token=api_token)

    def _run(self, prompt: str, seed: Any = None) -> Any:
        model_input: dict[str, Any] = {"prompt": prompt}
        if seed is not None:
            model_input["seed"] = seed
        return self._client.run(self.model_version, input=model_input)

    @staticmethod
    def output_url(output: Any) -> str:
        """Extract the image URL from a run output (format varies by model)."""
        if isinstance(output, list) and len(output) > 0:
            output = output[0]
        url = getattr(output, "url", output)
        if callable(url):
            url = url()
        if isinstance(url, str) and url.startswith(("http://", "https://")):
            return url
        raise MalformedResponseError(
            f"Unexpected output format from Replicate: {type(output).__name__}",
            {"output_type": type(output).__name__},
        )

    async def generate(self, request: GenerationRequest) -> GeneratedImage:
        """Run the model and download the produced image.

        Raises:
            ServiceError: Classified failure (see classify_error)
        """
        if not self.api_token:
            raise ProviderAuthError("REPLICATE_API_TOKEN not configured")

        try:
            output = await asyncio.to_thread(self._run, request.prompt, request.options.get("seed"))
        except ReplicateAPIError as e:
            raise classify_error(e) from e
        except (ConnectionError, OSError) as e:
            raise classify_error(e) from e

        image_url = self.output_url(output)

        try:
            response = await self.http_client.get(image_url, timeout=self.timeout)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise classify_error(e) from e

        mime_type = response.headers.get("content-type", "image/png").split(";")[0]
        logger.info(
            "replicate.run.completed",
            job_id=str(request.job_id),
            model=self.model_version,
            size_bytes=len(response.content),
        )
        return GeneratedImage(data=response.content, mime_type=mime_type, model=self.model_version)
