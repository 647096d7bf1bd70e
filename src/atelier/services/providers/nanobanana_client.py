"""NanoBanana client (asynchronous provider).

submit() only confirms the provider accepted the task. The provider downloads the
input images from their URLs and later calls the registered webhook with the outcome.
"""

from typing import Any

import httpx
import structlog

from atelier.services.exceptions import (
    MalformedResponseError,
    ProviderAuthError,
    ProviderNetworkError,
    ProviderRequestError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)
from atelier.services.providers.base import GenerationRequest, ProviderKind, SubmittedTask
from atelier.services.providers.gemini_client import describe_shape

logger = structlog.get_logger(__name__)

# Task type literal expected by the provider API (its own spelling).
IMAGE_TO_IMAGE = "IMAGETOIAMGE"
TEXT_TO_IMAGE = "TEXTTOIAMGE"


class NanoBananaClient:
    """Submit generation tasks to NanoBanana.

    Args:
        http_client: Shared httpx client
        api_key: Bearer token
        callback_url: Webhook URL the provider calls on completion
        base_url: API base URL
        timeout: Timeout for the submission call in seconds
    """

    kind = ProviderKind.NANOBANANA

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        api_key: str,
        callback_url: str,
        base_url: str = "https://api.nanobananaapi.ai/api/v1",
        timeout: float = 30.0,
    ):
        self.http_client = http_client
        self.api_key = api_key
        self.callback_url = callback_url
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def build_payload(self, request: GenerationRequest) -> dict[str, Any]:
        image_urls = [image.url for image in request.images if image.url]
        if request.images and len(image_urls) != len(request.images):
            raise ProviderRequestError("NanoBanana needs a download URL for every input image")
        return {
            "numImages": 1,
            "prompt": request.prompt,
            "type": IMAGE_TO_IMAGE if image_urls else TEXT_TO_IMAGE,
            "callBackUrl": self.callback_url,
            "imageUrls": image_urls,
        }

    async def submit(self, request: GenerationRequest) -> SubmittedTask:
        """Submit a task and return the provider's task id.

        Raises:
            ProviderAuthError: Missing key, 401 or 403
            ProviderRequestError: Other 4xx or a rejection code in the body
            ProviderUnavailableError: 429 or 5xx
            ProviderTimeoutError: Submission timed out
            ProviderNetworkError: Connection failure
            MalformedResponseError: Accepted response without a task id
        """
        if not self.api_key:
            raise ProviderAuthError("NanoBanana API key not configured")

        payload = self.build_payload(request)
        try:
            response = await self.http_client.post(
                f"{self.base_url}/nanobanana/generate",
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(
                f"NanoBanana submission timed out after {self.timeout}s"
            ) from e
        except httpx.TransportError as e:
            raise ProviderNetworkError(f"NanoBanana network error: {e}") from e

        status = response.status_code
        if status == 429 or status >= 500:
            raise ProviderUnavailableError(f"NanoBanana API error: {status}", status_code=status)
        if status in (401, 403):
            raise ProviderAuthError(f"NanoBanana authentication failed: {status}")
        if status >= 400:
            raise ProviderRequestError(
                f"NanoBanana rejected the request: {status} {response.text[:200]}"
            )

        try:
            body = response.json()
        except ValueError as e:
            raise MalformedResponseError(
                "NanoBanana returned a non-JSON body", {"body_length": len(response.content)}
            ) from e

        # The API reports failures inside a 200 body as well
        code = body.get("code") if isinstance(body, dict) else None
        if code is not None and code != 200:
            message = body.get("msg") or body.get("message") or "NanoBanana rejected the task"
            if code in (401, 403):
                raise ProviderAuthError(f"NanoBanana: {message}")
            if code == 429 or (isinstance(code, int) and code >= 500):
                raise ProviderUnavailableError(f"NanoBanana: {message}", status_code=code)
            raise ProviderRequestError(f"NanoBanana: {message}")

        data = body.get("data") if isinstance(body, dict) else None
        task_id = data.get("taskId") if isinstance(data, dict) else None
        if not task_id:
            shape = describe_shape(body)
            logger.error(
                "nanobanana.response.malformed", job_id=str(request.job_id), response_shape=shape
            )
            raise MalformedResponseError("NanoBanana response has no data.taskId", shape)

        logger.info("nanobanana.task.submitted", job_id=str(request.job_id), task_id=task_id)
        return SubmittedTask(task_id=str(task_id), request=payload)
