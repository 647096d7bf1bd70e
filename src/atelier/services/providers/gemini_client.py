"""Gemini generateContent client (synchronous provider).

Sends the input images inline with the text prompt and blocks until the response
arrives or the hard timeout expires. The response may carry several parts; the first
part holding image bytes is selected and text commentary is ignored.
"""

import base64
import binascii
from typing import Any, Optional

import httpx
import structlog

from atelier.services.exceptions import (
    ContentPolicyError,
    MalformedResponseError,
    ProviderAuthError,
    ProviderNetworkError,
    ProviderRequestError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)
from atelier.services.providers.base import GeneratedImage, GenerationRequest, ProviderKind

logger = structlog.get_logger(__name__)

SAFETY_FINISH_REASONS = frozenset(
    {"SAFETY", "IMAGE_SAFETY", "IMAGE_OTHER", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII"}
)


def describe_shape(value: Any, depth: int = 0) -> Any:
    """Summarize a JSON value's structure without its (possibly huge) payload strings.

    Used to log unexpected provider responses in full while keeping base64 blobs out.
    """
    if depth > 6:
        return "..."
    if isinstance(value, dict):
        return {key: describe_shape(item, depth + 1) for key, item in value.items()}
    if isinstance(value, list):
        return [describe_shape(item, depth + 1) for item in value]
    if isinstance(value, str) and len(value) > 120:
        return f"<str len={len(value)}>"
    return value


def _inline_data(part: dict) -> Optional[dict]:
    inline = part.get("inlineData") or part.get("inline_data")
    return inline if isinstance(inline, dict) else None


def _mime_type(inline: dict) -> str:
    return inline.get("mimeType") or inline.get("mime_type") or "image/png"


def extract_image(body: Any) -> GeneratedImage:
    """Select the generated image from a generateContent response body.

    Args:
        body: Parsed JSON response

    Returns:
        The first image part, decoded

    Raises:
        ContentPolicyError: If the prompt was blocked or the candidate finished on safety grounds
        MalformedResponseError: If no candidate carries an image part
    """
    if not isinstance(body, dict):
        raise MalformedResponseError("Gemini response is not a JSON object", describe_shape(body))

    feedback = body.get("promptFeedback") or {}
    if not isinstance(feedback, dict):
        raise MalformedResponseError(
            "Gemini promptFeedback is not an object", describe_shape(body)
        )
    block_reason = feedback.get("blockReason")
    if block_reason:
        message = feedback.get("blockReasonMessage") or f"Prompt blocked: {block_reason}"
        raise ContentPolicyError(message, reason=block_reason)

    candidates = body.get("candidates")
    if not candidates or not isinstance(candidates, list):
        raise MalformedResponseError(
            "Gemini API did not return any candidates", describe_shape(body)
        )

    candidate = candidates[0]
    if not isinstance(candidate, dict):
        raise MalformedResponseError("Gemini candidate is not an object", describe_shape(body))
    finish_reason = candidate.get("finishReason")
    if finish_reason in SAFETY_FINISH_REASONS:
        message = (
            candidate.get("finishMessage")
            or "Image generation blocked by content safety filters"
        )
        raise ContentPolicyError(message, reason=finish_reason)

    content = candidate.get("content") or {}
    if not isinstance(content, dict):
        raise MalformedResponseError(
            "Gemini candidate content is not an object", describe_shape(body)
        )
    parts = content.get("parts")
    if not parts or not isinstance(parts, list):
        raise MalformedResponseError(
            "Gemini API candidate has no content or parts", describe_shape(body)
        )

    text_parts = [part["text"] for part in parts if isinstance(part, dict) and part.get("text")]
    for part in parts:
        if not isinstance(part, dict):
            continue
        inline = _inline_data(part)
        if inline is None or not inline.get("data"):
            continue
        mime_type = _mime_type(inline)
        if not mime_type.startswith("image/"):
            continue
        try:
            data = base64.b64decode(inline["data"], validate=True)
        except (binascii.Error, ValueError) as e:
            raise MalformedResponseError(
                f"Gemini image part is not valid base64: {e}", describe_shape(body)
            ) from e
        return GeneratedImage(
            data=data,
            mime_type=mime_type,
            text=" ".join(text_parts) or None,
        )

    raise MalformedResponseError(
        "Gemini API did not return a valid image response - no inline image data in parts",
        describe_shape(body),
    )


class GeminiImageClient:
    """Synchronous image generation through Gemini generateContent.

    Args:
        http_client: Shared httpx client
        api_key: Gemini API key
        base_url: API base URL (default v1beta)
        model: Image model name
        timeout: Hard timeout for one call in seconds
    """

    kind = ProviderKind.GEMINI

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        api_key: str,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        model: str = "gemini-2.5-flash-image",
        timeout: float = 120.0,
    ):
        self.http_client = http_client
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout

    def build_payload(self, request: GenerationRequest) -> dict:
        """Build the generateContent body: input images inline, then the text prompt."""
        parts: list[dict] = []
        for image in request.images:
            if image.data is None:
                raise ProviderRequestError(f"Input image {image.asset_id} has no bytes loaded")
            parts.append(
                {
                    "inlineData": {
                        "mimeType": image.mime_type,
                        "data": base64.b64encode(image.data).decode("ascii"),
                    }
                }
            )
        parts.append({"text": request.prompt})
        return {"contents": [{"parts": parts}]}

    async def generate(self, request: GenerationRequest) -> GeneratedImage:
        """Generate one image and return its bytes.

        Args:
            request: Job inputs

        Returns:
            Selected image part

        Raises:
            ProviderAuthError: Missing key, 401 or 403
            ProviderRequestError: Other 4xx
            ProviderUnavailableError: 429 or 5xx
            ProviderTimeoutError: Hard timeout exceeded
            ProviderNetworkError: Connection failure
            ContentPolicyError: Safety rejection
            MalformedResponseError: No image located in the response
        """
        if not self.api_key:
            raise ProviderAuthError("Gemini API key not configured")

        url = f"{self.base_url}/models/{self.model}:generateContent"
        logger.debug(
            "gemini.request.started",
            job_id=str(request.job_id),
            model=self.model,
            images=len(request.images),
            prompt_length=len(request.prompt),
        )

        try:
            response = await self.http_client.post(
                url,
                json=self.build_payload(request),
                headers={"x-goog-api-key": self.api_key},
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(f"Gemini API timed out after {self.timeout}s") from e
        except httpx.TransportError as e:
            raise ProviderNetworkError(f"Gemini API network error: {e}") from e

        if response.status_code >= 400:
            raise self._classify_status(response)

        try:
            body = response.json()
        except ValueError as e:
            raise MalformedResponseError(
                "Gemini API returned a non-JSON body", {"body_length": len(response.content)}
            ) from e

        try:
            image = extract_image(body)
        except MalformedResponseError as e:
            logger.error(
                "gemini.response.malformed",
                job_id=str(request.job_id),
                error=str(e),
                response_shape=e.response_shape,
            )
            raise

        logger.info(
            "gemini.request.completed",
            job_id=str(request.job_id),
            mime_type=image.mime_type,
            size_bytes=image.size_bytes,
        )
        return GeneratedImage(
            data=image.data, mime_type=image.mime_type, model=self.model, text=image.text
        )

    def _classify_status(self, response: httpx.Response) -> Exception:
        status = response.status_code
        try:
            detail = response.json().get("error", {}).get("message")
        except (ValueError, AttributeError):
            detail = None
        detail = detail or response.reason_phrase or "Unknown error"
        message = f"Gemini API error: {status} - {detail}"

        if status == 429 or status >= 500:
            return ProviderUnavailableError(message, status_code=status)
        if status in (401, 403):
            return ProviderAuthError(message)
        return ProviderRequestError(message)
