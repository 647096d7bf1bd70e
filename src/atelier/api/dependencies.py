"""FastAPI dependencies for request validation and shared engine access."""

from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status

from atelier.context import EngineContext
from atelier.services.webhook_signature import authenticate_callback


def get_context(request: Request) -> EngineContext:
    """Get the engine context created by the app lifespan.

    Args:
        request: FastAPI Request object (contains app.state)

    Returns:
        EngineContext shared by routes and in-process workers
    """
    return request.app.state.context


async def validate_webhook_request(
    request: Request,
    x_webhook_signature: Annotated[str | None, Header()] = None,
    x_webhook_secret: Annotated[str | None, Header()] = None,
    context: EngineContext = Depends(get_context),
) -> bytes:
    """Authenticate a provider callback before any processing.

    Verification is skipped when WEBHOOK_SECRET is empty. Otherwise either an
    HMAC-SHA256 signature of the raw body (X-Webhook-Signature) or the shared secret
    itself (X-Webhook-Secret) must match.

    Returns:
        Raw request body bytes (the exact bytes that were verified)

    Raises:
        HTTPException: 401 Unauthorized if verification fails
    """
    raw_body = await request.body()

    if not authenticate_callback(
        raw_body,
        context.settings.webhook_secret,
        signature=x_webhook_signature,
        shared_secret=x_webhook_secret,
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature"
        )

    return raw_body
