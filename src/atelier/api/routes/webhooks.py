"""Provider callback endpoint for asynchronous generation jobs.

Providers may deliver a callback zero, one or many times. Every well-formed body
is answered with 200 so the provider stops retrying; the completion handler decides
whether the callback changed anything.
"""

import json

import structlog
from fastapi import APIRouter, Depends, HTTPException, status

from atelier.api.dependencies import get_context, validate_webhook_request
from atelier.context import EngineContext
from atelier.services.webhook_completion import (
    CallbackParseError,
    WebhookCompletionHandler,
    parse_callback,
)

logger = structlog.get_logger(__name__)
router = APIRouter()


@router.post("/generation", status_code=status.HTTP_200_OK)
async def receive_generation_callback(
    raw_body: bytes = Depends(validate_webhook_request),
    context: EngineContext = Depends(get_context),
) -> dict:
    """Apply a ``{taskId, code, data|error}`` provider callback.

    Returns:
        {"status": "received", "result": <ignored|duplicate|succeeded|failed>}

    Raises:
        HTTPException: 400 if the body is not JSON or carries no task id
    """
    try:
        body = json.loads(raw_body)
        outcome = parse_callback(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning("webhook.callback.invalid_json", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON")
    except CallbackParseError as e:
        logger.warning("webhook.callback.invalid", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    logger.info("webhook.callback.received", task_id=outcome.task_id, success=outcome.success)
    result = await WebhookCompletionHandler(context).on_callback(outcome.task_id, outcome)
    return {"status": "received", "task_id": outcome.task_id, "result": result.value}
