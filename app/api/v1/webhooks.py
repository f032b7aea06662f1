"""
Webhooks API Endpoints
======================

Receives RevenueCat webhook events.

Authentication:
    Shared secret from ``?secret=``, ``X-Signature`` or a non-JWT
    ``Authorization`` header (see ``app.core.webhook_auth``).

Idempotency:
    Each RevenueCat event has a unique ``id``.  Processed ids are kept in
    Redis (with TTL) so a redelivery is acknowledged without reprocessing.
    The upsert itself is idempotent, so a Redis outage only costs a
    repeated write.

Anything that a later sync can repair returns 200 ``skipped`` so
RevenueCat does not retry; only unexpected datastore errors return 500.
"""

import json
import logging

from fastapi import APIRouter, Request, Response, status
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError

from app.core.errors import AppException, ErrorCodes, ValidationError
from app.core.webhook_auth import verify_webhook_request
from app.dependencies import DBSession, StoreDep
from app.schemas.subscription import BillingWebhookPayload, WebhookResponse
from app.services.cache import is_event_processed, mark_event_processed
from app.services.webhook_processor import WebhookProcessor
from app.utils.helpers import utc_now

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/revenuecat",
    response_model=WebhookResponse,
    response_model_exclude_none=True,
)
async def revenuecat_webhook(
    request: Request,
    db: DBSession,
    store: StoreDep,
) -> WebhookResponse:
    """
    Handle a RevenueCat webhook event.

    Returns:
    - ``{success: true}`` when applied
    - ``{success: true, skipped: true, message}`` when it cannot be applied
      yet (anonymous subscriber, unknown user, subscriber owned by another
      account); the event is kept in the skipped-event ledger
    - ``{success: true, duplicate: true}`` for an already processed event id
    """
    source = verify_webhook_request(request)

    # ── Parse payload ─────────────────────────────────────────────────────
    try:
        body = await request.body()
        raw_body = json.loads(body.decode("utf-8"))
        payload = BillingWebhookPayload.model_validate(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError, PydanticValidationError) as e:
        logger.error("Invalid webhook payload: %s", e)
        raise ValidationError(
            message="Invalid JSON payload",
            code=ErrorCodes.WEBHOOK_INVALID_PAYLOAD,
        )

    event = payload.event
    request.state.billing_event_type = event.type
    request.state.billing_subscriber_id = event.app_user_id

    logger.info(
        "Webhook received: type=%s subscriber=%s event_id=%s auth=%s",
        event.type,
        event.app_user_id,
        event.id,
        source,
    )

    # ── Idempotency check ─────────────────────────────────────────────────
    if event.id and await is_event_processed(event.id):
        logger.info("Duplicate webhook event %s, skipping", event.id)
        return WebhookResponse(success=True, duplicate=True)

    # ── Process event ─────────────────────────────────────────────────────
    try:
        outcome = await WebhookProcessor(store).process(event, raw_body)
        await db.commit()
    except SQLAlchemyError:
        logger.exception(
            "Webhook processing error: type=%s subscriber=%s event_id=%s",
            event.type,
            event.app_user_id,
            event.id,
        )
        await db.rollback()
        # 500 so RevenueCat retries
        raise AppException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            code=ErrorCodes.WEBHOOK_PROCESSING_FAILED,
            message="Error processing webhook",
        )

    if event.id:
        await mark_event_processed(event.id)

    if outcome.skipped:
        return WebhookResponse(success=True, skipped=True, message=outcome.message)
    return WebhookResponse(success=True)


@router.get("/revenuecat")
async def revenuecat_webhook_status() -> dict:
    """Liveness check for the webhook URL configured in RevenueCat."""
    return {
        "message": "RevenueCat webhook endpoint is active",
        "timestamp": utc_now().isoformat(),
    }


@router.options("/revenuecat")
async def revenuecat_webhook_preflight() -> Response:
    """Plain OPTIONS request; real CORS preflights are answered by CORSMiddleware."""
    return Response(content="ok", status_code=status.HTTP_200_OK)
