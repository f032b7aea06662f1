"""
Pydantic Schemas
================

Request/response schemas for API validation.
"""

from app.schemas.subscription import (
    BillingWebhookEvent,
    BillingWebhookPayload,
    BulkSyncResponse,
    SubscriptionSnapshot,
    SubscriptionStatusData,
    SubscriptionStatusResponse,
    SyncRequest,
    SyncResult,
    TrialStatus,
    TrialWarning,
    WebhookResponse,
)

__all__ = [
    "BillingWebhookEvent",
    "BillingWebhookPayload",
    "BulkSyncResponse",
    "SubscriptionSnapshot",
    "SubscriptionStatusData",
    "SubscriptionStatusResponse",
    "SyncRequest",
    "SyncResult",
    "TrialStatus",
    "TrialWarning",
    "WebhookResponse",
]
