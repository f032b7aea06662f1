"""
Subscription Schemas
====================

Pydantic schemas for the RevenueCat webhook envelope and the
reconciliation / status endpoints.
"""

from datetime import datetime
from typing import Literal, Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field

from app.models.subscription import Environment, Store


# ─── RevenueCat Webhook Payload ──────────────────────────────────────────────


class BillingWebhookEvent(BaseModel):
    """
    The ``event`` object of a RevenueCat webhook.

    Every field is optional and ``type`` is a plain string: unknown event
    types and new fields must be accepted, not rejected.
    """

    model_config = ConfigDict(extra="allow")

    id: Optional[str] = Field(default=None, description="Unique event ID")
    type: Optional[str] = None
    event_timestamp_ms: Optional[int] = None
    app_user_id: Optional[str] = None
    original_app_user_id: Optional[str] = None
    aliases: list[str] = Field(default_factory=list)
    product_id: Optional[str] = None
    new_product_id: Optional[str] = None
    period_type: Optional[str] = None
    purchased_at_ms: Optional[int] = None
    expiration_at_ms: Optional[int] = None
    environment: Optional[str] = None
    entitlement_id: Optional[str] = None
    entitlement_ids: Optional[list[str]] = None
    transaction_id: Optional[str] = None
    original_transaction_id: Optional[str] = None
    is_trial_period: Optional[bool] = None
    price: Optional[float] = None
    price_in_purchased_currency: Optional[float] = None
    currency: Optional[str] = None
    store: Optional[str] = None
    offer_discount_type: Optional[str] = None
    offer_period: Optional[str] = None
    cancel_reason: Optional[str] = None


class BillingWebhookPayload(BaseModel):
    """Webhook body: ``{"api_version": "1.0", "event": {...}}``."""

    model_config = ConfigDict(extra="allow")

    api_version: Optional[str] = None
    event: BillingWebhookEvent = Field(default_factory=BillingWebhookEvent)


class WebhookResponse(BaseModel):
    """Response returned to RevenueCat."""

    success: bool = True
    skipped: Optional[bool] = None
    duplicate: Optional[bool] = None
    message: Optional[str] = None


# ─── Reconciliation Sync ─────────────────────────────────────────────────────


class SyncRequest(BaseModel):
    """POST body for the sync endpoint."""

    user_id: Optional[uuid.UUID] = None
    rc_app_user_id: Optional[str] = Field(default=None, min_length=1)
    sync_all: bool = False


class SyncResult(BaseModel):
    """Outcome of syncing one subscriber."""

    success: bool
    synced: Optional[bool] = None
    error: Optional[str] = None
    user_id: Optional[str] = None


class BulkSyncResponse(BaseModel):
    """Outcome of a bulk sync run."""

    success: bool = True
    synced_count: int
    total: int
    results: list[SyncResult]


# ─── Status ──────────────────────────────────────────────────────────────────


class TrialStatus(BaseModel):
    """Derived trial information for a stored record."""

    is_trial: bool
    is_active: bool
    trial_expires_at: Optional[datetime] = None
    days_remaining: int = 0
    has_expired: bool = False


class TrialWarning(BaseModel):
    """Expiry warning for trial users."""

    warning_type: Literal["expired", "expiring_today", "expiring_soon"]
    days_remaining: int


class SubscriptionSnapshot(BaseModel):
    """Stored subscription fields exposed by the status endpoint."""

    model_config = ConfigDict(from_attributes=True)

    user_id: uuid.UUID
    billing_subscriber_id: str
    billing_original_subscriber_id: Optional[str] = None
    entitlement: str
    product_id: str
    store: Store
    environment: Environment
    is_active: bool
    is_trial: bool
    will_renew: bool
    current_period_end: datetime
    original_purchase_at: Optional[datetime] = None
    last_event_type: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SubscriptionStatusData(BaseModel):
    """Stored record plus access evaluation."""

    subscription: SubscriptionSnapshot
    trial_status: TrialStatus
    has_valid_access: bool
    warning: Optional[TrialWarning] = None


class SubscriptionStatusResponse(BaseModel):
    """Response schema for subscription status."""

    success: bool = True
    data: SubscriptionStatusData
