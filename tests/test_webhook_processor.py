"""
Webhook Processor Tests
=======================

End-to-end event application against the in-memory store:
- transitions and redelivery
- trial -> paid conversion and the one-active-record rule
- skipped outcomes and the skipped-event ledger
"""

import uuid
from datetime import timedelta

import pytest

from app.models.subscription import SkipReason
from app.schemas.subscription import BillingWebhookEvent
from app.services.webhook_processor import (
    MESSAGE_OTHER_USER,
    MESSAGE_UNKNOWN_USER,
    MESSAGE_UNRESOLVED,
    WebhookProcessor,
)
from app.utils.helpers import ms_to_datetime

from tests.conftest import PURCHASED_AT_MS, FakeSubscriptionStore, build_event


async def _apply(store: FakeSubscriptionStore, **fields):
    return await WebhookProcessor(store).process(BillingWebhookEvent(**build_event(**fields)))


class TestTransitions:
    """Tests for status changes driven by events."""

    @pytest.mark.asyncio
    async def test_initial_purchase_creates_active_record(self):
        store = FakeSubscriptionStore()
        user_id = uuid.uuid4()

        outcome = await _apply(store, app_user_id=str(user_id))

        assert outcome.skipped is False
        record = store.records[str(user_id)]
        assert record.user_id == user_id
        assert record.is_active is True
        assert record.will_renew is True
        assert record.is_trial is False
        assert record.last_event_type == "INITIAL_PURCHASE"
        assert record.raw_event_snapshot["event"]["app_user_id"] == str(user_id)

    @pytest.mark.asyncio
    async def test_expiration_deactivates_without_deleting(self):
        store = FakeSubscriptionStore()
        user_id = uuid.uuid4()
        # Non-UUID subscriber id, known only through the existing record.
        store.seed(user_id=user_id, billing_subscriber_id="abc123")

        await _apply(store, app_user_id="abc123", type="EXPIRATION")

        record = store.records["abc123"]
        assert record.user_id == user_id
        assert record.is_active is False
        assert record.will_renew is False
        assert len(store.records) == 1

    @pytest.mark.asyncio
    async def test_cancellation_keeps_access(self):
        store = FakeSubscriptionStore()
        user_id = uuid.uuid4()
        store.seed(user_id=user_id, billing_subscriber_id=str(user_id))

        await _apply(store, app_user_id=str(user_id), type="CANCELLATION")

        record = store.records[str(user_id)]
        assert record.is_active is True
        assert record.will_renew is False

    @pytest.mark.asyncio
    async def test_redelivery_is_idempotent(self):
        store = FakeSubscriptionStore()
        user_id = uuid.uuid4()
        payload = build_event(app_user_id=str(user_id), type="CANCELLATION")
        processor = WebhookProcessor(store)

        await processor.process(BillingWebhookEvent(**payload))
        first = (store.records[str(user_id)].is_active, store.records[str(user_id)].will_renew)
        await processor.process(BillingWebhookEvent(**payload))
        second = (store.records[str(user_id)].is_active, store.records[str(user_id)].will_renew)

        assert first == second == (True, False)
        assert len(store.records) == 1

    @pytest.mark.asyncio
    async def test_unknown_event_keeps_flags_and_refreshes_snapshot(self):
        store = FakeSubscriptionStore()
        user_id = uuid.uuid4()
        store.seed(
            user_id=user_id,
            billing_subscriber_id=str(user_id),
            is_active=False,
            will_renew=False,
        )

        outcome = await _apply(store, app_user_id=str(user_id), type="TRANSFER")

        record = store.records[str(user_id)]
        assert outcome.skipped is False
        assert record.is_active is False
        assert record.will_renew is False
        assert record.last_event_type == "TRANSFER"

    @pytest.mark.asyncio
    async def test_unknown_event_for_new_record_defaults_active(self):
        store = FakeSubscriptionStore()
        user_id = uuid.uuid4()

        await _apply(store, app_user_id=str(user_id), type="NON_RENEWING_PURCHASE")

        record = store.records[str(user_id)]
        assert record.is_active is True
        assert record.will_renew is True

    @pytest.mark.asyncio
    async def test_same_subscriber_with_new_original_id_updates_one_record(self):
        store = FakeSubscriptionStore()
        user_id = uuid.uuid4()

        await _apply(store, app_user_id=str(user_id), original_app_user_id="$RCAnonymousID:one")
        await _apply(
            store,
            app_user_id=str(user_id),
            original_app_user_id="$RCAnonymousID:two",
            type="RENEWAL",
        )

        assert len(store.records) == 1
        record = store.records[str(user_id)]
        assert record.billing_original_subscriber_id == "$RCAnonymousID:two"
        assert record.user_id == user_id


class TestTrialConversion:
    """Tests for trial handling and the one-active-record rule."""

    @pytest.mark.asyncio
    async def test_trial_purchase_sets_trial_period_end(self):
        store = FakeSubscriptionStore()
        user_id = uuid.uuid4()

        await _apply(store, app_user_id=str(user_id), price=0, offer_period="P3D")

        record = store.records[str(user_id)]
        assert record.is_trial is True
        assert record.current_period_end == ms_to_datetime(PURCHASED_AT_MS) + timedelta(days=3)

    @pytest.mark.asyncio
    async def test_paid_purchase_replaces_trial_on_other_subscriber(self):
        store = FakeSubscriptionStore()
        user_id = uuid.uuid4()
        store.seed(
            user_id=user_id,
            billing_subscriber_id="$RCAnonymousID:trial",
            is_trial=True,
        )

        await _apply(store, app_user_id=str(user_id))

        active = store.active_records(user_id)
        assert len(active) == 1
        assert active[0].billing_subscriber_id == str(user_id)
        assert active[0].is_trial is False
        assert store.records["$RCAnonymousID:trial"].is_active is False

    @pytest.mark.asyncio
    async def test_paid_purchase_converts_trial_on_same_subscriber(self):
        store = FakeSubscriptionStore()
        user_id = uuid.uuid4()
        await _apply(store, app_user_id=str(user_id), is_trial_period=True, price=0)

        await _apply(store, app_user_id=str(user_id), is_trial_period=False, price=9.99)

        active = store.active_records(user_id)
        assert len(active) == 1
        assert active[0].is_trial is False

    @pytest.mark.asyncio
    async def test_renewal_deactivates_other_active_records(self):
        store = FakeSubscriptionStore()
        user_id = uuid.uuid4()
        store.seed(user_id=user_id, billing_subscriber_id="old-subscriber")
        store.seed(user_id=user_id, billing_subscriber_id="new-subscriber")

        await _apply(store, app_user_id="new-subscriber", type="RENEWAL")

        active = store.active_records(user_id)
        assert [r.billing_subscriber_id for r in active] == ["new-subscriber"]


class TestSkipped:
    """Tests for events that cannot be applied yet."""

    @pytest.mark.asyncio
    async def test_anonymous_subscriber_is_skipped_and_recorded(self):
        store = FakeSubscriptionStore()

        outcome = await _apply(store, app_user_id="$RCAnonymousID:abc", id="evt-1")

        assert outcome.skipped is True
        assert outcome.message == MESSAGE_UNRESOLVED
        assert store.records == {}
        assert len(store.skipped) == 1
        skipped = store.skipped[0]
        assert skipped.reason is SkipReason.UNRESOLVED_IDENTITY
        assert skipped.billing_subscriber_id == "$RCAnonymousID:abc"
        assert skipped.event_id == "evt-1"
        assert skipped.payload["event"]["type"] == "INITIAL_PURCHASE"

    @pytest.mark.asyncio
    async def test_unknown_user_is_skipped(self):
        store = FakeSubscriptionStore(known_users=set())

        outcome = await _apply(store, app_user_id=str(uuid.uuid4()))

        assert outcome.skipped is True
        assert outcome.message == MESSAGE_UNKNOWN_USER
        assert store.skipped[0].reason is SkipReason.UNKNOWN_USER
        assert store.records == {}

    @pytest.mark.asyncio
    async def test_subscriber_linked_to_other_user_is_skipped(self):
        store = FakeSubscriptionStore()
        owner = uuid.uuid4()
        store.seed(
            user_id=owner,
            billing_subscriber_id="shared-subscriber",
            billing_original_subscriber_id="other-original",
        )
        other = uuid.uuid4()
        # The newest record for the original id points at another user.
        store.seed(
            user_id=other,
            billing_subscriber_id="other-subscriber",
            billing_original_subscriber_id="shared-subscriber",
        )

        outcome = await _apply(store, app_user_id="shared-subscriber", type="RENEWAL")

        assert outcome.skipped is True
        assert outcome.message == MESSAGE_OTHER_USER
        assert store.skipped[0].reason is SkipReason.LINKED_TO_OTHER_USER
        assert store.records["shared-subscriber"].user_id == owner

    @pytest.mark.asyncio
    async def test_event_without_subscriber_is_skipped(self):
        store = FakeSubscriptionStore()
        outcome = await WebhookProcessor(store).process(BillingWebhookEvent(type="RENEWAL"))

        assert outcome.skipped is True
        assert store.records == {}
