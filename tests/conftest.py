"""
Shared Test Fixtures
====================

- ``FakeSubscriptionStore``: in-memory stand-in for ``SubscriptionStore``
  with the same upsert contract (keyed on subscriber id, foreign-key and
  cross-account conflicts, ``user_id`` / ``created_at`` never rewritten)
- ``client``: httpx AsyncClient over ASGITransport with the store, the
  database session and the RevenueCat client overridden
- ``revenuecat``: RevenueCat client backed by ``httpx.MockTransport``
"""

import uuid
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from urllib.parse import unquote
from unittest.mock import AsyncMock, patch

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt

from app.config import settings
from app.core.errors import PersistenceConflict
from app.models.subscription import SkippedBillingEvent, SkipReason, SubscriptionRecord
from app.services.revenuecat import RevenueCatClient
from app.services.subscription_store import IMMUTABLE_ON_CONFLICT, RecordValues
from app.services.transitions import StatusFlags

WEBHOOK_SECRET = "whsec-test-secret"
CRON_SECRET = "cron-test-secret"
RC_API_KEY = "rc-test-api-key"
RC_BASE_URL = "https://api.revenuecat.test/v1"

# 2025-10-09T08:53:20Z
PURCHASED_AT_MS = 1_760_000_000_000


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

class FakeSubscriptionStore:
    """In-memory ``SubscriptionStore`` with the same semantics."""

    def __init__(self, known_users: Optional[set[uuid.UUID]] = None):
        # None accepts every user id; a set simulates the users FK.
        self.known_users = known_users
        self.records: dict[str, SubscriptionRecord] = {}
        self.skipped: list[SkippedBillingEvent] = []
        self._clock = datetime(2025, 1, 1, tzinfo=timezone.utc)
        self.commits = 0
        self.rollbacks = 0
        self._committed: dict[str, dict[str, Any]] = {}

    def _tick(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    def add_user(self, user_id: uuid.UUID) -> None:
        if self.known_users is None:
            self.known_users = set()
        self.known_users.add(user_id)

    def seed(self, **fields: Any) -> SubscriptionRecord:
        """Insert a record directly, filling in defaults."""
        now = self._tick()
        defaults = {
            "id": uuid.uuid4(),
            "entitlement": "pro",
            "product_id": "pro_monthly",
            "store": "app_store",
            "environment": "PRODUCTION",
            "is_active": True,
            "is_trial": False,
            "will_renew": True,
            "current_period_end": datetime.now(timezone.utc) + timedelta(days=30),
            "original_purchase_at": now,
            "raw_event_snapshot": {},
            "last_event_type": "INITIAL_PURCHASE",
            "created_at": now,
            "updated_at": now,
        }
        defaults.update(fields)
        defaults.setdefault(
            "billing_original_subscriber_id", defaults["billing_subscriber_id"]
        )
        record = SubscriptionRecord(**defaults)
        self.records[record.billing_subscriber_id] = record
        if self.known_users is not None:
            self.known_users.add(record.user_id)
        self._checkpoint()
        return record

    # -- transactions ---------------------------------------------------------

    def _checkpoint(self) -> None:
        columns = SubscriptionRecord.__table__.columns.keys()
        self._committed = {
            subscriber_id: {name: getattr(record, name) for name in columns}
            for subscriber_id, record in self.records.items()
        }

    async def commit(self) -> None:
        self.commits += 1
        self._checkpoint()

    async def rollback(self) -> None:
        """Restore subscription records to the last commit."""
        self.rollbacks += 1
        for subscriber_id in list(self.records):
            if subscriber_id not in self._committed:
                del self.records[subscriber_id]
        for subscriber_id, row in self._committed.items():
            record = self.records.get(subscriber_id)
            if record is None:
                self.records[subscriber_id] = SubscriptionRecord(**row)
                continue
            for name, value in row.items():
                setattr(record, name, value)

    def active_records(self, user_id: Optional[uuid.UUID] = None) -> list[SubscriptionRecord]:
        return [
            r for r in self.records.values()
            if r.is_active and (user_id is None or r.user_id == user_id)
        ]

    # -- queries ------------------------------------------------------------

    async def find_user_for_subscriber(self, subscriber_id: str) -> Optional[uuid.UUID]:
        matches = [
            r for r in self.records.values()
            if subscriber_id in (r.billing_subscriber_id, r.billing_original_subscriber_id)
        ]
        if not matches:
            return None
        return max(matches, key=lambda r: r.created_at).user_id

    async def get_by_subscriber(self, subscriber_id: str) -> Optional[SubscriptionRecord]:
        return self.records.get(subscriber_id)

    async def get_flags(self, subscriber_id: str) -> Optional[StatusFlags]:
        record = self.records.get(subscriber_id)
        if record is None:
            return None
        return StatusFlags(is_active=record.is_active, will_renew=record.will_renew)

    async def latest_for_user(self, user_id: uuid.UUID) -> Optional[SubscriptionRecord]:
        matches = [r for r in self.records.values() if r.user_id == user_id]
        if not matches:
            return None
        return max(matches, key=lambda r: r.created_at)

    async def list_active(self, limit: int) -> list[SubscriptionRecord]:
        return sorted(self.active_records(), key=lambda r: r.updated_at)[:limit]

    # -- commands -----------------------------------------------------------

    async def upsert(self, values: RecordValues) -> uuid.UUID:
        if self.known_users is not None and values.user_id not in self.known_users:
            raise PersistenceConflict(
                PersistenceConflict.FOREIGN_KEY,
                values.billing_subscriber_id,
                str(values.user_id),
            )

        row = asdict(values)
        existing = self.records.get(values.billing_subscriber_id)
        now = self._tick()

        if existing is None:
            record = SubscriptionRecord(id=uuid.uuid4(), created_at=now, updated_at=now, **row)
            self.records[values.billing_subscriber_id] = record
            return record.id

        if existing.user_id != values.user_id:
            raise PersistenceConflict(
                PersistenceConflict.OTHER_USER,
                values.billing_subscriber_id,
                str(values.user_id),
            )

        for name, value in row.items():
            if name not in IMMUTABLE_ON_CONFLICT:
                setattr(existing, name, value)
        existing.updated_at = now
        return existing.id

    def _deactivate(self, predicate) -> int:
        count = 0
        for record in self.records.values():
            if record.is_active and predicate(record):
                record.is_active = False
                record.updated_at = self._tick()
                count += 1
        return count

    async def deactivate_active_trials(self, user_id: uuid.UUID) -> int:
        return self._deactivate(lambda r: r.user_id == user_id and r.is_trial)

    async def deactivate_other_active(self, user_id: uuid.UUID, keep_subscriber_id: str) -> int:
        return self._deactivate(
            lambda r: r.user_id == user_id and r.billing_subscriber_id != keep_subscriber_id
        )

    async def deactivate_active_for_user(self, user_id: uuid.UUID) -> int:
        return self._deactivate(lambda r: r.user_id == user_id)

    async def deactivate_expired(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        return self._deactivate(
            lambda r: r.current_period_end < now and (r.is_trial or not r.will_renew)
        )

    async def record_skipped_event(
        self,
        subscriber_id: str,
        reason: SkipReason,
        event_id: Optional[str] = None,
        event_type: Optional[str] = None,
        payload: Optional[dict] = None,
    ) -> SkippedBillingEvent:
        skipped = SkippedBillingEvent(
            id=uuid.uuid4(),
            billing_subscriber_id=subscriber_id,
            event_id=event_id,
            event_type=event_type,
            reason=reason,
            payload=payload,
            created_at=self._tick(),
            resolved_at=None,
            attempts=0,
            last_attempted_at=None,
        )
        self.skipped.append(skipped)
        return skipped

    async def list_unresolved_subscribers(self, limit: int) -> list[str]:
        groups: dict[str, list[SkippedBillingEvent]] = {}
        for event in self.skipped:
            if event.resolved_at is None:
                groups.setdefault(event.billing_subscriber_id, []).append(event)

        def order(subscriber_id: str):
            events = groups[subscriber_id]
            attempted = [e.last_attempted_at for e in events if e.last_attempted_at is not None]
            last_attempt = max(attempted) if attempted else None
            oldest = min(e.created_at for e in events)
            # Never-attempted first, then least recently attempted, then oldest.
            return (last_attempt is not None, last_attempt or oldest, oldest)

        return sorted(groups, key=order)[:limit]

    async def mark_skipped_attempted(self, subscriber_id: str, now: Optional[datetime] = None) -> int:
        count = 0
        for event in self.skipped:
            if event.billing_subscriber_id == subscriber_id and event.resolved_at is None:
                event.attempts += 1
                event.last_attempted_at = now or self._tick()
                count += 1
        return count

    async def mark_skipped_resolved(self, subscriber_id: str, now: Optional[datetime] = None) -> int:
        count = 0
        for event in self.skipped:
            if event.billing_subscriber_id == subscriber_id and event.resolved_at is None:
                event.resolved_at = now or self._tick()
                count += 1
        return count


# ---------------------------------------------------------------------------
# Payload / snapshot builders
# ---------------------------------------------------------------------------

def build_event(**overrides: Any) -> dict:
    """A RevenueCat webhook ``event`` object for a paid monthly purchase."""
    event = {
        "id": str(uuid.uuid4()),
        "type": "INITIAL_PURCHASE",
        "event_timestamp_ms": PURCHASED_AT_MS,
        "app_user_id": str(uuid.uuid4()),
        "original_app_user_id": None,
        "product_id": "pro_monthly",
        "period_type": "NORMAL",
        "purchased_at_ms": PURCHASED_AT_MS,
        "expiration_at_ms": PURCHASED_AT_MS + 30 * 86_400_000,
        "environment": "PRODUCTION",
        "entitlement_ids": ["pro"],
        "is_trial_period": False,
        "price": 9.99,
        "currency": "USD",
        "store": "APP_STORE",
    }
    event.update(overrides)
    if event["original_app_user_id"] is None:
        event["original_app_user_id"] = event["app_user_id"]
    return event


def build_subscriber(
    *,
    entitlement: Optional[str] = "pro",
    product_id: str = "pro_monthly",
    expires: Optional[datetime] = None,
    purchased: Optional[datetime] = None,
    period_type: str = "normal",
    will_renew: Optional[bool] = True,
    store: str = "app_store",
    sandbox: bool = False,
    with_subscription: bool = True,
    original_app_user_id: Optional[str] = None,
) -> dict:
    """A RevenueCat ``subscriber`` object as returned by the REST API."""
    now = datetime.now(timezone.utc)
    expires = expires or now + timedelta(days=20)
    purchased = purchased or expires - timedelta(days=30)

    entitlements = {}
    if entitlement:
        entitlements[entitlement] = {
            "expires_date": expires.isoformat().replace("+00:00", "Z"),
            "product_identifier": product_id,
            "purchase_date": purchased.isoformat().replace("+00:00", "Z"),
        }

    subscriptions = {}
    if with_subscription:
        subscription = {
            "expires_date": expires.isoformat().replace("+00:00", "Z"),
            "purchase_date": purchased.isoformat().replace("+00:00", "Z"),
            "original_purchase_date": purchased.isoformat().replace("+00:00", "Z"),
            "period_type": period_type,
            "store": store,
            "is_sandbox": sandbox,
            "unsubscribe_detected_at": None,
        }
        if will_renew is not None:
            subscription["will_renew"] = will_renew
        subscriptions[product_id] = subscription

    return {
        "original_app_user_id": original_app_user_id,
        "entitlements": entitlements,
        "subscriptions": subscriptions,
    }


def make_user_token(user_id: uuid.UUID, expires_in: timedelta = timedelta(hours=1)) -> str:
    """Sign an end-user identity token the way Supabase Auth does."""
    payload = {
        "sub": str(user_id),
        "aud": settings.JWT_AUDIENCE,
        "role": "authenticated",
        "exp": datetime.now(timezone.utc) + expires_in,
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def configured_secrets(monkeypatch):
    """Deterministic secrets for every test."""
    monkeypatch.setattr(settings, "REVENUECAT_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "CRON_SECRET", CRON_SECRET)
    monkeypatch.setattr(settings, "REVENUECAT_API_KEY", RC_API_KEY)
    monkeypatch.setattr(settings, "DEFAULT_ENTITLEMENT", "pro")
    monkeypatch.setattr(settings, "SYNC_BATCH_SIZE", 100)


@pytest.fixture(autouse=True)
def processed_events():
    """Replace the Redis event-id ledger with an in-memory set."""
    seen: set[str] = set()

    async def is_processed(event_id: str) -> bool:
        return event_id in seen

    async def mark_processed(event_id: str) -> None:
        seen.add(event_id)

    with patch("app.api.v1.webhooks.is_event_processed", side_effect=is_processed), \
         patch("app.api.v1.webhooks.mark_event_processed", side_effect=mark_processed):
        yield seen


@pytest.fixture
def store() -> FakeSubscriptionStore:
    return FakeSubscriptionStore()


@pytest.fixture
def rc_subscribers() -> dict:
    """subscriber id -> subscriber dict, or an int HTTP status to return."""
    return {}


@pytest.fixture
def revenuecat(rc_subscribers) -> RevenueCatClient:
    def handler(request: httpx.Request) -> httpx.Response:
        raw_path = request.url.raw_path.decode("ascii").split("?", 1)[0]
        subscriber_id = unquote(raw_path.rsplit("/", 1)[-1])
        entry = rc_subscribers.get(subscriber_id)
        if entry is None:
            return httpx.Response(404, json={"code": 7259, "message": "Subscriber not found"})
        if isinstance(entry, Exception):
            raise entry
        if isinstance(entry, int):
            return httpx.Response(entry, json={"message": "error"})
        return httpx.Response(200, json={"request_date_ms": PURCHASED_AT_MS, "subscriber": entry})

    return RevenueCatClient(
        api_key=RC_API_KEY,
        base_url=RC_BASE_URL,
        timeout=5.0,
        transport=httpx.MockTransport(handler),
    )


@pytest.fixture
def db_session() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def app(store, revenuecat, db_session):
    from app.db.session import get_db
    from app.dependencies import get_revenuecat_client, get_subscription_store
    from app.main import app as fastapi_app

    async def override_get_db():
        yield db_session

    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.dependency_overrides[get_subscription_store] = lambda: store
    fastapi_app.dependency_overrides[get_revenuecat_client] = lambda: revenuecat
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
