"""
RevenueCat Service
==================

REST client for the RevenueCat subscriber API and helpers to read the
returned subscriber snapshot.

Handles:
- Subscriber info fetching (``GET /v1/subscribers/{app_user_id}``)
- Entitlement / subscription selection from the snapshot
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import quote

import httpx

from app.config import settings
from app.core.errors import UpstreamFetchFailure

logger = logging.getLogger(__name__)


@dataclass
class ActiveEntitlement:
    """The entitlement chosen from a snapshot and its backing subscription."""

    name: str
    entitlement: dict[str, Any]
    subscription: dict[str, Any]

    @property
    def product_id(self) -> str:
        return self.entitlement.get("product_identifier") or "unknown"


class RevenueCatClient:
    """Client for the RevenueCat REST API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.REVENUECAT_API_KEY
        self.base_url = (base_url or settings.REVENUECAT_API_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.REVENUECAT_TIMEOUT_SECONDS
        self._transport = transport

    def _get_headers(self) -> dict[str, str]:
        """Common headers for RevenueCat API calls."""
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def subscriber_url(self, subscriber_id: str) -> str:
        return f"{self.base_url}/subscribers/{quote(subscriber_id, safe='')}"

    async def get_subscriber(self, subscriber_id: str) -> dict[str, Any]:
        """
        Fetch subscriber information from RevenueCat.

        Args:
            subscriber_id: RevenueCat ``app_user_id``.

        Returns:
            The ``subscriber`` object of the response.

        Raises:
            UpstreamFetchFailure: timeout, transport error, non-2xx status,
                or a body without a ``subscriber`` object.
        """
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.get(
                    self.subscriber_url(subscriber_id),
                    headers=self._get_headers(),
                )
            except httpx.TimeoutException as exc:
                logger.error("RevenueCat API timeout for subscriber %s", subscriber_id)
                raise UpstreamFetchFailure(subscriber_id, "timeout") from exc
            except httpx.HTTPError as exc:
                logger.error("RevenueCat API error for subscriber %s: %s", subscriber_id, exc)
                raise UpstreamFetchFailure(subscriber_id, str(exc) or type(exc).__name__) from exc

        if not response.is_success:
            logger.error(
                "RevenueCat API returned status %d for subscriber %s: %s",
                response.status_code,
                subscriber_id,
                response.text[:200],
            )
            raise UpstreamFetchFailure(
                subscriber_id,
                f"HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise UpstreamFetchFailure(subscriber_id, "invalid JSON body") from exc

        subscriber = data.get("subscriber") if isinstance(data, dict) else None
        if not isinstance(subscriber, dict):
            raise UpstreamFetchFailure(subscriber_id, "response has no subscriber object")
        return subscriber


def select_entitlement(
    subscriber: dict[str, Any],
    preferred: Optional[str] = None,
) -> Optional[ActiveEntitlement]:
    """
    Pick the entitlement to mirror from a subscriber snapshot.

    The preferred entitlement wins, otherwise the first one listed.  An
    entitlement with no matching ``subscriptions[product_identifier]``
    entry is treated as no entitlement at all.
    """
    preferred = preferred or settings.DEFAULT_ENTITLEMENT
    entitlements = subscriber.get("entitlements") or {}
    subscriptions = subscriber.get("subscriptions") or {}

    if not entitlements:
        return None

    if preferred in entitlements:
        name = preferred
    else:
        name = next(iter(entitlements))
    entitlement = entitlements[name] or {}

    product_id = entitlement.get("product_identifier")
    subscription = subscriptions.get(product_id) if product_id else None
    if not subscription:
        logger.warning(
            "Entitlement %s has no matching subscription for product %s",
            name,
            product_id,
        )
        return None

    return ActiveEntitlement(name=name, entitlement=entitlement, subscription=subscription)
