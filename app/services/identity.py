"""
Identity Resolver
=================

Maps a RevenueCat subscriber id (``app_user_id``) to a local user id.

1. An existing record whose current or original subscriber id matches.
2. Otherwise, a UUID-shaped subscriber id is taken optimistically as the
   user id; the foreign key on insert validates it.
3. Otherwise the subscriber is anonymous for now and resolution fails.
"""

import logging
from typing import Optional
import uuid

from app.core.errors import IdentityResolutionFailure
from app.services.subscription_store import SubscriptionStore
from app.utils.helpers import is_uuid

logger = logging.getLogger(__name__)


class IdentityResolver:
    """Resolve subscriber ids through a store's lookup."""

    def __init__(self, store: SubscriptionStore):
        self.store = store

    async def resolve(self, subscriber_id: Optional[str]) -> uuid.UUID:
        """
        Resolve a subscriber id to a user id.

        Raises:
            IdentityResolutionFailure: no mapping exists and the id is not
                UUID-shaped (an anonymous purchaser).
        """
        if not subscriber_id:
            raise IdentityResolutionFailure(subscriber_id or "")

        user_id = await self.store.find_user_for_subscriber(subscriber_id)
        if user_id is not None:
            logger.debug("Resolved subscriber=%s to user=%s via record", subscriber_id, user_id)
            return user_id

        if is_uuid(subscriber_id):
            logger.info(
                "No record for subscriber=%s; using it as user id (optimistic)",
                subscriber_id,
            )
            return uuid.UUID(subscriber_id)

        logger.warning("Cannot resolve subscriber=%s to a local user", subscriber_id)
        raise IdentityResolutionFailure(subscriber_id)

    async def try_resolve(self, subscriber_id: Optional[str]) -> Optional[uuid.UUID]:
        """Like ``resolve`` but returns None instead of raising."""
        try:
            return await self.resolve(subscriber_id)
        except IdentityResolutionFailure:
            return None
