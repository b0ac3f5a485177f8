"""
fintrack/features/entitlements/hub.py
In-memory pubsub hub for Entitlement Record changes.

Subscribers register an async callback per user id; the profile store publishes
a ProfileChange after each committed write. A failing subscriber is logged and
skipped without affecting the others.
"""

from typing import Awaitable, Callable, Dict, List
import logging

from fintrack.models.entitlement import ProfileChange

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[ProfileChange], Awaitable[None]]


class Subscription:
    """Handle returned by ProfileHub.subscribe; unsubscribe is idempotent."""

    def __init__(self, hub: "ProfileHub", user_id: str, callback: ChangeCallback):
        self._hub = hub
        self.user_id = user_id
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self._hub._remove(self)


class ProfileHub:
    """
    Room-per-user broadcast hub.

    Maps user_id -> list of subscriptions. Delivery order follows
    subscription order.
    """

    def __init__(self):
        self._rooms: Dict[str, List[Subscription]] = {}

    def subscribe(self, user_id: str, callback: ChangeCallback) -> Subscription:
        subscription = Subscription(self, user_id, callback)
        self._rooms.setdefault(user_id, []).append(subscription)
        logger.debug(f"[HUB] Subscribed to user {user_id}. Total: {len(self._rooms[user_id])}")
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        room = self._rooms.get(subscription.user_id)
        if not room:
            return
        if subscription in room:
            room.remove(subscription)
        if not room:
            del self._rooms[subscription.user_id]
            logger.debug(f"[HUB] Cleaned up empty room for user {subscription.user_id}")

    async def publish(self, change: ProfileChange) -> None:
        # Copy to allow unsubscribe from inside a callback
        subscriptions = list(self._rooms.get(change.user_id, []))

        for subscription in subscriptions:
            if not subscription.active:
                continue
            try:
                await subscription.callback(change)
            except Exception:
                logger.error(
                    "[HUB] subscriber failed",
                    exc_info=True,
                    extra={"user_id": change.user_id, "revision": change.revision},
                )

    def subscriber_count(self, user_id: str) -> int:
        return len(self._rooms.get(user_id, []))


# Global singleton hub instance
profile_hub = ProfileHub()
