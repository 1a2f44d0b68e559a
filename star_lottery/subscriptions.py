"""Best-effort change notifications for game records."""
from typing import Awaitable, Callable, Dict, List

from .logging_config import get_logger
from .models import GameEvent

logger = get_logger(__name__)

EventCallback = Callable[[GameEvent], Awaitable[None]]


class Subscription:
    """Handle returned by subscribe(); cancel() may be called any number of times."""

    def __init__(self, hub: "SubscriptionHub", game_id: str, callback: EventCallback):
        self.hub = hub
        self.game_id = game_id
        self.callback = callback
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self):
        if not self._active:
            return
        self._active = False
        self.hub._remove(self)

    close = cancel


class SubscriptionHub:
    def __init__(self):
        self._subscribers: Dict[str, List[Subscription]] = {}

    def subscribe(self, game_id: str, callback: EventCallback) -> Subscription:
        subscription = Subscription(self, game_id, callback)
        self._subscribers.setdefault(game_id, []).append(subscription)
        return subscription

    def subscriber_count(self, game_id: str) -> int:
        return len(self._subscribers.get(game_id, []))

    def _remove(self, subscription: Subscription):
        subs = self._subscribers.get(subscription.game_id, [])
        if subscription in subs:
            subs.remove(subscription)
        if not subs:
            self._subscribers.pop(subscription.game_id, None)

    async def publish(self, event: GameEvent):
        """Deliver an event to every subscriber of its game, dropping ones that fail."""
        to_remove = []
        for subscription in list(self._subscribers.get(event.game_id, [])):
            try:
                await subscription.callback(event)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "Dropping subscriber after delivery failure: game_id=%s event=%s error=%s",
                    event.game_id,
                    event.type,
                    exc,
                )
                to_remove.append(subscription)
        for subscription in to_remove:
            subscription.cancel()
