from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

LOGGER = logging.getLogger("onedrive.auth.events")

DEFAULT_SUBSCRIPTION_SIZE = 16


@dataclass(frozen=True)
class AuthenticationStatusChanged:
    is_authenticated: bool


class Subscription:
    """Bounded queue of status events for one subscriber.

    Closing wakes a consumer blocked in :meth:`get` or ``async for``; events
    queued before the close are still delivered.
    """

    def __init__(self, channel: "StatusChannel", maxsize: int) -> None:
        self._channel = channel
        self._maxsize = maxsize
        self._queue: asyncio.Queue[AuthenticationStatusChanged | None] = asyncio.Queue()
        self.closed = False

    def _offer(self, event: AuthenticationStatusChanged) -> None:
        if self.closed:
            return
        if self._queue.qsize() >= self._maxsize:
            # Oldest event is dropped; the newest status is what matters.
            self._queue.get_nowait()
            LOGGER.debug("Status subscription full; dropped oldest event")
        self._queue.put_nowait(event)

    def pending(self) -> list[AuthenticationStatusChanged]:
        """Drain and return the events already queued, without waiting."""
        events = []
        while not self._queue.empty():
            event = self._queue.get_nowait()
            if event is None:
                self._queue.put_nowait(None)
                break
            events.append(event)
        return events

    async def get(self) -> AuthenticationStatusChanged:
        event = await self._queue.get()
        if event is None:
            # Left in place so every later call also ends.
            self._queue.put_nowait(None)
            raise RuntimeError("Status subscription is closed.")
        return event

    def close(self) -> None:
        if self.closed:
            return
        self._channel.unsubscribe(self)
        self.closed = True
        self._queue.put_nowait(None)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> AuthenticationStatusChanged:
        try:
            return await self.get()
        except RuntimeError:
            if self.closed:
                raise StopAsyncIteration from None
            raise


class StatusChannel:
    """Multicast of :class:`AuthenticationStatusChanged` events."""

    def __init__(self, *, subscription_size: int = DEFAULT_SUBSCRIPTION_SIZE) -> None:
        if subscription_size < 1:
            raise ValueError("subscription_size must be at least 1")
        self._subscription_size = subscription_size
        self._subscribers: list[Subscription] = []

    def subscribe(self) -> Subscription:
        subscription = Subscription(self, self._subscription_size)
        self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, is_authenticated: bool) -> None:
        event = AuthenticationStatusChanged(is_authenticated)
        for subscription in list(self._subscribers):
            subscription._offer(event)
