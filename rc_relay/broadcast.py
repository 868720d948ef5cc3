"""Publish/subscribe fan-out shared by all relay connections."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from . import constants

LOGGER = logging.getLogger(__name__)


class SubscriberLagged(RuntimeError):
    """Raised by a subscription that was dropped for falling behind."""


class Subscription:
    """A single subscriber's bounded view of the broadcast stream."""

    def __init__(
        self,
        broadcaster: "Broadcaster",
        maxsize: int,
        *,
        name: Optional[str] = None,
        on_lag: Optional[Callable[[], None]] = None,
    ) -> None:
        self.name = name
        self._broadcaster = broadcaster
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=maxsize)
        self._on_lag = on_lag
        self._lagged = False
        self._closed = False

    @property
    def lagged(self) -> bool:
        return self._lagged

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def get(self) -> str:
        """Wait for the next broadcast message.

        Raises:
            SubscriberLagged: If this subscriber was dropped because its queue
                overflowed.
        """

        if self._lagged:
            raise SubscriberLagged(f"subscriber {self.name or id(self)} lagged")
        return await self._queue.get()

    def close(self) -> None:
        """Stop receiving broadcasts."""

        if self._closed:
            return
        self._closed = True
        self._broadcaster._remove(self)

    def _offer(self, message: str) -> bool:
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            self._lagged = True
            return False
        return True

    def _notify_lag(self) -> None:
        if self._on_lag is None:
            return
        try:
            self._on_lag()
        except Exception:  # pragma: no cover
            LOGGER.exception("Lag callback failed for subscriber %s", self.name)


class Broadcaster:
    """Multi-producer, multi-consumer fan-out with drop-the-slow-consumer policy.

    Every subscriber owns a queue of ``queue_size`` messages. Publishing never
    blocks: a subscriber whose queue is full is removed from the channel and
    its lag callback is invoked so the owner can tear the connection down.
    Messages published before a subscriber joined are never delivered to it.
    """

    def __init__(self, queue_size: int = constants.DEFAULT_SUBSCRIBER_QUEUE_SIZE) -> None:
        if queue_size < 1:
            raise ValueError("queue_size must be at least 1")
        self.queue_size = queue_size
        self.dropped_count = 0
        self._subscribers: list[Subscription] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(
        self,
        *,
        name: Optional[str] = None,
        on_lag: Optional[Callable[[], None]] = None,
    ) -> Subscription:
        subscription = Subscription(self, self.queue_size, name=name, on_lag=on_lag)
        self._subscribers.append(subscription)
        return subscription

    def publish(self, message: str, *, sender: Optional[Subscription] = None) -> int:
        """Deliver ``message`` to every subscriber except ``sender``.

        Returns the number of subscribers the message was queued for.
        """

        delivered = 0
        lagging: list[Subscription] = []
        for subscription in list(self._subscribers):
            if subscription is sender:
                continue
            if subscription._offer(message):
                delivered += 1
            else:
                lagging.append(subscription)

        for subscription in lagging:
            LOGGER.warning(
                "Dropping subscriber %s: %d messages queued without being read",
                subscription.name or id(subscription),
                self.queue_size,
            )
            self.dropped_count += 1
            subscription.close()
            subscription._notify_lag()

        return delivered

    def _remove(self, subscription: Subscription) -> None:
        try:
            self._subscribers.remove(subscription)
        except ValueError:
            pass
