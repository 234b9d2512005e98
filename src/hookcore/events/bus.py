"""In-process fan-out bus for processed observations.

Each subscriber owns a bounded buffer.  ``publish`` only appends to those
buffers and never waits for a reader; when a buffer is full the oldest unread
item is dropped for that subscriber alone.  Fast subscribers therefore see
every item, slow ones see an in-order subsequence.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Any, Generic, Iterator, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BUFFER_SIZE = 1024


class SubscriptionClosed(Exception):
    """Raised by ``Subscription.get`` once the subscription is closed and drained."""


class Subscription(Generic[T]):
    def __init__(self, buffer_size: int, name: str | None = None) -> None:
        self.name = name
        self.buffer_size = buffer_size
        self.dropped = 0
        self.delivered = 0
        self._items: deque[T] = deque()
        self._cond = threading.Condition()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def pending(self) -> int:
        with self._cond:
            return len(self._items)

    def offer(self, item: T) -> None:
        with self._cond:
            if self._closed:
                return
            if len(self._items) >= self.buffer_size:
                self._items.popleft()
                self.dropped += 1
                logger.debug("subscriber %s 落後，丟棄最舊項目（累計 %d）", self.name or id(self), self.dropped)
            self._items.append(item)
            self._cond.notify()

    def get(self, timeout: float | None = None) -> T | None:
        """Return the next item, ``None`` on timeout, or raise ``SubscriptionClosed``."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while not self._items:
                if self._closed:
                    raise SubscriptionClosed()
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return None
                self._cond.wait(remaining)
            self.delivered += 1
            return self._items.popleft()

    def close(self, *, discard: bool = False) -> None:
        with self._cond:
            self._closed = True
            if discard:
                self._items.clear()
            self._cond.notify_all()

    def __iter__(self) -> Iterator[T]:
        while True:
            try:
                item = self.get()
            except SubscriptionClosed:
                return
            if item is not None:
                yield item


class LearningBus(Generic[T]):
    def __init__(self, buffer_size: int = DEFAULT_BUFFER_SIZE) -> None:
        if buffer_size < 1:
            raise ValueError("buffer_size 必須大於 0")
        self.buffer_size = buffer_size
        self.published = 0
        self._subscriptions: list[Subscription[T]] = []
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, name: str | None = None, *, buffer_size: int | None = None) -> Subscription[T]:
        subscription: Subscription[T] = Subscription(buffer_size or self.buffer_size, name=name)
        with self._lock:
            if self._closed:
                subscription.close()
            else:
                self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription[T]) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)
        subscription.close(discard=True)

    def publish(self, item: T) -> None:
        with self._lock:
            if self._closed:
                logger.warning("bus 已關閉，忽略發布")
                return
            self.published += 1
            for subscription in self._subscriptions:
                subscription.offer(item)

    def close(self) -> None:
        """Stop accepting items; subscribers may still drain what they hold."""
        with self._lock:
            self._closed = True
            subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            subscription.close()

    def stats(self) -> dict[str, Any]:
        with self._lock:
            subscriptions = list(self._subscriptions)
        return {
            "published": self.published,
            "closed": self._closed,
            "subscribers": [
                {
                    "name": sub.name,
                    "pending": sub.pending(),
                    "delivered": sub.delivered,
                    "dropped": sub.dropped,
                }
                for sub in subscriptions
            ],
        }
