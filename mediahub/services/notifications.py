"""Best-effort per-owner push notifications for processing events."""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Literal, Optional

from .events import log_notification


LOGGER = logging.getLogger(__name__)

EventKind = Literal["start", "progress", "complete", "error"]

DEFAULT_QUEUE_SIZE = 100


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class ProcessingEvent:
    """Ephemeral notification describing one pipeline transition."""

    kind: EventKind
    media_id: str
    owner_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    emitted_at: str = field(default_factory=_utc_timestamp)

    def to_message(self) -> Dict[str, Any]:
        """Return the wire envelope sent to live connections."""

        return {
            "kind": self.kind,
            "mediaId": self.media_id,
            "payload": dict(self.payload),
            "emittedAt": self.emitted_at,
        }


class Subscription:
    """A live channel for one connection of one owner."""

    _ids = itertools.count(1)

    def __init__(
        self,
        owner_id: str,
        *,
        loop: asyncio.AbstractEventLoop,
        maxsize: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        self.id = next(self._ids)
        self.owner_id = owner_id
        self._loop = loop
        self._queue: asyncio.Queue[ProcessingEvent] = asyncio.Queue(maxsize=max(1, maxsize))
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, event: ProcessingEvent) -> None:
        """Queue *event* from any thread without waiting."""

        if self._closed:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._put(event)
        else:
            try:
                self._loop.call_soon_threadsafe(self._put, event)
            except RuntimeError:
                LOGGER.debug("Subscription %s loop is closed; dropping event", self.id)

    def _put(self, event: ProcessingEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            # Oldest goes first so that terminal events still arrive.
            with contextlib.suppress(asyncio.QueueEmpty):
                self._queue.get_nowait()
            self.dropped += 1
            LOGGER.warning(
                "Subscription %s for owner %s is full; dropped oldest event",
                self.id,
                self.owner_id,
            )
            with contextlib.suppress(asyncio.QueueFull):
                self._queue.put_nowait(event)

    async def get(self) -> ProcessingEvent:
        return await self._queue.get()

    def get_nowait(self) -> ProcessingEvent:
        return self._queue.get_nowait()

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        self._closed = True

    def __aiter__(self) -> AsyncIterator[ProcessingEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ProcessingEvent]:
        while not self._closed:
            yield await self._queue.get()


class NotificationBus:
    """Fan out events to every live subscription of an owner."""

    def __init__(self, *, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self._queue_size = max(1, int(queue_size))
        self._lock = threading.Lock()
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def subscribe(
        self,
        owner_id: str,
        *,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> Subscription:
        subscription = Subscription(
            str(owner_id),
            loop=loop or asyncio.get_running_loop(),
            maxsize=self._queue_size,
        )
        with self._lock:
            self._subscriptions.setdefault(subscription.owner_id, []).append(subscription)
            count = len(self._subscriptions[subscription.owner_id])
        LOGGER.debug(
            "Owner %s subscribed (subscription=%s, live=%s)",
            subscription.owner_id,
            subscription.id,
            count,
        )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.close()
        with self._lock:
            entries = self._subscriptions.get(subscription.owner_id)
            if not entries:
                return
            remaining = [entry for entry in entries if entry is not subscription]
            if remaining:
                self._subscriptions[subscription.owner_id] = remaining
            else:
                self._subscriptions.pop(subscription.owner_id, None)
        LOGGER.debug(
            "Owner %s unsubscribed (subscription=%s)", subscription.owner_id, subscription.id
        )

    @contextlib.asynccontextmanager
    async def subscription(self, owner_id: str) -> AsyncIterator[Subscription]:
        handle = self.subscribe(owner_id)
        try:
            yield handle
        finally:
            self.unsubscribe(handle)

    def subscriber_count(self, owner_id: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(str(owner_id), ()))

    def publish(self, owner_id: str, event: ProcessingEvent) -> int:
        """Deliver *event* to live subscriptions; returns how many were offered."""

        with self._lock:
            targets = list(self._subscriptions.get(str(owner_id), ()))
        for subscription in targets:
            subscription.offer(event)
        log_notification(event.kind, event.media_id, str(owner_id), subscribers=len(targets))
        return len(targets)


__all__ = ["EventKind", "NotificationBus", "ProcessingEvent", "Subscription"]
