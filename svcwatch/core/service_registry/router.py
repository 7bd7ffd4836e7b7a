"""Subscription Router.

Fans change batches out to subscribers. Each subscriber owns a bounded buffer;
delivery never awaits a consumer, and a full buffer sheds its oldest record.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from svcwatch.core.errors import SubscriptionClosedError
from svcwatch.core.logging.structured import get_logger
from svcwatch.core.service_registry.core import ChangeRecord, MatchMode, ServiceQuery
from svcwatch.utils.metrics import (
    router_deliveries_total,
    router_dropped_total,
    router_subscribers,
)

logger = logging.getLogger(__name__)

_CLOSED = object()


class Subscription:
    """A query plus the buffer of change records waiting for its consumer.

    Iterate with ``async for`` or call ``get()``; both end with the pending
    records drained once the subscription is closed.
    """

    def __init__(
        self,
        query: Optional[ServiceQuery] = None,
        buffer_size: int = 256,
        subscription_id: Optional[str] = None,
    ):
        if buffer_size < 1:
            raise ValueError("buffer_size must be at least 1")
        self.query = query or ServiceQuery()
        self.buffer_size = buffer_size
        self.subscription_id = subscription_id or uuid.uuid4().hex[:12]
        self._queue: Optional[asyncio.Queue] = None
        self._closed = False
        self._marker_queued = False
        self.delivered = 0
        self.dropped = 0
        self._log = get_logger(__name__).with_fields(subscription_id=self.subscription_id)

    @property
    def queue(self) -> asyncio.Queue:
        """Lazily create queue to avoid issues with missing event loop."""
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self.buffer_size)
        return self._queue

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        """Records buffered and not yet consumed."""
        if self._queue is None:
            return 0
        return self._queue.qsize() - (1 if self._marker_queued else 0)

    def matches(self, record: ChangeRecord, default_mode: MatchMode = MatchMode.ANY) -> bool:
        return self.query.matches(record.descriptor, default_mode)

    def offer(self, record: ChangeRecord) -> bool:
        """Buffer a record without waiting. Returns False if closed."""
        if self._closed:
            return False

        try:
            self.queue.put_nowait(record)
        except asyncio.QueueFull:
            oldest = self.queue.get_nowait()
            self.dropped += 1
            router_dropped_total.inc()
            self._log.warning(
                "Subscriber buffer full; dropped oldest record",
                dropped_instance=oldest.instance_id,
                dropped_total=self.dropped,
            )
            self.queue.put_nowait(record)

        self.delivered += 1
        router_deliveries_total.inc()
        return True

    async def get(self, timeout: Optional[float] = None) -> ChangeRecord:
        """Next change record.

        Raises:
            SubscriptionClosedError: Closed and nothing left to drain.
            asyncio.TimeoutError: No record within ``timeout``.
        """
        if self._closed and self.queue.empty():
            raise SubscriptionClosedError(f"Subscription {self.subscription_id} is closed")

        if timeout is None:
            item = await self.queue.get()
        else:
            item = await asyncio.wait_for(self.queue.get(), timeout)

        if item is _CLOSED:
            # Leave the marker for any other waiting consumer
            self.queue.put_nowait(_CLOSED)
            raise SubscriptionClosedError(f"Subscription {self.subscription_id} is closed")
        return item

    def get_nowait(self) -> Optional[ChangeRecord]:
        """Next buffered record, or None when nothing is pending."""
        if self._queue is None or self._queue.empty():
            return None
        item = self._queue.get_nowait()
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def drain(self) -> List[ChangeRecord]:
        records = []
        while True:
            record = self.get_nowait()
            if record is None:
                return records
            records.append(record)

    def close(self) -> None:
        """Stop receiving; wakes consumers blocked in ``get()``."""
        if self._closed:
            return
        self._closed = True
        try:
            self.queue.put_nowait(_CLOSED)
            self._marker_queued = True
        except asyncio.QueueFull:
            # Consumers are not blocked while records are pending
            pass
        self._log.debug("Subscription closed", delivered=self.delivered, dropped=self.dropped)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ChangeRecord:
        try:
            return await self.get()
        except SubscriptionClosedError:
            raise StopAsyncIteration from None

    def __repr__(self) -> str:
        return (
            f"Subscription(id={self.subscription_id!r}, query={self.query!r}, "
            f"pending={self.pending}, closed={self._closed})"
        )


@dataclass
class DeliveryReport:
    """Outcome of one delivery pass."""
    subscribers: int = 0
    delivered: int = 0
    dropped: int = 0


class SubscriptionRouter:
    """Registry of subscriptions and per-subscriber batch delivery."""

    def __init__(
        self,
        default_buffer_size: int = 256,
        match_mode: MatchMode = MatchMode.ANY,
    ):
        self.default_buffer_size = default_buffer_size
        self.match_mode = match_mode
        self._subscriptions: List[Subscription] = []
        self._lock: Optional[asyncio.Lock] = None

    def _get_lock(self) -> asyncio.Lock:
        """Lazily create lock to avoid issues with missing event loop."""
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    @property
    def subscriber_count(self) -> int:
        return sum(1 for s in self._subscriptions if not s.closed)

    async def subscribe(
        self,
        query: Optional[ServiceQuery] = None,
        buffer_size: Optional[int] = None,
    ) -> Subscription:
        subscription = Subscription(query, buffer_size or self.default_buffer_size)
        async with self._get_lock():
            self._subscriptions.append(subscription)
            router_subscribers.set(self.subscriber_count)
        logger.debug(f"Subscribed {subscription.subscription_id} with {subscription.query}")
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        """Close a subscription; it is pruned on the next delivery pass."""
        subscription.close()
        router_subscribers.set(self.subscriber_count)

    async def deliver(self, batch: Iterable[ChangeRecord]) -> DeliveryReport:
        """Offer a change batch to every open subscription."""
        records = list(batch)

        async with self._get_lock():
            self._subscriptions = [s for s in self._subscriptions if not s.closed]
            subscriptions = list(self._subscriptions)
            router_subscribers.set(len(subscriptions))

        report = DeliveryReport(subscribers=len(subscriptions))
        if not records:
            return report

        for subscription in subscriptions:
            # Latest record per instance id wins
            pending: Dict[str, ChangeRecord] = {}
            for record in records:
                if subscription.matches(record, self.match_mode):
                    pending.pop(record.instance_id, None)
                    pending[record.instance_id] = record

            dropped_before = subscription.dropped
            for record in pending.values():
                if subscription.offer(record):
                    report.delivered += 1
            report.dropped += subscription.dropped - dropped_before

        logger.debug(
            f"Delivered {report.delivered} record(s) to {report.subscribers} subscriber(s), "
            f"{report.dropped} dropped"
        )
        return report

    async def close_all(self) -> None:
        async with self._get_lock():
            subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            subscription.close()
        router_subscribers.set(0)
