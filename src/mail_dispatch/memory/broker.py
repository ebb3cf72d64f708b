"""InMemoryQueueAdapter: broker double honouring ack/nack/requeue semantics."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..exceptions import PublishError, QueueConnectionError
from ..ledger import DeliveryLedger
from ..ports.queue import Delivery, IQueueAdapter

if TYPE_CHECKING:
    from ..ports.queue import DeliveryHandler

logger = logging.getLogger("mail_dispatch.memory")


@dataclass
class StoredMessage:
    """A message held by the in-memory broker."""

    body: bytes
    message_id: str | None = None
    headers: dict[str, Any] = field(default_factory=dict)
    persistent: bool = True
    redelivered: bool = False
    delivery_count: int = 0


@dataclass(frozen=True)
class _InFlight:
    queue_name: str
    message: StoredMessage


class InMemoryQueueAdapter(IQueueAdapter):
    """In-process queue adapter for tests and local runs.

    Behaves like a single RabbitMQ channel: manual acknowledgement, prefetch
    limit per queue, ``nack(requeue=True)`` puts the message back at the head
    of the queue flagged as redelivered, and ``close()`` returns unsettled
    messages to their queues. Set ``unavailable = True`` to simulate an
    unreachable broker.
    """

    def __init__(self, *, prefetch_count: int | None = None) -> None:
        self.prefetch_count = prefetch_count
        self.unavailable = False
        self.declare_count = 0
        self.requeue_count = 0
        self.acked: list[StoredMessage] = []
        self.rejected: list[StoredMessage] = []
        self._connected = False
        self._ready: dict[str, deque[StoredMessage]] = {}
        self._subscribers: dict[str, tuple[str, DeliveryHandler]] = {}
        self._in_flight: dict[str, int] = {}
        self._ledger: DeliveryLedger[_InFlight] = DeliveryLedger()
        self._next_delivery_tag = 0
        self._next_consumer_tag = 0
        self._pumping = False

    # -- inspection helpers ---------------------------------------------

    @property
    def declared_queues(self) -> list[str]:
        return list(self._ready)

    def messages(self, queue_name: str) -> list[StoredMessage]:
        """Return messages waiting (not yet delivered) on *queue_name*."""
        return list(self._ready.get(queue_name, ()))

    @property
    def outstanding(self) -> int:
        """Number of delivered but unsettled messages."""
        return len(self._ledger)

    # -- IQueueAdapter ----------------------------------------------------

    def _require_connected(self) -> None:
        if self.unavailable:
            raise QueueConnectionError("Broker unreachable")
        if not self._connected:
            raise QueueConnectionError("Not connected; call connect() first")

    async def connect(self) -> None:
        if self.unavailable:
            raise QueueConnectionError("Broker unreachable")
        self._connected = True

    async def ensure_queue(self, name: str) -> None:
        self._require_connected()
        if name in self._ready:
            return
        self._ready[name] = deque()
        self._in_flight[name] = 0
        self.declare_count += 1

    async def publish(
        self,
        queue_name: str,
        payload: bytes,
        *,
        persistent: bool = True,
        message_id: str | None = None,
        headers: dict[str, Any] | None = None,
    ) -> None:
        self._require_connected()
        if queue_name not in self._ready:
            raise PublishError(f"No queue named {queue_name!r}; message unroutable")
        self._ready[queue_name].append(
            StoredMessage(
                body=payload,
                message_id=message_id,
                headers=dict(headers or {}),
                persistent=persistent,
            )
        )
        await self._pump()

    async def subscribe(self, queue_name: str, handler: DeliveryHandler) -> str:
        await self.ensure_queue(queue_name)
        self._next_consumer_tag += 1
        consumer_tag = f"memory.ctag-{self._next_consumer_tag}"
        self._subscribers[consumer_tag] = (queue_name, handler)
        await self._pump()
        return consumer_tag

    async def unsubscribe(self, consumer_tag: str) -> None:
        self._subscribers.pop(consumer_tag, None)

    async def ack(self, delivery_tag: int) -> None:
        in_flight = self._ledger.settle(delivery_tag)
        self._in_flight[in_flight.queue_name] -= 1
        self.acked.append(in_flight.message)
        await self._pump()

    async def nack(self, delivery_tag: int, *, requeue: bool) -> None:
        in_flight = self._ledger.settle(delivery_tag)
        self._in_flight[in_flight.queue_name] -= 1
        if requeue:
            in_flight.message.redelivered = True
            self._ready[in_flight.queue_name].appendleft(in_flight.message)
            self.requeue_count += 1
        else:
            self.rejected.append(in_flight.message)
        await self._pump()

    async def close(self) -> None:
        self._subscribers.clear()
        for tag in reversed(self._ledger.outstanding()):
            in_flight = self._ledger.settle(tag)
            in_flight.message.redelivered = True
            self._ready[in_flight.queue_name].appendleft(in_flight.message)
        for name in self._in_flight:
            self._in_flight[name] = 0
        self._ledger.reset()
        self._next_delivery_tag = 0
        self._connected = False

    async def health_check(self) -> bool:
        return self._connected and not self.unavailable

    # -- delivery ---------------------------------------------------------

    def _consumer_for(self, queue_name: str) -> DeliveryHandler | None:
        for name, handler in self._subscribers.values():
            if name == queue_name:
                return handler
        return None

    def _has_capacity(self, queue_name: str) -> bool:
        if self.prefetch_count is None:
            return True
        return self._in_flight[queue_name] < self.prefetch_count

    async def _pump(self) -> None:
        """Deliver ready messages to subscribers until nothing can move."""
        if self._pumping:
            return
        self._pumping = True
        try:
            moved = True
            while moved:
                moved = False
                for queue_name, ready in self._ready.items():
                    handler = self._consumer_for(queue_name)
                    if not ready or handler is None:
                        continue
                    if not self._has_capacity(queue_name):
                        continue
                    message = ready.popleft()
                    await self._deliver(queue_name, message, handler)
                    moved = True
                    break
        finally:
            self._pumping = False

    async def _deliver(
        self, queue_name: str, message: StoredMessage, handler: DeliveryHandler
    ) -> None:
        self._next_delivery_tag += 1
        tag = self._next_delivery_tag
        message.delivery_count += 1
        self._ledger.issue(tag, _InFlight(queue_name, message))
        self._in_flight[queue_name] += 1
        await handler(
            Delivery(
                body=message.body,
                delivery_tag=tag,
                message_id=message.message_id,
                redelivered=message.redelivered,
                headers=dict(message.headers),
            )
        )
