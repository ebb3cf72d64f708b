"""Durable queue port: the contract both broker adapters implement."""

from __future__ import annotations

from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


@dataclass(frozen=True)
class Delivery:
    """One received message, as handed to a subscription handler."""

    body: bytes
    delivery_tag: int
    message_id: str | None = None
    redelivered: bool = False
    headers: dict[str, Any] = field(default_factory=dict)


DeliveryHandler = Callable[[Delivery], Coroutine[Any, Any, None]]


@runtime_checkable
class IQueueAdapter(Protocol):
    """
    Port owning one broker connection + channel (the queue handle).

    All channel writes (declare, publish, ack, nack, cancel) are serialized
    by the adapter; callers may share one instance between the publish path
    and the consumer.
    """

    async def connect(self) -> None:
        """Open connection and channel. Idempotent."""
        ...

    async def ensure_queue(self, name: str) -> None:
        """Declare a durable, non-exclusive, non-auto-delete queue. Idempotent."""
        ...

    async def publish(
        self,
        queue_name: str,
        payload: bytes,
        *,
        persistent: bool = True,
        message_id: str | None = None,
        headers: dict[str, Any] | None = None,
    ) -> None:
        """Enqueue *payload* on *queue_name*."""
        ...

    async def subscribe(
        self,
        queue_name: str,
        handler: DeliveryHandler,
    ) -> str:
        """Start manual-ack consumption; return the consumer tag."""
        ...

    async def unsubscribe(self, consumer_tag: str) -> None:
        """Cancel a subscription started by :meth:`subscribe`."""
        ...

    async def ack(self, delivery_tag: int) -> None:
        """Positively acknowledge a delivery."""
        ...

    async def nack(self, delivery_tag: int, *, requeue: bool) -> None:
        """Negatively acknowledge a delivery, optionally requeueing it."""
        ...

    async def close(self) -> None:
        """Close channel then connection. Idempotent."""
        ...

    async def health_check(self) -> bool:
        """Return True if connection and channel are open."""
        ...
