"""DeadLetterHandler: route messages whose redelivery budget is exhausted."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable, Coroutine

    from .ports.queue import Delivery, IQueueAdapter

logger = logging.getLogger("mail_dispatch.dead_letter")


class DeadLetterHandler:
    """Routes messages that fail after max retries to a dead-letter destination.

    Caller provides an async callable that receives the raw delivery and the
    failure reason; typically it publishes to a DLQ or stores for inspection.
    Without a callable the message is only logged, then dropped by the
    consumer.
    """

    def __init__(
        self,
        on_dead_letter: (
            Callable[[Delivery, str], Coroutine[Any, Any, None]] | None
        ) = None,
    ) -> None:
        self._on_dead_letter = on_dead_letter

    @classmethod
    def to_queue(cls, adapter: IQueueAdapter, queue_name: str) -> DeadLetterHandler:
        """Build a handler that republishes the raw payload to *queue_name*."""

        async def publish(delivery: Delivery, reason: str) -> None:
            await adapter.publish(
                queue_name,
                delivery.body,
                persistent=True,
                message_id=delivery.message_id,
                headers={**delivery.headers, "x-dead-letter-reason": reason},
            )

        return cls(on_dead_letter=publish)

    async def route(self, delivery: Delivery, reason: str) -> None:
        """Hand the delivery to the dead-letter destination.

        Destination failures propagate; the consumer decides what to do.
        """
        logger.warning(
            "Dead-lettering message %s: %s",
            delivery.message_id or delivery.delivery_tag,
            reason,
        )
        if self._on_dead_letter is not None:
            await self._on_dead_letter(delivery, reason)
