"""TaskPublisher: serialize envelopes and hand them to the durable queue."""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING

from .exceptions import QueueError, SerializationError
from .serialization import EnvelopeSerializer

if TYPE_CHECKING:
    from .envelope import TaskEnvelope
    from .ports.queue import IQueueAdapter

logger = logging.getLogger("mail_dispatch.publisher")


class TaskPublisher:
    """Publish path: the core's only inbound API.

    Messages are published persistent with a fresh ``message_id``. Broker
    and serialization failures are logged and reported as ``False``; they
    never propagate to the caller.
    """

    def __init__(
        self,
        adapter: IQueueAdapter,
        queue_name: str,
        *,
        serializer: EnvelopeSerializer | None = None,
    ) -> None:
        self._adapter = adapter
        self._queue_name = queue_name
        self._serializer = serializer or EnvelopeSerializer()

    @property
    def queue_name(self) -> str:
        return self._queue_name

    async def publish_task(self, envelope: TaskEnvelope) -> bool:
        """Enqueue *envelope*; return True once the broker has it."""
        context = {"recipient": envelope.recipient, "queue_name": self._queue_name}
        try:
            payload = self._serializer.serialize(envelope)
            await self._adapter.publish(
                self._queue_name,
                payload,
                persistent=True,
                message_id=str(uuid.uuid4()),
            )
        except (QueueError, SerializationError):
            logger.exception(
                "Failed to publish email message for %s",
                envelope.recipient,
                extra=context,
            )
            return False
        logger.info(
            "Email message published for %s",
            envelope.recipient,
            extra=context,
        )
        return True
