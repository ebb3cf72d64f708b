"""DispatchService: lifecycle of the queue handle, publisher and consumer."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .consumer import EmailTaskConsumer
from .dead_letter import DeadLetterHandler
from .exceptions import LifecycleError, QueueError
from .publisher import TaskPublisher
from .rabbitmq import RabbitMQQueueAdapter
from .retry import RetryPolicy
from .smtp import SmtpDeliveryExecutor

if TYPE_CHECKING:
    import asyncio
    from types import TracebackType

    from .config import DispatchSettings
    from .ports.executor import IDeliveryExecutor
    from .ports.queue import IQueueAdapter
    from .serialization import EnvelopeSerializer

logger = logging.getLogger("mail_dispatch.service")


class DispatchService:
    """Owns one queue handle and wires the publish path and consumer to it.

    ``start()`` connects, declares the work queue (and the dead-letter queue
    when configured) and starts consuming; calling it again before
    ``stop()`` is a programming error. ``stop()`` is idempotent and safe when
    never started.

    Usage::

        async with DispatchService.from_settings(DispatchSettings()) as service:
            await service.publisher.publish_task(envelope)
    """

    def __init__(
        self,
        adapter: IQueueAdapter,
        executor: IDeliveryExecutor,
        *,
        queue_name: str = "email_queue",
        serializer: EnvelopeSerializer | None = None,
        retry_policy: RetryPolicy | None = None,
        dead_letter_queue: str | None = None,
        delivery_timeout: float = 30.0,
        concurrency: int = 1,
        shutdown_timeout: float = 10.0,
    ) -> None:
        self._adapter = adapter
        self._queue_name = queue_name
        self._dead_letter_queue = dead_letter_queue
        self._publisher = TaskPublisher(adapter, queue_name, serializer=serializer)
        self._consumer = EmailTaskConsumer(
            adapter,
            executor,
            queue_name,
            serializer=serializer,
            retry_policy=retry_policy,
            dead_letter=(
                DeadLetterHandler.to_queue(adapter, dead_letter_queue)
                if dead_letter_queue
                else None
            ),
            delivery_timeout=delivery_timeout,
            concurrency=concurrency,
            shutdown_timeout=shutdown_timeout,
        )
        self._started = False

    @classmethod
    def from_settings(cls, settings: DispatchSettings) -> DispatchService:
        """Build a RabbitMQ + SMTP service from configuration."""
        return cls(
            RabbitMQQueueAdapter.from_settings(settings.broker),
            SmtpDeliveryExecutor.from_settings(
                settings.smtp, timeout=settings.delivery_timeout
            ),
            queue_name=settings.broker.queue_name,
            retry_policy=RetryPolicy(
                max_attempts=settings.max_attempts,
                base_delay=settings.retry_base_delay,
                max_delay=settings.retry_max_delay,
            ),
            dead_letter_queue=settings.dead_letter_queue,
            delivery_timeout=settings.delivery_timeout,
            concurrency=settings.concurrency,
            shutdown_timeout=settings.shutdown_timeout,
        )

    @property
    def publisher(self) -> TaskPublisher:
        return self._publisher

    @property
    def consumer(self) -> EmailTaskConsumer:
        return self._consumer

    @property
    def is_running(self) -> bool:
        return self._started

    @property
    def crashed(self) -> asyncio.Event:
        """Set when the consumer lost a worker to an unrecoverable error."""
        return self._consumer.crashed

    async def start(self) -> None:
        if self._started:
            raise LifecycleError("DispatchService already started")
        self._started = True
        try:
            await self._adapter.connect()
            await self._adapter.ensure_queue(self._queue_name)
            if self._dead_letter_queue:
                await self._adapter.ensure_queue(self._dead_letter_queue)
            await self._consumer.start()
        except QueueError as e:
            logger.error("Failed to start dispatch service: %s", e)
            self._started = False
            await self._adapter.close()
            raise
        logger.info("DispatchService started on queue %s", self._queue_name)

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        try:
            await self._consumer.stop()
        finally:
            await self._adapter.close()
        logger.info("DispatchService stopped")

    async def health_check(self) -> bool:
        return self._started and await self._adapter.health_check()

    async def __aenter__(self) -> DispatchService:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.stop()
