"""EmailTaskConsumer: delivery attempts and broker settlement per message."""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import logging
from collections import OrderedDict
from typing import TYPE_CHECKING

from .dead_letter import DeadLetterHandler
from .exceptions import (
    DeserializationError,
    LifecycleError,
    QueueConnectionError,
    QueueError,
)
from .outcome import DeliveryOutcome, Settlement, settlement_for
from .retry import RetryPolicy
from .serialization import EnvelopeSerializer

if TYPE_CHECKING:
    from .ports.executor import IDeliveryExecutor
    from .ports.queue import Delivery, IQueueAdapter

logger = logging.getLogger("mail_dispatch.consumer")


class EmailTaskConsumer:
    """Consumption loop for one queue subscription.

    The broker callback only places deliveries on an internal
    :class:`asyncio.Queue`; ``concurrency`` worker tasks drain it. With the
    default of one worker, messages are handled strictly in broker order.

    Per message:

    * malformed payload → ``nack(requeue=False)``, executor not invoked
    * ``DELIVERED`` → ``ack``
    * ``PERMANENT_FAILURE`` → ``nack(requeue=False)``
    * ``TRANSIENT_FAILURE`` / ``TIMEOUT`` → ``nack(requeue=True)`` until the
      retry policy is exhausted, then dead-letter and ``nack(requeue=False)``

    Exactly one settlement is issued per delivery tag. A worker that dies on
    an unrecoverable error sets :attr:`crashed`; the owner should then call
    :meth:`stop`, which re-raises that error.
    """

    def __init__(
        self,
        adapter: IQueueAdapter,
        executor: IDeliveryExecutor,
        queue_name: str,
        *,
        serializer: EnvelopeSerializer | None = None,
        retry_policy: RetryPolicy | None = None,
        dead_letter: DeadLetterHandler | None = None,
        delivery_timeout: float = 30.0,
        concurrency: int = 1,
        shutdown_timeout: float = 10.0,
        attempt_cache_size: int = 10_000,
    ) -> None:
        """Configure consumer.

        Args:
            adapter: Shared queue adapter (the queue handle).
            executor: Performs one bounded delivery attempt per message.
            queue_name: Queue to consume.
            serializer: For deserializing payloads; default EnvelopeSerializer().
            retry_policy: Redelivery cap and backoff; default is unbounded.
            dead_letter: Receives messages whose retries are exhausted.
            delivery_timeout: Budget in seconds for each delivery attempt.
            concurrency: Number of worker tasks handling messages.
            shutdown_timeout: Seconds :meth:`stop` waits for in-flight messages.
            attempt_cache_size: Most messages whose failed attempts are
                remembered when the retry policy has a cap.
        """
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if attempt_cache_size < 1:
            raise ValueError("attempt_cache_size must be >= 1")
        self._adapter = adapter
        self._executor = executor
        self._queue_name = queue_name
        self._serializer = serializer or EnvelopeSerializer()
        self._retry_policy = retry_policy or RetryPolicy()
        self._dead_letter = dead_letter or DeadLetterHandler()
        self._delivery_timeout = delivery_timeout
        self._concurrency = concurrency
        self._shutdown_timeout = shutdown_timeout
        self._attempt_cache_size = attempt_cache_size
        self._attempts: OrderedDict[str, int] = OrderedDict()
        self._crashed = asyncio.Event()
        self._inbox: asyncio.Queue[Delivery | None] = asyncio.Queue()
        self._workers: list[asyncio.Task[None]] = []
        self._consumer_tag: str | None = None
        self._running = False
        self._failure: BaseException | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def queue_name(self) -> str:
        return self._queue_name

    @property
    def crashed(self) -> asyncio.Event:
        """Set when a worker task dies; :meth:`stop` re-raises its error."""
        return self._crashed

    async def start(self) -> None:
        """Subscribe to the queue and start worker tasks."""
        if self._running:
            raise LifecycleError(f"Consumer for {self._queue_name} already started")
        self._running = True
        self._crashed.clear()
        self._inbox = asyncio.Queue()
        self._workers = [
            asyncio.create_task(self._work(), name=f"mail-dispatch-worker-{i}")
            for i in range(self._concurrency)
        ]
        for worker in self._workers:
            worker.add_done_callback(self._on_worker_done)
        try:
            self._consumer_tag = await self._adapter.subscribe(
                self._queue_name, self._receive
            )
        except BaseException:
            await self._cancel_workers()
            self._running = False
            raise
        logger.info(
            "EmailTaskConsumer started on %s (concurrency=%d)",
            self._queue_name,
            self._concurrency,
        )

    async def stop(self) -> None:
        """Stop consuming.

        Cancels the subscription, lets in-flight messages finish within
        ``shutdown_timeout``, cancels stragglers and requeues deliveries that
        were received but not yet started. Safe to call repeatedly. Re-raises
        the first error that crashed a worker.
        """
        if not self._running:
            return
        self._running = False

        if self._consumer_tag is not None:
            try:
                await self._adapter.unsubscribe(self._consumer_tag)
            except QueueError:
                logger.warning("Failed to cancel subscription", exc_info=True)
            self._consumer_tag = None

        waiting = self._drain_inbox()
        for _ in self._workers:
            self._inbox.put_nowait(None)
        if self._workers:
            _, pending = await asyncio.wait(
                self._workers, timeout=self._shutdown_timeout
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        self._workers = []

        for delivery in waiting:
            await self._settle(delivery, Settlement.REQUEUE)
        logger.info("EmailTaskConsumer stopped")

        failure, self._failure = self._failure, None
        if failure is not None:
            raise failure

    async def handle_delivery(self, delivery: Delivery) -> Settlement:
        """Process one delivery end to end and return how it was settled."""
        settlement = await self._decide(delivery)
        await self._settle(delivery, settlement)
        return settlement

    async def _receive(self, delivery: Delivery) -> None:
        await self._inbox.put(delivery)

    async def _work(self) -> None:
        while True:
            delivery = await self._inbox.get()
            try:
                if delivery is None:
                    return
                await self.handle_delivery(delivery)
            finally:
                self._inbox.task_done()

    async def _decide(self, delivery: Delivery) -> Settlement:
        try:
            envelope = self._serializer.deserialize(delivery.body)
        except DeserializationError as e:
            logger.error(
                "Dropping malformed message %s: %s",
                delivery.message_id or delivery.delivery_tag,
                e,
                extra={"message_id": delivery.message_id},
            )
            return Settlement.REJECT

        try:
            outcome = await self._executor.attempt(envelope, self._delivery_timeout)
        except Exception:  # noqa: BLE001
            logger.exception("Delivery executor raised for %s", envelope.recipient)
            outcome = DeliveryOutcome.transient("Executor raised unexpectedly")

        key = self._message_key(delivery)
        settlement = settlement_for(outcome)
        if settlement is not Settlement.REQUEUE:
            self._attempts.pop(key, None)
            return settlement

        attempt = self._attempt_number(key, delivery)
        if self._retry_policy.allows_requeue(attempt):
            self._remember_attempt(key, attempt)
            await self._retry_policy.pause_before_requeue(attempt)
            return Settlement.REQUEUE

        reason = (
            f"Gave up after {attempt} attempt(s): "
            f"{outcome.reason or outcome.kind.value}"
        )
        try:
            await self._dead_letter.route(delivery, reason)
        except QueueError:
            logger.exception(
                "Dead-letter routing failed for %s; requeueing", envelope.recipient
            )
            self._remember_attempt(key, attempt)
            return Settlement.REQUEUE
        self._attempts.pop(key, None)
        return Settlement.REJECT

    def _attempt_number(self, key: str, delivery: Delivery) -> int:
        """1-based number of the attempt that just failed.

        Uses the in-process side table, or the broker's ``x-delivery-count``
        header (quorum queues) when that is higher.
        """
        previous = self._attempts.get(key, 0)
        with contextlib.suppress(TypeError, ValueError):
            previous = max(previous, int(delivery.headers.get("x-delivery-count", 0)))
        return previous + 1

    def _remember_attempt(self, key: str, attempt: int) -> None:
        # Only a capped policy reads the count back.
        if not self._retry_policy.is_bounded:
            return
        self._attempts[key] = attempt
        self._attempts.move_to_end(key)
        while len(self._attempts) > self._attempt_cache_size:
            self._attempts.popitem(last=False)

    @staticmethod
    def _message_key(delivery: Delivery) -> str:
        if delivery.message_id:
            return delivery.message_id
        return hashlib.sha256(delivery.body).hexdigest()

    async def _settle(self, delivery: Delivery, settlement: Settlement) -> None:
        try:
            if settlement is Settlement.ACK:
                await self._adapter.ack(delivery.delivery_tag)
            else:
                await self._adapter.nack(
                    delivery.delivery_tag, requeue=settlement.requeue
                )
        except QueueConnectionError:
            logger.exception(
                "Could not %s delivery %d; the broker will redeliver it",
                settlement.value,
                delivery.delivery_tag,
            )

    def _drain_inbox(self) -> list[Delivery]:
        waiting: list[Delivery] = []
        while True:
            try:
                delivery = self._inbox.get_nowait()
            except asyncio.QueueEmpty:
                return waiting
            self._inbox.task_done()
            if delivery is not None:
                waiting.append(delivery)

    async def _cancel_workers(self) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

    def _on_worker_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.critical("Consumer worker crashed", exc_info=exc)
            if self._failure is None:
                self._failure = exc
            self._crashed.set()
