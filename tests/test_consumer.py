"""Tests for EmailTaskConsumer against the in-memory broker."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from mail_dispatch.consumer import EmailTaskConsumer
from mail_dispatch.dead_letter import DeadLetterHandler
from mail_dispatch.envelope import TaskEnvelope
from mail_dispatch.exceptions import (
    DoubleSettlementError,
    LifecycleError,
    QueueConnectionError,
)
from mail_dispatch.memory import InMemoryDeliveryExecutor, InMemoryQueueAdapter
from mail_dispatch.outcome import DeliveryOutcome, Settlement
from mail_dispatch.ports.queue import Delivery
from mail_dispatch.publisher import TaskPublisher
from mail_dispatch.retry import RetryPolicy
from mail_dispatch.serialization import EnvelopeSerializer
from mail_dispatch.smtp import SmtpDeliveryExecutor

QUEUE = "email_queue"


def _payload(recipient: str = "a@example.com") -> bytes:
    return EnvelopeSerializer().serialize(TaskEnvelope(recipient=recipient))


def _mock_adapter() -> MagicMock:
    adapter = MagicMock()
    adapter.ack = AsyncMock()
    adapter.nack = AsyncMock()
    adapter.publish = AsyncMock()
    return adapter


class BlockingExecutor:
    """Executor whose attempts wait until released."""

    def __init__(self) -> None:
        self.release = asyncio.Event()
        self.started: list[str] = []
        self.finished: list[str] = []

    async def attempt(
        self, envelope: TaskEnvelope, timeout: float | None = None
    ) -> DeliveryOutcome:
        self.started.append(envelope.recipient)
        if envelope.recipient.startswith("slow"):
            await self.release.wait()
        self.finished.append(envelope.recipient)
        return DeliveryOutcome.delivered()


@pytest.mark.asyncio
async def test_happy_path_acks(
    broker: InMemoryQueueAdapter,
    executor: InMemoryDeliveryExecutor,
    envelope: TaskEnvelope,
    eventually,
) -> None:
    assert await TaskPublisher(broker, QUEUE).publish_task(envelope)
    consumer = EmailTaskConsumer(broker, executor, QUEUE, delivery_timeout=5.0)
    await consumer.start()
    try:
        await eventually(lambda: len(broker.acked) == 1)
    finally:
        await consumer.stop()
    [record] = executor.attempts
    assert record.envelope == envelope
    assert record.timeout == 5.0
    assert broker.requeue_count == 0
    assert broker.rejected == []
    assert broker.messages(QUEUE) == []


@pytest.mark.asyncio
async def test_transient_failures_are_requeued_until_delivered(
    broker: InMemoryQueueAdapter,
    executor: InMemoryDeliveryExecutor,
    envelope: TaskEnvelope,
    eventually,
) -> None:
    executor.script(*[DeliveryOutcome.transient("421 busy")] * 3)
    consumer = EmailTaskConsumer(broker, executor, QUEUE)
    await consumer.start()
    try:
        await TaskPublisher(broker, QUEUE).publish_task(envelope)
        await eventually(lambda: len(broker.acked) == 1)
    finally:
        await consumer.stop()
    assert len(executor.attempts) == 4
    assert broker.requeue_count == 3
    executor.assert_attempted("a@example.com", count=4)


@pytest.mark.asyncio
async def test_malformed_payload_is_dropped_without_attempt(
    broker: InMemoryQueueAdapter,
    executor: InMemoryDeliveryExecutor,
    eventually,
) -> None:
    await broker.publish(QUEUE, b'{"recipient": "a@exa', message_id="bad-1")
    consumer = EmailTaskConsumer(broker, executor, QUEUE)
    await consumer.start()
    try:
        await eventually(lambda: len(broker.rejected) == 1)
    finally:
        await consumer.stop()
    assert executor.attempts == []
    assert broker.requeue_count == 0
    assert broker.messages(QUEUE) == []


@pytest.mark.asyncio
async def test_hanging_smtp_server_requeues_after_timeout(
    broker: InMemoryQueueAdapter, envelope: TaskEnvelope, eventually
) -> None:
    closed: list[bool] = []

    class HangingClient:
        async def connect(self) -> None:
            await asyncio.Event().wait()

        async def login(self, username: str, password: str) -> None:
            raise AssertionError("not reached")

        async def send_message(self, message: object) -> None:
            raise AssertionError("not reached")

        async def quit(self) -> None:
            raise AssertionError("not reached")

        def close(self) -> None:
            closed.append(True)

    smtp = SmtpDeliveryExecutor(
        "smtp.example.com",
        from_email="noreply@example.com",
        client_factory=lambda timeout: HangingClient(),
    )
    consumer = EmailTaskConsumer(broker, smtp, QUEUE, delivery_timeout=0.2)
    await consumer.start()
    try:
        await TaskPublisher(broker, QUEUE).publish_task(envelope)
        await eventually(lambda: broker.requeue_count >= 1)
    finally:
        await consumer.stop()
    assert closed
    assert broker.acked == []
    assert broker.rejected == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("outcome", "settlement"),
    [
        (DeliveryOutcome.delivered(), Settlement.ACK),
        (DeliveryOutcome.permanent("550 unknown user"), Settlement.REJECT),
        (DeliveryOutcome.transient("421 busy"), Settlement.REQUEUE),
        (DeliveryOutcome.timeout("slow"), Settlement.REQUEUE),
    ],
)
async def test_handle_delivery_settles_exactly_once(
    outcome: DeliveryOutcome, settlement: Settlement
) -> None:
    adapter = _mock_adapter()
    consumer = EmailTaskConsumer(
        adapter, InMemoryDeliveryExecutor([outcome]), QUEUE
    )
    result = await consumer.handle_delivery(Delivery(body=_payload(), delivery_tag=7))
    assert result is settlement
    if settlement is Settlement.ACK:
        adapter.ack.assert_awaited_once_with(7)
        adapter.nack.assert_not_awaited()
    else:
        adapter.nack.assert_awaited_once_with(7, requeue=settlement.requeue)
        adapter.ack.assert_not_awaited()


@pytest.mark.asyncio
async def test_executor_exception_requeues() -> None:
    adapter = _mock_adapter()
    executor = MagicMock()
    executor.attempt = AsyncMock(side_effect=RuntimeError("bug in transport"))
    consumer = EmailTaskConsumer(adapter, executor, QUEUE)
    result = await consumer.handle_delivery(Delivery(body=_payload(), delivery_tag=1))
    assert result is Settlement.REQUEUE
    adapter.nack.assert_awaited_once_with(1, requeue=True)


@pytest.mark.asyncio
async def test_redelivery_cap_dead_letters(
    broker: InMemoryQueueAdapter, envelope: TaskEnvelope, eventually
) -> None:
    await broker.ensure_queue("email_queue.dead")
    executor = InMemoryDeliveryExecutor(default=DeliveryOutcome.transient("421"))
    consumer = EmailTaskConsumer(
        broker,
        executor,
        QUEUE,
        retry_policy=RetryPolicy(max_attempts=3),
        dead_letter=DeadLetterHandler.to_queue(broker, "email_queue.dead"),
    )
    await consumer.start()
    try:
        await TaskPublisher(broker, QUEUE).publish_task(envelope)
        await eventually(lambda: len(broker.rejected) == 1)
    finally:
        await consumer.stop()
    assert len(executor.attempts) == 3
    assert broker.requeue_count == 2
    [dead] = broker.messages("email_queue.dead")
    assert "3 attempt(s)" in dead.headers["x-dead-letter-reason"]
    assert dead.message_id == broker.rejected[0].message_id


@pytest.mark.asyncio
async def test_broker_delivery_count_counts_toward_cap() -> None:
    adapter = _mock_adapter()
    routed: list[str] = []

    async def on_dlq(delivery: Delivery, reason: str) -> None:
        routed.append(reason)

    consumer = EmailTaskConsumer(
        adapter,
        InMemoryDeliveryExecutor(default=DeliveryOutcome.timeout()),
        QUEUE,
        retry_policy=RetryPolicy(max_attempts=3),
        dead_letter=DeadLetterHandler(on_dead_letter=on_dlq),
    )
    delivery = Delivery(
        body=_payload(), delivery_tag=1, headers={"x-delivery-count": 5}
    )
    assert await consumer.handle_delivery(delivery) is Settlement.REJECT
    assert len(routed) == 1


@pytest.mark.asyncio
async def test_dead_letter_failure_requeues() -> None:
    adapter = _mock_adapter()
    adapter.publish.side_effect = QueueConnectionError("down")
    consumer = EmailTaskConsumer(
        adapter,
        InMemoryDeliveryExecutor(default=DeliveryOutcome.transient("421")),
        QUEUE,
        retry_policy=RetryPolicy(max_attempts=1),
        dead_letter=DeadLetterHandler.to_queue(adapter, "dlq"),
    )
    result = await consumer.handle_delivery(Delivery(body=_payload(), delivery_tag=1))
    assert result is Settlement.REQUEUE


@pytest.mark.asyncio
async def test_lost_connection_during_settle_is_contained() -> None:
    adapter = _mock_adapter()
    adapter.ack.side_effect = QueueConnectionError("channel closed")
    consumer = EmailTaskConsumer(adapter, InMemoryDeliveryExecutor(), QUEUE)
    result = await consumer.handle_delivery(Delivery(body=_payload(), delivery_tag=1))
    assert result is Settlement.ACK


@pytest.mark.asyncio
async def test_double_settlement_is_surfaced() -> None:
    adapter = _mock_adapter()
    adapter.ack.side_effect = DoubleSettlementError(1)
    consumer = EmailTaskConsumer(adapter, InMemoryDeliveryExecutor(), QUEUE)
    with pytest.raises(DoubleSettlementError):
        await consumer.handle_delivery(Delivery(body=_payload(), delivery_tag=1))


@pytest.mark.asyncio
async def test_worker_crash_is_reraised_on_stop(
    broker: InMemoryQueueAdapter, eventually
) -> None:
    broker.ack = AsyncMock(side_effect=DoubleSettlementError(1))  # type: ignore[method-assign]
    executor = InMemoryDeliveryExecutor()
    consumer = EmailTaskConsumer(broker, executor, QUEUE)
    await consumer.start()
    await broker.publish(QUEUE, _payload())
    await eventually(lambda: consumer.crashed.is_set())
    assert len(executor.attempts) == 1
    with pytest.raises(DoubleSettlementError):
        await consumer.stop()


@pytest.mark.asyncio
async def test_messages_are_handled_in_order(
    broker: InMemoryQueueAdapter,
    executor: InMemoryDeliveryExecutor,
    eventually,
) -> None:
    recipients = [f"user{i}@example.com" for i in range(5)]
    for r in recipients:
        await broker.publish(QUEUE, _payload(r))
    consumer = EmailTaskConsumer(broker, executor, QUEUE)
    await consumer.start()
    try:
        await eventually(lambda: len(broker.acked) == 5)
    finally:
        await consumer.stop()
    assert [a.envelope.recipient for a in executor.attempts] == recipients


@pytest.mark.asyncio
async def test_slow_message_does_not_block_others_with_concurrency(
    broker: InMemoryQueueAdapter, eventually
) -> None:
    executor = BlockingExecutor()
    consumer = EmailTaskConsumer(broker, executor, QUEUE, concurrency=2)
    await consumer.start()
    try:
        await broker.publish(QUEUE, _payload("slow@example.com"))
        await broker.publish(QUEUE, _payload("fast@example.com"))
        await eventually(lambda: executor.finished == ["fast@example.com"])
        executor.release.set()
        await eventually(lambda: len(broker.acked) == 2)
    finally:
        await consumer.stop()


@pytest.mark.asyncio
async def test_stop_requeues_waiting_deliveries(
    broker: InMemoryQueueAdapter, eventually
) -> None:
    executor = BlockingExecutor()
    consumer = EmailTaskConsumer(broker, executor, QUEUE, shutdown_timeout=0.1)
    await consumer.start()
    await broker.publish(QUEUE, _payload("slow@example.com"))
    await broker.publish(QUEUE, _payload("b@example.com"))
    await broker.publish(QUEUE, _payload("c@example.com"))
    await eventually(lambda: executor.started == ["slow@example.com"])

    await consumer.stop()
    assert not consumer.is_running
    assert executor.finished == []
    assert broker.requeue_count == 2
    assert broker.acked == []
    # the cancelled in-flight message stays unsettled until the channel closes
    assert broker.outstanding == 1
    await broker.close()
    assert len(broker.messages(QUEUE)) == 3


@pytest.mark.asyncio
async def test_lifecycle(
    broker: InMemoryQueueAdapter, executor: InMemoryDeliveryExecutor
) -> None:
    consumer = EmailTaskConsumer(broker, executor, QUEUE)
    assert consumer.queue_name == QUEUE
    await consumer.stop()  # not started: no-op
    await consumer.start()
    assert consumer.is_running
    with pytest.raises(LifecycleError):
        await consumer.start()
    await consumer.stop()
    await consumer.stop()
    assert not consumer.is_running


@pytest.mark.asyncio
async def test_failed_subscribe_leaves_consumer_stopped(
    executor: InMemoryDeliveryExecutor,
) -> None:
    broker = InMemoryQueueAdapter()
    consumer = EmailTaskConsumer(broker, executor, QUEUE)
    with pytest.raises(QueueConnectionError):
        await consumer.start()
    assert not consumer.is_running


def test_concurrency_must_be_positive(executor: InMemoryDeliveryExecutor) -> None:
    with pytest.raises(ValueError, match="concurrency"):
        EmailTaskConsumer(InMemoryQueueAdapter(), executor, QUEUE, concurrency=0)


@pytest.mark.asyncio
async def test_permanent_failure_does_not_affect_other_messages(
    broker: InMemoryQueueAdapter,
    executor: InMemoryDeliveryExecutor,
    eventually,
) -> None:
    executor.script_for("gone@example.com", DeliveryOutcome.permanent("550"))
    for r in ("a@example.com", "gone@example.com", "b@example.com"):
        await broker.publish(QUEUE, _payload(r))
    consumer = EmailTaskConsumer(broker, executor, QUEUE)
    await consumer.start()
    try:
        await eventually(lambda: len(broker.acked) + len(broker.rejected) == 3)
    finally:
        await consumer.stop()
    assert len(broker.rejected) == 1
    assert broker.requeue_count == 0
    assert [e.recipient for e in executor.delivered] == [
        "a@example.com",
        "b@example.com",
    ]


@pytest.mark.asyncio
async def test_deeply_nested_payload_is_dropped_and_loop_continues(
    broker: InMemoryQueueAdapter,
    executor: InMemoryDeliveryExecutor,
    eventually,
) -> None:
    await broker.publish(QUEUE, b"[" * 200_000 + b"]" * 200_000)
    await broker.publish(QUEUE, _payload())
    consumer = EmailTaskConsumer(broker, executor, QUEUE)
    await consumer.start()
    try:
        await eventually(lambda: len(broker.acked) == 1)
    finally:
        await consumer.stop()
    assert len(broker.rejected) == 1
    assert broker.outstanding == 0
    assert not consumer.crashed.is_set()
    executor.assert_attempted("a@example.com", count=1)


@pytest.mark.asyncio
async def test_unbounded_policy_keeps_no_attempt_table(
    broker: InMemoryQueueAdapter,
    executor: InMemoryDeliveryExecutor,
    eventually,
) -> None:
    executor.script(*[DeliveryOutcome.transient("421")] * 5)
    consumer = EmailTaskConsumer(broker, executor, QUEUE)
    await consumer.start()
    try:
        for r in ("a@example.com", "b@example.com"):
            await broker.publish(QUEUE, _payload(r), message_id=r)
        await eventually(lambda: len(broker.acked) == 2)
    finally:
        await consumer.stop()
    assert broker.requeue_count == 5
    assert len(consumer._attempts) == 0


@pytest.mark.asyncio
async def test_attempt_table_is_bounded() -> None:
    adapter = _mock_adapter()
    consumer = EmailTaskConsumer(
        adapter,
        InMemoryDeliveryExecutor(default=DeliveryOutcome.transient("421")),
        QUEUE,
        retry_policy=RetryPolicy(max_attempts=10),
        attempt_cache_size=2,
    )
    for i in range(5):
        delivery = Delivery(body=_payload(), delivery_tag=i + 1, message_id=f"m-{i}")
        assert await consumer.handle_delivery(delivery) is Settlement.REQUEUE
    assert list(consumer._attempts) == ["m-3", "m-4"]

    # the most recently failed messages keep their count
    again = Delivery(body=_payload(), delivery_tag=6, message_id="m-4")
    await consumer.handle_delivery(again)
    assert consumer._attempts["m-4"] == 2


def test_attempt_cache_size_must_be_positive(
    executor: InMemoryDeliveryExecutor,
) -> None:
    with pytest.raises(ValueError, match="attempt_cache_size"):
        EmailTaskConsumer(
            InMemoryQueueAdapter(), executor, QUEUE, attempt_cache_size=0
        )
