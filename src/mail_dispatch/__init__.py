"""Durable RabbitMQ-backed email task dispatch."""

from __future__ import annotations

from .config import BrokerSettings, DispatchSettings, SmtpSettings
from .consumer import EmailTaskConsumer
from .contacts import Contact, InMemoryContactSource
from .dead_letter import DeadLetterHandler
from .envelope import TaskEnvelope
from .exceptions import (
    DeserializationError,
    DispatchError,
    DoubleSettlementError,
    LifecycleError,
    ProgrammingError,
    PublishError,
    QueueConnectionError,
    QueueError,
    SerializationError,
    SettlementError,
    UnknownDeliveryTagError,
)
from .memory import InMemoryDeliveryExecutor, InMemoryQueueAdapter
from .outcome import DeliveryOutcome, OutcomeKind, Settlement, settlement_for
from .ports import Delivery, IContactSource, IDeliveryExecutor, IQueueAdapter
from .publisher import TaskPublisher
from .rabbitmq import RabbitMQQueueAdapter
from .reminders import ReminderBatch, ReminderService
from .retry import RetryPolicy
from .serialization import EnvelopeSerializer
from .service import DispatchService
from .smtp import SmtpDeliveryExecutor

__all__ = [
    "BrokerSettings",
    "Contact",
    "DeadLetterHandler",
    "Delivery",
    "DeliveryOutcome",
    "DeserializationError",
    "DispatchError",
    "DispatchService",
    "DispatchSettings",
    "DoubleSettlementError",
    "EmailTaskConsumer",
    "EnvelopeSerializer",
    "IContactSource",
    "IDeliveryExecutor",
    "IQueueAdapter",
    "InMemoryContactSource",
    "InMemoryDeliveryExecutor",
    "InMemoryQueueAdapter",
    "LifecycleError",
    "OutcomeKind",
    "ProgrammingError",
    "PublishError",
    "QueueConnectionError",
    "QueueError",
    "RabbitMQQueueAdapter",
    "ReminderBatch",
    "ReminderService",
    "RetryPolicy",
    "SerializationError",
    "Settlement",
    "SettlementError",
    "SmtpDeliveryExecutor",
    "SmtpSettings",
    "TaskEnvelope",
    "TaskPublisher",
    "UnknownDeliveryTagError",
    "settlement_for",
]
