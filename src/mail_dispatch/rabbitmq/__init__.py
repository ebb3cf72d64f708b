"""RabbitMQ queue adapter (aio-pika)."""

from __future__ import annotations

from .connection import RabbitMQQueueAdapter

__all__ = ["RabbitMQQueueAdapter"]
