"""In-memory adapters for testing."""

from __future__ import annotations

from .broker import InMemoryQueueAdapter, StoredMessage
from .executor import AttemptRecord, InMemoryDeliveryExecutor

__all__ = [
    "AttemptRecord",
    "InMemoryDeliveryExecutor",
    "InMemoryQueueAdapter",
    "StoredMessage",
]
