"""Port definitions for the dispatch pipeline."""

from __future__ import annotations

from .contacts import IContactSource
from .executor import IDeliveryExecutor
from .queue import Delivery, DeliveryHandler, IQueueAdapter

__all__ = [
    "Delivery",
    "DeliveryHandler",
    "IContactSource",
    "IDeliveryExecutor",
    "IQueueAdapter",
]
