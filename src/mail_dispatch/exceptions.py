"""Exception hierarchy for mail-dispatch."""

from __future__ import annotations


class DispatchError(Exception):
    """Root exception for the dispatch pipeline."""


class QueueError(DispatchError):
    """Base class for all broker-related errors."""


class QueueConnectionError(QueueError):
    """Raised when the broker is unreachable or the handle is not connected."""


class PublishError(QueueError):
    """Raised when the broker refuses a confirmed publish."""


class SerializationError(DispatchError):
    """Raised when an envelope cannot be encoded to bytes."""


class DeserializationError(SerializationError):
    """Raised when a received payload is not a valid task envelope.

    Malformed payloads are dropped, never retried.
    """


class ProgrammingError(DispatchError):
    """Base class for broken invariants. Never caught by the library."""


class SettlementError(ProgrammingError):
    """Raised when a delivery tag is settled illegally."""

    def __init__(self, message: str, delivery_tag: int) -> None:
        self.delivery_tag = delivery_tag
        super().__init__(message)


class DoubleSettlementError(SettlementError):
    """Raised when ack/nack is issued twice for the same delivery tag."""

    def __init__(self, delivery_tag: int) -> None:
        super().__init__(f"Delivery tag {delivery_tag} already settled", delivery_tag)


class UnknownDeliveryTagError(SettlementError):
    """Raised when settling a delivery tag the adapter never issued."""

    def __init__(self, delivery_tag: int) -> None:
        super().__init__(f"Delivery tag {delivery_tag} was never issued", delivery_tag)


class LifecycleError(ProgrammingError):
    """Raised on illegal start/stop sequencing (e.g. start while started)."""
