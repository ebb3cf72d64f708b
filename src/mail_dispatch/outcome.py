"""Delivery outcomes and the outcome-to-settlement mapping."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class OutcomeKind(Enum):
    """Classification of one delivery attempt."""

    DELIVERED = "delivered"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"
    TIMEOUT = "timeout"


class Settlement(Enum):
    """How a received message is settled with the broker."""

    ACK = "ack"
    REJECT = "reject"  # nack, requeue=False
    REQUEUE = "requeue"  # nack, requeue=True

    @property
    def requeue(self) -> bool:
        return self is Settlement.REQUEUE


@dataclass(frozen=True)
class DeliveryOutcome:
    """Immutable result of a bounded delivery attempt."""

    kind: OutcomeKind
    reason: str | None = None

    @classmethod
    def delivered(cls) -> DeliveryOutcome:
        """Create a successful outcome."""
        return cls(OutcomeKind.DELIVERED)

    @classmethod
    def transient(cls, reason: str) -> DeliveryOutcome:
        """Create a retryable failure (network blip, 4xx reply, ...)."""
        return cls(OutcomeKind.TRANSIENT_FAILURE, reason)

    @classmethod
    def permanent(cls, reason: str) -> DeliveryOutcome:
        """Create a failure that can never succeed (mailbox unavailable)."""
        return cls(OutcomeKind.PERMANENT_FAILURE, reason)

    @classmethod
    def timeout(cls, reason: str | None = None) -> DeliveryOutcome:
        """Create an outcome for an attempt that exceeded its time budget."""
        return cls(OutcomeKind.TIMEOUT, reason)

    @property
    def is_delivered(self) -> bool:
        return self.kind is OutcomeKind.DELIVERED

    @property
    def is_retryable(self) -> bool:
        return self.kind in (OutcomeKind.TRANSIENT_FAILURE, OutcomeKind.TIMEOUT)


_SETTLEMENTS: dict[OutcomeKind, Settlement] = {
    OutcomeKind.DELIVERED: Settlement.ACK,
    OutcomeKind.PERMANENT_FAILURE: Settlement.REJECT,
    OutcomeKind.TRANSIENT_FAILURE: Settlement.REQUEUE,
    OutcomeKind.TIMEOUT: Settlement.REQUEUE,
}


def settlement_for(outcome: DeliveryOutcome) -> Settlement:
    """Return the settlement the consumer must issue for *outcome*."""
    return _SETTLEMENTS[outcome.kind]
