"""Delivery executor port."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..envelope import TaskEnvelope
    from ..outcome import DeliveryOutcome


@runtime_checkable
class IDeliveryExecutor(Protocol):
    """
    Performs one bounded-time delivery attempt and classifies the result.

    Implementations never raise for transport failures; every environmental
    problem is reported through the returned outcome. Must be safe to call
    concurrently for independent envelopes.
    """

    async def attempt(
        self,
        envelope: TaskEnvelope,
        timeout: float | None = None,
    ) -> DeliveryOutcome:
        """Attempt delivery of *envelope* within *timeout* seconds."""
        ...
