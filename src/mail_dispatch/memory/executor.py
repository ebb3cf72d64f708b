"""In-memory delivery executor for test assertions."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ..outcome import DeliveryOutcome
from ..ports.executor import IDeliveryExecutor

if TYPE_CHECKING:
    from collections.abc import Iterable

    from ..envelope import TaskEnvelope

logger = logging.getLogger("mail_dispatch.memory")


@dataclass
class AttemptRecord:
    """Record of one attempt for test assertions."""

    envelope: TaskEnvelope
    timeout: float | None
    outcome: DeliveryOutcome


class InMemoryDeliveryExecutor(IDeliveryExecutor):
    """
    Test double (Fake) that returns scripted outcomes and records attempts.

    Outcomes queued with :meth:`script` are consumed in order; outcomes queued
    with :meth:`script_for` apply only to one recipient and take precedence.
    Once both are exhausted every attempt returns ``default``.
    """

    def __init__(
        self,
        outcomes: Iterable[DeliveryOutcome] = (),
        *,
        default: DeliveryOutcome | None = None,
    ) -> None:
        self._script: deque[DeliveryOutcome] = deque(outcomes)
        self._per_recipient: dict[str, deque[DeliveryOutcome]] = {}
        self._default = default or DeliveryOutcome.delivered()
        self.attempts: list[AttemptRecord] = []

    def script(self, *outcomes: DeliveryOutcome) -> None:
        """Append outcomes to return on subsequent attempts."""
        self._script.extend(outcomes)

    def script_for(self, recipient: str, *outcomes: DeliveryOutcome) -> None:
        """Append outcomes returned only for attempts to *recipient*."""
        self._per_recipient.setdefault(recipient, deque()).extend(outcomes)

    async def attempt(
        self,
        envelope: TaskEnvelope,
        timeout: float | None = None,
    ) -> DeliveryOutcome:
        own = self._per_recipient.get(envelope.recipient)
        if own:
            outcome = own.popleft()
        elif self._script:
            outcome = self._script.popleft()
        else:
            outcome = self._default
        self.attempts.append(AttemptRecord(envelope, timeout, outcome))
        logger.debug("Fake delivery to %s: %s", envelope.recipient, outcome.kind.value)
        return outcome

    @property
    def delivered(self) -> list[TaskEnvelope]:
        """Envelopes whose attempt returned DELIVERED."""
        return [a.envelope for a in self.attempts if a.outcome.is_delivered]

    def assert_attempted(self, recipient: str, count: int = 1) -> None:
        """Helper for test assertions."""
        matches = [a for a in self.attempts if a.envelope.recipient == recipient]
        if len(matches) != count:
            raise AssertionError(
                f"Expected {count} attempts to {recipient}, but found {len(matches)}."
            )

    def clear(self) -> None:
        """Clear recorded attempts and any remaining script."""
        self.attempts.clear()
        self._script.clear()
        self._per_recipient.clear()
