"""RetryPolicy: how many times a transiently failed email goes back on the queue."""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass


@dataclass(frozen=True)
class RetryPolicy:
    """Redelivery budget for messages whose attempt ended transient or timed out.

    ``attempt`` below is the 1-based number of the delivery attempt that just
    failed. With ``max_attempts=None`` (the default) a failed message is
    always requeued, as the broker would do on its own. With a cap, the
    attempt numbered ``max_attempts`` is the last one; the consumer then
    dead-letters the message instead of requeueing it.

    ``base_delay`` holds the worker back before it issues the requeue, so a
    struggling SMTP server is not hammered by the same message in a tight
    loop. The pause doubles per attempt up to ``max_delay``; ``jitter``
    spreads it over 50-150% of the nominal value. ``base_delay=0`` requeues
    immediately.
    """

    max_attempts: int | None = None
    base_delay: float = 0.0
    max_delay: float = 60.0
    jitter: bool = True

    def __post_init__(self) -> None:
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("base_delay and max_delay must be >= 0")
        if self.base_delay > self.max_delay:
            raise ValueError("base_delay must be <= max_delay")

    @property
    def is_bounded(self) -> bool:
        """True when attempts are counted toward a cap."""
        return self.max_attempts is not None

    def allows_requeue(self, attempt: int) -> bool:
        if attempt < 1:
            return False
        return self.max_attempts is None or attempt < self.max_attempts

    def requeue_delay(self, attempt: int) -> float:
        """Seconds to hold a message before requeueing it after *attempt*."""
        if attempt < 1 or not self.base_delay:
            return 0.0
        nominal = min(self.base_delay * 2 ** (attempt - 1), self.max_delay)
        if not self.jitter:
            return float(nominal)
        return nominal * random.uniform(0.5, 1.5)  # noqa: S311

    async def pause_before_requeue(self, attempt: int) -> None:
        delay = self.requeue_delay(attempt)
        if delay > 0:
            await asyncio.sleep(delay)
