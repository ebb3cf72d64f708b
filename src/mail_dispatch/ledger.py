"""DeliveryLedger: bookkeeping of issued and settled delivery tags."""

from __future__ import annotations

from typing import Generic, TypeVar

from .exceptions import (
    DoubleSettlementError,
    SettlementError,
    UnknownDeliveryTagError,
)

T = TypeVar("T")


class DeliveryLedger(Generic[T]):
    """Tracks outstanding deliveries for one channel.

    Delivery tags on a channel are issued in increasing order, so a tag that
    is not outstanding but not above the highest issued tag has already been
    settled. This keeps memory bounded by the number of unsettled deliveries.
    """

    def __init__(self) -> None:
        self._outstanding: dict[int, T] = {}
        self._highest_issued = 0

    def issue(self, delivery_tag: int, item: T) -> None:
        """Record a new unsettled delivery."""
        if delivery_tag in self._outstanding:
            raise SettlementError(
                f"Delivery tag {delivery_tag} is already outstanding", delivery_tag
            )
        self._outstanding[delivery_tag] = item
        self._highest_issued = max(self._highest_issued, delivery_tag)

    def settle(self, delivery_tag: int) -> T:
        """Remove and return the delivery for *delivery_tag*.

        Raises:
            DoubleSettlementError: The tag was issued and already settled.
            UnknownDeliveryTagError: The tag was never issued.
        """
        try:
            return self._outstanding.pop(delivery_tag)
        except KeyError:
            if 0 < delivery_tag <= self._highest_issued:
                raise DoubleSettlementError(delivery_tag) from None
            raise UnknownDeliveryTagError(delivery_tag) from None

    def outstanding(self) -> list[int]:
        """Return unsettled tags in issue order."""
        return sorted(self._outstanding)

    def reset(self) -> None:
        """Forget everything (a new channel restarts tag numbering)."""
        self._outstanding.clear()
        self._highest_issued = 0

    def __len__(self) -> int:
        return len(self._outstanding)
