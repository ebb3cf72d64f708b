"""Contact source port."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..contacts import Contact


@runtime_checkable
class IContactSource(Protocol):
    """Read-only directory of people who receive reminders."""

    async def list_active_contacts(self) -> list[Contact]:
        """Return every active contact. No pagination."""
        ...
