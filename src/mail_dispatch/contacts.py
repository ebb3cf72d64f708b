"""Contacts and an in-memory contact source."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, EmailStr

from .ports.contacts import IContactSource

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger("mail_dispatch.contacts")


class Contact(BaseModel):
    """A person who receives reminders."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    email: EmailStr
    department: str = ""
    is_active: bool = True


class InMemoryContactSource(IContactSource):
    """Static contact directory; inactive contacts are filtered out."""

    def __init__(self, contacts: Iterable[Contact] = ()) -> None:
        self._contacts = list(contacts)

    def add(self, contact: Contact) -> None:
        self._contacts.append(contact)

    async def list_active_contacts(self) -> list[Contact]:
        active = [c for c in self._contacts if c.is_active]
        logger.info("Retrieved %d active contacts", len(active))
        return active
