"""ReminderService: builds reminder envelopes and publishes them."""

from __future__ import annotations

import html
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from .envelope import TaskEnvelope

if TYPE_CHECKING:
    from collections.abc import Callable

    from .contacts import Contact
    from .ports.contacts import IContactSource
    from .publisher import TaskPublisher

logger = logging.getLogger("mail_dispatch.reminders")

DEFAULT_SENDER_NAME = "Meeting Reminder System"


@dataclass(frozen=True)
class ReminderBatch:
    """Result of a monthly fan-out."""

    queued: int = 0
    failed: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReminderService:
    """Application service behind the reminder triggers.

    The HTTP endpoints and the month-end scheduler call into this service;
    it only decides what to send and hands envelopes to the publish path.
    """

    def __init__(
        self,
        publisher: TaskPublisher,
        contacts: IContactSource,
        *,
        sender_display_name: str = DEFAULT_SENDER_NAME,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._publisher = publisher
        self._contacts = contacts
        self._sender_display_name = sender_display_name
        self._clock = clock or _utcnow

    async def send_test_reminder(self, email: str) -> bool:
        """Queue a single test reminder to *email*.

        Raises pydantic's ``ValidationError`` if *email* is not an address;
        broker failures are reported as ``False``.
        """
        envelope = TaskEnvelope(
            recipient=email,
            subject="Test Meeting Reminder",
            body="<p>This is a test meeting reminder email.</p>",
            sender_display_name=self._sender_display_name,
            scheduled_at=self._clock(),
        )
        return await self._publisher.publish_task(envelope)

    async def trigger_monthly_reminders(self) -> ReminderBatch:
        """Queue one monthly reminder per active contact."""
        now = self._clock()
        contacts = await self._contacts.list_active_contacts()
        queued = 0
        failed: list[str] = []
        for contact in contacts:
            envelope = self.monthly_reminder(contact, now)
            if await self._publisher.publish_task(envelope):
                queued += 1
            else:
                failed.append(contact.email)
        logger.info(
            "Monthly reminders: %d queued, %d failed", queued, len(failed)
        )
        return ReminderBatch(queued=queued, failed=failed)

    async def list_contacts(self) -> list[Contact]:
        return await self._contacts.list_active_contacts()

    def monthly_reminder(self, contact: Contact, now: datetime) -> TaskEnvelope:
        month = f"{now:%B %Y}"
        return TaskEnvelope(
            recipient=contact.email,
            subject=f"Monthly Team Meeting Reminder - {month}",
            body=(
                f"<p>Dear {html.escape(contact.name)},</p>"
                f"<p>This is your monthly meeting reminder for "
                f"<strong>{month}</strong>.</p>"
            ),
            sender_display_name=self._sender_display_name,
            scheduled_at=now,
        )
