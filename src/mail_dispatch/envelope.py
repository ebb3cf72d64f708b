"""TaskEnvelope: immutable unit of work: one email to send."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field


class TaskEnvelope(BaseModel):
    """Immutable "send this email" task carried over the queue.

    ``body`` is pre-rendered HTML and opaque to the dispatch core.
    ``scheduled_at`` is informational; delivery is never deferred on it.
    """

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    recipient: EmailStr = Field(
        ...,
        validation_alias=AliasChoices("recipient", "to"),
        description="Destination mailbox",
    )
    subject: str = ""
    body: str = ""
    sender_display_name: str = Field(
        default="", description="Display name used in the From header"
    )
    scheduled_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
