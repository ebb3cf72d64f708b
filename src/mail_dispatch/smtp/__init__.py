"""SMTP delivery executor (aiosmtplib)."""

from __future__ import annotations

from .executor import MAILBOX_UNAVAILABLE_CODES, SmtpClient, SmtpDeliveryExecutor

__all__ = ["MAILBOX_UNAVAILABLE_CODES", "SmtpClient", "SmtpDeliveryExecutor"]
