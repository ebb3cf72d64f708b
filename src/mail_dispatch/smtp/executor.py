"""SMTP delivery executor: one bounded-time attempt per envelope."""

from __future__ import annotations

import asyncio
import email.message
import email.policy
import email.utils
import logging
from typing import TYPE_CHECKING, Any, Literal, Protocol

import aiosmtplib

from ..outcome import DeliveryOutcome
from ..ports.executor import IDeliveryExecutor

if TYPE_CHECKING:
    from collections.abc import Callable

    from ..config import SmtpSettings
    from ..envelope import TaskEnvelope

logger = logging.getLogger("mail_dispatch.smtp")

# Mailbox unavailable / not local / name not allowed.
MAILBOX_UNAVAILABLE_CODES = frozenset({550, 551, 553})


class SmtpClient(Protocol):
    """The subset of ``aiosmtplib.SMTP`` used by the executor."""

    async def connect(self) -> Any: ...

    async def login(self, username: str, password: str) -> Any: ...

    async def send_message(self, message: email.message.EmailMessage) -> Any: ...

    async def quit(self) -> Any: ...

    def close(self) -> None: ...


class SmtpDeliveryExecutor(IDeliveryExecutor):
    """
    Async SMTP delivery using aiosmtplib.

    Connect, optional STARTTLS, optional login and send all run under a single
    time budget. Every attempt opens its own session, so concurrent attempts
    share nothing but read-only configuration.
    """

    def __init__(
        self,
        host: str,
        port: int = 587,
        *,
        from_email: str,
        from_name: str = "",
        username: str = "",
        password: str = "",
        tls_mode: Literal["none", "starttls", "tls"] = "none",
        validate_certs: bool = True,
        timeout: float = 30.0,
        quit_timeout: float = 5.0,
        client_factory: Callable[[float], SmtpClient] | None = None,
    ):
        if not from_email:
            raise ValueError("Sender email (from_email) is required.")
        if timeout <= 0:
            raise ValueError("timeout must be > 0")
        self.host = host
        self.port = port
        self.from_email = from_email
        self.from_name = from_name
        self.username = username
        self.password = password
        self.tls_mode = tls_mode
        self.validate_certs = validate_certs
        self.timeout = timeout
        self.quit_timeout = quit_timeout
        self._client_factory = client_factory or self._new_client

    @classmethod
    def from_settings(
        cls, settings: SmtpSettings, *, timeout: float = 30.0
    ) -> SmtpDeliveryExecutor:
        return cls(
            settings.host,
            settings.port,
            from_email=settings.from_email,
            from_name=settings.from_name,
            username=settings.username,
            password=settings.password,
            tls_mode=settings.tls_mode,
            validate_certs=settings.validate_certs,
            timeout=timeout,
        )

    def _new_client(self, timeout: float) -> SmtpClient:
        return aiosmtplib.SMTP(
            hostname=self.host,
            port=self.port,
            use_tls=self.tls_mode == "tls",
            start_tls=self.tls_mode == "starttls",
            validate_certs=self.validate_certs,
            timeout=timeout,
        )

    def build_message(self, envelope: TaskEnvelope) -> email.message.EmailMessage:
        """Build the MIME message for *envelope* (HTML body)."""
        message = email.message.EmailMessage(policy=email.policy.default)
        display_name = envelope.sender_display_name or self.from_name
        message["From"] = email.utils.formataddr((display_name, self.from_email))
        message["To"] = envelope.recipient
        message["Subject"] = envelope.subject
        message["Date"] = email.utils.format_datetime(envelope.scheduled_at)
        message.set_content(envelope.body, subtype="html", charset="utf-8")
        return message

    async def attempt(
        self,
        envelope: TaskEnvelope,
        timeout: float | None = None,
    ) -> DeliveryOutcome:
        budget = self.timeout if timeout is None else timeout
        try:
            message = self.build_message(envelope)
        except (TypeError, ValueError) as e:
            logger.error("Cannot build email for %s: %s", envelope.recipient, e)
            return DeliveryOutcome.permanent(f"Invalid message: {e}")

        client = self._client_factory(budget)
        delivered = False
        try:
            await asyncio.wait_for(self._send(client, message), timeout=budget)
            delivered = True
            outcome = DeliveryOutcome.delivered()
        except asyncio.TimeoutError:
            outcome = DeliveryOutcome.timeout(f"Delivery exceeded {budget:g}s budget")
        except aiosmtplib.SMTPRecipientsRefused as e:
            outcome = self._classify_refusals(e)
        except aiosmtplib.SMTPSenderRefused as e:
            # Our from_email was refused, not the recipient.
            logger.error(
                "SMTP server refused sender %s: %s %s", e.sender, e.code, e.message
            )
            outcome = DeliveryOutcome.transient(f"Sender refused: {e.code} {e.message}")
        except aiosmtplib.SMTPResponseException as e:
            if e.code in MAILBOX_UNAVAILABLE_CODES:
                outcome = DeliveryOutcome.permanent(f"{e.code} {e.message}")
            else:
                outcome = DeliveryOutcome.transient(f"{e.code} {e.message}")
        except (aiosmtplib.SMTPException, OSError) as e:
            outcome = DeliveryOutcome.transient(str(e) or type(e).__name__)
        finally:
            await self._teardown(client, graceful=delivered)

        if outcome.is_delivered:
            logger.info("Email sent successfully to %s", envelope.recipient)
        else:
            logger.warning(
                "Failed to send email to %s (%s): %s",
                envelope.recipient,
                outcome.kind.value,
                outcome.reason,
            )
        return outcome

    async def _send(
        self, client: SmtpClient, message: email.message.EmailMessage
    ) -> None:
        await client.connect()
        if self.username and self.password:
            await client.login(self.username, self.password)
        await client.send_message(message)

    @staticmethod
    def _classify_refusals(
        error: aiosmtplib.SMTPRecipientsRefused,
    ) -> DeliveryOutcome:
        reasons = "; ".join(
            f"{r.recipient}: {r.code} {r.message}" for r in error.recipients
        )
        if any(r.code >= 500 for r in error.recipients):
            return DeliveryOutcome.permanent(reasons or "Recipient refused")
        return DeliveryOutcome.transient(reasons or "Recipient temporarily refused")

    async def _teardown(self, client: SmtpClient, *, graceful: bool) -> None:
        """Release the session; never raises.

        After a delivered message try a polite QUIT within ``quit_timeout``.
        Otherwise (or if QUIT fails) drop the socket immediately.
        """
        if graceful:
            try:
                await asyncio.wait_for(client.quit(), timeout=self.quit_timeout)
                return
            except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as e:
                logger.warning("SMTP QUIT failed, closing transport: %s", e)
        try:
            client.close()
        except (aiosmtplib.SMTPException, OSError) as e:
            logger.warning("Error closing SMTP transport: %s", e)
