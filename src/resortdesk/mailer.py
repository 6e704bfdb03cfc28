"""Outbound reminder email over SMTP."""

import asyncio
import logging
import smtplib
import ssl
import uuid
from contextlib import contextmanager
from email.message import EmailMessage
from email.utils import formatdate
from typing import TYPE_CHECKING, Iterator

from .reminder_content import build_reminder

if TYPE_CHECKING:
    from .config import Config, EmailConfig
    from .db import Invoice

logger = logging.getLogger("resortdesk.mailer")


class DeliveryError(Exception):
    """A reminder could not be handed to the mail server. Retried on the next run."""


def _sanitize_header(value: str) -> str:
    """Strip newlines from header values to prevent injection."""
    return value.replace("\r", " ").replace("\n", " ").strip()


def _generate_message_id(domain: str) -> str:
    """Generate a unique Message-ID for an email."""
    unique_id = uuid.uuid4().hex
    return f"<{unique_id}@{domain}>"


def send_email(
    to: str,
    subject: str,
    body: str,
    config: "EmailConfig",
    content_type: str = "plain",
) -> str:
    """Send an email and return its Message-ID."""
    from_address = config.from_addr
    domain = from_address.split("@")[-1] if "@" in from_address else "localhost"
    message_id = _generate_message_id(domain)

    msg = EmailMessage()
    msg["To"] = _sanitize_header(to)
    msg["Subject"] = _sanitize_header(subject)
    msg["From"] = _sanitize_header(config.sender)
    msg["Date"] = formatdate(localtime=True)
    msg["Message-ID"] = message_id
    if config.reply_to:
        msg["Reply-To"] = _sanitize_header(config.reply_to)
    msg.set_content(body, subtype=content_type)

    try:
        _send_smtp(msg, config)
    except (smtplib.SMTPException, OSError) as e:
        raise DeliveryError(f"SMTP delivery to {to} failed: {e}") from e

    return message_id


@contextmanager
def _smtp_session(config: "EmailConfig") -> Iterator[smtplib.SMTP]:
    """Authenticated SMTP session; each socket operation is bounded by ``config.timeout``."""
    # Port 587 typically uses STARTTLS, port 465 uses implicit TLS
    if config.smtp_port == 465:
        context = ssl.create_default_context()
        connection = smtplib.SMTP_SSL(
            config.smtp_host, config.smtp_port, context=context, timeout=config.timeout,
        )
    else:
        connection = smtplib.SMTP(config.smtp_host, config.smtp_port, timeout=config.timeout)

    with connection as server:
        if config.smtp_port != 465:
            server.starttls()
        if config.smtp_user:
            server.login(config.smtp_user, config.smtp_password)
        yield server


def _send_smtp(msg: EmailMessage, config: "EmailConfig") -> None:
    """Send an email message via SMTP."""
    with _smtp_session(config) as server:
        server.send_message(msg)


async def send_reminder(
    config: "Config",
    invoice: "Invoice",
    reminder_type: str,
    template: str | None = None,
    subject: str | None = None,
) -> dict:
    """Send a payment reminder for an invoice.

    Returns {"success": True, "id": <Message-ID>}; raises DeliveryError on failure.
    The SMTP exchange runs in a worker thread so the event loop stays free.
    """
    if not config.email.enabled:
        raise DeliveryError("email delivery is disabled")
    if not invoice.email:
        raise DeliveryError(f"invoice {invoice.invoice_number} has no email address")

    final_subject, body, content_type = build_reminder(
        invoice, reminder_type, template, subject, business_name=config.business_name,
    )
    message_id = await asyncio.to_thread(
        send_email, invoice.email, final_subject, body, config.email, content_type,
    )
    logger.debug(
        "Sent %s reminder for %s to %s (%s)",
        reminder_type, invoice.invoice_number, invoice.email, message_id,
    )
    return {"success": True, "id": message_id}


def verify_email_config(config: "EmailConfig") -> bool:
    """Check that the SMTP server accepts a connection and our credentials."""
    try:
        with _smtp_session(config):
            pass
    except (smtplib.SMTPException, OSError) as e:
        logger.error("Email configuration check failed: %s", e)
        return False
    logger.info("Email configuration verified (%s:%d)", config.smtp_host, config.smtp_port)
    return True
