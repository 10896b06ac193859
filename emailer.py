#!/usr/bin/env python3
"""
Email delivery collaborator.

``SmtpEmailSender`` sends an HTML email over SMTP (optionally STARTTLS) in a
worker thread; ``LoggingEmailSender`` only logs and reports success, for local
runs without a mail server.
"""

import asyncio
import re
import smtplib
from dataclasses import dataclass, field
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol
from uuid import uuid4

from config import config, get_logger
from domain import Report, utcnow
from renderer import render_admin_email

logger = get_logger("emailer")

DELIVERY_SUCCEEDED = "Succeeded"
DELIVERY_RUNNING = "Running"
DELIVERY_FAILED = "Failed"

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def is_valid_email(address: Optional[str]) -> bool:
    return bool(address) and bool(_EMAIL_RE.match(address.strip()))


@dataclass
class DeliveryStatus:
    status: str
    operation_id: str = field(default_factory=lambda: str(uuid4()))
    sent_at: Optional[datetime] = None
    error_message: Optional[str] = None

    @property
    def accepted(self) -> bool:
        """Succeeded or still in progress on the provider side."""
        return self.status in (DELIVERY_SUCCEEDED, DELIVERY_RUNNING)

    @classmethod
    def failed(cls, message: str) -> "DeliveryStatus":
        return cls(status=DELIVERY_FAILED, error_message=message)


class EmailSender(Protocol):
    async def send(self, report: Report, recipient: str, *, title: str, recipient_name: str = "Administrator") -> DeliveryStatus:
        ...


def compose_report_email(report: Report, title: str, recipient_name: str) -> str:
    return render_admin_email(
        title=title,
        recipient_name=recipient_name,
        report_html=report.html_content,
        week_start=report.cutoff_date,
        week_end=report.generated_at,
        is_admin_report=True,
    )


class LoggingEmailSender:
    """Logs instead of sending; always reports success for valid addresses."""

    def __init__(self):
        self.sent = []

    async def send(self, report: Report, recipient: str, *, title: str, recipient_name: str = "Administrator") -> DeliveryStatus:
        if not is_valid_email(recipient):
            return DeliveryStatus.failed(f"Invalid recipient address '{recipient}'")
        compose_report_email(report, title, recipient_name)
        self.sent.append((recipient, report.id, title))
        logger.info(f"📧 [log backend] Would send report {report.id} '{title}' to {recipient}")
        return DeliveryStatus(status=DELIVERY_SUCCEEDED, sent_at=utcnow())


class SmtpEmailSender:
    """SMTP delivery with HTML body."""

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: Optional[bool] = None,
        sender: Optional[str] = None,
    ):
        self.host = host or config.SMTP_HOST
        self.port = port or config.SMTP_PORT
        self.user = user if user is not None else config.SMTP_USER
        self.password = password if password is not None else config.SMTP_PASSWORD
        self.use_tls = config.SMTP_USE_TLS if use_tls is None else use_tls
        self.sender = sender or config.EMAIL_FROM

    def _build_message(self, subject: str, html: str, recipient: str) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = recipient
        msg.attach(MIMEText("This report is best viewed in an HTML-capable email client.", "plain", "utf-8"))
        msg.attach(MIMEText(html, "html", "utf-8"))
        return msg

    def _deliver(self, msg: MIMEMultipart, recipient: str) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=config.HTTP_TIMEOUT) as server:
            if self.use_tls:
                server.starttls()
            if self.user and self.password:
                server.login(self.user, self.password)
            server.sendmail(self.sender, [recipient], msg.as_string())

    async def send(self, report: Report, recipient: str, *, title: str, recipient_name: str = "Administrator") -> DeliveryStatus:
        if not is_valid_email(recipient):
            return DeliveryStatus.failed(f"Invalid recipient address '{recipient}'")
        if not self.host:
            return DeliveryStatus.failed("SMTP_HOST is not configured")
        html = compose_report_email(report, title, recipient_name)
        msg = self._build_message(title, html, recipient)
        try:
            await asyncio.to_thread(self._deliver, msg, recipient)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Email delivery to {recipient} failed: {e}")
            return DeliveryStatus.failed(str(e))
        logger.info(f"📧 Email '{title}' sent to {recipient}")
        return DeliveryStatus(status=DELIVERY_SUCCEEDED, sent_at=utcnow())


def create_email_sender() -> EmailSender:
    if config.EMAIL_BACKEND == "smtp":
        return SmtpEmailSender()
    if config.EMAIL_BACKEND != "log":
        logger.warning(f"Unknown EMAIL_BACKEND '{config.EMAIL_BACKEND}', falling back to log backend")
    return LoggingEmailSender()
