from __future__ import annotations

import asyncio
import html
import re
import smtplib
import ssl
from collections import deque
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from enum import Enum
from typing import Any, Deque, Dict, Mapping, Optional, Set

import httpx

from caldost.logging import get_logger, redact_contact

logger = get_logger(__name__)


class Channel(str, Enum):
    EMAIL = "email"
    SMS = "sms"


class Template(str, Enum):
    ADMIN_LOGIN_OTP = "admin_login_otp"
    SUPER_ADMIN_LOGIN_OTP = "super_admin_login_otp"
    PASSWORD_RESET_OTP = "password_reset_otp"
    COMPLAINANT_LOGIN_OTP = "complainant_login_otp"
    COMPLAINT_REGISTERED = "complaint_registered"
    COMPLAINT_UPDATED = "complaint_updated"
    COMPLAINT_CLOSED = "complaint_closed"


_OTP_TEMPLATES = {
    Template.ADMIN_LOGIN_OTP,
    Template.SUPER_ADMIN_LOGIN_OTP,
    Template.PASSWORD_RESET_OTP,
    Template.COMPLAINANT_LOGIN_OTP,
}


@dataclass
class Message:
    subject: str
    text: str
    html: str


_HTML_SHELL = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .code {{ font-size: 28px; letter-spacing: 6px; font-weight: 700; }}
        .button {{ display: inline-block; background: #1d4ed8; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{heading}</h1>
        {body}
        <div class="footer">
            <p>CALDOST Grievance Portal</p>
        </div>
    </div>
</body>
</html>
"""


def _otp_message(subject: str, heading: str, context: Mapping[str, Any]) -> Message:
    code = context["otp"]
    minutes = max(1, int(context.get("expires_in_seconds", 300)) // 60)
    text = (
        f"{heading}\n\nYour verification code is {code}. "
        f"It expires in {minutes} minutes.\n\n"
        "If you didn't request this, you can safely ignore this message.\n"
    )
    body = (
        f'<p>Your verification code is:</p><p class="code">{code}</p>'
        f"<p>This code will expire in {minutes} minutes.</p>"
        "<p>If you didn't request this, you can safely ignore this email.</p>"
    )
    return Message(subject, text, _HTML_SHELL.format(heading=heading, body=body))


def render(template: Template, context: Mapping[str, Any]) -> Message:
    """Build the subject and bodies for a template."""
    if template is Template.ADMIN_LOGIN_OTP:
        return _otp_message(
            "CALDOST Admin Login Verification Code", "Admin login verification", context
        )
    if template is Template.SUPER_ADMIN_LOGIN_OTP:
        return _otp_message(
            "CALDOST Super Admin Login Verification Code",
            "Super admin login verification",
            context,
        )
    if template is Template.PASSWORD_RESET_OTP:
        return _otp_message("CALDOST Password Reset Code", "Reset your password", context)
    if template is Template.COMPLAINANT_LOGIN_OTP:
        return _otp_message("CALDOST Login Verification Code", "Track your complaints", context)

    number = context["complaint_number"]
    status = context.get("status", "")
    # Admin notes are free text; escape everything interpolated into HTML
    safe_number = html.escape(number)
    safe_status = html.escape(status)
    if template is Template.COMPLAINT_REGISTERED:
        link = context["access_link"]
        safe_link = html.escape(link)
        text = (
            f"Your complaint {number} has been registered.\n\n"
            f"View or update it here (valid for 24 hours):\n{link}\n"
        )
        body = (
            f"<p>Your complaint <strong>{safe_number}</strong> has been registered.</p>"
            f'<p style="margin: 30px 0;"><a href="{safe_link}" class="button">View complaint</a></p>'
            "<p>This link will expire in 24 hours.</p>"
            f"<p>If the button doesn't work, copy and paste this URL: {safe_link}</p>"
        )
        return Message(
            f"Complaint {number} registered",
            text,
            _HTML_SHELL.format(heading="Complaint registered", body=body),
        )
    if template is Template.COMPLAINT_UPDATED:
        note = context.get("note")
        text = f"Your complaint {number} was updated. Current status: {status}.\n"
        body = f"<p>Your complaint <strong>{safe_number}</strong> was updated.</p><p>Current status: {safe_status}</p>"
        if note:
            text += f"\nLatest note: {note}\n"
            body += f"<p>Latest note: {html.escape(note)}</p>"
        return Message(
            f"Complaint {number} updated",
            text,
            _HTML_SHELL.format(heading="Complaint updated", body=body),
        )
    if template is Template.COMPLAINT_CLOSED:
        note = context.get("final_note")
        text = f"Your complaint {number} has been marked {status}.\n"
        body = f"<p>Your complaint <strong>{safe_number}</strong> has been marked {safe_status}.</p>"
        if note:
            text += f"\nResolution: {note}\n"
            body += f"<p>Resolution: {html.escape(note)}</p>"
        return Message(
            f"Complaint {number} {status.lower()}",
            text,
            _HTML_SHELL.format(heading="Complaint closed", body=body),
        )
    raise ValueError(f"unknown template {template}")


class EmailService:
    """SMTP delivery with a logging fallback when not configured (dev mode)."""

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "CALDOST Grievance Portal",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def send(self, to_email: str, message: Message) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_contact(to_email),
                subject=message.subject,
                body_preview=message.text[:200],
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = message.subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            msg.attach(MIMEText(message.text, "plain"))
            msg.attach(MIMEText(message.html, "html"))

            context = ssl.create_default_context()
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=redact_contact(to_email), subject=message.subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_contact(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=redact_contact(to_email), error=str(e))
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_contact(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=redact_contact(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False


_NON_DIGITS = re.compile(r"\D")


class SmsService:
    """Fast2SMS-style HTTP gateway.

    The gateway is called with a GET carrying the API key in the
    ``authorization`` parameter and answers ``{"return": true}`` on success.
    OTPs go over the ``otp`` route, everything else over the quick route.
    """

    def __init__(
        self,
        *,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        sender_id: str = "CALDST",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_url = api_url
        self.api_key = api_key
        self.sender_id = sender_id
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.api_url and self.api_key)

    @staticmethod
    def normalize_number(phone: str) -> str:
        digits = _NON_DIGITS.sub("", phone)
        # The gateway expects bare ten digit national numbers.
        if len(digits) == 12 and digits.startswith("91"):
            digits = digits[2:]
        return digits

    async def send(self, phone: str, message: Message, *, otp: Optional[str] = None) -> bool:
        number = self.normalize_number(phone)
        if not self.is_configured:
            logger.info(
                "sms_dev_mode",
                to=redact_contact(number),
                body_preview=message.text[:160],
            )
            return True

        params: Dict[str, str] = {
            "authorization": self.api_key or "",
            "numbers": number,
            "sender_id": self.sender_id,
        }
        if otp is not None:
            params["route"] = "otp"
            params["variables_values"] = otp
        else:
            params["route"] = "q"
            params["message"] = message.text

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(self.api_url, params=params)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as exc:
            logger.error(
                "sms_send_failed",
                to=redact_contact(number),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        except ValueError as exc:
            logger.error("sms_bad_response", to=redact_contact(number), error=str(exc))
            return False

        if body.get("return") is not True:
            logger.error(
                "sms_rejected", to=redact_contact(number), gateway_message=body.get("message")
            )
            return False
        logger.info("sms_sent", to=redact_contact(number), request_id=body.get("request_id"))
        return True


@dataclass
class DeadLetter:
    channel: Channel
    recipient: str
    template: Template
    reason: str


class NotificationDispatcher:
    """Fire-and-forget delivery of templated email and SMS.

    ``notify`` schedules delivery on the running loop and returns at once;
    callers never see delivery failures. Failed sends are logged and kept in a
    bounded dead-letter queue for inspection.
    """

    def __init__(
        self,
        email: EmailService,
        sms: SmsService,
        *,
        dead_letter_limit: int = 200,
    ) -> None:
        self.email = email
        self.sms = sms
        self.dead_letters: Deque[DeadLetter] = deque(maxlen=dead_letter_limit)
        self._pending: Set[asyncio.Task] = set()

    def notify(
        self,
        channel: Channel,
        contact: Optional[str],
        template: Template,
        context: Mapping[str, Any],
    ) -> None:
        if not contact:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._dead_letter(channel, contact, template, "no running event loop")
            return
        task = loop.create_task(self.deliver(channel, contact, template, dict(context)))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def deliver(
        self,
        channel: Channel,
        contact: str,
        template: Template,
        context: Dict[str, Any],
    ) -> bool:
        try:
            message = render(template, context)
            if channel is Channel.EMAIL:
                sent = await asyncio.to_thread(self.email.send, contact, message)
            else:
                otp = context.get("otp") if template in _OTP_TEMPLATES else None
                sent = await self.sms.send(contact, message, otp=otp)
        except Exception as exc:
            logger.error(
                "notification_delivery_error",
                channel=channel.value,
                template=template.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            sent = False
        if not sent:
            self._dead_letter(channel, contact, template, "delivery failed")
        return sent

    def _dead_letter(
        self, channel: Channel, contact: str, template: Template, reason: str
    ) -> None:
        self.dead_letters.append(DeadLetter(channel, contact, template, reason))
        logger.warning(
            "notification_dead_letter",
            channel=channel.value,
            recipient=redact_contact(contact),
            template=template.value,
            reason=reason,
        )

    async def drain(self) -> None:
        """Wait for in-flight deliveries; used at shutdown and in tests."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


__all__ = [
    "Channel",
    "DeadLetter",
    "EmailService",
    "Message",
    "NotificationDispatcher",
    "SmsService",
    "Template",
    "render",
]
