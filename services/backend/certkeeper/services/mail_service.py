"""
SMTP mail transport
"""

import asyncio
import smtplib
from email.message import EmailMessage
from typing import Optional, List
import structlog

from certkeeper.core.config import Settings, get_settings

logger = structlog.get_logger()


class MailDeliveryError(Exception):
    """The SMTP server did not accept the message"""
    pass


class SmtpMailer:
    """Sends HTML mail through the configured relay."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def build_message(self, to: List[str], subject: str, html: str) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.settings.smtp_from
        msg["To"] = ", ".join(to)
        msg.set_content("This message requires an HTML capable mail client.")
        msg.add_alternative(html, subtype="html")
        return msg

    def _send_sync(self, msg: EmailMessage) -> None:
        s = self.settings
        smtp_class = smtplib.SMTP_SSL if s.smtp_secure else smtplib.SMTP
        with smtp_class(s.smtp_host, s.smtp_port, timeout=s.smtp_timeout_seconds) as server:
            if not s.smtp_secure and s.smtp_auth_enabled:
                server.starttls()
            if s.smtp_auth_enabled:
                server.login(s.smtp_user, s.smtp_password or "")
            server.send_message(msg)

    async def send(self, to: List[str], subject: str, html: str) -> None:
        """
        Deliver one message to all recipients.

        Raises:
            MailDeliveryError: On any SMTP or connection failure
        """
        if not to:
            raise MailDeliveryError("No recipients")

        msg = self.build_message(to, subject, html)
        try:
            await asyncio.to_thread(self._send_sync, msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Email delivery failed", subject=subject, recipients=to, error=str(e))
            raise MailDeliveryError(str(e)) from e

        logger.info("Email sent", subject=subject, recipients=len(to))


# Global mailer instance
_mailer = None


def get_mailer() -> SmtpMailer:
    global _mailer
    if _mailer is None:
        _mailer = SmtpMailer()
    return _mailer
