"""
Certificate expiration notifications

For each enabled threshold (longest lead time first) finds the certificates whose
expiry falls in that day's window and mails the configured recipients once per
certificate and threshold. A certificate's notification history is only extended
after the mail server has accepted the message.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any, Protocol
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from jinja2 import Environment, PackageLoader, select_autoescape
import structlog

from certkeeper.core.config import get_settings
from certkeeper.core.database import utcnow
from certkeeper.models import Certificate, CertificateStatus, NotificationSettings
from certkeeper.models.certificate import threshold_type
from certkeeper.models.notification_settings import default_thresholds
from certkeeper.schemas.notification import NotificationSettingsUpdate
from certkeeper.services.directory_service import UserDirectory
from certkeeper.services.mail_service import MailDeliveryError, get_mailer

logger = structlog.get_logger()

_templates = Environment(
    loader=PackageLoader("certkeeper", "templates"),
    autoescape=select_autoescape(["html"]),
)


class Mailer(Protocol):
    async def send(self, to: List[str], subject: str, html: str) -> None: ...


class Directory(Protocol):
    async def resolve_user_email(self, username: str) -> Optional[str]: ...

    async def resolve_users_by_role(self, role: str) -> List[str]: ...


@dataclass
class NotificationResult:
    success: bool = True
    sent: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)


def severity_for(days: int) -> str:
    if days <= 7:
        return "CRITICAL"
    if days <= 30:
        return "WARNING"
    return "INFO"


def build_subject(certificate: Certificate, days: int) -> str:
    return f"[{severity_for(days)}] Certificate Expiring in {days} Days: {certificate.common_name}"


def render_expiration_email(certificate: Certificate, days: int) -> str:
    return _templates.get_template("expiration_notice.html").render(
        certificate=certificate,
        days=days,
        severity=severity_for(days),
        issuer_name=(certificate.issuer or {}).get("commonName") or "Unknown",
        deployed_servers=", ".join(certificate.deployed_server_names()) or "Unknown",
        app_name=get_settings().app_name,
    )


async def get_notification_settings(db: AsyncSession) -> NotificationSettings:
    """The global notification configuration, created with defaults on first use."""
    result = await db.execute(select(NotificationSettings).order_by(NotificationSettings.id).limit(1))
    settings = result.scalar_one_or_none()
    if settings is None:
        settings = NotificationSettings(
            enabled=True,
            thresholds=default_thresholds(),
            recipients=[],
            schedule_hour=get_settings().notification_schedule_hour,
        )
        db.add(settings)
        await db.commit()
        await db.refresh(settings)
        logger.info("Created default notification settings")
    return settings


async def update_notification_settings(db: AsyncSession, data: NotificationSettingsUpdate) -> NotificationSettings:
    """Apply the fields present in ``data``; the others keep their stored value."""
    settings = await get_notification_settings(db)
    changes = data.model_dump(include=data.model_fields_set, exclude_none=True)

    for key, value in changes.items():
        if key == "thresholds":
            value = sorted(value, key=lambda t: t["days"], reverse=True)
        setattr(settings, key, value)

    await db.commit()
    await db.refresh(settings)

    logger.info("Notification settings updated", fields=sorted(changes))
    return settings


async def resolve_recipients(recipients: List[Dict[str, Any]], directory: Directory) -> List[str]:
    """
    Expand recipient entries into mail addresses.

    ``email`` entries are used as-is, ``user`` entries resolve through the directory,
    ``role`` entries expand to every user holding the role. Duplicates are dropped,
    first occurrence wins.
    """
    emails: Dict[str, None] = {}

    for recipient in recipients or []:
        kind = recipient.get("type")
        value = recipient.get("value")
        if not value:
            continue

        if kind == "email":
            emails.setdefault(value)
        elif kind == "user":
            email = await directory.resolve_user_email(value)
            if email:
                emails.setdefault(email)
        elif kind == "role":
            for email in await directory.resolve_users_by_role(value):
                emails.setdefault(email)
        else:
            logger.warning("Unknown recipient type", recipient_type=kind)

    return list(emails)


async def find_certificates_expiring_in_days(db: AsyncSession, days: int, now: datetime) -> List[Certificate]:
    """Non-revoked certificates with validity ending in ``[now + (days-1)d, now + days·d]``."""
    result = await db.execute(
        select(Certificate)
        .where(
            Certificate.status != CertificateStatus.REVOKED,
            Certificate.valid_to >= now + timedelta(days=days - 1),
            Certificate.valid_to <= now + timedelta(days=days),
        )
        .order_by(Certificate.valid_to)
    )
    return list(result.scalars().all())


async def send_expiration_notifications(
    db: AsyncSession,
    mailer: Optional[Mailer] = None,
    directory: Optional[Directory] = None,
    now: Optional[datetime] = None,
) -> NotificationResult:
    """
    Send due expiration notices.

    Per-certificate failures (rendering or delivery) are counted and reported
    without stopping the run. A failure to load settings or query certificates
    marks the result unsuccessful; it is never raised.
    """
    mailer = mailer or get_mailer()
    directory = directory or UserDirectory(db)
    now = now or utcnow()
    result = NotificationResult()

    try:
        settings = await get_notification_settings(db)
        if not settings.enabled:
            logger.info("Notifications are disabled")
            return result

        thresholds = settings.enabled_threshold_days()
        if not thresholds:
            logger.info("No notification thresholds enabled")
            return result

        recipients = await resolve_recipients(settings.recipients, directory)
        if not recipients:
            logger.warning("No notification recipients configured")
            return result

        for days in thresholds:
            notification_type = threshold_type(days)
            certificates = await find_certificates_expiring_in_days(db, days, now)

            for certificate in certificates:
                if certificate.has_notification(notification_type):
                    continue

                try:
                    await mailer.send(
                        recipients,
                        build_subject(certificate, days),
                        render_expiration_email(certificate, days),
                    )
                except Exception as e:
                    # one certificate's failure never blocks the rest of the run
                    result.failed += 1
                    result.errors.append(f"Failed to send for {certificate.common_name}: {e}")
                    logger.error(
                        "Failed to send expiration notice",
                        certificate_id=str(certificate.id),
                        common_name=certificate.common_name,
                        days=days,
                        error=str(e),
                        delivery_error=isinstance(e, MailDeliveryError),
                    )
                    continue

                certificate.notifications_sent = [
                    *(certificate.notifications_sent or []),
                    {"type": notification_type, "sentAt": utcnow().isoformat(), "recipients": recipients},
                ]
                await db.commit()

                result.sent += 1
                logger.info(
                    "Sent expiration notice",
                    certificate_id=str(certificate.id),
                    common_name=certificate.common_name,
                    days=days,
                )
    except Exception as e:
        result.success = False
        result.errors.append(f"Notification job error: {e}")
        logger.error("Notification job error", error=str(e))

    return result


async def send_test_email(to: str, mailer: Optional[Mailer] = None) -> bool:
    """Send a test message; True when the mail server accepted it."""
    mailer = mailer or get_mailer()
    html = _templates.get_template("test_email.html").render(
        app_name=get_settings().app_name,
        sent_at=utcnow().isoformat() + "Z",
    )
    try:
        await mailer.send([to], f"{get_settings().app_name} - Test Email", html)
    except MailDeliveryError as e:
        logger.error("Test email failed", to=to, error=str(e))
        return False
    return True
