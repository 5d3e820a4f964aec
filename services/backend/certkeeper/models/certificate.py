"""
Certificate model for certificates discovered on, or issued by, the estate's CAs.
"""

from typing import Optional, List, Dict, Any
from datetime import datetime
from sqlalchemy import String, DateTime, JSON, Index, Uuid
from sqlalchemy.orm import Mapped, mapped_column
import uuid

from certkeeper.core.database import Base, utcnow


class CertificateStatus:
    ACTIVE = "active"
    EXPIRING = "expiring"
    EXPIRED = "expired"
    REVOKED = "revoked"


def threshold_type(days: int) -> str:
    """Notification record type for an expiry threshold, e.g. ``7day``."""
    return f"{days}day"


class Certificate(Base):
    """Certificate database model.

    Field ownership is split between writers:
    the reconciler owns ``status`` (active/expiring/expired band) and the sync fields,
    the notification dispatcher owns ``notifications_sent``,
    and the deployment service owns ``deployed_to``.
    """

    __tablename__ = "certificates"

    # Primary key
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Authoritative identifiers from the issuing CA
    serial_number: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    thumbprint: Mapped[Optional[str]] = mapped_column(String(128), unique=True)

    # Subject information
    common_name: Mapped[str] = mapped_column(String(255), nullable=False)
    subject_alternative_names: Mapped[List[str]] = mapped_column(JSON, default=list)
    subject: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    issuer: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)  # {caId, commonName}

    # Validity period
    valid_from: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    valid_to: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    # Classification
    key_usage: Mapped[List[str]] = mapped_column(JSON, default=list)
    extended_key_usage: Mapped[List[str]] = mapped_column(JSON, default=list)
    template_name: Mapped[Optional[str]] = mapped_column(String(255))

    # Lifecycle
    status: Mapped[str] = mapped_column(String(20), default=CertificateStatus.ACTIVE)  # active, expiring, expired, revoked
    deployed_to: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)
    notifications_sent: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)

    # Discovery bookkeeping: {discoveredAt, lastSyncedAt, createdBy}
    metadata_: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, default=dict)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_certificates_valid_to_status", "valid_to", "status"),
        Index("ix_certificates_common_name", "common_name"),
        Index("ix_certificates_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<Certificate(id={self.id}, cn='{self.common_name}', serial='{self.serial_number}')>"

    @property
    def days_until_expiration(self) -> int:
        """Whole days until expiration, rounded up (negative if expired)."""
        delta = self.valid_to - utcnow()
        return -((-int(delta.total_seconds())) // 86400)

    def has_notification(self, notification_type: str) -> bool:
        """Check whether an expiry notice of the given type was already sent."""
        return any(n.get("type") == notification_type for n in self.notifications_sent or [])

    def deployed_server_names(self) -> List[str]:
        return [d.get("serverName", "") for d in self.deployed_to or [] if d.get("serverName")]
