"""
Certificate Authority model.
"""

from typing import Optional, List, Dict, Any
from datetime import datetime
from sqlalchemy import String, DateTime, Boolean, Integer, JSON, Uuid
from sqlalchemy.orm import Mapped, mapped_column
import uuid

from certkeeper.core.database import Base, utcnow


class CertificateAuthority(Base):
    """Certificate Authority database model.

    ``config_string`` is the ``host\\caname`` identity understood by certutil and certreq.
    """

    __tablename__ = "certificate_authorities"

    # Primary key
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Identity
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(50), nullable=False)  # 'root', 'subordinate', 'issuing'
    hostname: Mapped[str] = mapped_column(String(253), nullable=False)
    config_string: Mapped[str] = mapped_column(String(500), nullable=False)

    # Operational status
    status: Mapped[str] = mapped_column(String(20), default="unknown")  # online, offline, unknown

    # Cached template list: [{name, displayName, oid}]
    templates: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)

    # Sync
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    sync_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    sync_interval_minutes: Mapped[int] = mapped_column(Integer, default=60)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<CertificateAuthority(id={self.id}, name='{self.name}', config='{self.config_string}')>"
