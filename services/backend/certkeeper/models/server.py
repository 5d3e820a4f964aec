"""
Managed Windows server model.
"""

from typing import Optional, List
from datetime import datetime
from sqlalchemy import String, DateTime, JSON, Uuid
from sqlalchemy.orm import Mapped, mapped_column
import uuid

from certkeeper.core.database import Base, utcnow


class Server(Base):
    """Server database model."""

    __tablename__ = "servers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    hostname: Mapped[str] = mapped_column(String(253), nullable=False, index=True)
    fqdn: Mapped[str] = mapped_column(String(253), nullable=False, unique=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45))
    roles: Mapped[List[str]] = mapped_column(JSON, default=list)  # IIS, Exchange, ADFS, RDS, SQL, Other
    status: Mapped[str] = mapped_column(String(20), default="unknown")

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Server(id={self.id}, fqdn='{self.fqdn}')>"

    def has_role(self, role: str) -> bool:
        return role in (self.roles or [])
