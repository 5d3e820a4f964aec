"""
Certificate signing request model, the entity driven by the CSR workflow.
"""

from typing import Optional, List, Dict, Any
from datetime import datetime
from sqlalchemy import String, Text, DateTime, Integer, JSON, Index, Uuid, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column
import uuid

from certkeeper.core.database import Base, utcnow


class CSRStatus:
    DRAFT = "draft"
    PENDING = "pending"
    SUBMITTED = "submitted"
    ISSUED = "issued"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StepStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


STEP_GENERATE = "Generate CSR"
STEP_SUBMIT = "Submit to CA"
STEP_INSTALL = "Install Certificate"

WORKFLOW_STEP_NAMES = (STEP_GENERATE, STEP_SUBMIT, STEP_INSTALL)


def initial_workflow_steps() -> List[Dict[str, Any]]:
    return [{"step": name, "status": StepStatus.PENDING} for name in WORKFLOW_STEP_NAMES]


class CertificateRequest(Base):
    """Certificate signing request database model."""

    __tablename__ = "certificate_requests"

    # Primary key
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Subject
    common_name: Mapped[str] = mapped_column(String(255), nullable=False)
    subject_alternative_names: Mapped[List[str]] = mapped_column(JSON, default=list)
    subject: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)  # organization, organizationalUnit, locality, state, country

    # Key parameters
    key_size: Mapped[int] = mapped_column(Integer, default=2048)
    key_algorithm: Mapped[str] = mapped_column(String(20), default="RSA")
    hash_algorithm: Mapped[str] = mapped_column(String(20), default="SHA256")
    template_name: Mapped[Optional[str]] = mapped_column(String(255))

    # Targets
    target_ca_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, ForeignKey("certificate_authorities.id"))
    target_server_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, ForeignKey("servers.id"))

    # Workflow state
    status: Mapped[str] = mapped_column(String(20), default=CSRStatus.DRAFT)
    csr_pem: Mapped[Optional[str]] = mapped_column(Text)
    private_key_location: Mapped[Optional[str]] = mapped_column(String(512))
    issued_certificate_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, ForeignKey("certificates.id"))
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    workflow_steps: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=initial_workflow_steps)

    # Provenance
    requested_by: Mapped[str] = mapped_column(String(255), nullable=False)
    requested_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_certificate_requests_status", "status"),
        Index("ix_certificate_requests_common_name", "common_name"),
    )

    def __repr__(self) -> str:
        return f"<CertificateRequest(id={self.id}, cn='{self.common_name}', status='{self.status}')>"

    def get_step(self, step_name: str) -> Optional[Dict[str, Any]]:
        for step in self.workflow_steps or []:
            if step.get("step") == step_name:
                return step
        return None

    def step_status(self, step_name: str) -> Optional[str]:
        step = self.get_step(step_name)
        return step.get("status") if step else None
