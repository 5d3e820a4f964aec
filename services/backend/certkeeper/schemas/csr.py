"""
Pydantic schemas for certificate signing request operations.
"""

from typing import Optional, List
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field
import uuid


class CSRSubject(BaseModel):
    """Optional distinguished name components besides the common name."""
    model_config = ConfigDict(populate_by_name=True)

    organization: Optional[str] = Field(None, max_length=200)
    organizational_unit: Optional[str] = Field(None, alias="organizationalUnit", max_length=200)
    locality: Optional[str] = Field(None, max_length=200)
    state: Optional[str] = Field(None, max_length=200)
    country: Optional[str] = Field(None, max_length=200)

    def to_document(self) -> dict:
        """Stored form, camelCase keys, unset fields dropped."""
        return self.model_dump(by_alias=True, exclude_none=True)


class CSRCreate(BaseModel):
    """Schema for creating a CSR request.

    Field contents are validated when the request is generated, not here.
    """
    common_name: str = Field(..., min_length=1, max_length=255, description="Common Name")
    subject_alternative_names: List[str] = Field(default_factory=list, description="DNS SANs")
    subject: CSRSubject = Field(default_factory=CSRSubject)
    key_size: int = Field(2048, description="RSA key length")
    key_algorithm: str = Field("RSA", description="RSA or ECDSA")
    hash_algorithm: str = Field("SHA256", description="SHA256, SHA384 or SHA512")
    template_name: Optional[str] = Field(None, max_length=255, description="CA certificate template")
    target_ca_id: Optional[uuid.UUID] = None
    target_server_id: Optional[uuid.UUID] = None


class CSRUpdate(BaseModel):
    """Whitelisted fields that may change while a request is a draft."""
    common_name: Optional[str] = Field(None, min_length=1, max_length=255)
    subject_alternative_names: Optional[List[str]] = None
    subject: Optional[CSRSubject] = None
    key_size: Optional[int] = None
    key_algorithm: Optional[str] = None
    hash_algorithm: Optional[str] = None
    template_name: Optional[str] = Field(None, max_length=255)
    target_ca_id: Optional[uuid.UUID] = None
    target_server_id: Optional[uuid.UUID] = None


class WorkflowStepResponse(BaseModel):
    step: str
    status: str
    completed_at: Optional[datetime] = Field(None, validation_alias="completedAt")
    error: Optional[str] = None


class CSRResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    common_name: str
    subject_alternative_names: List[str]
    subject: dict
    key_size: int
    key_algorithm: str
    hash_algorithm: str
    template_name: Optional[str] = None
    target_ca_id: Optional[uuid.UUID] = None
    target_server_id: Optional[uuid.UUID] = None
    status: str
    csr_pem: Optional[str] = None
    private_key_location: Optional[str] = None
    issued_certificate_id: Optional[uuid.UUID] = None
    error_message: Optional[str] = None
    workflow_steps: List[WorkflowStepResponse]
    requested_by: str
    requested_at: datetime
    processed_at: Optional[datetime] = None


class CSRListResponse(BaseModel):
    items: List[CSRResponse]
    total: int
    page: int
    size: int
    pages: int


class CSRGenerateResponse(BaseModel):
    message: str
    csr_pem: str


class CSRSubmitResponse(BaseModel):
    message: str
    status: str
    issued_certificate_id: Optional[uuid.UUID] = None
