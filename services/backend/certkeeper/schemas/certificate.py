"""
Pydantic schemas for Certificate operations.
"""

from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
from pydantic import BaseModel, ConfigDict, Field, field_validator
import re
import uuid

# ConvertTo-Json in Windows PowerShell 5.1 renders DateTime as "/Date(ms)/"
_PS_DATE_RE = re.compile(r"^\\?/Date\((-?\d+)(?:[+-]\d{4})?\)\\?/$")


def _parse_powershell_date(v):
    if isinstance(v, str):
        match = _PS_DATE_RE.match(v.strip())
        if match:
            return datetime.fromtimestamp(int(match.group(1)) / 1000, tz=timezone.utc)
    return v


def _to_naive_utc(v: datetime) -> datetime:
    if v.tzinfo is not None:
        return v.astimezone(timezone.utc).replace(tzinfo=None)
    return v


class IssuedCertificateRecord(BaseModel):
    """One issued-certificate record as emitted by Get-IssuedCertificates.ps1."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    serial_number: str = Field(..., alias="SerialNumber", min_length=1, max_length=128)
    thumbprint: Optional[str] = Field(None, alias="Thumbprint")
    common_name: Optional[str] = Field(None, alias="CommonName")
    subject: Optional[str] = Field(None, alias="Subject")
    sans: List[str] = Field(default_factory=list, alias="SANs")
    not_before: datetime = Field(..., alias="NotBefore")
    not_after: datetime = Field(..., alias="NotAfter")
    template: Optional[str] = Field(None, alias="Template")

    @field_validator("serial_number", mode="before")
    @classmethod
    def normalize_serial(cls, v):
        if isinstance(v, str):
            return re.sub(r"\s", "", v).upper()
        return v

    @field_validator("thumbprint", mode="before")
    @classmethod
    def normalize_thumbprint(cls, v):
        if isinstance(v, str):
            v = re.sub(r"\s", "", v).upper()
            return v or None
        return v

    @field_validator("sans", mode="before")
    @classmethod
    def coerce_sans(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return v

    @field_validator("not_before", "not_after", mode="before")
    @classmethod
    def parse_powershell_date(cls, v):
        return _parse_powershell_date(v)

    @field_validator("not_before", "not_after")
    @classmethod
    def to_naive_utc(cls, v: datetime) -> datetime:
        return _to_naive_utc(v)


class RemoteCertificateRecord(BaseModel):
    """A certificate found in a server's LocalMachine\\My store."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    thumbprint: str = Field(..., alias="Thumbprint", min_length=1, max_length=128)
    subject: Optional[str] = Field(None, alias="Subject")
    issuer: Optional[str] = Field(None, alias="Issuer")
    not_before: datetime = Field(..., alias="NotBefore")
    not_after: datetime = Field(..., alias="NotAfter")

    @field_validator("thumbprint", mode="before")
    @classmethod
    def normalize_thumbprint(cls, v):
        if isinstance(v, str):
            return re.sub(r"\s", "", v).upper()
        return v

    @field_validator("not_before", "not_after", mode="before")
    @classmethod
    def parse_powershell_date(cls, v):
        return _parse_powershell_date(v)

    @field_validator("not_before", "not_after")
    @classmethod
    def to_naive_utc(cls, v: datetime) -> datetime:
        return _to_naive_utc(v)


class DeploymentResponse(BaseModel):
    server_id: Optional[str] = Field(None, validation_alias="serverId")
    server_name: Optional[str] = Field(None, validation_alias="serverName")
    binding: Optional[Dict[str, Any]] = None
    deployed_at: Optional[datetime] = Field(None, validation_alias="deployedAt")


class NotificationSentResponse(BaseModel):
    type: str
    sent_at: datetime = Field(..., validation_alias="sentAt")
    recipients: List[str] = Field(default_factory=list)


class CertificateResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    serial_number: str
    thumbprint: Optional[str] = None
    common_name: str
    subject_alternative_names: List[str] = Field(default_factory=list)
    subject: Dict[str, Any] = Field(default_factory=dict)
    issuer: Dict[str, Any] = Field(default_factory=dict)
    valid_from: datetime
    valid_to: datetime
    key_usage: List[str] = Field(default_factory=list)
    extended_key_usage: List[str] = Field(default_factory=list)
    template_name: Optional[str] = None
    status: str
    deployed_to: List[DeploymentResponse] = Field(default_factory=list)
    notifications_sent: List[NotificationSentResponse] = Field(default_factory=list)
    days_until_expiration: int


class CertificateStatsResponse(BaseModel):
    total: int
    active: int
    expiring: int
    expired: int
    revoked: int
    expiring_in_30_days: int
    expiring_in_7_days: int


class CASyncResponse(BaseModel):
    message: str
    certificates_synced: int


class ReconcileResponse(BaseModel):
    updated: int


class JobAcceptedResponse(BaseModel):
    message: str
    accepted: bool


class DeployCertificateRequest(BaseModel):
    certificate_path: str = Field(..., min_length=1, max_length=1024)


class BindCertificateRequest(BaseModel):
    site_name: str = Field(..., min_length=1, max_length=200)
    thumbprint: str = Field(..., min_length=1, max_length=128)
    port: int = Field(443, ge=1, le=65535)


class CommandOutputResponse(BaseModel):
    message: str
    output: str = ""


class ServerConnectivityResponse(BaseModel):
    hostname: str
    ping: bool
    winrm: bool
    status: str


class ServerCertificateResponse(BaseModel):
    thumbprint: Optional[str] = None
    subject: Optional[str] = None
    issuer: Optional[str] = None
    not_before: Optional[datetime] = None
    not_after: Optional[datetime] = None
    certificate_id: Optional[uuid.UUID] = None
    in_inventory: bool = False


class ServerCertificatesResponse(BaseModel):
    hostname: str
    source: str  # "server" when read live, "inventory" when falling back to stored deployments
    certificates: List[ServerCertificateResponse]
    error: Optional[str] = None
