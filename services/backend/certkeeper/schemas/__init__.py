"""
Pydantic schemas for API request/response models.
"""

from .csr import (
    CSRSubject,
    CSRCreate,
    CSRUpdate,
    CSRResponse,
    CSRListResponse,
    CSRGenerateResponse,
    CSRSubmitResponse,
)
from .certificate import (
    IssuedCertificateRecord,
    CertificateResponse,
    CertificateStatsResponse,
    CASyncResponse,
    ReconcileResponse,
    JobAcceptedResponse,
    DeployCertificateRequest,
    BindCertificateRequest,
    CommandOutputResponse,
    RemoteCertificateRecord,
    ServerConnectivityResponse,
    ServerCertificatesResponse,
)
from .notification import (
    NotificationTestRequest,
    NotificationTestResponse,
    NotificationSettingsUpdate,
    NotificationSettingsResponse,
    SyncSettingsResponse,
)

__all__ = [
    # CSR schemas
    "CSRSubject",
    "CSRCreate",
    "CSRUpdate",
    "CSRResponse",
    "CSRListResponse",
    "CSRGenerateResponse",
    "CSRSubmitResponse",

    # Certificate schemas
    "IssuedCertificateRecord",
    "CertificateResponse",
    "CertificateStatsResponse",
    "CASyncResponse",
    "ReconcileResponse",
    "JobAcceptedResponse",
    "DeployCertificateRequest",
    "BindCertificateRequest",
    "CommandOutputResponse",
    "RemoteCertificateRecord",
    "ServerConnectivityResponse",
    "ServerCertificatesResponse",

    # Notification schemas
    "NotificationTestRequest",
    "NotificationTestResponse",
    "NotificationSettingsUpdate",
    "NotificationSettingsResponse",
    "SyncSettingsResponse",
]
