"""
SQLAlchemy models for certkeeper.
"""

from .certificate_authority import CertificateAuthority
from .server import Server
from .certificate import Certificate, CertificateStatus
from .certificate_request import CertificateRequest, CSRStatus, StepStatus
from .user import User
from .notification_settings import NotificationSettings

__all__ = [
    "CertificateAuthority",
    "Server",
    "Certificate",
    "CertificateStatus",
    "CertificateRequest",
    "CSRStatus",
    "StepStatus",
    "User",
    "NotificationSettings",
]
