"""
Certificate sync and status reconciliation

Pulls issued-certificate records from each CA through the command gateway, upserts
them by serial number, and keeps every certificate's lifecycle status
(active / expiring / expired) in line with its validity window.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any
from datetime import datetime, timedelta
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, func, and_
from sqlalchemy.exc import IntegrityError
from pydantic import ValidationError
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID
import structlog

from certkeeper.core.config import get_settings
from certkeeper.core.database import utcnow
from certkeeper.models import Certificate, CertificateAuthority, CertificateStatus
from certkeeper.schemas.certificate import IssuedCertificateRecord
from certkeeper.services.command_gateway import CommandGateway, ErrorKind, get_command_gateway
from certkeeper.services.validators import is_valid_config_string

logger = structlog.get_logger()

SUBJECT_KEYS = {
    "CN": "commonName",
    "O": "organization",
    "OU": "organizationalUnit",
    "L": "locality",
    "S": "state",
    "ST": "state",
    "C": "country",
}


class CertificateSyncError(Exception):
    """CA sync operation exception"""

    def __init__(self, message: str, error_kind: Optional[ErrorKind] = None):
        super().__init__(message)
        self.error_kind = error_kind


class MalformedCAOutputError(CertificateSyncError):
    """The CA listing could not be decoded"""
    pass


@dataclass
class SyncReport:
    synced: Dict[str, int] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    statuses_updated: int = 0


def extract_cn(subject: Optional[str]) -> str:
    match = re.search(r"CN=([^,]+)", subject or "", re.IGNORECASE)
    return match.group(1).strip() if match else (subject or "Unknown")


def parse_subject(subject: Optional[str]) -> Dict[str, str]:
    """Split a distinguished name string into the stored subject document."""
    result: Dict[str, str] = {}
    if not subject:
        return result

    for part in subject.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        name = SUBJECT_KEYS.get(key.strip().upper())
        if name:
            result[name] = value.strip()
    return result


def parse_ca_output(output: str) -> List[Dict[str, Any]]:
    """Decode the JSON listing produced by Get-IssuedCertificates.ps1.

    ConvertTo-Json emits a bare object for a single result, so both an object and a
    list of objects are accepted.
    """
    try:
        data = json.loads(output)
    except ValueError as e:
        raise MalformedCAOutputError(f"Failed to parse certificate data from CA: {e}")

    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
        raise MalformedCAOutputError("Certificate data from CA is not a list of records")
    return data


def format_serial(serial: int) -> str:
    """Hex serial in the byte-aligned upper-case form certutil prints."""
    text = f"{serial:X}"
    return text if len(text) % 2 == 0 else f"0{text}"


async def _find_by_serial(db: AsyncSession, serial_number: str) -> Optional[Certificate]:
    result = await db.execute(select(Certificate).where(Certificate.serial_number == serial_number))
    return result.scalar_one_or_none()


async def _upsert_certificate(
    db: AsyncSession,
    serial_number: str,
    fields: Dict[str, Any],
    now: datetime,
    created_by: Optional[str] = None,
) -> Certificate:
    """Insert or update a certificate keyed by serial number.

    Status, deployments, notification history and discovery time are only set
    when the record is first inserted.
    """
    timestamp = now.isoformat()
    cert = await _find_by_serial(db, serial_number)

    if cert is None:
        metadata = {"discoveredAt": timestamp, "lastSyncedAt": timestamp}
        if created_by:
            metadata["createdBy"] = created_by
        cert = Certificate(
            serial_number=serial_number,
            status=CertificateStatus.ACTIVE,
            deployed_to=[],
            notifications_sent=[],
            metadata_=metadata,
            **fields,
        )
        db.add(cert)
    else:
        for key, value in fields.items():
            setattr(cert, key, value)
        cert.metadata_ = {**(cert.metadata_ or {}), "lastSyncedAt": timestamp}

    await db.flush()
    return cert


KEY_USAGE_FLAGS = (
    ("digital_signature", "digitalSignature"),
    ("content_commitment", "nonRepudiation"),
    ("key_encipherment", "keyEncipherment"),
    ("data_encipherment", "dataEncipherment"),
    ("key_agreement", "keyAgreement"),
    ("key_cert_sign", "keyCertSign"),
    ("crl_sign", "cRLSign"),
)

EXTENDED_KEY_USAGE_NAMES = {
    ExtendedKeyUsageOID.SERVER_AUTH: "serverAuth",
    ExtendedKeyUsageOID.CLIENT_AUTH: "clientAuth",
    ExtendedKeyUsageOID.CODE_SIGNING: "codeSigning",
    ExtendedKeyUsageOID.EMAIL_PROTECTION: "emailProtection",
    ExtendedKeyUsageOID.TIME_STAMPING: "timeStamping",
    ExtendedKeyUsageOID.OCSP_SIGNING: "OCSPSigning",
}


def extract_key_usage(certificate: x509.Certificate) -> List[str]:
    try:
        usage = certificate.extensions.get_extension_for_class(x509.KeyUsage).value
    except x509.ExtensionNotFound:
        return []

    names = [name for attr, name in KEY_USAGE_FLAGS if getattr(usage, attr)]
    # encipher_only / decipher_only are only defined alongside keyAgreement
    if usage.key_agreement:
        if usage.encipher_only:
            names.append("encipherOnly")
        if usage.decipher_only:
            names.append("decipherOnly")
    return names


def extract_extended_key_usage(certificate: x509.Certificate) -> List[str]:
    """EKU names, with the dotted OID for purposes without a well-known name."""
    try:
        usages = certificate.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value
    except x509.ExtensionNotFound:
        return []
    return [EXTENDED_KEY_USAGE_NAMES.get(oid, oid.dotted_string) for oid in usages]


def _issuer_reference(ca: CertificateAuthority) -> Dict[str, Any]:
    return {"caId": str(ca.id), "commonName": ca.display_name}


async def sync_ca(db: AsyncSession, ca: CertificateAuthority, gateway: Optional[CommandGateway] = None) -> int:
    """
    Sync issued certificates from one CA

    Args:
        db: Database session
        ca: Certificate Authority to read from
        gateway: Command gateway (defaults to the global instance)

    Returns:
        Number of certificate records processed

    Raises:
        CertificateSyncError: If the CA could not be queried
        MalformedCAOutputError: If the CA listing is not valid JSON records
    """
    gateway = gateway or get_command_gateway()
    logger.info("Syncing certificates from CA", ca_id=str(ca.id), ca_name=ca.name)

    if not is_valid_config_string(ca.config_string):
        raise CertificateSyncError("Invalid CA config string")

    result = await gateway.get_ca_issued_certificates(ca.config_string)
    if not result.success:
        raise CertificateSyncError(f"Failed to get certificates from CA: {result.error}", result.error_kind)

    try:
        records = parse_ca_output(result.output)
    except MalformedCAOutputError:
        logger.error("Failed to parse CA output", ca_name=ca.name, output=result.output[:2000])
        raise

    now = utcnow()
    issuer = _issuer_reference(ca)
    synced = 0

    for raw in records:
        try:
            record = IssuedCertificateRecord.model_validate(raw)
        except ValidationError as e:
            logger.warning(
                "Skipping invalid certificate record",
                ca_name=ca.name,
                serial_number=raw.get("SerialNumber"),
                error=str(e),
            )
            continue

        subject = parse_subject(record.subject)
        common_name = record.common_name or extract_cn(record.subject)
        subject.setdefault("commonName", common_name)

        fields: Dict[str, Any] = {
            "common_name": common_name,
            "subject_alternative_names": record.sans,
            "issuer": issuer,
            "subject": subject,
            "valid_from": record.not_before,
            "valid_to": record.not_after,
            "template_name": record.template,
        }
        if record.thumbprint:
            fields["thumbprint"] = record.thumbprint

        try:
            async with db.begin_nested():
                await _upsert_certificate(db, record.serial_number, fields, now)
            synced += 1
        except IntegrityError as e:
            logger.error("Failed to sync certificate", serial_number=record.serial_number, error=str(e.orig))

    ca.last_synced_at = now
    await db.commit()

    logger.info("Synced certificates from CA", ca_name=ca.name, certificates_synced=synced)
    return synced


# Cron sweeps fire on the hour; a CA synced a few seconds past the previous
# sweep is still due on this one.
SYNC_DUE_GRACE = timedelta(minutes=5)


def is_sync_due(ca: CertificateAuthority, now: datetime) -> bool:
    """True when the CA's sync interval has elapsed since its last sync."""
    if ca.last_synced_at is None:
        return True
    interval = timedelta(minutes=ca.sync_interval_minutes or 0)
    return now - ca.last_synced_at >= interval - SYNC_DUE_GRACE


async def sync_all_cas(
    db: AsyncSession,
    gateway: Optional[CommandGateway] = None,
    due_only: bool = False,
    now: Optional[datetime] = None,
) -> SyncReport:
    """
    Sync every CA with sync enabled, then reconcile certificate statuses.

    With ``due_only`` a CA is skipped until its ``sync_interval_minutes`` has
    elapsed. A failure for one CA is logged and recorded; it never stops the sweep.
    """
    now = now or utcnow()
    result = await db.execute(
        select(CertificateAuthority.id, CertificateAuthority.name)
        .where(CertificateAuthority.sync_enabled.is_(True))
        .order_by(CertificateAuthority.name)
    )
    targets = result.all()
    report = SyncReport()

    for ca_id, ca_name in targets:
        try:
            ca = await db.get(CertificateAuthority, ca_id, populate_existing=True)
            if ca is None:
                continue
            if due_only and not is_sync_due(ca, now):
                report.skipped.append(ca_name)
                continue
            report.synced[ca_name] = await sync_ca(db, ca, gateway)
        except Exception as e:
            await db.rollback()
            logger.error("Failed to sync CA", ca_name=ca_name, error=str(e))
            report.errors.append(f"{ca_name}: {e}")

    report.statuses_updated = await update_certificate_statuses(db)
    return report


async def update_certificate_statuses(db: AsyncSession, now: Optional[datetime] = None) -> int:
    """
    Recompute lifecycle status for the active / expiring / expired band.

    Revoked certificates are never touched. Running it twice with the same ``now``
    changes nothing the second time.

    Returns:
        Total number of certificates whose status changed
    """
    now = now or utcnow()
    window_end = now + timedelta(days=get_settings().expiring_window_days)

    expired = await db.execute(
        update(Certificate)
        .where(
            Certificate.status.notin_([CertificateStatus.EXPIRED, CertificateStatus.REVOKED]),
            Certificate.valid_to < now,
        )
        .values(status=CertificateStatus.EXPIRED)
        .execution_options(synchronize_session=False)
    )

    expiring = await db.execute(
        update(Certificate)
        .where(
            Certificate.status == CertificateStatus.ACTIVE,
            Certificate.valid_to >= now,
            Certificate.valid_to <= window_end,
        )
        .values(status=CertificateStatus.EXPIRING)
        .execution_options(synchronize_session=False)
    )

    # Validity extended by a re-sync
    active = await db.execute(
        update(Certificate)
        .where(
            Certificate.status == CertificateStatus.EXPIRING,
            Certificate.valid_to > window_end,
        )
        .values(status=CertificateStatus.ACTIVE)
        .execution_options(synchronize_session=False)
    )

    await db.commit()

    total = (expired.rowcount or 0) + (expiring.rowcount or 0) + (active.rowcount or 0)
    if total > 0:
        logger.info(
            "Updated certificate statuses",
            expired=expired.rowcount,
            expiring=expiring.rowcount,
            active=active.rowcount,
        )
    return total


async def record_issued_certificate(
    db: AsyncSession,
    ca: CertificateAuthority,
    certificate_pem: str,
    template_name: Optional[str] = None,
    created_by: Optional[str] = None,
) -> Certificate:
    """
    Store a certificate returned by a CA submission.

    Raises:
        ValueError: If the PEM cannot be parsed
    """
    certificate = x509.load_pem_x509_certificate(certificate_pem.encode("ascii"))

    subject = {}
    for oid, key in (
        (NameOID.COMMON_NAME, "commonName"),
        (NameOID.ORGANIZATION_NAME, "organization"),
        (NameOID.ORGANIZATIONAL_UNIT_NAME, "organizationalUnit"),
        (NameOID.LOCALITY_NAME, "locality"),
        (NameOID.STATE_OR_PROVINCE_NAME, "state"),
        (NameOID.COUNTRY_NAME, "country"),
    ):
        attributes = certificate.subject.get_attributes_for_oid(oid)
        if attributes:
            subject[key] = str(attributes[0].value)

    try:
        san_ext = certificate.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        sans = san_ext.value.get_values_for_type(x509.DNSName)
    except x509.ExtensionNotFound:
        sans = []

    common_name = subject.get("commonName") or certificate.subject.rfc4514_string()
    subject.setdefault("commonName", common_name)

    fields = {
        "thumbprint": certificate.fingerprint(hashes.SHA1()).hex().upper(),
        "common_name": common_name,
        "subject_alternative_names": sans,
        "issuer": _issuer_reference(ca),
        "subject": subject,
        "valid_from": certificate.not_valid_before_utc.replace(tzinfo=None),
        "valid_to": certificate.not_valid_after_utc.replace(tzinfo=None),
        "key_usage": extract_key_usage(certificate),
        "extended_key_usage": extract_extended_key_usage(certificate),
        "template_name": template_name,
    }

    cert = await _upsert_certificate(db, format_serial(certificate.serial_number), fields, utcnow(), created_by)
    logger.info(
        "Issued certificate recorded",
        certificate_id=str(cert.id),
        serial_number=cert.serial_number,
        common_name=common_name,
        ca_name=ca.name,
    )
    return cert


async def refresh_ca_templates(
    db: AsyncSession,
    ca: CertificateAuthority,
    gateway: Optional[CommandGateway] = None,
    force: bool = False,
) -> List[Dict[str, Any]]:
    """Return the CA's template list, fetching and caching it when empty or forced."""
    if ca.templates and not force:
        return ca.templates

    if not is_valid_config_string(ca.config_string):
        raise CertificateSyncError("Invalid CA config string")

    gateway = gateway or get_command_gateway()
    result = await gateway.list_ca_templates(ca.config_string)
    if not result.success or not result.output:
        logger.warning("Failed to list CA templates", ca_name=ca.name, error=result.error)
        return ca.templates or []

    try:
        records = parse_ca_output(result.output)
    except MalformedCAOutputError:
        logger.warning("Unreadable CA template listing", ca_name=ca.name)
        return ca.templates or []

    templates = []
    for record in records:
        name = str(record.get("name") or "").strip()
        if not name:
            continue
        templates.append({
            "name": name,
            "displayName": str(record.get("displayName") or name).strip(),
            "oid": str(record.get("oid") or ""),
        })

    ca.templates = templates
    await db.commit()
    return templates


async def get_certificate_stats(db: AsyncSession, now: Optional[datetime] = None) -> Dict[str, int]:
    """Counts per status plus certificates expiring within 30 and 7 days."""
    now = now or utcnow()

    async def count(*criteria) -> int:
        result = await db.execute(select(func.count()).select_from(Certificate).where(*criteria))
        return result.scalar_one()

    live = Certificate.status.notin_([CertificateStatus.EXPIRED, CertificateStatus.REVOKED])
    return {
        "total": await count(),
        "active": await count(Certificate.status == CertificateStatus.ACTIVE),
        "expiring": await count(Certificate.status == CertificateStatus.EXPIRING),
        "expired": await count(Certificate.status == CertificateStatus.EXPIRED),
        "revoked": await count(Certificate.status == CertificateStatus.REVOKED),
        "expiring_in_30_days": await count(
            live, and_(Certificate.valid_to >= now, Certificate.valid_to <= now + timedelta(days=30))
        ),
        "expiring_in_7_days": await count(
            live, and_(Certificate.valid_to >= now, Certificate.valid_to <= now + timedelta(days=7))
        ),
    }


async def get_expiring_certificates(
    db: AsyncSession,
    days: int = 30,
    now: Optional[datetime] = None,
) -> List[Certificate]:
    """Non-expired, non-revoked certificates expiring within ``days``, soonest first."""
    now = now or utcnow()
    result = await db.execute(
        select(Certificate)
        .where(
            Certificate.status.notin_([CertificateStatus.EXPIRED, CertificateStatus.REVOKED]),
            Certificate.valid_to >= now,
            Certificate.valid_to <= now + timedelta(days=days),
        )
        .order_by(Certificate.valid_to)
    )
    return list(result.scalars().all())
