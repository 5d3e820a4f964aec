"""
CSR workflow engine: draft -> pending -> submitted -> issued

Drives a certificate signing request through key generation on the target server
(certreq -new), submission to an AD CS certificate authority, and linkage to the
issued certificate when the CA answers with one straight away.
"""

import json
import math
import re
import uuid
from typing import Optional, List, Tuple
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
import structlog

from certkeeper.core.config import get_settings
from certkeeper.core.database import utcnow
from certkeeper.models import CertificateRequest, CertificateAuthority, Server, CSRStatus, StepStatus
from certkeeper.models.certificate_request import STEP_GENERATE, STEP_SUBMIT, initial_workflow_steps
from certkeeper.schemas.csr import CSRCreate, CSRUpdate
from certkeeper.services.certificate_service import record_issued_certificate
from certkeeper.services.command_gateway import (
    CommandGateway, CommandResult, CommandSpec, ErrorKind, get_command_gateway,
)
from certkeeper.services.validators import (
    WORKFLOW_HASH_ALGORITHMS,
    VALID_KEY_ALGORITHMS,
    is_valid_config_string,
    is_valid_hash_algorithm,
    is_valid_hostname,
    is_valid_key_size,
    is_valid_san,
    is_valid_subject_field,
    is_valid_template_name,
    quote_literal,
)

logger = structlog.get_logger()

LOCAL_HOST = "localhost"
CSR_PEM_RE = re.compile(
    r"^-----BEGIN (NEW )?CERTIFICATE REQUEST-----\r?\n[A-Za-z0-9+/=\r\n]+-----END (NEW )?CERTIFICATE REQUEST-----\s*$"
)
CERTIFICATE_PEM_RE = re.compile(
    r"-----BEGIN CERTIFICATE-----[A-Za-z0-9+/=\s]+?-----END CERTIFICATE-----"
)

# DN components in certreq order, with the stored subject key for each
SUBJECT_COMPONENTS = (
    ("O", "organization"),
    ("OU", "organizationalUnit"),
    ("L", "locality"),
    ("S", "state"),
    ("C", "country"),
)

ECDSA_CURVES = {2048: "ECDSA_P256", 4096: "ECDSA_P384"}

# Fields a draft may change
UPDATABLE_FIELDS = (
    "common_name",
    "subject_alternative_names",
    "subject",
    "key_size",
    "key_algorithm",
    "hash_algorithm",
    "template_name",
    "target_ca_id",
    "target_server_id",
)
NULLABLE_FIELDS = {"template_name", "target_ca_id", "target_server_id"}


class CSRWorkflowError(Exception):
    """Base exception for CSR workflow operations"""
    pass


class CSRNotFoundError(CSRWorkflowError, LookupError):
    pass


class CSRValidationError(CSRWorkflowError, ValueError):
    pass


class CSRStateError(CSRWorkflowError):
    """The request is not in a state that allows the operation"""
    pass


class CSRGatewayError(CSRWorkflowError):
    """A gateway command failed; the request has been marked failed"""

    def __init__(self, message: str, error_kind: Optional[ErrorKind] = None, detail: Optional[str] = None):
        super().__init__(message)
        self.error_kind = error_kind
        self.detail = detail


def set_workflow_step(csr: CertificateRequest, step_name: str, status: str, error: Optional[str] = None) -> None:
    """Set a workflow step's state, replacing the list so the JSON column is flagged dirty."""
    steps = [dict(step) for step in (csr.workflow_steps or initial_workflow_steps())]
    for step in steps:
        if step.get("step") == step_name:
            break
    else:
        step = {"step": step_name}
        steps.append(step)

    step["status"] = status
    if status == StepStatus.COMPLETED:
        step["completedAt"] = utcnow().isoformat()
    if error:
        step["error"] = error
    else:
        step.pop("error", None)

    csr.workflow_steps = steps


def build_subject_line(csr: CertificateRequest) -> str:
    parts = [f"CN={csr.common_name}"]
    subject = csr.subject or {}
    for prefix, key in SUBJECT_COMPONENTS:
        if subject.get(key):
            parts.append(f"{prefix}={subject[key]}")
    return ", ".join(parts)


def build_inf(csr: CertificateRequest) -> str:
    """
    certreq INF content for a request

    Every interpolated value must already have passed validate_csr_fields.
    """
    lines = [
        "[Version]",
        'Signature="$Windows NT$"',
        "",
        "[NewRequest]",
        f'Subject = "{build_subject_line(csr)}"',
        "Exportable = TRUE",
        "MachineKeySet = TRUE",
        "SMIME = FALSE",
        "PrivateKeyArchive = FALSE",
        "UserProtected = FALSE",
        "UseExistingKeySet = FALSE",
    ]

    if csr.key_algorithm == "ECDSA":
        lines += [
            f"KeyAlgorithm = {ECDSA_CURVES[csr.key_size]}",
            'ProviderName = "Microsoft Software Key Storage Provider"',
            "KeyUsage = 0x80",
        ]
    else:
        lines += [
            "KeySpec = 1",
            f"KeyLength = {csr.key_size}",
            'ProviderName = "Microsoft RSA SChannel Cryptographic Provider"',
            "ProviderType = 12",
            "KeyUsage = 0xa0",
        ]

    lines += [
        "RequestType = PKCS10",
        f"HashAlgorithm = {csr.hash_algorithm}",
        "",
        "[EnhancedKeyUsageExtension]",
        "OID=1.3.6.1.5.5.7.3.1",
    ]

    sans = csr.subject_alternative_names or []
    if sans:
        lines += [
            "",
            "[Extensions]",
            '2.5.29.17 = "{text}"',
            '_continue_ = "{}"'.format("&".join(f"dns={san}" for san in sans)),
        ]

    return "\n".join(lines)


def build_generate_script(csr: CertificateRequest) -> str:
    """PowerShell that writes the INF, runs certreq -new and prints the CSR."""
    file_id = csr.id.hex
    return "\n".join([
        f"$infContent = {quote_literal(build_inf(csr))}",
        f"$infPath = Join-Path $env:TEMP '{file_id}.inf'",
        f"$csrPath = Join-Path $env:TEMP '{file_id}.csr'",
        "$infContent | Out-File -FilePath $infPath -Encoding ASCII",
        "certreq -new -q $infPath $csrPath | Out-Null",
        "if (Test-Path $csrPath) {",
        "  Get-Content $csrPath -Raw",
        "  Remove-Item $infPath, $csrPath -ErrorAction SilentlyContinue",
        "} else {",
        "  throw 'CSR generation failed'",
        "}",
    ])


def validate_csr_fields(csr: CertificateRequest) -> None:
    """
    Check every value that will be interpolated into the INF.

    Raises:
        CSRValidationError: naming the first offending field
    """
    if not csr.common_name or not is_valid_subject_field(csr.common_name):
        raise CSRValidationError("Invalid common name")

    if not is_valid_hash_algorithm(csr.hash_algorithm, WORKFLOW_HASH_ALGORITHMS):
        raise CSRValidationError("Invalid hash algorithm")

    if not is_valid_key_size(csr.key_size):
        raise CSRValidationError("Invalid key size")

    if csr.key_algorithm not in VALID_KEY_ALGORITHMS:
        raise CSRValidationError("Invalid key algorithm")

    subject = csr.subject or {}
    for _, key in SUBJECT_COMPONENTS:
        value = subject.get(key)
        if value and not is_valid_subject_field(value):
            raise CSRValidationError(f"Invalid subject field: {key}")

    for san in csr.subject_alternative_names or []:
        if not is_valid_san(san):
            raise CSRValidationError(f"Invalid SAN: {san}")

    if csr.template_name and not is_valid_template_name(csr.template_name):
        raise CSRValidationError("Invalid template name")


def extract_certificate_pem(output: str) -> Optional[str]:
    """Issued certificate from Submit-CertificateRequest.ps1 output, if the CA returned one."""
    if not output:
        return None

    try:
        data = json.loads(output)
    except ValueError:
        data = None

    if isinstance(data, dict):
        certificate = data.get("Certificate")
        return certificate.strip() if isinstance(certificate, str) and certificate.strip() else None

    match = CERTIFICATE_PEM_RE.search(output)
    return match.group(0) if match else None


async def get_csr(db: AsyncSession, csr_id: uuid.UUID) -> CertificateRequest:
    csr = await db.get(CertificateRequest, csr_id)
    if not csr:
        raise CSRNotFoundError("CSR not found")
    return csr


async def list_csrs(
    db: AsyncSession,
    status: Optional[str] = None,
    page: int = 1,
    size: int = 20,
) -> Tuple[List[CertificateRequest], int]:
    """Page of requests, newest first, with the total count."""
    query = select(CertificateRequest)
    count_query = select(func.count()).select_from(CertificateRequest)
    if status:
        query = query.where(CertificateRequest.status == status)
        count_query = count_query.where(CertificateRequest.status == status)

    total = (await db.execute(count_query)).scalar_one()
    query = query.order_by(CertificateRequest.created_at.desc()).offset((page - 1) * size).limit(size)
    result = await db.execute(query)
    return list(result.scalars().all()), total


def page_count(total: int, size: int) -> int:
    return math.ceil(total / size) if size else 0


async def _check_targets(db: AsyncSession, ca_id: Optional[uuid.UUID], server_id: Optional[uuid.UUID]) -> None:
    if ca_id is not None and await db.get(CertificateAuthority, ca_id) is None:
        raise CSRValidationError("Target CA not found")
    if server_id is not None and await db.get(Server, server_id) is None:
        raise CSRValidationError("Target server not found")


async def create_csr(db: AsyncSession, data: CSRCreate, requested_by: str) -> CertificateRequest:
    """
    Create a draft request with the three workflow steps pending.

    Field contents are checked at generation time, not here.
    """
    if not data.common_name or not data.common_name.strip():
        raise CSRValidationError("Common name is required")

    await _check_targets(db, data.target_ca_id, data.target_server_id)

    csr = CertificateRequest(
        common_name=data.common_name,
        subject_alternative_names=list(data.subject_alternative_names),
        subject=data.subject.to_document(),
        key_size=data.key_size,
        key_algorithm=data.key_algorithm,
        hash_algorithm=data.hash_algorithm,
        template_name=data.template_name,
        target_ca_id=data.target_ca_id,
        target_server_id=data.target_server_id,
        status=CSRStatus.DRAFT,
        workflow_steps=initial_workflow_steps(),
        requested_by=requested_by,
        requested_at=utcnow(),
    )
    db.add(csr)
    await db.commit()
    await db.refresh(csr)

    logger.info("CSR created", csr_id=str(csr.id), common_name=csr.common_name, requested_by=requested_by)
    return csr


async def update_csr(db: AsyncSession, csr_id: uuid.UUID, data: CSRUpdate) -> CertificateRequest:
    csr = await get_csr(db, csr_id)
    if csr.status != CSRStatus.DRAFT:
        raise CSRStateError("Only draft CSRs can be updated")

    changes = {name: getattr(data, name) for name in UPDATABLE_FIELDS if name in data.model_fields_set}
    if "target_ca_id" in changes or "target_server_id" in changes:
        await _check_targets(db, changes.get("target_ca_id"), changes.get("target_server_id"))

    for name, value in changes.items():
        if value is None and name not in NULLABLE_FIELDS:
            continue
        if name == "subject":
            value = value.to_document()
        elif name == "subject_alternative_names":
            value = list(value)
        setattr(csr, name, value)

    await db.commit()
    await db.refresh(csr)
    logger.info("CSR updated", csr_id=str(csr.id), fields=sorted(changes))
    return csr


async def delete_csr(db: AsyncSession, csr_id: uuid.UUID) -> None:
    csr = await get_csr(db, csr_id)
    if csr.status == CSRStatus.SUBMITTED:
        raise CSRStateError("Cannot delete submitted CSR")

    await db.delete(csr)
    await db.commit()
    logger.info("CSR deleted", csr_id=str(csr_id))


async def cancel_csr(db: AsyncSession, csr_id: uuid.UUID) -> CertificateRequest:
    csr = await get_csr(db, csr_id)
    if csr.status not in (CSRStatus.DRAFT, CSRStatus.PENDING, CSRStatus.FAILED):
        raise CSRStateError(f"Cannot cancel CSR in status {csr.status}")

    csr.status = CSRStatus.CANCELLED
    await db.commit()
    await db.refresh(csr)
    logger.info("CSR cancelled", csr_id=str(csr.id))
    return csr


async def _fail_step(
    db: AsyncSession,
    csr: CertificateRequest,
    step_name: str,
    result: CommandResult,
    message: str,
    error: Optional[str] = None,
):
    """Record a gateway failure on the request and raise it."""
    error = error or result.error or "Command produced no output"
    csr.error_message = error
    csr.status = CSRStatus.FAILED
    set_workflow_step(csr, step_name, StepStatus.FAILED, error)
    await db.commit()

    logger.error(
        message,
        csr_id=str(csr.id),
        error_kind=result.error_kind.value if result.error_kind else None,
        error=error,
    )
    raise CSRGatewayError(message, result.error_kind, error)


async def _run_gateway(call, *args, **kwargs) -> CommandResult:
    try:
        return await call(*args, **kwargs)
    except Exception as e:
        logger.error("Gateway call raised", error=str(e))
        return CommandResult(success=False, error=str(e), error_kind=ErrorKind.SPAWN_FAILED)


async def generate_csr(
    db: AsyncSession,
    csr_id: uuid.UUID,
    gateway: Optional[CommandGateway] = None,
) -> CertificateRequest:
    """
    Generate the key pair and CSR on the target server with certreq.

    Raises:
        CSRNotFoundError: Unknown request
        CSRStateError: Request is not draft or pending
        CSRValidationError: A field would be unsafe in the INF; status is unchanged
        CSRGatewayError: certreq failed; the request is now failed
    """
    gateway = gateway or get_command_gateway()
    csr = await get_csr(db, csr_id)

    if csr.status not in (CSRStatus.DRAFT, CSRStatus.PENDING):
        raise CSRStateError(f"Cannot generate CSR in status {csr.status}")

    try:
        validate_csr_fields(csr)
    except CSRValidationError as e:
        logger.info("CSR rejected by validation", csr_id=str(csr.id), reason=str(e))
        raise

    computer_name = LOCAL_HOST
    if csr.target_server_id is not None:
        server = await db.get(Server, csr.target_server_id)
        if server is None:
            raise CSRValidationError("Target server not found")
        computer_name = server.fqdn or LOCAL_HOST

    if computer_name != LOCAL_HOST and not is_valid_hostname(computer_name):
        logger.info("CSR rejected by validation", csr_id=str(csr.id), reason="Invalid target server hostname")
        raise CSRValidationError("Invalid target server hostname")

    csr.status = CSRStatus.PENDING
    csr.csr_pem = None
    csr.private_key_location = None
    csr.error_message = None
    set_workflow_step(csr, STEP_GENERATE, StepStatus.PENDING)
    await db.commit()

    spec = CommandSpec(
        script=build_generate_script(csr),
        remote_computer=computer_name if computer_name != LOCAL_HOST else None,
    )
    result = await _run_gateway(gateway.execute, spec)

    if not result.success or not result.output.strip():
        await _fail_step(db, csr, STEP_GENERATE, result, "Failed to generate CSR")

    csr_pem = result.output.strip()
    if not CSR_PEM_RE.match(csr_pem):
        await _fail_step(
            db, csr, STEP_GENERATE, result, "Failed to generate CSR",
            error="Command output is not a PEM certificate request",
        )

    csr.csr_pem = csr_pem
    csr.private_key_location = f"{computer_name}:LocalMachine\\My"
    set_workflow_step(csr, STEP_GENERATE, StepStatus.COMPLETED)
    await db.commit()
    await db.refresh(csr)

    logger.info("CSR generated", csr_id=str(csr.id), common_name=csr.common_name, computer_name=computer_name)
    return csr


async def submit_csr(
    db: AsyncSession,
    csr_id: uuid.UUID,
    gateway: Optional[CommandGateway] = None,
) -> CertificateRequest:
    """
    Submit a generated CSR to its target CA.

    When the CA issues immediately the certificate is recorded and the request
    moves on to issued; otherwise it stays submitted awaiting approval.
    """
    gateway = gateway or get_command_gateway()
    csr = await get_csr(db, csr_id)

    if not csr.csr_pem:
        raise CSRStateError("CSR not generated yet")
    if csr.target_ca_id is None:
        raise CSRValidationError("Target CA not specified")
    if csr.status != CSRStatus.PENDING:
        raise CSRStateError(f"Cannot submit CSR in status {csr.status}")

    ca = await db.get(CertificateAuthority, csr.target_ca_id)
    if ca is None:
        raise CSRValidationError("Target CA not found")
    if not is_valid_config_string(ca.config_string):
        raise CSRValidationError("Invalid CA config string")

    template = csr.template_name or get_settings().default_template
    if not is_valid_template_name(template):
        raise CSRValidationError("Invalid template name")
    if not CSR_PEM_RE.match(csr.csr_pem):
        raise CSRValidationError("Stored CSR is not a PEM certificate request")

    csr.status = CSRStatus.SUBMITTED
    set_workflow_step(csr, STEP_SUBMIT, StepStatus.PENDING)
    await db.commit()

    result = await _run_gateway(gateway.submit_certificate_request, csr.csr_pem, ca.config_string, template)
    if not result.success:
        await _fail_step(db, csr, STEP_SUBMIT, result, "Failed to submit CSR to CA")

    set_workflow_step(csr, STEP_SUBMIT, StepStatus.COMPLETED)
    csr.processed_at = utcnow()

    certificate_pem = extract_certificate_pem(result.output)
    if certificate_pem:
        try:
            certificate = await record_issued_certificate(db, ca, certificate_pem, template, csr.requested_by)
        except ValueError as e:
            # CA accepted the request; the certificate will arrive with the next sync
            logger.warning("Could not parse issued certificate", csr_id=str(csr.id), error=str(e))
        else:
            csr.issued_certificate_id = certificate.id
            csr.status = CSRStatus.ISSUED

    await db.commit()
    await db.refresh(csr)

    logger.info(
        "CSR submitted",
        csr_id=str(csr.id),
        common_name=csr.common_name,
        ca_name=ca.name,
        status=csr.status,
    )
    return csr
