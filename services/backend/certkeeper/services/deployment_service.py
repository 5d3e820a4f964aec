"""
Certificate installation and IIS binding on managed servers
"""

from typing import Optional, List, Dict, Any
import json
import uuid
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from pydantic import ValidationError
import structlog

from certkeeper.core.config import get_settings
from certkeeper.core.database import utcnow
from certkeeper.models import Certificate, Server
from certkeeper.schemas.certificate import RemoteCertificateRecord
from certkeeper.services.command_gateway import CommandGateway, CommandResult, ErrorKind, get_command_gateway
from certkeeper.services.validators import (
    is_valid_certificate_path,
    is_valid_hostname,
    is_valid_subject_field,
    is_valid_thumbprint,
)

logger = structlog.get_logger()

IIS_ROLE = "IIS"
SERVER_ONLINE = "online"
SERVER_OFFLINE = "offline"


class DeploymentError(Exception):
    """Deployment operation exception"""

    def __init__(
        self,
        message: str,
        status_code: int = 400,
        error_kind: Optional[ErrorKind] = None,
        detail: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_kind = error_kind
        self.detail = detail


async def _get_server(db: AsyncSession, server_id: uuid.UUID) -> Server:
    server = await db.get(Server, server_id)
    if not server:
        raise DeploymentError("Server not found", status_code=404)
    if not is_valid_hostname(server.fqdn):
        raise DeploymentError("Invalid server hostname")
    return server


def _raise_for_result(result: CommandResult, message: str, server: Server) -> None:
    if result.success:
        return
    logger.error(message, server=server.fqdn, error_kind=result.error_kind, error=result.error)
    raise DeploymentError(message, status_code=502, error_kind=result.error_kind, detail=result.error)


async def install_certificate(
    db: AsyncSession,
    server_id: uuid.UUID,
    certificate_path: str,
    gateway: Optional[CommandGateway] = None,
) -> str:
    """Import a certificate file into LocalMachine\\My on the server."""
    gateway = gateway or get_command_gateway()
    server = await _get_server(db, server_id)
    if not is_valid_certificate_path(certificate_path, get_settings().certificate_drop_dir):
        raise DeploymentError("Invalid certificate path")

    result = await gateway.install_certificate(server.fqdn, certificate_path)
    _raise_for_result(result, "Failed to install certificate", server)

    logger.info("Certificate installed", server=server.fqdn, certificate_path=certificate_path)
    return result.output


async def bind_certificate(
    db: AsyncSession,
    server_id: uuid.UUID,
    site_name: str,
    thumbprint: str,
    port: int = 443,
    gateway: Optional[CommandGateway] = None,
) -> str:
    """
    Bind a certificate to an IIS site's HTTPS binding.

    On success the deployment entry of the certificate with this thumbprint is
    updated in place, or appended when the server is new to it.

    Raises:
        DeploymentError: Validation, lookup or gateway failure
    """
    gateway = gateway or get_command_gateway()
    server = await _get_server(db, server_id)

    if not server.has_role(IIS_ROLE):
        raise DeploymentError("Server does not have the IIS role")
    if not is_valid_subject_field(site_name):
        raise DeploymentError("Invalid site name")
    if not is_valid_thumbprint(thumbprint):
        raise DeploymentError("Invalid thumbprint")
    if isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= 65535:
        raise DeploymentError("Invalid port")

    thumbprint = thumbprint.upper()
    result = await gateway.bind_iis_certificate(server.fqdn, site_name, thumbprint, port)
    _raise_for_result(result, "Failed to bind certificate", server)

    cert_result = await db.execute(select(Certificate).where(Certificate.thumbprint == thumbprint))
    certificate = cert_result.scalar_one_or_none()
    if certificate is None:
        logger.warning("Bound certificate is not in inventory", server=server.fqdn, thumbprint=thumbprint)
        return result.output

    entry = {
        "serverId": str(server.id),
        "serverName": server.hostname,
        "binding": {"type": IIS_ROLE, "siteName": site_name, "port": port},
        "deployedAt": utcnow().isoformat(),
    }
    deployments = [dict(d) for d in certificate.deployed_to or []]
    for index, deployment in enumerate(deployments):
        if deployment.get("serverId") == entry["serverId"]:
            deployments[index] = entry
            break
    else:
        deployments.append(entry)

    certificate.deployed_to = deployments
    await db.commit()

    logger.info(
        "Certificate bound",
        server=server.fqdn,
        site_name=site_name,
        port=port,
        certificate_id=str(certificate.id),
    )
    return result.output


async def check_server_connectivity(
    db: AsyncSession,
    server_id: uuid.UUID,
    gateway: Optional[CommandGateway] = None,
) -> Dict[str, Any]:
    """Check ping and WinRM reachability; the server goes online when it answers ping."""
    gateway = gateway or get_command_gateway()
    server = await _get_server(db, server_id)

    ping = await gateway.test_connection(server.fqdn)
    winrm = await gateway.test_winrm(server.fqdn)

    server.status = SERVER_ONLINE if ping else SERVER_OFFLINE
    await db.commit()

    logger.info("Server connectivity checked", server=server.fqdn, ping=ping, winrm=winrm)
    return {"hostname": server.fqdn, "ping": ping, "winrm": winrm, "status": server.status}


def parse_remote_certificates(output: str) -> List[RemoteCertificateRecord]:
    """
    Decode a certificate store listing. An empty store prints nothing and a
    single certificate prints a bare object; records without a usable
    thumbprint or validity window are skipped.

    Raises:
        ValueError: If the output is not JSON objects
    """
    if not output.strip():
        return []
    data = json.loads(output)
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
        raise ValueError("Certificate store listing is not a list of records")

    records = []
    for raw in data:
        try:
            records.append(RemoteCertificateRecord.model_validate(raw))
        except ValidationError as e:
            logger.warning("Skipping unreadable store entry", thumbprint=raw.get("Thumbprint"), error=str(e))
    return records


async def _deployed_certificates(db: AsyncSession, server: Server) -> List[Certificate]:
    result = await db.execute(select(Certificate).order_by(Certificate.valid_to))
    server_id = str(server.id)
    return [
        c for c in result.scalars().all()
        if any(d.get("serverId") == server_id for d in c.deployed_to or [])
    ]


async def get_server_certificates(
    db: AsyncSession,
    server_id: uuid.UUID,
    gateway: Optional[CommandGateway] = None,
) -> Dict[str, Any]:
    """
    List the certificates in the server's machine store, marking the ones the
    inventory knows by thumbprint. When the server cannot be read the
    inventory's own record of deployments to it is returned instead.
    """
    gateway = gateway or get_command_gateway()
    server = await _get_server(db, server_id)

    result = await gateway.get_remote_certificates(server.fqdn)
    error = result.error
    if result.success:
        try:
            records = parse_remote_certificates(result.output)
        except ValueError as e:
            logger.error("Failed to parse certificate store listing", server=server.fqdn, output=result.output[:2000])
            error = f"Malformed certificate store listing: {e}"
        else:
            thumbprints = [r.thumbprint for r in records]
            known = await db.execute(select(Certificate).where(Certificate.thumbprint.in_(thumbprints)))
            by_thumbprint = {c.thumbprint: c for c in known.scalars().all()}
            certificates = []
            for record in records:
                inventory = by_thumbprint.get(record.thumbprint)
                certificates.append({
                    **record.model_dump(),
                    "certificate_id": inventory.id if inventory else None,
                    "in_inventory": inventory is not None,
                })
            return {"hostname": server.fqdn, "source": "server", "certificates": certificates}

    logger.warning("Falling back to inventory for server certificates", server=server.fqdn, error=error)
    certificates = [
        {
            "thumbprint": c.thumbprint,
            "subject": c.common_name,
            "issuer": (c.issuer or {}).get("commonName"),
            "not_before": c.valid_from,
            "not_after": c.valid_to,
            "certificate_id": c.id,
            "in_inventory": True,
        }
        for c in await _deployed_certificates(db, server)
    ]
    return {"hostname": server.fqdn, "source": "inventory", "certificates": certificates, "error": error}
