"""
PowerShell command gateway for certkeeper

Every interaction with the Windows estate (certreq, certutil, the CA database, IIS
bindings) goes through this module. The gateway:

- runs either an inline script or one of a fixed set of allow-listed script files
- passes the command to PowerShell as an argument vector, never through a shell
- embeds parameters as escaped single-quoted literals
- optionally wraps the command in Invoke-Command for a named remote host
- enforces a hard timeout and kills the process when it expires
- caps captured stdout/stderr
- returns a uniform CommandResult instead of raising for command failures

Free-text values (subjects, SANs, config strings) must be validated by the caller
before they reach the gateway; only structural inputs are checked here.
"""

import asyncio
import math
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union
import structlog

from certkeeper.core.config import Settings, get_settings
from certkeeper.services.validators import is_valid_hostname, quote_literal

logger = structlog.get_logger()

PARAMETER_KEY_RE = re.compile(r"^[A-Za-z][A-Za-z0-9]*$")
POWERSHELL_ARGS = ["-NoProfile", "-NonInteractive", "-ExecutionPolicy", "Bypass"]
READ_CHUNK_SIZE = 64 * 1024

ParameterValue = Union[str, int, float, bool]


class ErrorKind(str, Enum):
    SCRIPT_NOT_ALLOWED = "ScriptNotAllowed"
    INVALID_PATH = "InvalidPath"
    INVALID_PARAMETER_KEY = "InvalidParameterKey"
    INVALID_PARAMETER_VALUE = "InvalidParameterValue"
    INVALID_HOST = "InvalidHost"
    NO_COMMAND = "NoCommand"
    TIMEOUT = "Timeout"
    NON_ZERO_EXIT = "NonZeroExit"
    SPAWN_FAILED = "SpawnFailed"


@dataclass
class CommandSpec:
    """What to run: an inline script or an allow-listed script file, never both."""
    script: Optional[str] = None
    script_id: Optional[str] = None
    parameters: Dict[str, ParameterValue] = field(default_factory=dict)
    timeout: Optional[float] = None
    remote_computer: Optional[str] = None


@dataclass
class CommandResult:
    success: bool
    output: str = ""
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    exit_code: Optional[int] = None
    truncated: bool = False

    @classmethod
    def rejected(cls, kind: ErrorKind, message: str) -> "CommandResult":
        return cls(success=False, error=message, error_kind=kind)


class CommandRejected(Exception):
    """Raised while building a command; turned into a CommandResult by execute()."""

    def __init__(self, kind: ErrorKind, message: str):
        super().__init__(message)
        self.kind = kind


async def _read_capped(stream: Optional[asyncio.StreamReader], limit: int) -> Tuple[bytes, bool]:
    """Read a stream to EOF, keeping at most ``limit`` bytes."""
    if stream is None:
        return b"", False

    chunks: List[bytes] = []
    size = 0
    truncated = False
    while True:
        chunk = await stream.read(READ_CHUNK_SIZE)
        if not chunk:
            break
        if size < limit:
            kept = chunk[: limit - size]
            chunks.append(kept)
            size += len(kept)
            if len(kept) < len(chunk):
                truncated = True
        else:
            # Keep draining so the child never blocks on a full pipe
            truncated = True
    return b"".join(chunks), truncated


class CommandGateway:
    """Sandboxed PowerShell execution"""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.scripts_dir = Path(self.settings.scripts_dir).resolve()
        self.allowed_scripts = frozenset(self.settings.allowed_scripts)

    def resolve_script(self, script_id: str) -> Path:
        """Map an allow-listed script identifier to its absolute path."""
        if script_id not in self.allowed_scripts:
            raise CommandRejected(ErrorKind.SCRIPT_NOT_ALLOWED, f"Script not allowed: {script_id}")

        resolved = (self.scripts_dir / script_id).resolve()
        if not resolved.is_relative_to(self.scripts_dir):
            raise CommandRejected(ErrorKind.INVALID_PATH, "Script path escapes the scripts directory")
        return resolved

    def format_parameters(self, parameters: Dict[str, ParameterValue]) -> List[str]:
        parts: List[str] = []
        for key, value in parameters.items():
            if not isinstance(key, str) or not PARAMETER_KEY_RE.fullmatch(key):
                raise CommandRejected(ErrorKind.INVALID_PARAMETER_KEY, f"Invalid parameter name: {key!r}")

            if isinstance(value, bool):
                # Switch parameter: present when true, omitted when false
                if value:
                    parts.append(f"-{key}")
                continue

            if isinstance(value, (int, float)):
                if not math.isfinite(value):
                    raise CommandRejected(ErrorKind.INVALID_PARAMETER_VALUE, f"Parameter {key} must be a finite number")
                parts.append(f"-{key} {quote_literal(str(value))}")
            elif isinstance(value, str):
                parts.append(f"-{key} {quote_literal(value)}")
            else:
                raise CommandRejected(
                    ErrorKind.INVALID_PARAMETER_VALUE,
                    f"Unsupported value type for parameter {key}: {type(value).__name__}",
                )
        return parts

    def build_command(self, spec: CommandSpec) -> str:
        """Assemble the PowerShell command text for a spec."""
        if spec.script_id and spec.script:
            raise CommandRejected(ErrorKind.NO_COMMAND, "Provide either script or script_id, not both")

        if spec.script_id:
            command = f"& {quote_literal(str(self.resolve_script(spec.script_id)))}"
        elif spec.script:
            command = spec.script
        else:
            raise CommandRejected(ErrorKind.NO_COMMAND, "No script or script_id provided")

        params = self.format_parameters(spec.parameters or {})
        if params:
            command += " " + " ".join(params)

        if spec.remote_computer is not None:
            if not is_valid_hostname(spec.remote_computer):
                raise CommandRejected(ErrorKind.INVALID_HOST, "Invalid remote computer name")
            command = (
                f"Invoke-Command -ComputerName {quote_literal(spec.remote_computer)} "
                f"-ScriptBlock {{ {command} }}"
            )

        return command

    def build_argv(self, command: str) -> List[str]:
        return [*self.settings.powershell_command, *POWERSHELL_ARGS, "-Command", command]

    async def execute(self, spec: CommandSpec) -> CommandResult:
        """Run a command spec and return its result. Never raises for command failures."""
        try:
            command = self.build_command(spec)
        except CommandRejected as e:
            logger.warning("PowerShell command rejected", error_kind=e.kind.value, reason=str(e))
            return CommandResult.rejected(e.kind, str(e))

        timeout = spec.timeout or self.settings.command_timeout_seconds
        logger.debug("Executing PowerShell", command=command, remote_computer=spec.remote_computer, timeout=timeout)
        return await self._run(self.build_argv(command), timeout)

    async def _run(self, argv: List[str], timeout: float) -> CommandResult:
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error("PowerShell spawn error", executable=argv[0], error=str(e))
            return CommandResult.rejected(ErrorKind.SPAWN_FAILED, f"Failed to start PowerShell: {e}")

        limit = self.settings.max_output_bytes
        try:
            (stdout, out_truncated), (stderr, err_truncated), exit_code = await asyncio.wait_for(
                asyncio.gather(
                    _read_capped(process.stdout, limit),
                    _read_capped(process.stderr, limit),
                    process.wait(),
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
            logger.error("PowerShell command timed out", timeout=timeout, pid=process.pid)
            return CommandResult(
                success=False,
                error=f"Command timed out after {timeout:g}s",
                error_kind=ErrorKind.TIMEOUT,
                exit_code=process.returncode,
            )

        output = stdout.decode("utf-8", errors="replace").strip()
        error = stderr.decode("utf-8", errors="replace").strip()
        truncated = out_truncated or err_truncated
        if truncated:
            logger.warning("PowerShell output truncated", limit_bytes=limit)

        if exit_code == 0:
            return CommandResult(success=True, output=output, exit_code=0, truncated=truncated)

        logger.error("PowerShell error", exit_code=exit_code, stderr=error)
        return CommandResult(
            success=False,
            output=output,
            error=error or f"PowerShell exited with code {exit_code}",
            error_kind=ErrorKind.NON_ZERO_EXIT,
            exit_code=exit_code,
            truncated=truncated,
        )

    # Operations used by the services. Callers validate free-text arguments.

    async def get_ca_issued_certificates(self, config_string: str) -> CommandResult:
        return await self.execute(CommandSpec(
            script_id="Get-IssuedCertificates.ps1",
            parameters={"ConfigString": config_string},
            timeout=self.settings.sync_timeout_seconds,
        ))

    async def submit_certificate_request(self, csr_pem: str, config_string: str, template: str) -> CommandResult:
        return await self.execute(CommandSpec(
            script_id="Submit-CertificateRequest.ps1",
            parameters={
                "CSR": csr_pem,
                "ConfigString": config_string,
                "Template": template,
            },
        ))

    async def install_certificate(self, hostname: str, certificate_path: str) -> CommandResult:
        return await self.execute(CommandSpec(
            script_id="Install-Certificate.ps1",
            parameters={
                "ComputerName": hostname,
                "CertificatePath": certificate_path,
            },
        ))

    async def bind_iis_certificate(self, hostname: str, site_name: str, thumbprint: str, port: int = 443) -> CommandResult:
        return await self.execute(CommandSpec(
            script_id="Bind-IISCertificate.ps1",
            parameters={
                "ComputerName": hostname,
                "SiteName": site_name,
                "Thumbprint": thumbprint,
                "Port": port,
            },
        ))

    async def list_ca_templates(self, config_string: str) -> CommandResult:
        script = (
            f"$templates = certutil -CATemplates -config {quote_literal(config_string)} 2>$null | "
            "Where-Object { $_ -match '^\\s*[^:]+:' } | "
            "ForEach-Object { $parts = $_ -split ':'; "
            "@{ name = $parts[0].Trim(); "
            "displayName = if ($parts[1]) { $parts[1].Trim() } else { $parts[0].Trim() }; oid = '' } }; "
            "ConvertTo-Json -InputObject @($templates) -Compress"
        )
        return await self.execute(CommandSpec(script=script, timeout=self.settings.sync_timeout_seconds))

    async def get_remote_certificates(self, hostname: str) -> CommandResult:
        """JSON listing of LocalMachine\\My on a remote server, dates as naive UTC ISO 8601."""
        script = (
            "Get-ChildItem -Path Cert:\\LocalMachine\\My | "
            "Select-Object Thumbprint, Subject, Issuer, "
            "@{ n = 'NotBefore'; e = { $_.NotBefore.ToUniversalTime().ToString('s') } }, "
            "@{ n = 'NotAfter'; e = { $_.NotAfter.ToUniversalTime().ToString('s') } } | "
            "ConvertTo-Json -Compress"
        )
        return await self.execute(CommandSpec(script=script, remote_computer=hostname, timeout=30))

    async def test_connection(self, hostname: str) -> bool:
        if not is_valid_hostname(hostname):
            return False
        result = await self.execute(CommandSpec(
            script=f"Test-Connection -ComputerName {quote_literal(hostname)} -Count 1 -Quiet",
            timeout=10,
        ))
        return result.success and result.output.lower() == "true"

    async def test_winrm(self, hostname: str) -> bool:
        if not is_valid_hostname(hostname):
            return False
        result = await self.execute(CommandSpec(
            script=f"Test-WSMan -ComputerName {quote_literal(hostname)} -ErrorAction SilentlyContinue | Out-Null; $?",
            timeout=15,
        ))
        return result.success and result.output.lower() == "true"


# Global gateway instance
_command_gateway = None


def get_command_gateway() -> CommandGateway:
    """Get the global command gateway instance"""
    global _command_gateway
    if _command_gateway is None:
        _command_gateway = CommandGateway()
    return _command_gateway
