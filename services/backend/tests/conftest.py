"""Test configuration and fixtures for certkeeper tests."""

import pytest
import sys
from pathlib import Path
from datetime import timedelta
from typing import AsyncGenerator, List, Optional
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from certkeeper.main import app
from certkeeper.api.deps import get_gateway, get_mail_transport, get_scheduler
from certkeeper.core.config import Settings
from certkeeper.core.database import get_db, Base, utcnow
from certkeeper.models import Certificate, CertificateAuthority, Server, User, CertificateStatus
from certkeeper.services.command_gateway import CommandGateway, CommandResult, ErrorKind
from certkeeper.services.mail_service import MailDeliveryError
from certkeeper.tasks.scheduler import JobScheduler

FAKE_PWSH = Path(__file__).parent / "fixtures" / "fake_pwsh.py"

# Test database URL - use in-memory SQLite for speed
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

test_engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
    echo=False
)

TestSessionLocal = async_sessionmaker(
    bind=test_engine,
    class_=AsyncSession,
    expire_on_commit=False
)


class FakeGateway(CommandGateway):
    """Gateway that builds commands for real but answers from a queue instead of spawning."""

    def __init__(self, settings: Optional[Settings] = None):
        super().__init__(settings or Settings())
        self.commands: List[str] = []
        self.timeouts: List[float] = []
        self.results: List[CommandResult] = []
        self.default = CommandResult(success=True, output="", exit_code=0)

    def queue(self, *results: CommandResult) -> "FakeGateway":
        self.results.extend(results)
        return self

    def succeed(self, output: str) -> "FakeGateway":
        return self.queue(CommandResult(success=True, output=output, exit_code=0))

    def fail(self, error: str = "simulated failure", exit_code: int = 1) -> "FakeGateway":
        return self.queue(CommandResult(
            success=False, error=error, error_kind=ErrorKind.NON_ZERO_EXIT, exit_code=exit_code,
        ))

    async def _run(self, argv, timeout):
        self.commands.append(argv[-1])
        self.timeouts.append(timeout)
        return self.results.pop(0) if self.results else self.default


class FakeMailer:
    """Collects sent messages; raises for subjects containing a listed marker."""

    def __init__(self):
        self.sent = []
        self.fail_subjects_containing: List[str] = []

    async def send(self, to, subject, html):
        if any(marker in subject for marker in self.fail_subjects_containing):
            raise MailDeliveryError("550 mailbox unavailable")
        self.sent.append({"to": list(to), "subject": subject, "html": html})


class FakeScheduler:
    def __init__(self):
        self.sync_triggers = 0
        self.notification_triggers = 0
        self.busy = False
        self.running = False
        self.notification_hour = 8
        self.rescheduled_to: List[int] = []

    def reschedule_notifications(self, hour: int) -> None:
        self.notification_hour = hour
        self.rescheduled_to.append(hour)

    def trigger_sync(self) -> bool:
        self.sync_triggers += 1
        return not self.busy

    def trigger_notifications(self) -> bool:
        self.notification_triggers += 1
        return not self.busy


@pytest.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestSessionLocal() as session:
        yield session

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def session_factory(db_session):
    """Session factory bound to the test database (tables already created)."""
    return TestSessionLocal


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def real_gateway() -> CommandGateway:
    """Gateway that really spawns processes, with the fake PowerShell as executable."""
    return CommandGateway(Settings(
        powershell_command=[sys.executable, str(FAKE_PWSH)],
        command_timeout_seconds=10,
        max_output_bytes=1024,
    ))


@pytest.fixture
def mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture
def fake_scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def override_get_db(db_session: AsyncSession):
    """Override the get_db dependency."""
    async def _override_get_db():
        yield db_session
    return _override_get_db


@pytest.fixture
async def test_client(
    override_get_db,
    gateway: FakeGateway,
    mailer: FakeMailer,
    fake_scheduler: FakeScheduler,
) -> AsyncGenerator[AsyncClient, None]:
    """Create a test client with database, gateway, mail and scheduler overrides."""
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_mail_transport] = lambda: mailer
    app.dependency_overrides[get_scheduler] = lambda: fake_scheduler

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# Test data fixtures
@pytest.fixture
async def sample_ca(db_session: AsyncSession) -> CertificateAuthority:
    ca = CertificateAuthority(
        name="corp-issuing-ca",
        display_name="Corp Issuing CA",
        type="issuing",
        hostname="ca01.corp.example.com",
        config_string="ca01.corp.example.com\\Corp-Issuing-CA",
        status="online",
        templates=[],
        sync_enabled=True,
    )
    db_session.add(ca)
    await db_session.commit()
    return ca


@pytest.fixture
async def sample_server(db_session: AsyncSession) -> Server:
    server = Server(
        hostname="web01",
        fqdn="web01.corp.example.com",
        ip_address="10.0.0.21",
        roles=["IIS"],
        status="online",
    )
    db_session.add(server)
    await db_session.commit()
    return server


@pytest.fixture
def sample_csr_data():
    """Sample CSR creation payload."""
    return {
        "common_name": "web01.corp.example.com",
        "subject_alternative_names": ["web01.corp.example.com", "www.corp.example.com"],
        "subject": {
            "organization": "Example Corp",
            "organizationalUnit": "IT",
            "locality": "Seattle",
            "state": "Washington",
            "country": "US",
        },
        "key_size": 2048,
        "key_algorithm": "RSA",
        "hash_algorithm": "SHA256",
        "template_name": "WebServer",
    }


@pytest.fixture
def make_certificate(db_session: AsyncSession):
    """Factory adding a certificate expiring ``expires_in`` from now."""
    counter = {"n": 0}

    async def _make(
        expires_in: timedelta,
        status: str = CertificateStatus.ACTIVE,
        common_name: Optional[str] = None,
        thumbprint: Optional[str] = None,
        notifications_sent=None,
        deployed_to=None,
    ) -> Certificate:
        counter["n"] += 1
        n = counter["n"]
        now = utcnow()
        cert = Certificate(
            serial_number=f"61000000{n:04d}",
            thumbprint=thumbprint,
            common_name=common_name or f"host{n}.corp.example.com",
            subject_alternative_names=[],
            subject={},
            issuer={"caId": "ca", "commonName": "Corp Issuing CA"},
            valid_from=now - timedelta(days=365),
            valid_to=now + expires_in,
            status=status,
            deployed_to=deployed_to or [],
            notifications_sent=notifications_sent or [],
            metadata_={},
        )
        db_session.add(cert)
        await db_session.commit()
        return cert

    return _make


@pytest.fixture
async def directory_users(db_session: AsyncSession):
    users = [
        User(username="alice", email="alice@corp.example.com", roles=["admin"]),
        User(username="bob", email="bob@corp.example.com", roles=["operator"]),
        User(username="carol", email="carol@corp.example.com", roles=["operator", "admin"]),
        User(username="dave", email=None, roles=["operator"]),
    ]
    db_session.add_all(users)
    await db_session.commit()
    return users
