"""Tests for the CSR workflow engine."""

import json
import pytest
import uuid
from datetime import datetime, timedelta, timezone
from cryptography import x509
from cryptography.hazmat.primitives import serialization, hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from sqlalchemy import select

from certkeeper.models import Certificate, CSRStatus, StepStatus
from certkeeper.models.certificate_request import STEP_GENERATE, STEP_SUBMIT, STEP_INSTALL
from certkeeper.schemas.csr import CSRCreate, CSRUpdate
from certkeeper.services.command_gateway import ErrorKind
from certkeeper.services.csr_workflow import (
    CSRGatewayError,
    CSRNotFoundError,
    CSRStateError,
    CSRValidationError,
    build_inf,
    build_subject_line,
    cancel_csr,
    create_csr,
    delete_csr,
    extract_certificate_pem,
    generate_csr,
    get_csr,
    list_csrs,
    submit_csr,
    update_csr,
)

SAMPLE_CSR_PEM = (
    "-----BEGIN NEW CERTIFICATE REQUEST-----\n"
    "MIICvDCCAaQCAQAwIzEhMB8GA1UEAwwYd2ViMDEuY29ycC5leGFtcGxlLmNvbTCC\n"
    "ASIwDQYJKoZIhvcNAQEBBQADggEPADCCAQoCggEBAL5s7Q==\n"
    "-----END NEW CERTIFICATE REQUEST-----"
)


def assert_pem_consistent(csr):
    """csr_pem is set exactly when the generate step completed."""
    assert bool(csr.csr_pem) == (csr.step_status(STEP_GENERATE) == StepStatus.COMPLETED)


@pytest.fixture
def issued_certificate_pem():
    """A CA-signed style certificate as Submit-CertificateRequest.ps1 would return it."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = x509.Name([
        x509.NameAttribute(x509.NameOID.COMMON_NAME, "web01.corp.example.com"),
        x509.NameAttribute(x509.NameOID.ORGANIZATION_NAME, "Example Corp"),
    ])
    now = datetime.now(timezone.utc)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(x509.Name([x509.NameAttribute(x509.NameOID.COMMON_NAME, "Corp Issuing CA")]))
        .public_key(private_key.public_key())
        .serial_number(0x1A2B3C)
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + timedelta(days=365))
        .add_extension(
            x509.SubjectAlternativeName([
                x509.DNSName("web01.corp.example.com"),
                x509.DNSName("www.corp.example.com"),
            ]),
            critical=False,
        )
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(
            x509.ExtendedKeyUsage([
                x509.oid.ExtendedKeyUsageOID.SERVER_AUTH,
                x509.ObjectIdentifier("1.3.6.1.4.1.311.21.5"),
            ]),
            critical=False,
        )
        .sign(private_key, hashes.SHA256())
    )
    return certificate.public_bytes(serialization.Encoding.PEM).decode("ascii")


@pytest.fixture
async def draft(db_session, sample_csr_data, sample_ca):
    data = CSRCreate(**sample_csr_data, target_ca_id=sample_ca.id)
    return await create_csr(db_session, data, "alice")


@pytest.fixture
async def generated(db_session, draft, gateway):
    gateway.succeed(SAMPLE_CSR_PEM)
    csr = await generate_csr(db_session, draft.id, gateway)
    gateway.commands.clear()
    return csr


class TestCreateAndRead:

    @pytest.mark.asyncio
    async def test_create_seeds_three_pending_steps(self, db_session, sample_csr_data):
        csr = await create_csr(db_session, CSRCreate(**sample_csr_data), "alice")

        assert csr.status == CSRStatus.DRAFT
        assert [s["step"] for s in csr.workflow_steps] == [STEP_GENERATE, STEP_SUBMIT, STEP_INSTALL]
        assert all(s["status"] == StepStatus.PENDING for s in csr.workflow_steps)
        assert csr.requested_by == "alice"
        assert csr.requested_at is not None
        assert csr.csr_pem is None
        assert csr.subject == {
            "organization": "Example Corp",
            "organizationalUnit": "IT",
            "locality": "Seattle",
            "state": "Washington",
            "country": "US",
        }

    @pytest.mark.asyncio
    async def test_create_rejects_blank_common_name(self, db_session):
        with pytest.raises(CSRValidationError):
            await create_csr(db_session, CSRCreate(common_name="   "), "alice")

    @pytest.mark.asyncio
    async def test_create_rejects_unknown_target_ca(self, db_session):
        with pytest.raises(CSRValidationError, match="Target CA not found"):
            await create_csr(db_session, CSRCreate(common_name="a.example.com", target_ca_id=uuid.uuid4()), "alice")

    @pytest.mark.asyncio
    async def test_get_missing(self, db_session):
        with pytest.raises(CSRNotFoundError):
            await get_csr(db_session, uuid.uuid4())

    @pytest.mark.asyncio
    async def test_list_filters_and_paginates(self, db_session):
        for i in range(5):
            await create_csr(db_session, CSRCreate(common_name=f"host{i}.example.com"), "alice")
        first = await create_csr(db_session, CSRCreate(common_name="cancel.example.com"), "alice")
        await cancel_csr(db_session, first.id)

        items, total = await list_csrs(db_session, status=CSRStatus.DRAFT, page=2, size=2)
        assert total == 5
        assert len(items) == 2
        assert all(c.status == CSRStatus.DRAFT for c in items)

        items, total = await list_csrs(db_session, status=CSRStatus.CANCELLED)
        assert total == 1
        assert items[0].common_name == "cancel.example.com"


class TestPayload:

    @pytest.mark.asyncio
    async def test_subject_line_field_order(self, draft):
        assert build_subject_line(draft) == (
            "CN=web01.corp.example.com, O=Example Corp, OU=IT, L=Seattle, S=Washington, C=US"
        )

    @pytest.mark.asyncio
    async def test_rsa_inf(self, draft):
        inf = build_inf(draft)

        assert 'Subject = "CN=web01.corp.example.com, O=Example Corp' in inf
        assert "KeyLength = 2048" in inf
        assert 'ProviderName = "Microsoft RSA SChannel Cryptographic Provider"' in inf
        assert "HashAlgorithm = SHA256" in inf
        assert '_continue_ = "dns=web01.corp.example.com&dns=www.corp.example.com"' in inf

    @pytest.mark.asyncio
    async def test_ecdsa_inf_and_no_san_block(self, db_session):
        csr = await create_csr(db_session, CSRCreate(
            common_name="api.example.com", key_algorithm="ECDSA", key_size=4096, hash_algorithm="SHA384",
        ), "alice")
        inf = build_inf(csr)

        assert "KeyAlgorithm = ECDSA_P384" in inf
        assert "Microsoft Software Key Storage Provider" in inf
        assert "KeyLength" not in inf
        assert "[Extensions]" not in inf


class TestGenerate:

    @pytest.mark.asyncio
    async def test_generate_success(self, db_session, draft, gateway):
        gateway.succeed(SAMPLE_CSR_PEM)
        csr = await generate_csr(db_session, draft.id, gateway)

        assert csr.status == CSRStatus.PENDING
        assert csr.csr_pem == SAMPLE_CSR_PEM
        assert csr.private_key_location == "localhost:LocalMachine\\My"
        step = csr.get_step(STEP_GENERATE)
        assert step["status"] == StepStatus.COMPLETED
        assert "completedAt" in step
        assert_pem_consistent(csr)

        assert len(gateway.commands) == 1
        command = gateway.commands[0]
        assert command.startswith("$infContent = '[Version]")
        assert "Invoke-Command" not in command
        assert f"'{draft.id.hex}.inf'" in command

    @pytest.mark.asyncio
    async def test_generate_runs_on_target_server(self, db_session, sample_csr_data, sample_server, gateway):
        csr = await create_csr(db_session, CSRCreate(**sample_csr_data, target_server_id=sample_server.id), "alice")
        gateway.succeed(SAMPLE_CSR_PEM)

        csr = await generate_csr(db_session, csr.id, gateway)

        assert gateway.commands[0].startswith("Invoke-Command -ComputerName 'web01.corp.example.com'")
        assert csr.private_key_location == "web01.corp.example.com:LocalMachine\\My"

    @pytest.mark.parametrize("field,value,reason", [
        ("common_name", "evil'; calc", "Invalid common name"),
        ("hash_algorithm", "SHA1", "Invalid hash algorithm"),
        ("hash_algorithm", "MD5", "Invalid hash algorithm"),
        ("key_size", 1024, "Invalid key size"),
        ("key_algorithm", "DSA", "Invalid key algorithm"),
        ("subject_alternative_names", ["ok.example.com", "bad name;"], "Invalid SAN"),
        ("template_name", "Web$Server", "Invalid template name"),
    ])
    @pytest.mark.asyncio
    async def test_validation_failure_spawns_nothing(self, db_session, sample_csr_data, gateway, field, value, reason):
        csr = await create_csr(db_session, CSRCreate(**{**sample_csr_data, field: value}), "alice")

        with pytest.raises(CSRValidationError, match=reason):
            await generate_csr(db_session, csr.id, gateway)

        assert gateway.commands == []
        assert csr.status == CSRStatus.DRAFT

    @pytest.mark.asyncio
    async def test_invalid_subject_component(self, db_session, sample_csr_data, gateway):
        sample_csr_data["subject"]["organization"] = 'Acme "Corp"'
        csr = await create_csr(db_session, CSRCreate(**sample_csr_data), "alice")

        with pytest.raises(CSRValidationError, match="organization"):
            await generate_csr(db_session, csr.id, gateway)
        assert gateway.commands == []

    @pytest.mark.asyncio
    async def test_gateway_failure_marks_failed(self, db_session, draft, gateway):
        gateway.fail("certreq: The RPC server is unavailable")

        with pytest.raises(CSRGatewayError) as exc_info:
            await generate_csr(db_session, draft.id, gateway)

        assert exc_info.value.error_kind == ErrorKind.NON_ZERO_EXIT
        csr = await get_csr(db_session, draft.id)
        assert csr.status == CSRStatus.FAILED
        assert csr.error_message == "certreq: The RPC server is unavailable"
        step = csr.get_step(STEP_GENERATE)
        assert step["status"] == StepStatus.FAILED
        assert step["error"] == "certreq: The RPC server is unavailable"
        assert_pem_consistent(csr)

    @pytest.mark.asyncio
    async def test_empty_output_is_a_failure(self, db_session, draft, gateway):
        gateway.succeed("   ")

        with pytest.raises(CSRGatewayError):
            await generate_csr(db_session, draft.id, gateway)

        csr = await get_csr(db_session, draft.id)
        assert csr.status == CSRStatus.FAILED
        assert csr.csr_pem is None
        assert_pem_consistent(csr)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("output", [
        "WARNING: certreq is deprecated on this host",
        "CertReq: Request Created\r\n" + SAMPLE_CSR_PEM,
        SAMPLE_CSR_PEM.replace("-----END NEW CERTIFICATE REQUEST-----", ""),
    ])
    async def test_non_pem_output_is_a_failure(self, db_session, draft, gateway, output):
        gateway.succeed(output)

        with pytest.raises(CSRGatewayError):
            await generate_csr(db_session, draft.id, gateway)

        csr = await get_csr(db_session, draft.id)
        assert csr.status == CSRStatus.FAILED
        assert csr.csr_pem is None
        assert csr.error_message == "Command output is not a PEM certificate request"
        assert csr.get_step(STEP_GENERATE)["status"] == StepStatus.FAILED
        assert_pem_consistent(csr)

    @pytest.mark.asyncio
    async def test_regenerate_while_pending(self, db_session, generated, gateway):
        gateway.succeed(SAMPLE_CSR_PEM.replace("L5s7Q", "AAAAA"))
        csr = await generate_csr(db_session, generated.id, gateway)

        assert csr.status == CSRStatus.PENDING
        assert "AAAAA" in csr.csr_pem

    @pytest.mark.asyncio
    async def test_generate_refused_after_failure(self, db_session, draft, gateway):
        gateway.fail()
        with pytest.raises(CSRGatewayError):
            await generate_csr(db_session, draft.id, gateway)

        with pytest.raises(CSRStateError):
            await generate_csr(db_session, draft.id, gateway)


class TestSubmit:

    @pytest.mark.asyncio
    async def test_submit_pending_approval(self, db_session, generated, gateway, sample_ca):
        gateway.succeed(json.dumps({"RequestId": 42, "Status": "Pending", "Certificate": None}))

        csr = await submit_csr(db_session, generated.id, gateway)

        assert csr.status == CSRStatus.SUBMITTED
        assert csr.step_status(STEP_SUBMIT) == StepStatus.COMPLETED
        assert csr.processed_at is not None
        assert csr.issued_certificate_id is None
        command = gateway.commands[0]
        assert "Submit-CertificateRequest.ps1" in command
        assert f"-ConfigString '{sample_ca.config_string}'" in command
        assert "-Template 'WebServer'" in command

    @pytest.mark.asyncio
    async def test_submit_links_issued_certificate(self, db_session, generated, gateway, issued_certificate_pem):
        gateway.succeed(json.dumps({"RequestId": 43, "Status": "Issued", "Certificate": issued_certificate_pem}))

        csr = await submit_csr(db_session, generated.id, gateway)

        assert csr.status == CSRStatus.ISSUED
        certificate = await db_session.get(Certificate, csr.issued_certificate_id)
        assert certificate.serial_number == "1A2B3C"
        assert certificate.common_name == "web01.corp.example.com"
        assert certificate.subject_alternative_names == ["web01.corp.example.com", "www.corp.example.com"]
        assert certificate.issuer["commonName"] == "Corp Issuing CA"
        assert len(certificate.thumbprint) == 40
        assert certificate.metadata_["createdBy"] == "alice"
        assert certificate.key_usage == ["digitalSignature", "keyEncipherment"]
        assert certificate.extended_key_usage == ["serverAuth", "1.3.6.1.4.1.311.21.5"]

    @pytest.mark.asyncio
    async def test_submit_requires_generated_csr(self, db_session, draft, gateway):
        with pytest.raises(CSRStateError, match="not generated"):
            await submit_csr(db_session, draft.id, gateway)
        assert gateway.commands == []

    @pytest.mark.asyncio
    async def test_submit_requires_target_ca(self, db_session, sample_csr_data, gateway):
        csr = await create_csr(db_session, CSRCreate(**sample_csr_data), "alice")
        gateway.succeed(SAMPLE_CSR_PEM)
        await generate_csr(db_session, csr.id, gateway)

        with pytest.raises(CSRValidationError, match="Target CA not specified"):
            await submit_csr(db_session, csr.id, gateway)

        csr = await get_csr(db_session, csr.id)
        assert csr.status == CSRStatus.PENDING

    @pytest.mark.asyncio
    async def test_submit_failure_marks_failed(self, db_session, generated, gateway):
        gateway.fail("Denied by Policy Module")

        with pytest.raises(CSRGatewayError):
            await submit_csr(db_session, generated.id, gateway)

        csr = await get_csr(db_session, generated.id)
        assert csr.status == CSRStatus.FAILED
        assert csr.get_step(STEP_SUBMIT)["error"] == "Denied by Policy Module"
        assert csr.step_status(STEP_GENERATE) == StepStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_submit_twice_is_refused(self, db_session, generated, gateway):
        gateway.succeed("{}")
        await submit_csr(db_session, generated.id, gateway)

        with pytest.raises(CSRStateError):
            await submit_csr(db_session, generated.id, gateway)


class TestUpdateDeleteCancel:

    @pytest.mark.asyncio
    async def test_update_draft_whitelisted_fields(self, db_session, draft):
        csr = await update_csr(db_session, draft.id, CSRUpdate(
            common_name="web02.corp.example.com",
            key_size=4096,
            subject_alternative_names=["web02.corp.example.com"],
        ))

        assert csr.common_name == "web02.corp.example.com"
        assert csr.key_size == 4096
        assert csr.subject_alternative_names == ["web02.corp.example.com"]
        assert csr.requested_by == "alice"

    @pytest.mark.asyncio
    async def test_update_can_clear_template(self, db_session, draft):
        csr = await update_csr(db_session, draft.id, CSRUpdate(template_name=None))
        assert csr.template_name is None

    @pytest.mark.asyncio
    async def test_update_refused_unless_draft(self, db_session, generated):
        with pytest.raises(CSRStateError):
            await update_csr(db_session, generated.id, CSRUpdate(common_name="other.example.com"))

    @pytest.mark.asyncio
    async def test_delete_refused_when_submitted(self, db_session, generated, gateway):
        gateway.succeed("{}")
        await submit_csr(db_session, generated.id, gateway)

        with pytest.raises(CSRStateError, match="Cannot delete submitted CSR"):
            await delete_csr(db_session, generated.id)

    @pytest.mark.asyncio
    async def test_delete_pending(self, db_session, generated):
        await delete_csr(db_session, generated.id)
        with pytest.raises(CSRNotFoundError):
            await get_csr(db_session, generated.id)

    @pytest.mark.asyncio
    async def test_cancel(self, db_session, draft, gateway):
        csr = await cancel_csr(db_session, draft.id)
        assert csr.status == CSRStatus.CANCELLED

        with pytest.raises(CSRStateError):
            await generate_csr(db_session, draft.id, gateway)

        await delete_csr(db_session, draft.id)


class TestEndToEnd:

    @pytest.mark.asyncio
    async def test_create_generate_submit(self, db_session, sample_ca, gateway):
        csr = await create_csr(db_session, CSRCreate(
            common_name="test.example.com", key_size=2048, hash_algorithm="SHA256", target_ca_id=sample_ca.id,
        ), "operator")
        assert csr.status == CSRStatus.DRAFT

        gateway.succeed(SAMPLE_CSR_PEM)
        csr = await generate_csr(db_session, csr.id, gateway)
        assert len(gateway.commands) == 1
        assert "Subject = \"CN=test.example.com\"" in gateway.commands[0]
        assert csr.status == CSRStatus.PENDING
        assert csr.csr_pem
        assert csr.step_status(STEP_GENERATE) == StepStatus.COMPLETED

        gateway.succeed(json.dumps({"RequestId": 7, "Status": "Pending", "Certificate": None}))
        csr = await submit_csr(db_session, csr.id, gateway)
        assert len(gateway.commands) == 2
        assert sample_ca.config_string in gateway.commands[1]
        assert csr.status == CSRStatus.SUBMITTED
        assert csr.step_status(STEP_SUBMIT) == StepStatus.COMPLETED

        result = await db_session.execute(select(Certificate))
        assert result.scalars().all() == []


class TestExtractCertificate:

    def test_json_without_certificate(self):
        assert extract_certificate_pem('{"Status": "Pending", "Certificate": null}') is None

    def test_raw_pem_in_output(self, issued_certificate_pem):
        assert extract_certificate_pem("Issued\n" + issued_certificate_pem) == issued_certificate_pem.strip()

    def test_empty(self):
        assert extract_certificate_pem("") is None
