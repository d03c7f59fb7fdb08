"""
Report lifecycle tests: create, sign, upload, redo, invalidate and the read paths
"""
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from io import BytesIO

from pyhanko.pdf_utils.reader import PdfFileReader
from sqlalchemy import select

from app.core.error_handling import (
    CertificateException,
    ConflictException,
    ForbiddenException,
    NotFoundException,
    StorageException,
    UnauthorizedException,
    ValidationException,
)
from app.core.field_crypto import ENCRYPTED_PREFIX, FieldCodec
from app.models import AuditLog, ExamStatus, Report, ReportPrice, ReportStatus, SigningMethod, UserRole
from app.services.report_lifecycle import mask_access_code
from app.services.signing_engine import SIGNATURE_FIELD_NAME
from conftest import CERT_PASSWORD, FakeS3Client, FakeUploadcare, build_storage, create_user


CONCLUSION = "Normal sinus rhythm."
META = {"ip": "10.0.0.9", "user_agent": "pytest"}


def history_actions(report):
    return [entry["action"] for entry in report.history]


async def audit_actions(db_session):
    result = await db_session.execute(select(AuditLog.action).order_by(AuditLog.id))
    return list(result.scalars().all())


async def assert_signed_invariant(db_session):
    result = await db_session.execute(select(Report))
    for report in result.scalars().all():
        if report.status == ReportStatus.SIGNED:
            assert report.has_signed_artifact()


@pytest.fixture
async def registered_certificate(certificates, physician, pkcs12_bytes):
    return await certificates.register(physician.id, pkcs12_bytes, "medico.pfx", CERT_PASSWORD)


# ==================== Create ====================

@pytest.mark.integration
class TestCreateReport:

    async def test_create_report_for_exam(self, service, exam, physician, s3_client, db_session, codec):
        result = await service.create_report(exam.id, CONCLUSION, physician, META)
        report = result.report

        assert report.status == ReportStatus.PENDING_SIGNATURE
        assert report.valid is True
        assert report.version == 1
        assert exam.status == ExamStatus.LAUDO_REALIZADO
        assert exam.active_report_id == report.id
        assert result.auto_sign_available is False

        assert report.conclusion.startswith(ENCRYPTED_PREFIX)
        assert codec.decrypt(report.conclusion) == CONCLUSION
        assert codec.decrypt(report.physician_name) == "Dr. João da Silva"
        assert report.signing_method == SigningMethod.SEM_ASSINATURA
        assert len(report.access_code) == 4 and report.access_code.isdigit()
        assert history_actions(report) == ["Criação"]
        assert codec.decrypt(report.history[0]["actor_name"]) == "Dr. João da Silva"

        assert report.original_key == f"laudos/1/{report.id}/original/laudo_original_{report.id}.pdf"
        assert s3_client.objects[report.original_key].startswith(b"%PDF")
        assert result.artifact_url is not None
        assert await audit_actions(db_session) == ["create"]

    async def test_auto_sign_available_with_certificate(self, service, exam, physician, registered_certificate):
        result = await service.create_report(exam.id, CONCLUSION, physician)
        assert result.auto_sign_available is True

    async def test_payment_value_from_price_table(self, service, exam, physician, db_session):
        db_session.add(ReportPrice(tenant_id=1, exam_type_id=exam.exam_type_id, specialty_id=1, value=Decimal("45.00")))
        await db_session.flush()

        result = await service.create_report(exam.id, CONCLUSION, physician)
        assert result.report.payment_value == Decimal("45.00")

    async def test_second_valid_report_conflicts_until_invalidated(self, service, exam, physician):
        first = (await service.create_report(exam.id, CONCLUSION, physician)).report

        with pytest.raises(ConflictException):
            await service.create_report(exam.id, "Outro laudo.", physician)

        await service.invalidate_report(first.id, physician)
        second = (await service.create_report(exam.id, "Outro laudo.", physician)).report

        assert second.id != first.id
        assert exam.active_report_id == second.id

    async def test_missing_input(self, service, exam, physician):
        with pytest.raises(ValidationException) as exc_info:
            await service.create_report(exam.id, "   ", physician)
        assert exc_info.value.details == {"field": "conclusion"}

        with pytest.raises(ValidationException):
            await service.create_report(None, CONCLUSION, physician)

    async def test_only_physicians_create(self, service, exam, technician):
        with pytest.raises(ForbiddenException):
            await service.create_report(exam.id, CONCLUSION, technician)

    async def test_unknown_exam(self, service, physician):
        with pytest.raises(NotFoundException):
            await service.create_report(9999, CONCLUSION, physician)

    async def test_exam_from_another_tenant(self, service, exam, db_session, codec):
        outsider = await create_user(db_session, codec, "Dr. Fora", "fora@outra.com", tenant_id=2)
        with pytest.raises(NotFoundException):
            await service.create_report(exam.id, CONCLUSION, outsider)

    async def test_render_failure_does_not_fail_creation(self, service, exam, physician, s3_client, monkeypatch):
        from app.core.error_handling import RenderException

        def broken_render(ctx):
            raise RenderException()

        monkeypatch.setattr(service.renderer, "render", broken_render)
        result = await service.create_report(exam.id, CONCLUSION, physician)

        assert result.report.status == ReportStatus.PENDING_SIGNATURE
        assert result.report.original_key is None
        assert result.artifact_url is None
        assert s3_client.objects == {}


# ==================== Sign ====================

@pytest.mark.integration
class TestSignReport:

    async def test_sign_with_registered_certificate(
        self, service, exam, physician, registered_certificate, s3_client, db_session
    ):
        report = (await service.create_report(exam.id, CONCLUSION, physician)).report
        original_key = report.original_key

        result = await service.sign_report(report.id, physician, "automatico", META)

        assert result.report is report
        assert report.status == ReportStatus.SIGNED
        assert report.digitally_signed is True
        assert report.signing_method == SigningMethod.CERTIFICADO_MEDICO
        assert report.certificate_id == registered_certificate.id
        assert report.signed_at is not None
        assert report.signed_key == f"laudos/1/{report.id}/assinado/laudo_assinado_{report.id}.pdf"
        assert report.original_key is None
        assert original_key not in s3_client.objects
        assert exam.status == ExamStatus.LAUDO_ASSINADO
        assert history_actions(report) == ["Criação", "Assinatura"]
        assert registered_certificate.total_uses == 1

        signed_pdf = s3_client.objects[report.signed_key]
        reader = PdfFileReader(BytesIO(signed_pdf), strict=False)
        assert [sig.field_name for sig in reader.embedded_signatures] == [SIGNATURE_FIELD_NAME]

        assert await audit_actions(db_session) == ["create", "sign"]
        await assert_signed_invariant(db_session)

    async def test_manual_mode_uses_the_same_pipeline(self, service, exam, physician, registered_certificate):
        report = (await service.create_report(exam.id, CONCLUSION, physician)).report
        await service.sign_report(report.id, physician, "manual")

        assert report.status == ReportStatus.SIGNED
        assert "manualmente" in report.history[-1]["detail"]

    async def test_without_active_certificate(self, service, exam, physician, s3_client):
        report = (await service.create_report(exam.id, CONCLUSION, physician)).report

        with pytest.raises(CertificateException) as exc_info:
            await service.sign_report(report.id, physician)

        assert "Nenhum certificado ativo" in exc_info.value.message
        assert report.status == ReportStatus.PENDING_SIGNATURE
        assert report.signed_key is None
        assert exam.status == ExamStatus.LAUDO_REALIZADO
        assert not any("/assinado/" in key for key in s3_client.objects)

    async def test_with_expired_certificate(
        self, service, exam, physician, registered_certificate, db_session
    ):
        report = (await service.create_report(exam.id, CONCLUSION, physician)).report
        registered_certificate.expires_at = datetime.now(timezone.utc) - timedelta(days=1)
        await db_session.flush()

        with pytest.raises(CertificateException):
            await service.sign_report(report.id, physician)

        assert report.status == ReportStatus.PENDING_SIGNATURE
        assert report.digitally_signed is False

    async def test_failed_signature_leaves_no_artifact(
        self, service, exam, physician, registered_certificate, s3_client, codec, db_session
    ):
        report = (await service.create_report(exam.id, CONCLUSION, physician)).report
        registered_certificate.password_encrypted = codec.encrypt("senha-que-nao-abre")
        await db_session.flush()
        keys_before = set(s3_client.objects)

        with pytest.raises(CertificateException) as exc_info:
            await service.sign_report(report.id, physician)

        assert exc_info.value.details["reasons"]
        assert set(s3_client.objects) == keys_before
        assert report.status == ReportStatus.PENDING_SIGNATURE
        assert report.original_key in s3_client.objects
        assert registered_certificate.usage_attempts[-1]["success"] is False
        assert registered_certificate.total_uses == 0

    async def test_only_responsible_physician_signs(self, service, exam, physician, other_physician):
        report = (await service.create_report(exam.id, CONCLUSION, physician)).report
        with pytest.raises(ForbiddenException):
            await service.sign_report(report.id, other_physician)

    async def test_already_signed(self, service, exam, physician, registered_certificate):
        report = (await service.create_report(exam.id, CONCLUSION, physician)).report
        await service.sign_report(report.id, physician)

        with pytest.raises(ConflictException):
            await service.sign_report(report.id, physician)

    async def test_invalid_mode(self, service, exam, physician):
        report = (await service.create_report(exam.id, CONCLUSION, physician)).report
        with pytest.raises(ValidationException):
            await service.sign_report(report.id, physician, "remoto")


# ==================== Upload signed document ====================

@pytest.mark.integration
class TestUploadSignedDocument:

    async def test_non_pdf_is_rejected_before_any_write(self, service, exam, physician, s3_client):
        report = (await service.create_report(exam.id, CONCLUSION, physician)).report
        puts_before = s3_client.put_calls

        with pytest.raises(ValidationException):
            await service.upload_signed_document(report.id, physician, b"\x89PNG....", "image/png", "laudo.png")

        assert s3_client.put_calls == puts_before
        assert report.status == ReportStatus.PENDING_SIGNATURE

    async def test_upload_marks_report_signed(self, service, exam, physician, s3_client, db_session):
        report = (await service.create_report(exam.id, CONCLUSION, physician)).report
        original_key = report.original_key

        result = await service.upload_signed_document(
            report.id, physician, b"%PDF-1.7 assinado externamente", "application/pdf", "assinado.pdf", META
        )

        assert report.status == ReportStatus.SIGNED
        assert report.signing_method == SigningMethod.UPLOAD_MANUAL
        assert report.digitally_signed is False
        assert s3_client.objects[report.signed_key] == b"%PDF-1.7 assinado externamente"
        assert original_key not in s3_client.objects
        assert exam.status == ExamStatus.LAUDO_ASSINADO
        assert result.artifact_url
        assert await audit_actions(db_session) == ["create", "upload"]

    async def test_mime_type_parameters_are_ignored(self, service, exam, physician):
        report = (await service.create_report(exam.id, CONCLUSION, physician)).report
        await service.upload_signed_document(report.id, physician, b"%PDF", "Application/PDF; charset=binary")
        assert report.status == ReportStatus.SIGNED

    async def test_storage_failure_keeps_report_pending(self, service, exam, physician):
        report = (await service.create_report(exam.id, CONCLUSION, physician)).report
        service.storage = build_storage(FakeS3Client(fail_puts=True), FakeUploadcare(fail=True))
        try:
            with pytest.raises(StorageException):
                await service.upload_signed_document(report.id, physician, b"%PDF", "application/pdf")
        finally:
            await service.storage.legacy.aclose()

        assert report.status == ReportStatus.PENDING_SIGNATURE
        assert report.signed_key is None
        assert report.legacy_url is None

    async def test_primary_failure_falls_back_to_legacy(self, service, exam, physician):
        report = (await service.create_report(exam.id, CONCLUSION, physician)).report
        service.storage = build_storage(FakeS3Client(fail_puts=True), FakeUploadcare())
        try:
            result = await service.upload_signed_document(report.id, physician, b"%PDF", "application/pdf")
        finally:
            await service.storage.legacy.aclose()

        assert report.status == ReportStatus.SIGNED
        assert report.signed_key is None
        assert report.legacy_url == result.artifact_url
        assert report.has_signed_artifact()

    async def test_only_responsible_physician_uploads(self, service, exam, physician, other_physician):
        report = (await service.create_report(exam.id, CONCLUSION, physician)).report
        with pytest.raises(ForbiddenException):
            await service.upload_signed_document(report.id, other_physician, b"%PDF", "application/pdf")


# ==================== Redo ====================

@pytest.mark.integration
class TestRedoReport:

    async def test_redo_creates_next_version(self, service, exam, physician, codec, db_session):
        first = (await service.create_report(exam.id, CONCLUSION, physician)).report
        snapshot = {
            "conclusion": first.conclusion,
            "status": first.status,
            "valid": first.valid,
            "version": first.version,
            "history": list(first.history),
            "original_key": first.original_key,
        }

        result = await service.redo_report(first.id, physician, "Bloqueio de ramo direito.", META)
        second = result.report

        assert second.id != first.id
        assert second.version == 2
        assert second.previous_report_id == first.id
        assert codec.decrypt(second.conclusion) == "Bloqueio de ramo direito."
        assert history_actions(second) == ["Criação", "Refação"]
        assert exam.active_report_id == second.id
        assert exam.status == ExamStatus.LAUDO_REALIZADO
        assert result.signed is False
        assert result.artifact_url is not None

        assert first.conclusion == snapshot["conclusion"]
        assert first.status == snapshot["status"]
        assert first.valid == snapshot["valid"]
        assert first.version == snapshot["version"]
        assert first.history == snapshot["history"]
        assert first.original_key == snapshot["original_key"]

        detail = await service.get_report(first.id, physician)
        assert detail["conclusion"] == CONCLUSION
        assert "recreate" in await audit_actions(db_session)

    async def test_redo_reuses_previous_conclusion(self, service, exam, physician, codec):
        first = (await service.create_report(exam.id, CONCLUSION, physician)).report
        second = (await service.redo_report(first.id, physician)).report
        assert codec.decrypt(second.conclusion) == CONCLUSION

    async def test_redo_signs_when_certificate_is_available(
        self, service, exam, physician, registered_certificate, db_session
    ):
        first = (await service.create_report(exam.id, CONCLUSION, physician)).report
        result = await service.redo_report(first.id, physician, "Revisado.")

        assert result.signed is True
        assert result.report.status == ReportStatus.SIGNED
        assert result.report.signed_key is not None
        assert result.report.original_key is None
        assert history_actions(result.report) == ["Criação", "Refação", "Assinatura"]
        assert exam.status == ExamStatus.LAUDO_ASSINADO
        await assert_signed_invariant(db_session)

    async def test_redo_degrades_to_unsigned_when_signing_fails(
        self, service, exam, physician, registered_certificate, codec, db_session
    ):
        first = (await service.create_report(exam.id, CONCLUSION, physician)).report
        registered_certificate.password_encrypted = codec.encrypt("senha-que-nao-abre")
        await db_session.flush()

        result = await service.redo_report(first.id, physician, "Revisado.")

        assert result.signed is False
        assert result.report.status == ReportStatus.PENDING_SIGNATURE
        assert result.report.original_key is not None

    async def test_redo_of_invalidated_report(self, service, exam, physician):
        first = (await service.create_report(exam.id, CONCLUSION, physician)).report
        await service.invalidate_report(first.id, physician)

        with pytest.raises(ConflictException):
            await service.redo_report(first.id, physician, "Novo.")

    async def test_unreadable_conclusion_requires_a_new_one(self, service, exam, physician, db_session):
        first = (await service.create_report(exam.id, CONCLUSION, physician)).report
        first.conclusion = FieldCodec(FieldCodec.generate_key()).encrypt("outra chave")
        await db_session.flush()

        with pytest.raises(ValidationException):
            await service.redo_report(first.id, physician)

        second = (await service.redo_report(first.id, physician, "Conclusão nova.")).report
        assert second.version == 2


# ==================== Invalidate ====================

@pytest.mark.integration
class TestInvalidateReport:

    async def test_invalidate(self, service, exam, physician, db_session):
        report = (await service.create_report(exam.id, CONCLUSION, physician)).report
        await service.invalidate_report(report.id, physician, META)

        assert report.valid is False
        assert report.status == ReportStatus.INVALIDATED
        assert report.invalidated_at is not None
        assert history_actions(report) == ["Criação", "Invalidação"]
        assert exam.status == ExamStatus.LAUDO_REALIZADO
        assert await audit_actions(db_session) == ["create", "invalidate"]

    async def test_invalidate_is_idempotent(self, service, exam, physician, db_session):
        report = (await service.create_report(exam.id, CONCLUSION, physician)).report
        await service.invalidate_report(report.id, physician)
        await service.invalidate_report(report.id, physician)

        assert history_actions(report) == ["Criação", "Invalidação"]
        assert await audit_actions(db_session) == ["create", "invalidate"]

    async def test_invalidated_report_cannot_be_signed(self, service, exam, physician, registered_certificate):
        report = (await service.create_report(exam.id, CONCLUSION, physician)).report
        await service.invalidate_report(report.id, physician)

        with pytest.raises(ConflictException):
            await service.sign_report(report.id, physician)


# ==================== Reads ====================

@pytest.mark.integration
class TestReads:

    async def test_get_report_decrypts_fields(self, service, exam, physician):
        report = (await service.create_report(exam.id, CONCLUSION, physician)).report
        detail = await service.get_report(report.id, physician)

        assert detail["conclusion"] == CONCLUSION
        assert detail["physician_name"] == "Dr. João da Silva"
        assert detail["exam"]["patient_name"] == "Maria Oliveira"
        assert detail["exam"]["exam_type"] == "Eletrocardiograma"
        assert detail["has_original"] is True
        assert detail["has_signed"] is False

    async def test_get_report_tolerates_legacy_and_unreadable_values(
        self, service, exam, physician, db_session
    ):
        report = (await service.create_report(exam.id, CONCLUSION, physician)).report
        exam.patient.name = "Maria Legada"
        foreign = FieldCodec(FieldCodec.generate_key()).encrypt("ilegível")
        report.conclusion = foreign
        await db_session.flush()

        detail = await service.get_report(report.id, physician)
        assert detail["exam"]["patient_name"] == "Maria Legada"
        assert detail["conclusion"] == foreign

    async def test_physicians_only_see_their_reports(self, service, exam, physician, other_physician, db_session, codec):
        report = (await service.create_report(exam.id, CONCLUSION, physician)).report
        with pytest.raises(NotFoundException):
            await service.get_report(report.id, other_physician)
        with pytest.raises(NotFoundException):
            await service.get_history(report.id, other_physician)
        with pytest.raises(NotFoundException):
            await service.open_document(report.id, other_physician, "original")

        admin = await create_user(db_session, codec, "Admin", "admin@clinica.com", role=UserRole.ADMIN)
        assert (await service.get_report(report.id, admin))["id"] == report.id

    async def test_other_tenant_cannot_read(self, service, exam, physician, db_session, codec):
        report = (await service.create_report(exam.id, CONCLUSION, physician)).report
        outsider = await create_user(db_session, codec, "Admin Fora", "admin@outra.com", role=UserRole.ADMIN, tenant_id=2)
        with pytest.raises(NotFoundException):
            await service.get_report(report.id, outsider)

    async def test_history_names_are_decrypted(self, service, exam, physician):
        report = (await service.create_report(exam.id, CONCLUSION, physician)).report
        history = await service.get_history(report.id, physician)

        assert history[0]["actor_name"] == "Dr. João da Silva"
        assert history[0]["action"] == "Criação"
        # The stored entry stays encrypted
        assert report.history[0]["actor_name"].startswith(ENCRYPTED_PREFIX)

    async def test_open_document(self, service, exam, physician):
        report = (await service.create_report(exam.id, CONCLUSION, physician)).report

        body = await service.open_document(report.id, physician, "original")
        data = b"".join([chunk async for chunk in body])
        assert data.startswith(b"%PDF")

        with pytest.raises(NotFoundException):
            await service.open_document(report.id, physician, "assinado")
        with pytest.raises(ValidationException):
            await service.open_document(report.id, physician, "rascunho")


@pytest.mark.integration
class TestPublicAccess:

    async def test_public_view_is_sanitized(self, service, exam, physician):
        report = (await service.create_report(exam.id, CONCLUSION, physician)).report
        view = await service.public_view(report.id)

        assert view["id"] == report.id
        assert view["patient_name"] == "Maria Oliveira"
        assert view["exam_type"] == "Eletrocardiograma"
        assert view["signed"] is False
        assert view["access_code"] == "**" + report.access_code[-2:]
        assert set(view) == {
            "id", "patient_name", "exam_type", "exam_date", "status", "valid",
            "signed", "digitally_signed", "signed_at", "access_code",
        }
        assert not any("laudos/" in str(value) for value in view.values())

    async def test_authenticate_public(self, service, exam, physician):
        report = (await service.create_report(exam.id, CONCLUSION, physician)).report

        with pytest.raises(UnauthorizedException):
            await service.authenticate_public(report.id, "0000" if report.access_code != "0000" else "1111")

        access = await service.authenticate_public(report.id, report.access_code)
        assert report.original_key in access["url"]
        assert access["expires_in"] == 900
        assert access["signed"] is False

    async def test_authenticate_public_prefers_signed_document(self, service, exam, physician):
        report = (await service.create_report(exam.id, CONCLUSION, physician)).report
        await service.upload_signed_document(report.id, physician, b"%PDF", "application/pdf")

        access = await service.authenticate_public(report.id, report.access_code)
        assert report.signed_key in access["url"]
        assert access["signed"] is True

    async def test_invalidated_report_has_no_public_document(self, service, exam, physician):
        report = (await service.create_report(exam.id, CONCLUSION, physician)).report
        await service.invalidate_report(report.id, physician)

        with pytest.raises(ConflictException):
            await service.authenticate_public(report.id, report.access_code)


@pytest.mark.unit
def test_mask_access_code():
    assert mask_access_code("4821") == "**21"
    assert mask_access_code(None) is None
