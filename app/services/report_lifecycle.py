"""
Report Lifecycle Service
State machine of a laudo: create, sign (automatic or manual), upload of an
externally signed document, redo ("refazer") and invalidation.

Every operation runs its steps in order (render, sign, persist, cleanup,
status update); nothing is reported as signed before the signed document is
stored.
"""

import asyncio
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.error_handling import (
    CertificateException,
    ConflictException,
    ForbiddenException,
    NotFoundException,
    RenderException,
    StorageException,
    UnauthorizedException,
    ValidationException,
)
from app.core.field_crypto import DecryptError, FieldCodec
from app.models import (
    Exam,
    ExamStatus,
    Report,
    ReportPrice,
    ReportStatus,
    SigningMethod,
    User,
    UserRole,
)
from app.services.audit_service import AuditService
from app.services.certificate_store import CertificateStore
from app.services.report_renderer import RenderContext, ReportRenderer
from app.services.signing_engine import SignerMetadata, SigningEngine, SigningFailed
from app.services.storage_reconciler import StorageReconciler
from app.services.storage_types import DocumentKind, StoredObject

logger = logging.getLogger(__name__)

PDF_MIME_TYPE = "application/pdf"
SIGN_MODES = ("automatico", "manual")
COLLECTION = "laudos"


@dataclass
class CreateReportResult:
    report: Report
    auto_sign_available: bool
    artifact_url: Optional[str] = None


@dataclass
class SignResult:
    report: Report
    artifact_url: Optional[str]


@dataclass
class RedoResult:
    report: Report
    artifact_url: Optional[str]
    signed: bool


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def report_snapshot(report: Report) -> Dict[str, Any]:
    """JSON-safe audit view of a report. Conclusion and names are left out."""
    return {
        "id": report.id,
        "exam_id": report.exam_id,
        "status": report.status.value if report.status else None,
        "valid": report.valid,
        "version": report.version,
        "physician_id": report.physician_id,
        "signing_method": report.signing_method.value if report.signing_method else None,
        "digitally_signed": report.digitally_signed,
        "certificate_id": report.certificate_id,
        "signed_at": _isoformat(report.signed_at),
        "has_original": bool(report.original_key or report.original_legacy_url),
        "has_signed": report.has_signed_artifact(),
    }


def mask_access_code(code: Optional[str]) -> Optional[str]:
    if not code:
        return None
    return "*" * (len(code) - 2) + code[-2:]


class ReportLifecycleService:
    """Orchestrates renderer, signing engine, certificate store and storage for laudos"""

    def __init__(
        self,
        db: AsyncSession,
        codec: FieldCodec,
        storage: StorageReconciler,
        certificates: CertificateStore,
        signer: SigningEngine,
        audit: AuditService,
        renderer: ReportRenderer,
        public_base_url: str,
        signature_reason: str,
        signature_location: str,
    ):
        self.db = db
        self.codec = codec
        self.storage = storage
        self.certificates = certificates
        self.signer = signer
        self.audit = audit
        self.renderer = renderer
        self.public_base_url = public_base_url.rstrip("/")
        self.signature_reason = signature_reason
        self.signature_location = signature_location

    # ---------------------------------------------------------------- loading

    async def _get_report(self, report_id: int) -> Report:
        result = await self.db.execute(select(Report).where(Report.id == report_id))
        report = result.scalar_one_or_none()
        if report is None:
            raise NotFoundException("Laudo não encontrado")
        return report

    async def _get_exam(self, exam_id: int, lock: bool = False) -> Exam:
        query = select(Exam).where(Exam.id == exam_id)
        if lock:
            query = query.with_for_update()
        result = await self.db.execute(query)
        exam = result.scalar_one_or_none()
        if exam is None:
            raise NotFoundException("Exame não encontrado")
        return exam

    async def _get_user(self, user_id: Optional[int]) -> Optional[User]:
        if user_id is None:
            return None
        result = await self.db.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def _load_for_actor(self, report_id: int, actor: User) -> Report:
        report = await self._get_report(report_id)
        if report.tenant_id != actor.tenant_id:
            raise NotFoundException("Laudo não encontrado")
        return report

    async def _load_readable(self, report_id: int, actor: User) -> Report:
        """Physicians only read their own laudos; other staff read the whole tenant"""
        report = await self._load_for_actor(report_id, actor)
        if actor.role == UserRole.MEDICO and report.physician_id != actor.id:
            raise NotFoundException("Laudo não encontrado")
        return report

    def _require_physician(self, actor: User) -> None:
        if actor.role != UserRole.MEDICO:
            raise ForbiddenException("Apenas médicos podem realizar esta operação")

    def _require_responsible(self, report: Report, actor: User) -> None:
        if report.physician_id != actor.id:
            raise ForbiddenException("Apenas o médico responsável pode assinar este laudo")

    def _require_pending(self, report: Report) -> None:
        if not report.valid or report.status != ReportStatus.PENDING_SIGNATURE:
            raise ConflictException(
                f"Laudo não está pronto para assinatura (status atual: {report.status.value})"
            )

    # ---------------------------------------------------------------- helpers

    def _name(self, user: Optional[User]) -> str:
        if user is None:
            return ""
        return self.codec.decrypt_or_raw(user.name, "user.name") or ""

    def public_link(self, report_id: int) -> str:
        return f"{self.public_base_url}/{report_id}"

    def _append_history(self, report: Report, actor: User, action: str, detail: str) -> None:
        entry = {
            "timestamp": _utcnow().isoformat(),
            "actor_id": actor.id,
            "actor_name": self.codec.encrypt(self._name(actor)),
            "action": action,
            "detail": detail,
            "version": report.version,
        }
        report.history = list(report.history or []) + [entry]

    def _check_signed_invariant(self, report: Report) -> None:
        if report.status == ReportStatus.SIGNED and not report.has_signed_artifact():
            raise RuntimeError(f"Report {report.id} marked as signed without a signed document")

    async def _payment_value(self, tenant_id: int, exam_type_id: Optional[int], specialty_id: Optional[int]):
        if not exam_type_id or not specialty_id:
            return None
        result = await self.db.execute(
            select(ReportPrice.value).where(
                ReportPrice.tenant_id == tenant_id,
                ReportPrice.exam_type_id == exam_type_id,
                ReportPrice.specialty_id == specialty_id,
            )
        )
        return result.scalar_one_or_none()

    async def _has_valid_report(self, exam: Exam) -> bool:
        if exam.active_report_id is None:
            return False
        result = await self.db.execute(
            select(Report.valid).where(Report.id == exam.active_report_id)
        )
        return bool(result.scalar_one_or_none())

    async def _build_context(
        self,
        report: Report,
        exam: Exam,
        digitally_signed: bool,
        signed_at: Optional[datetime] = None,
    ) -> RenderContext:
        physician = await self._get_user(report.physician_id)
        patient = exam.patient
        decrypt = self.codec.decrypt_or_raw

        physician_name = decrypt(report.physician_name, "report.physician_name") or self._name(physician)
        return RenderContext(
            report_id=str(report.id),
            conclusion=decrypt(report.conclusion, "report.conclusion") or "",
            physician_name=physician_name,
            physician_crm=physician.crm if physician else None,
            exam_type=exam.exam_type.name if exam.exam_type else None,
            exam_date=exam.exam_date,
            patient_name=decrypt(patient.name, "patient.name") if patient else None,
            patient_cpf=decrypt(patient.cpf, "patient.cpf") if patient else None,
            birth_date=patient.birth_date if patient else None,
            height=exam.height,
            weight=exam.weight,
            heart_rate=exam.heart_rate,
            pr_interval=exam.pr_interval,
            qrs_duration=exam.qrs_duration,
            public_link=self.public_link(report.id),
            digitally_signed=digitally_signed,
            signed_at=signed_at,
        )

    async def _render(self, ctx: RenderContext) -> bytes:
        return await asyncio.to_thread(self.renderer.render, ctx)

    async def _store_unsigned_original(self, report: Report, exam: Exam) -> Optional[StoredObject]:
        """Best effort: a failure here never fails the calling operation"""
        try:
            ctx = await self._build_context(report, exam, digitally_signed=False)
            pdf_bytes = await self._render(ctx)
            stored = await self.storage.persist(pdf_bytes, report.id, report.tenant_id, DocumentKind.ORIGINAL)
        except (RenderException, StorageException) as e:
            logger.warning(f"Unsigned original for laudo {report.id} not stored: {e.message}")
            return None

        if stored.key:
            report.original_key = stored.key
        else:
            report.original_legacy_url = stored.url
        return stored

    async def _sign_and_store(self, report: Report, exam: Exam, actor: User) -> StoredObject:
        """
        Render with the signed seal, sign with the physician's certificate and
        store the result. Raises CertificateException or SigningFailed before
        anything is written to storage.
        """
        material = await self.certificates.fetch_for_signing(actor.id)
        signed_at = _utcnow()

        ctx = await self._build_context(report, exam, digitally_signed=True, signed_at=signed_at)
        pdf_bytes = await self._render(ctx)

        signed = await self.signer.sign(
            pdf_bytes,
            material.pkcs12_bytes,
            material.password,
            SignerMetadata(name=ctx.physician_name, reason=self.signature_reason, location=self.signature_location),
            certificate_id=material.certificate_id,
            report_id=report.id,
        )

        stored = await self.storage.persist(signed.pdf_bytes, report.id, report.tenant_id, DocumentKind.SIGNED)

        await self.storage.cleanup(key=report.original_key, legacy_url=report.original_legacy_url)
        report.original_key = None
        report.original_legacy_url = None

        self._mark_signed(report, stored, signed_at)
        report.digitally_signed = True
        report.signing_method = SigningMethod.CERTIFICADO_MEDICO
        report.certificate_id = material.certificate_id
        logger.info(f"Laudo {report.id} signed with certificate {material.certificate_id} "
                    f"(password variant: {signed.password_variant})")
        return stored

    def _mark_signed(self, report: Report, stored: StoredObject, signed_at: datetime) -> None:
        if stored.key:
            report.signed_key = stored.key
        else:
            report.legacy_url = stored.url
        report.signed_at = signed_at
        report.status = ReportStatus.SIGNED
        self._check_signed_invariant(report)

    def _new_report(self, exam: Exam, actor: User, conclusion: str, version: int,
                    history: List[Dict[str, Any]], payment_value, specialty_id) -> Report:
        name = self._name(actor)
        return Report(
            exam_id=exam.id,
            tenant_id=exam.tenant_id,
            conclusion=self.codec.encrypt(conclusion),
            physician_id=actor.id,
            physician_name=self.codec.encrypt(name),
            created_by_id=actor.id,
            created_by_name=self.codec.encrypt(name),
            status=ReportStatus.PENDING_SIGNATURE,
            valid=True,
            version=version,
            history=list(history),
            digitally_signed=False,
            signing_method=SigningMethod.SEM_ASSINATURA,
            access_code=str(1000 + secrets.randbelow(9000)),
            exam_type_id=exam.exam_type_id,
            specialty_id=specialty_id,
            payment_value=payment_value,
            payment_registered=False,
        )

    async def _flush_new(self, report: Report) -> None:
        self.db.add(report)
        await self.db.flush()

    # ------------------------------------------------------------- operations

    async def create_report(
        self,
        exam_id: Optional[int],
        conclusion: Optional[str],
        actor: User,
        request_meta: Optional[Dict[str, Any]] = None,
    ) -> CreateReportResult:
        if not exam_id:
            raise ValidationException("Exame é obrigatório", details={"field": "exam_id"})
        if not conclusion or not conclusion.strip():
            raise ValidationException("Conclusão é obrigatória", details={"field": "conclusion"})
        self._require_physician(actor)

        # Row lock serializes concurrent creations for the same exam
        exam = await self._get_exam(exam_id, lock=True)
        if exam.tenant_id != actor.tenant_id:
            raise NotFoundException("Exame não encontrado")
        if await self._has_valid_report(exam):
            raise ConflictException("Já existe um laudo válido para este exame")

        payment_value = await self._payment_value(exam.tenant_id, exam.exam_type_id, actor.specialty_id)
        report = self._new_report(exam, actor, conclusion.strip(), 1, [], payment_value, actor.specialty_id)
        self._append_history(report, actor, "Criação", "Laudo criado")
        await self._flush_new(report)

        exam.status = ExamStatus.LAUDO_REALIZADO
        exam.active_report_id = report.id
        await self.db.flush()

        auto_sign_available = await self.certificates.has_active_certificate(actor.id)
        stored = await self._store_unsigned_original(report, exam)
        await self.db.flush()

        await self.audit.record(
            actor.id, "create", f"Novo laudo criado para exame {exam.id}", COLLECTION, report.id,
            before=None, after=report_snapshot(report), request_meta=request_meta, tenant_id=report.tenant_id,
        )
        logger.info(f"Laudo {report.id} created for exam {exam.id} (auto sign available: {auto_sign_available})")
        return CreateReportResult(
            report=report,
            auto_sign_available=auto_sign_available,
            artifact_url=stored.url if stored else None,
        )

    async def sign_report(
        self,
        report_id: int,
        actor: User,
        mode: str = "automatico",
        request_meta: Optional[Dict[str, Any]] = None,
    ) -> SignResult:
        """
        Sign with the physician's registered certificate. Failures are raised;
        an explicit sign request is never downgraded to an unsigned document.
        """
        if mode not in SIGN_MODES:
            raise ValidationException(f"Modo de assinatura inválido: {mode}")

        report = await self._load_for_actor(report_id, actor)
        self._require_responsible(report, actor)
        self._require_pending(report)
        exam = await self._get_exam(report.exam_id)
        before = report_snapshot(report)

        try:
            stored = await self._sign_and_store(report, exam, actor)
        except SigningFailed as e:
            # Keep the failure bookkeeping; the report itself was not touched
            await self.db.commit()
            raise CertificateException(
                "Não foi possível assinar o laudo com o certificado digital. "
                "Faça o upload do laudo assinado manualmente.",
                details={"reasons": e.reasons},
            ) from e

        action_detail = "automaticamente" if mode == "automatico" else "manualmente"
        self._append_history(report, actor, "Assinatura", f"Laudo assinado digitalmente ({action_detail})")
        exam.status = ExamStatus.LAUDO_ASSINADO
        await self.db.flush()

        await self.audit.record(
            actor.id, "sign", f"Laudo {report.id} assinado digitalmente ({mode})", COLLECTION, report.id,
            before=before, after=report_snapshot(report), request_meta=request_meta, tenant_id=report.tenant_id,
        )
        return SignResult(report=report, artifact_url=stored.url)

    async def upload_signed_document(
        self,
        report_id: int,
        actor: User,
        pdf_bytes: bytes,
        mime_type: Optional[str],
        filename: Optional[str] = None,
        request_meta: Optional[Dict[str, Any]] = None,
    ) -> SignResult:
        if (mime_type or "").split(";")[0].strip().lower() != PDF_MIME_TYPE:
            raise ValidationException("Apenas arquivos PDF são permitidos", details={"mime_type": mime_type})
        if not pdf_bytes:
            raise ValidationException("Arquivo vazio", details={"field": "file"})

        report = await self._load_for_actor(report_id, actor)
        self._require_responsible(report, actor)
        self._require_pending(report)
        exam = await self._get_exam(report.exam_id)
        before = report_snapshot(report)

        stored = await self.storage.persist(
            pdf_bytes, report.id, report.tenant_id, DocumentKind.SIGNED,
            filename=filename or f"laudo_assinado_{report.id}.pdf",
        )

        await self.storage.cleanup(key=report.original_key, legacy_url=report.original_legacy_url)
        report.original_key = None
        report.original_legacy_url = None

        self._mark_signed(report, stored, _utcnow())
        report.digitally_signed = False
        report.signing_method = SigningMethod.UPLOAD_MANUAL
        report.certificate_id = None
        self._append_history(report, actor, "Upload assinado", "Laudo assinado enviado manualmente")
        exam.status = ExamStatus.LAUDO_ASSINADO
        await self.db.flush()

        await self.audit.record(
            actor.id, "upload", f"Laudo assinado enviado para laudo {report.id}", COLLECTION, report.id,
            before=before, after=report_snapshot(report), request_meta=request_meta, tenant_id=report.tenant_id,
        )
        return SignResult(report=report, artifact_url=stored.url)

    async def redo_report(
        self,
        report_id: int,
        actor: User,
        new_conclusion: Optional[str] = None,
        request_meta: Optional[Dict[str, Any]] = None,
    ) -> RedoResult:
        """
        Create the next version of a report and relink the exam to it.

        The previous row is left exactly as it was. The new version is signed
        when the physician has a usable certificate and stays pending otherwise.
        """
        self._require_physician(actor)
        previous = await self._load_for_actor(report_id, actor)
        if not previous.valid:
            raise ConflictException("Laudo invalidado não pode ser refeito")

        if new_conclusion and new_conclusion.strip():
            conclusion = new_conclusion.strip()
        else:
            try:
                conclusion = self.codec.decrypt(previous.conclusion)
            except DecryptError as e:
                raise ValidationException(
                    "Conclusão do laudo anterior ilegível, informe uma nova conclusão",
                    details={"field": "conclusion"},
                ) from e

        exam = await self._get_exam(previous.exam_id, lock=True)
        specialty_id = previous.specialty_id or actor.specialty_id
        payment_value = await self._payment_value(exam.tenant_id, previous.exam_type_id, specialty_id)

        report = self._new_report(
            exam, actor, conclusion, previous.version + 1, previous.history or [], payment_value, specialty_id,
        )
        report.exam_type_id = previous.exam_type_id
        report.previous_report_id = previous.id
        self._append_history(report, actor, "Refação", f"Laudo refeito a partir da versão {previous.version}")
        await self._flush_new(report)

        exam.active_report_id = report.id
        exam.status = ExamStatus.LAUDO_REALIZADO
        await self.db.flush()

        signed = False
        artifact_url = None
        try:
            stored = await self._sign_and_store(report, exam, actor)
        except (CertificateException, SigningFailed) as e:
            logger.warning(f"Redone laudo {report.id} left unsigned: {e}")
            stored = await self._store_unsigned_original(report, exam)
            artifact_url = stored.url if stored else None
        else:
            signed = True
            artifact_url = stored.url
            self._append_history(report, actor, "Assinatura", "Laudo refeito assinado digitalmente")
            exam.status = ExamStatus.LAUDO_ASSINADO
        await self.db.flush()

        await self.audit.record(
            actor.id, "recreate", f"Laudo refeito para exame {exam.id}", COLLECTION, report.id,
            before=report_snapshot(previous), after=report_snapshot(report),
            request_meta=request_meta, tenant_id=report.tenant_id,
        )
        return RedoResult(report=report, artifact_url=artifact_url, signed=signed)

    async def invalidate_report(
        self,
        report_id: int,
        actor: User,
        request_meta: Optional[Dict[str, Any]] = None,
    ) -> Report:
        report = await self._load_for_actor(report_id, actor)
        if report.status == ReportStatus.INVALIDATED and not report.valid:
            return report

        before = report_snapshot(report)
        report.valid = False
        report.status = ReportStatus.INVALIDATED
        report.invalidated_at = _utcnow()
        self._append_history(report, actor, "Invalidação", "Laudo invalidado")
        await self.db.flush()

        await self.audit.record(
            actor.id, "invalidate", f"Laudo {report.id} invalidado", COLLECTION, report.id,
            before=before, after=report_snapshot(report), request_meta=request_meta, tenant_id=report.tenant_id,
        )
        return report

    # ------------------------------------------------------------------ reads

    async def get_report(self, report_id: int, actor: User) -> Dict[str, Any]:
        report = await self._load_readable(report_id, actor)
        exam = await self._get_exam(report.exam_id)
        decrypt = self.codec.decrypt_or_raw
        patient = exam.patient

        return {
            "id": report.id,
            "exam_id": report.exam_id,
            "status": report.status.value,
            "valid": report.valid,
            "version": report.version,
            "conclusion": decrypt(report.conclusion, "report.conclusion"),
            "physician_id": report.physician_id,
            "physician_name": decrypt(report.physician_name, "report.physician_name"),
            "created_by_name": decrypt(report.created_by_name, "report.created_by_name"),
            "digitally_signed": report.digitally_signed,
            "signing_method": report.signing_method.value,
            "signed_at": report.signed_at,
            "has_original": bool(report.original_key or report.original_legacy_url),
            "has_signed": report.has_signed_artifact(),
            "previous_report_id": report.previous_report_id,
            "payment_value": report.payment_value,
            "exam": {
                "id": exam.id,
                "status": exam.status.value,
                "exam_type": exam.exam_type.name if exam.exam_type else None,
                "exam_date": exam.exam_date,
                "patient_name": decrypt(patient.name, "patient.name") if patient else None,
            },
            "created_at": report.created_at,
        }

    async def get_history(self, report_id: int, actor: User) -> List[Dict[str, Any]]:
        report = await self._load_readable(report_id, actor)
        history = []
        for entry in report.history or []:
            item = dict(entry)
            item["actor_name"] = self.codec.decrypt_or_raw(item.get("actor_name"), "history.actor_name")
            history.append(item)
        return history

    async def open_document(self, report_id: int, actor: User, kind: str) -> AsyncIterator[bytes]:
        report = await self._load_readable(report_id, actor)
        if kind == DocumentKind.SIGNED:
            key, legacy_url = report.signed_key, report.legacy_url
        elif kind == DocumentKind.ORIGINAL:
            key, legacy_url = report.original_key, report.original_legacy_url
        else:
            raise ValidationException(f"Tipo de documento inválido: {kind}")
        if not key and not legacy_url:
            raise NotFoundException("Arquivo não encontrado")
        return await self.storage.open_stream(key=key, legacy_url=legacy_url)

    async def public_view(self, report_id: int) -> Dict[str, Any]:
        """Unauthenticated projection: no storage keys, no internal ids besides the report id"""
        report = await self._get_report(report_id)
        exam = await self._get_exam(report.exam_id)
        patient = exam.patient
        return {
            "id": report.id,
            "patient_name": self.codec.decrypt_or_raw(patient.name, "patient.name") if patient else None,
            "exam_type": exam.exam_type.name if exam.exam_type else None,
            "exam_date": exam.exam_date,
            "status": report.status.value,
            "valid": report.valid,
            "signed": report.status == ReportStatus.SIGNED,
            "digitally_signed": report.digitally_signed,
            "signed_at": report.signed_at,
            "access_code": mask_access_code(report.access_code),
        }

    async def authenticate_public(self, report_id: int, access_code: str) -> Dict[str, Any]:
        """Exchange the 4-digit access code for a time-boxed document URL"""
        report = await self._get_report(report_id)
        if not report.access_code or not secrets.compare_digest(str(access_code or ""), report.access_code):
            raise UnauthorizedException("Código de acesso inválido")
        if not report.valid:
            raise ConflictException("Este laudo foi invalidado")

        if report.signed_key:
            url = await self.storage.get_access_url(report.signed_key)
        elif report.legacy_url:
            url = report.legacy_url
        elif report.original_key:
            url = await self.storage.get_access_url(report.original_key)
        elif report.original_legacy_url:
            url = report.original_legacy_url
        else:
            raise NotFoundException("Arquivo não encontrado")

        return {
            "id": report.id,
            "url": url,
            "expires_in": self.storage.presigned_ttl,
            "signed": report.status == ReportStatus.SIGNED,
        }
