"""
Laudos API Endpoints
Create, sign, redo and invalidate medical reports, plus the public access page
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Request, UploadFile, status
from fastapi.responses import StreamingResponse

from app.api.deps import get_report_service, request_meta
from app.core.auth import get_current_user, require_medico, require_staff
from app.core.error_handling import ValidationException
from app.models import User
from app.schemas.report import (
    HistoryEntry,
    PublicAuthRequest,
    PublicAuthResponse,
    PublicReportView,
    ReportCreate,
    ReportCreateResponse,
    ReportDetail,
    ReportHistoryResponse,
    ReportRedo,
    ReportRedoResponse,
    ReportSignResponse,
    ReportSummary,
)
from app.services.report_lifecycle import ReportLifecycleService, SignResult
from app.services.storage_types import DocumentKind

router = APIRouter(prefix="/laudos", tags=["Laudos"])
logger = logging.getLogger(__name__)

MAX_UPLOAD_SIZE = 20 * 1024 * 1024  # 20MB


def _sign_response(result: SignResult, message: str) -> ReportSignResponse:
    report = result.report
    return ReportSignResponse(
        id=report.id,
        status=report.status,
        signing_method=report.signing_method,
        digitally_signed=report.digitally_signed,
        signed_at=report.signed_at,
        artifact_url=result.artifact_url,
        message=message,
    )


# ==================== Public access ====================

@router.get("/publico/{report_id}", response_model=PublicReportView)
async def get_public_report(
    report_id: int,
    service: ReportLifecycleService = Depends(get_report_service),
):
    """Public page of a laudo, reached through the QR code printed on the PDF"""
    return await service.public_view(report_id)


@router.post("/publico/{report_id}/auth", response_model=PublicAuthResponse)
async def authenticate_public_report(
    report_id: int,
    body: PublicAuthRequest,
    service: ReportLifecycleService = Depends(get_report_service),
):
    """Exchange the access code printed for the patient for a temporary download link"""
    return await service.authenticate_public(report_id, body.access_code)


# ==================== Lifecycle ====================

@router.post("", response_model=ReportCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_report(
    body: ReportCreate,
    request: Request,
    current_user: User = Depends(require_medico),
    service: ReportLifecycleService = Depends(get_report_service),
):
    """
    Create a laudo for an exam

    Fails with 409 when the exam already has a valid laudo.
    """
    result = await service.create_report(body.exam_id, body.conclusion, current_user, request_meta(request))
    report = result.report
    return ReportCreateResponse(
        id=report.id,
        exam_id=report.exam_id,
        status=report.status,
        valid=report.valid,
        version=report.version,
        auto_sign_available=result.auto_sign_available,
        artifact_url=result.artifact_url,
    )


@router.post("/{report_id}/assinar", response_model=ReportSignResponse)
async def sign_report(
    report_id: int,
    request: Request,
    current_user: User = Depends(require_medico),
    service: ReportLifecycleService = Depends(get_report_service),
):
    """Sign with the physician's registered certificate"""
    result = await service.sign_report(report_id, current_user, "automatico", request_meta(request))
    return _sign_response(result, "Laudo assinado digitalmente com sucesso")


@router.post("/{report_id}/assinar-manual", response_model=ReportSignResponse)
async def sign_report_manually(
    report_id: int,
    request: Request,
    current_user: User = Depends(require_medico),
    service: ReportLifecycleService = Depends(get_report_service),
):
    result = await service.sign_report(report_id, current_user, "manual", request_meta(request))
    return _sign_response(result, "Laudo assinado com sucesso")


@router.post("/{report_id}/upload-assinado", response_model=ReportSignResponse)
async def upload_signed_report(
    report_id: int,
    request: Request,
    file: UploadFile = File(...),
    current_user: User = Depends(require_medico),
    service: ReportLifecycleService = Depends(get_report_service),
):
    """Upload a laudo signed outside the system (PDF only)"""
    content = await file.read(MAX_UPLOAD_SIZE + 1)
    if len(content) > MAX_UPLOAD_SIZE:
        raise ValidationException("Arquivo muito grande. Tamanho máximo: 20MB", details={"field": "file"})

    result = await service.upload_signed_document(
        report_id, current_user, content, file.content_type, file.filename, request_meta(request)
    )
    return _sign_response(result, "Laudo assinado enviado com sucesso")


@router.post("/{report_id}/refazer", response_model=ReportRedoResponse, status_code=status.HTTP_201_CREATED)
async def redo_report(
    report_id: int,
    request: Request,
    body: Optional[ReportRedo] = None,
    current_user: User = Depends(require_medico),
    service: ReportLifecycleService = Depends(get_report_service),
):
    """Create a new version of a laudo. The previous version is kept as it was"""
    result = await service.redo_report(
        report_id, current_user, body.conclusion if body else None, request_meta(request)
    )
    report = result.report
    return ReportRedoResponse(
        id=report.id,
        previous_report_id=report.previous_report_id,
        version=report.version,
        status=report.status,
        signed=result.signed,
        artifact_url=result.artifact_url,
    )


@router.patch("/{report_id}/invalidar", response_model=ReportSummary)
async def invalidate_report(
    report_id: int,
    request: Request,
    current_user: User = Depends(require_staff),
    service: ReportLifecycleService = Depends(get_report_service),
):
    report = await service.invalidate_report(report_id, current_user, request_meta(request))
    return ReportSummary.model_validate(report)


# ==================== Reads ====================

@router.get("/{report_id}", response_model=ReportDetail)
async def get_report(
    report_id: int,
    current_user: User = Depends(get_current_user),
    service: ReportLifecycleService = Depends(get_report_service),
):
    return await service.get_report(report_id, current_user)


@router.get("/{report_id}/historico", response_model=ReportHistoryResponse)
async def get_report_history(
    report_id: int,
    current_user: User = Depends(get_current_user),
    service: ReportLifecycleService = Depends(get_report_service),
):
    history = await service.get_history(report_id, current_user)
    return ReportHistoryResponse(report_id=report_id, history=[HistoryEntry(**entry) for entry in history])


@router.get("/{report_id}/download/{kind}")
async def download_report(
    report_id: int,
    kind: str,
    current_user: User = Depends(get_current_user),
    service: ReportLifecycleService = Depends(get_report_service),
):
    """
    Stream the original or signed PDF

    kind: "original" or "assinado"
    """
    body = await service.open_document(report_id, current_user, kind)
    suffix = "assinado" if kind == DocumentKind.SIGNED else "original"
    return StreamingResponse(
        body,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="laudo_{report_id}_{suffix}.pdf"'},
    )
