"""
Certificados API Endpoints
Register, list, deactivate and check the password of a physician's PKCS#12 certificate
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile, status

from app.api.deps import get_certificate_store, request_meta
from app.core.auth import require_medico
from app.core.error_handling import NotFoundException, ValidationException
from app.models import User
from app.schemas.certificate import (
    CertificatePasswordCheck,
    CertificatePasswordCheckResponse,
    CertificateResponse,
)
from app.services.audit_service import AuditService
from app.services.certificate_store import CertificateStore, describe

router = APIRouter(prefix="/certificados", tags=["Certificados"])
logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = (".pfx", ".p12")
MAX_CERTIFICATE_SIZE = 1024 * 1024  # 1MB


@router.post("", response_model=CertificateResponse, status_code=status.HTTP_201_CREATED)
async def register_certificate(
    request: Request,
    certificado: UploadFile = File(...),
    senha: str = Form(...),
    current_user: User = Depends(require_medico),
    store: CertificateStore = Depends(get_certificate_store),
):
    """
    Register the physician's A1 certificate (.pfx / .p12)

    The file is encrypted before it touches the disk and the password is kept
    encrypted (for signing) and hashed (for confirmation).
    """
    filename = certificado.filename or ""
    if not filename.lower().endswith(ALLOWED_EXTENSIONS):
        raise ValidationException("Apenas arquivos .pfx ou .p12 são permitidos", details={"field": "certificado"})

    content = await certificado.read(MAX_CERTIFICATE_SIZE + 1)
    if not content:
        raise ValidationException("Arquivo de certificado vazio", details={"field": "certificado"})
    if len(content) > MAX_CERTIFICATE_SIZE:
        raise ValidationException("Arquivo de certificado muito grande", details={"field": "certificado"})

    meta = request_meta(request)
    certificate = await store.register(current_user.id, content, filename, senha, meta)
    summary = describe(certificate)

    await AuditService(store.db).record(
        current_user.id, "certificate_register", f"Certificado cadastrado: {certificate.subject_name}",
        "certificados_digitais", certificate.id, before=None,
        after={"id": certificate.id, "fingerprint": certificate.fingerprint, "status": summary["status"]},
        request_meta=meta, tenant_id=current_user.tenant_id,
    )
    return summary


@router.get("", response_model=List[CertificateResponse])
async def list_certificates(
    include_inactive: bool = Query(False, description="Include deactivated certificates"),
    current_user: User = Depends(require_medico),
    store: CertificateStore = Depends(get_certificate_store),
):
    certificates = await store.list_for_physician(current_user.id, include_inactive=include_inactive)
    return [describe(cert) for cert in certificates]


@router.delete("/{certificate_id}", response_model=CertificateResponse)
async def deactivate_certificate(
    certificate_id: int,
    request: Request,
    current_user: User = Depends(require_medico),
    store: CertificateStore = Depends(get_certificate_store),
):
    """Deactivate a certificate and remove its file"""
    certificate = await store.deactivate(certificate_id, current_user.id)

    await AuditService(store.db).record(
        current_user.id, "certificate_deactivate", f"Certificado {certificate.id} desativado",
        "certificados_digitais", certificate.id, before={"active": True}, after={"active": False},
        request_meta=request_meta(request), tenant_id=current_user.tenant_id,
    )
    return describe(certificate)


@router.post("/{certificate_id}/validar-senha", response_model=CertificatePasswordCheckResponse)
async def check_certificate_password(
    certificate_id: int,
    body: CertificatePasswordCheck,
    current_user: User = Depends(require_medico),
    store: CertificateStore = Depends(get_certificate_store),
):
    owned = await store.list_for_physician(current_user.id, include_inactive=True)
    if certificate_id not in {cert.id for cert in owned}:
        raise NotFoundException("Certificado não encontrado")

    valid = await store.verify_password(certificate_id, body.password)
    return CertificatePasswordCheckResponse(
        valid=valid,
        message="Senha válida" if valid else "Senha incorreta",
    )
