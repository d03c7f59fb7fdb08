"""
Service wiring for the laudos routes

Process-wide collaborators (codec, stores, renderer) are built once from
settings; database-bound services are built per request.
"""
from functools import lru_cache
from typing import Any, Dict

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_async_session
from app.core.field_crypto import FieldCodec, build_codec
from app.services.audit_service import AuditService
from app.services.certificate_store import CertificateStore
from app.services.legacy_storage import UploadcareStore
from app.services.report_lifecycle import ReportLifecycleService
from app.services.report_renderer import RenderAssets, ReportRenderer
from app.services.s3_service import S3ReportStore
from app.services.signing_engine import SigningEngine
from app.services.storage_reconciler import StorageReconciler


@lru_cache()
def get_codec() -> FieldCodec:
    return build_codec(settings.FIELD_ENCRYPTION_KEY, settings.ENVIRONMENT)


@lru_cache()
def get_storage() -> StorageReconciler:
    primary = S3ReportStore(
        bucket_name=settings.AWS_S3_BUCKET_NAME,
        region=settings.AWS_REGION,
        access_key_id=settings.AWS_ACCESS_KEY_ID,
        secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
        timeout_seconds=settings.STORAGE_TIMEOUT_SECONDS,
    )
    legacy = UploadcareStore(
        public_key=settings.UPLOADCARE_PUBLIC_KEY,
        secret_key=settings.UPLOADCARE_SECRET_KEY,
        cdn_base=settings.UPLOADCARE_CDN_BASE,
        timeout_seconds=settings.STORAGE_TIMEOUT_SECONDS,
    )
    return StorageReconciler(primary, legacy, presigned_ttl=settings.PRESIGNED_URL_TTL_SECONDS)


@lru_cache()
def get_renderer() -> ReportRenderer:
    return ReportRenderer(RenderAssets(logo_path=settings.LOGO_PATH, watermark_path=settings.WATERMARK_LOGO_PATH))


def get_certificate_store(
    db: AsyncSession = Depends(get_async_session),
    codec: FieldCodec = Depends(get_codec),
) -> CertificateStore:
    return CertificateStore(db, codec, settings.CERTIFICATES_DIR)


def get_report_service(
    db: AsyncSession = Depends(get_async_session),
    codec: FieldCodec = Depends(get_codec),
    storage: StorageReconciler = Depends(get_storage),
    renderer: ReportRenderer = Depends(get_renderer),
    certificates: CertificateStore = Depends(get_certificate_store),
) -> ReportLifecycleService:
    return ReportLifecycleService(
        db=db,
        codec=codec,
        storage=storage,
        certificates=certificates,
        signer=SigningEngine(certificates, timeout_seconds=settings.SIGNING_TIMEOUT_SECONDS),
        audit=AuditService(db),
        renderer=renderer,
        public_base_url=settings.PUBLIC_BASE_URL,
        signature_reason=settings.SIGNATURE_REASON,
        signature_location=settings.SIGNATURE_LOCATION,
    )


def request_meta(request: Request) -> Dict[str, Any]:
    """Client address and user agent for audit records"""
    return {
        "ip": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }
