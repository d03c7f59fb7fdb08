"""
Certificate Store
One active PKCS#12 certificate per physician, encrypted at rest on disk, with
usage bookkeeping in the database
"""

import asyncio
import hashlib
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.error_handling import (
    CertificateException,
    ConflictException,
    NotFoundException,
    ValidationException,
)
from app.core.field_crypto import DecryptError, FieldCodec
from app.core.security import hash_password, verify_password as check_password_hash
from app.models.certificate import DigitalCertificate, MAX_USAGE_ATTEMPTS, as_utc
from app.services.certificate_analyzer import (
    CertificateAnalysisError,
    WrongPasswordError,
    analyze,
)

logger = logging.getLogger(__name__)

MANUAL_UPLOAD_HINT = "Faça o upload do laudo assinado manualmente."


@dataclass
class SigningMaterial:
    certificate_id: int
    pkcs12_bytes: bytes
    password: str
    info: Dict[str, Any]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _write_private_file(path: str, data: bytes) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(data)


def _read_file(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


class CertificateStore:
    """Registration, retrieval and bookkeeping of physician certificates"""

    def __init__(self, db: AsyncSession, codec: FieldCodec, certificates_dir: str):
        self.db = db
        self.codec = codec
        self.certificates_dir = certificates_dir

    # ------------------------------------------------------------------ files

    def _ensure_directory(self) -> None:
        os.makedirs(self.certificates_dir, mode=0o700, exist_ok=True)

    def build_filename(self, physician_id: int, pkcs12_bytes: bytes, original_filename: Optional[str]) -> str:
        timestamp = int(time.time() * 1000)
        digest = hashlib.sha256(pkcs12_bytes).hexdigest()[:16]
        extension = os.path.splitext(original_filename or "")[1].lower() or ".pfx"
        return f"cert_{physician_id}_{timestamp}_{digest}{extension}"

    def _resolve_path(self, certificate: DigitalCertificate) -> str:
        stored = self.codec.decrypt(certificate.file_path)
        # Only the file name is trusted, the directory comes from configuration
        return os.path.join(self.certificates_dir, os.path.basename(stored))

    async def _save_file(self, physician_id: int, pkcs12_bytes: bytes, original_filename: Optional[str]) -> str:
        await asyncio.to_thread(self._ensure_directory)
        filename = self.build_filename(physician_id, pkcs12_bytes, original_filename)
        path = os.path.join(self.certificates_dir, filename)
        await asyncio.to_thread(_write_private_file, path, self.codec.encrypt_bytes(pkcs12_bytes))
        return path

    async def _remove_file(self, path: str) -> None:
        try:
            await asyncio.to_thread(os.unlink, path)
        except OSError as e:
            logger.warning(f"Could not remove certificate file {os.path.basename(path)}: {e}")

    # ---------------------------------------------------------------- queries

    async def _active_certificates(self, physician_id: int) -> List[DigitalCertificate]:
        result = await self.db.execute(
            select(DigitalCertificate)
            .where(DigitalCertificate.physician_id == physician_id, DigitalCertificate.active.is_(True))
            .order_by(DigitalCertificate.created_at.desc(), DigitalCertificate.id.desc())
        )
        return list(result.scalars().all())

    async def _get(self, certificate_id: int) -> Optional[DigitalCertificate]:
        result = await self.db.execute(
            select(DigitalCertificate).where(DigitalCertificate.id == certificate_id)
        )
        return result.scalar_one_or_none()

    async def has_active_certificate(self, physician_id: int) -> bool:
        now = _utcnow()
        return any(not cert.is_expired(now) for cert in await self._active_certificates(physician_id))

    # ----------------------------------------------------------- registration

    async def register(
        self,
        physician_id: int,
        pkcs12_bytes: bytes,
        original_filename: Optional[str],
        password: str,
        request_meta: Optional[Dict[str, Any]] = None,
    ) -> DigitalCertificate:
        """
        Register a new certificate for a physician.

        Rejects when the physician already has an active unexpired certificate,
        when the certificate is expired, or when its fingerprint is known.
        """
        request_meta = request_meta or {}

        if await self.has_active_certificate(physician_id):
            raise ConflictException(
                "Já existe um certificado ativo para este médico. Desative o atual antes de cadastrar um novo."
            )

        try:
            info = analyze(pkcs12_bytes, password)
        except WrongPasswordError as e:
            raise ValidationException(str(e), details={"field": "senha"}) from e
        except CertificateAnalysisError as e:
            raise ValidationException(f"Erro ao analisar certificado: {e}", details={"field": "certificado"}) from e

        if info.expires_at <= _utcnow():
            raise CertificateException("O certificado fornecido está vencido")

        duplicate = await self.db.execute(
            select(DigitalCertificate.id).where(DigitalCertificate.fingerprint == info.fingerprint)
        )
        if duplicate.scalar_one_or_none() is not None:
            raise ConflictException("Este certificado já está cadastrado no sistema")

        path = await self._save_file(physician_id, pkcs12_bytes, original_filename)

        certificate = DigitalCertificate(
            physician_id=physician_id,
            file_path=self.codec.encrypt(path),
            original_filename=original_filename,
            password_encrypted=self.codec.encrypt(password),
            password_hash=hash_password(password),
            subject_name=info.subject_name,
            serial_number=info.serial_number,
            issuer=info.issuer,
            issued_at=info.issued_at,
            expires_at=info.expires_at,
            fingerprint=info.fingerprint,
            signature_algorithm=info.signature_algorithm,
            key_size=info.key_size,
            active=True,
            total_uses=0,
            usage_attempts=[],
            created_ip=request_meta.get("ip"),
            created_user_agent=request_meta.get("user_agent"),
        )
        self.db.add(certificate)
        try:
            async with self.db.begin_nested():
                await self.db.flush()
        except IntegrityError as e:
            await self._remove_file(path)
            raise ConflictException("Este certificado já está cadastrado no sistema") from e

        logger.info(f"Certificate {certificate.id} registered for physician {physician_id}")
        return certificate

    # ---------------------------------------------------------------- signing

    async def fetch_for_signing(self, physician_id: int) -> SigningMaterial:
        certificates = await self._active_certificates(physician_id)
        if not certificates:
            raise CertificateException(
                f"Nenhum certificado ativo encontrado para este médico. {MANUAL_UPLOAD_HINT}"
            )

        now = _utcnow()
        usable = [cert for cert in certificates if not cert.is_expired(now)]
        if not usable:
            raise CertificateException(f"O certificado digital está vencido. {MANUAL_UPLOAD_HINT}")
        certificate = usable[0]

        try:
            path = self._resolve_path(certificate)
            pkcs12_bytes = self.codec.decrypt_bytes(await asyncio.to_thread(_read_file, path))
            password = self.codec.decrypt(certificate.password_encrypted)
        except (OSError, DecryptError) as e:
            logger.error(f"Could not load certificate {certificate.id}: {e}")
            raise CertificateException(
                f"Não foi possível carregar o certificado digital. {MANUAL_UPLOAD_HINT}"
            ) from e

        return SigningMaterial(
            certificate_id=certificate.id,
            pkcs12_bytes=pkcs12_bytes,
            password=password,
            info={
                "subject_name": certificate.subject_name,
                "issuer": certificate.issuer,
                "expires_at": as_utc(certificate.expires_at),
            },
        )

    async def record_usage(
        self,
        certificate_id: int,
        success: bool,
        report_id: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> None:
        """Usage bookkeeping. Concurrent updates may lose an increment."""
        certificate = await self._get(certificate_id)
        if certificate is None:
            logger.warning(f"Usage recorded for unknown certificate {certificate_id}")
            return

        now = _utcnow()
        attempts = list(certificate.usage_attempts or [])
        attempts.append({
            "timestamp": now.isoformat(),
            "success": success,
            "report_id": report_id,
            "reason": reason,
        })
        certificate.usage_attempts = attempts[-MAX_USAGE_ATTEMPTS:]

        if success:
            certificate.total_uses = (certificate.total_uses or 0) + 1
            certificate.last_used_at = now
        else:
            certificate.last_failure_reason = reason
        await self.db.flush()

    # ------------------------------------------------------------- management

    async def deactivate(self, certificate_id: int, physician_id: int) -> DigitalCertificate:
        result = await self.db.execute(
            select(DigitalCertificate).where(
                DigitalCertificate.id == certificate_id,
                DigitalCertificate.physician_id == physician_id,
            )
        )
        certificate = result.scalar_one_or_none()
        if certificate is None:
            raise NotFoundException("Certificado não encontrado")

        certificate.active = False
        certificate.deactivated_at = _utcnow()
        await self.db.flush()

        try:
            path = self._resolve_path(certificate)
        except DecryptError:
            logger.warning(f"Could not resolve file of certificate {certificate_id}")
        else:
            await self._remove_file(path)

        logger.info(f"Certificate {certificate_id} deactivated for physician {physician_id}")
        return certificate

    async def verify_password(self, certificate_id: int, password: str) -> bool:
        """Confirm the user knows the password, using the stored hash only"""
        certificate = await self._get(certificate_id)
        if certificate is None:
            raise NotFoundException("Certificado não encontrado")
        if not certificate.active:
            raise CertificateException("Certificado inativo")
        if certificate.is_expired():
            raise CertificateException("Certificado vencido")

        if not check_password_hash(password, certificate.password_hash):
            await self.record_usage(certificate_id, False, reason="Senha incorreta")
            return False
        return True

    async def list_for_physician(self, physician_id: int, include_inactive: bool = False) -> List[DigitalCertificate]:
        query = select(DigitalCertificate).where(DigitalCertificate.physician_id == physician_id)
        if not include_inactive:
            query = query.where(DigitalCertificate.active.is_(True))
        result = await self.db.execute(
            query.order_by(DigitalCertificate.created_at.desc(), DigitalCertificate.id.desc())
        )
        return list(result.scalars().all())

    async def expiring_certificates(self, days: int = 30) -> List[DigitalCertificate]:
        """Active certificates whose expiry falls within the next `days` days"""
        now = _utcnow()
        limit = now + timedelta(days=days)
        result = await self.db.execute(
            select(DigitalCertificate).where(DigitalCertificate.active.is_(True))
        )
        return [
            cert for cert in result.scalars().all()
            if now <= as_utc(cert.expires_at) <= limit
        ]


def describe(certificate: DigitalCertificate) -> Dict[str, Any]:
    """Public projection of a certificate, without material or password data"""
    now = _utcnow()
    expired = certificate.is_expired(now)
    if not certificate.active:
        status = "inativo"
    elif expired:
        status = "vencido"
    else:
        status = "ativo"
    return {
        "id": certificate.id,
        "subject_name": certificate.subject_name,
        "issuer": certificate.issuer,
        "serial_number": certificate.serial_number,
        "issued_at": as_utc(certificate.issued_at),
        "expires_at": as_utc(certificate.expires_at),
        "days_until_expiry": certificate.days_until_expiry(now),
        "status": status,
        "total_uses": certificate.total_uses or 0,
        "last_used_at": as_utc(certificate.last_used_at),
        "created_at": certificate.created_at,
    }

