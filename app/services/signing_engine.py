"""
Signing Engine
PAdES signature of rendered laudos with a physician's PKCS#12 certificate

The PDF first receives an empty signature field ("Signature1"), which is then
filled by pyHanko. Stored passwords were not always captured consistently, so
a short ordered list of password variants is tried, one at a time.
"""

import asyncio
import logging
from dataclasses import dataclass
from io import BytesIO
from typing import List, Optional, Tuple

from asn1crypto import keys as asn1_keys
from asn1crypto import x509 as asn1_x509
from cryptography.hazmat.primitives import serialization
from pyhanko.pdf_utils.incremental_writer import IncrementalPdfFileWriter
from pyhanko.pdf_utils.misc import PdfError
from pyhanko.sign import fields, signers
from pyhanko.sign.general import SigningError
from pyhanko_certvalidator.registry import SimpleCertificateStore

from app.services.certificate_analyzer import CertificateAnalysisError, KeyMaterial, load_key_material

logger = logging.getLogger(__name__)

SIGNATURE_FIELD_NAME = "Signature1"


class SigningFailed(Exception):
    """No password variant produced a signed document"""

    def __init__(self, message: str, reasons: Optional[List[str]] = None):
        self.reasons = reasons or []
        super().__init__(message)


@dataclass
class SignerMetadata:
    name: str
    reason: str
    location: str


@dataclass
class SignedDocument:
    pdf_bytes: bytes
    password_variant: str


def password_variants(password: Optional[str]) -> List[Tuple[str, str]]:
    """Ordered, de-duplicated (variant name, value) pairs to try"""
    password = password or ""
    candidates = [
        ("original", password),
        ("trimmed", password.strip()),
        ("lowercase", password.lower()),
        ("uppercase", password.upper()),
        ("empty", ""),
    ]
    seen = set()
    variants = []
    for name, value in candidates:
        if value in seen:
            continue
        seen.add(value)
        variants.append((name, value))
    return variants


def _to_pyhanko_signer(material: KeyMaterial) -> signers.SimpleSigner:
    der = serialization.Encoding.DER
    signing_cert = asn1_x509.Certificate.load(material.certificate.public_bytes(der))
    signing_key = asn1_keys.PrivateKeyInfo.load(
        material.private_key.private_bytes(
            der, serialization.PrivateFormat.PKCS8, serialization.NoEncryption()
        )
    )
    chain = [asn1_x509.Certificate.load(c.public_bytes(der)) for c in material.additional_certificates]
    return signers.SimpleSigner(
        signing_cert=signing_cert,
        signing_key=signing_key,
        cert_registry=SimpleCertificateStore.from_certs([signing_cert] + chain),
    )


def add_signature_placeholder(pdf_bytes: bytes) -> IncrementalPdfFileWriter:
    """Open the PDF for incremental update and append an empty signature field"""
    writer = IncrementalPdfFileWriter(BytesIO(pdf_bytes), strict=False)
    fields.append_signature_field(writer, sig_field_spec=fields.SigFieldSpec(sig_field_name=SIGNATURE_FIELD_NAME))
    return writer


class SigningEngine:
    """
    Turns rendered PDF bytes into signed PDF bytes.

    The only side effect is usage bookkeeping on the certificate store.
    """

    def __init__(self, certificates=None, timeout_seconds: float = 15.0):
        self.certificates = certificates
        self.timeout_seconds = timeout_seconds

    def _sign_once(self, pdf_bytes: bytes, material: KeyMaterial, meta: SignerMetadata) -> bytes:
        writer = add_signature_placeholder(pdf_bytes)
        pdf_signer = signers.PdfSigner(
            signers.PdfSignatureMetadata(
                field_name=SIGNATURE_FIELD_NAME,
                reason=meta.reason,
                location=meta.location,
                name=meta.name,
                md_algorithm="sha256",
            ),
            signer=_to_pyhanko_signer(material),
        )
        out = BytesIO()
        pdf_signer.sign_pdf(writer, output=out)
        return out.getvalue()

    def _try_variants(self, pdf_bytes: bytes, pkcs12_bytes: bytes, password: Optional[str],
                      meta: SignerMetadata, reasons: List[str]) -> SignedDocument:
        for variant, value in password_variants(password):
            try:
                material = load_key_material(pkcs12_bytes, value)
            except CertificateAnalysisError as e:
                reasons.append(f"{variant}: {e}")
                continue

            try:
                signed = self._sign_once(pdf_bytes, material, meta)
            except (SigningError, PdfError, ValueError, TypeError) as e:
                logger.warning(f"Signing with password variant '{variant}' failed: {e}")
                reasons.append(f"{variant}: {e}")
                continue

            logger.info(f"PDF signed using password variant '{variant}' ({len(signed)} bytes)")
            return SignedDocument(pdf_bytes=signed, password_variant=variant)

        raise SigningFailed("Não foi possível assinar o documento com o certificado informado", reasons)

    async def sign(
        self,
        pdf_bytes: bytes,
        pkcs12_bytes: bytes,
        password: Optional[str],
        signer_meta: SignerMetadata,
        certificate_id: Optional[int] = None,
        report_id: Optional[int] = None,
    ) -> SignedDocument:
        reasons: List[str] = []
        try:
            # Parsing and signing block; a timed-out worker finishes in the background
            # and its result is discarded
            result = await asyncio.wait_for(
                asyncio.to_thread(self._try_variants, pdf_bytes, pkcs12_bytes, password, signer_meta, reasons),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            failure = SigningFailed(f"Assinatura excedeu o tempo limite de {self.timeout_seconds:g}s", list(reasons))
            await self._record(certificate_id, False, report_id, str(failure))
            raise failure from e
        except SigningFailed as e:
            await self._record(certificate_id, False, report_id, "; ".join(e.reasons) or str(e))
            raise

        await self._record(certificate_id, True, report_id, None)
        return result

    async def _record(self, certificate_id: Optional[int], success: bool,
                      report_id: Optional[int], reason: Optional[str]) -> None:
        if self.certificates is None or certificate_id is None:
            return
        await self.certificates.record_usage(certificate_id, success, report_id=report_id, reason=reason)
