"""
Certificate Analyzer
Parses PKCS#12 (.pfx/.p12) files and extracts the metadata kept for each
physician certificate
"""

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from asn1crypto import pkcs12 as asn1_pkcs12
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

logger = logging.getLogger(__name__)

SUBJECT_FALLBACK = "Nome não encontrado"
ISSUER_FALLBACK = "Emissor não encontrado"


class CertificateAnalysisError(Exception):
    """Base class for PKCS#12 parsing failures"""


class InvalidCertificateError(CertificateAnalysisError):
    """Bytes are not a PKCS#12 container, or it holds no certificate"""


class WrongPasswordError(CertificateAnalysisError):
    """Container is well formed but the password does not open it"""


class MissingKeyError(CertificateAnalysisError):
    """Container opened but has no private key"""


@dataclass
class KeyMaterial:
    private_key: object
    certificate: x509.Certificate
    additional_certificates: List[x509.Certificate] = field(default_factory=list)


@dataclass
class CertificateInfo:
    subject_name: str
    issuer: str
    serial_number: str
    issued_at: datetime
    expires_at: datetime
    fingerprint: str
    signature_algorithm: str
    key_size: Optional[int]


def _password_bytes(password: Optional[str]) -> Optional[bytes]:
    if password is None or password == "":
        return None
    return password.encode("utf-8")


def _is_pkcs12_structure(data: bytes) -> bool:
    try:
        pfx = asn1_pkcs12.Pfx.load(data, strict=True)
        pfx['auth_safe']['content_type'].native
        return True
    except (ValueError, TypeError, KeyError):
        return False


def load_key_material(pkcs12_bytes: bytes, password: Optional[str]) -> KeyMaterial:
    """Open a PKCS#12 container. Raises a CertificateAnalysisError subclass."""
    if not pkcs12_bytes:
        raise InvalidCertificateError("Arquivo de certificado vazio")

    try:
        private_key, certificate, additional = pkcs12.load_key_and_certificates(
            pkcs12_bytes, _password_bytes(password)
        )
    except ValueError as e:
        if _is_pkcs12_structure(pkcs12_bytes):
            raise WrongPasswordError("Senha do certificado incorreta") from e
        raise InvalidCertificateError("Arquivo não é um certificado PKCS#12 válido") from e

    if certificate is None:
        raise InvalidCertificateError("Certificado não encontrado no arquivo")
    if private_key is None:
        raise MissingKeyError("Chave privada não encontrada no arquivo")

    return KeyMaterial(private_key, certificate, list(additional or []))


def _common_name(name: x509.Name, fallback: str) -> str:
    attrs = name.get_attributes_for_oid(NameOID.COMMON_NAME)
    if attrs:
        return str(attrs[0].value)
    return fallback


def certificate_fingerprint(certificate: x509.Certificate) -> str:
    """SHA-256 over the DER encoding, uppercase hex"""
    der = certificate.public_bytes(serialization.Encoding.DER)
    return hashlib.sha256(der).hexdigest().upper()


def analyze(pkcs12_bytes: bytes, password: Optional[str]) -> CertificateInfo:
    """
    Parse a PKCS#12 container and describe its leaf certificate.

    Expiry and uniqueness are not checked here.
    """
    material = load_key_material(pkcs12_bytes, password)
    cert = material.certificate

    key_size = getattr(material.private_key, "key_size", None)

    info = CertificateInfo(
        subject_name=_common_name(cert.subject, SUBJECT_FALLBACK),
        issuer=_common_name(cert.issuer, ISSUER_FALLBACK),
        serial_number=format(cert.serial_number, "X"),
        issued_at=cert.not_valid_before_utc,
        expires_at=cert.not_valid_after_utc,
        fingerprint=certificate_fingerprint(cert),
        signature_algorithm=cert.signature_algorithm_oid.dotted_string,
        key_size=key_size,
    )
    logger.info(f"Analyzed certificate {info.fingerprint[:16]}... valid until {info.expires_at.isoformat()}")
    return info
