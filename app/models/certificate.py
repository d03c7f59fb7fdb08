"""
Digital certificate model (PKCS#12 per physician)

The certificate file lives on disk encrypted; the row keeps its encrypted
path, the password (encrypted for signing and hashed for confirmation) and
the metadata read from the certificate itself.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, Boolean, JSON
from sqlalchemy.sql import func

from database import Base

MAX_USAGE_ATTEMPTS = 50


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything is stored in UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class DigitalCertificate(Base):
    __tablename__ = "certificados_digitais"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, index=True)
    physician_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    # Material
    file_path = Column(Text, nullable=False)  # encrypted
    original_filename = Column(String(255), nullable=True)
    password_encrypted = Column(Text, nullable=False)
    password_hash = Column(String(255), nullable=False)

    # Certificate metadata
    subject_name = Column(String(500), nullable=False)
    serial_number = Column(String(100), nullable=False)
    issuer = Column(String(500), nullable=False)
    issued_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    fingerprint = Column(String(64), nullable=False, unique=True, index=True)  # SHA-256, hex
    signature_algorithm = Column(String(100), nullable=True)
    key_size = Column(Integer, nullable=True)

    # Usage
    active = Column(Boolean, default=True, nullable=False, index=True)
    total_uses = Column(Integer, default=0, nullable=False)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    last_failure_reason = Column(Text, nullable=True)
    usage_attempts = Column(JSON, nullable=False, default=list)
    deactivated_at = Column(DateTime(timezone=True), nullable=True)

    # Registration audit
    created_ip = Column(String(45), nullable=True)
    created_user_agent = Column(String(500), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return as_utc(self.expires_at) <= now

    def days_until_expiry(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        return (as_utc(self.expires_at) - now).days

    def __repr__(self):
        return f"<DigitalCertificate(id={self.id}, physician_id={self.physician_id}, active={self.active})>"
