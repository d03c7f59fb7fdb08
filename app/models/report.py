"""
Report (laudo) model

A report is never deleted: it is invalidated, or superseded by a newer version
created through "refazer". The exam points at its current report through
Exam.active_report_id.
"""

from sqlalchemy import (
    Column, Integer, String, DateTime, ForeignKey, Text, Boolean, Numeric, JSON, Index,
    Enum as SQLEnum,
)
from sqlalchemy.sql import func
import enum

from database import Base


class ReportStatus(str, enum.Enum):
    """Lifecycle states of a report"""
    PENDING_SIGNATURE = "Laudo pronto para assinatura"
    SIGNED = "Laudo assinado"
    INVALIDATED = "Invalidado"


class SigningMethod(str, enum.Enum):
    CERTIFICADO_MEDICO = "certificado_medico"
    UPLOAD_MANUAL = "upload_manual"
    SEM_ASSINATURA = "sem_assinatura"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class Report(Base):
    __tablename__ = "laudos"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, index=True)
    exam_id = Column(Integer, ForeignKey("exams.id"), nullable=False, index=True)
    tenant_id = Column(Integer, nullable=False, index=True)

    # Content (encrypted)
    conclusion = Column(Text, nullable=False)
    physician_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    physician_name = Column(Text, nullable=True)
    created_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_by_name = Column(Text, nullable=True)

    # Lifecycle
    status = Column(SQLEnum(ReportStatus, native_enum=False, values_callable=_enum_values),
                    default=ReportStatus.PENDING_SIGNATURE, nullable=False, index=True)
    valid = Column(Boolean, default=True, nullable=False)
    version = Column(Integer, default=1, nullable=False)
    history = Column(JSON, nullable=False, default=list)
    previous_report_id = Column(Integer, ForeignKey("laudos.id"), nullable=True)
    invalidated_at = Column(DateTime(timezone=True), nullable=True)

    # Artifacts
    original_key = Column(String(512), nullable=True)
    signed_key = Column(String(512), nullable=True)
    legacy_url = Column(String(1024), nullable=True)  # signed document on the legacy CDN
    original_legacy_url = Column(String(1024), nullable=True)
    digitally_signed = Column(Boolean, default=False, nullable=False)
    signing_method = Column(SQLEnum(SigningMethod, native_enum=False, values_callable=_enum_values),
                            default=SigningMethod.SEM_ASSINATURA, nullable=False)
    certificate_id = Column(Integer, ForeignKey("certificados_digitais.id"), nullable=True)
    signed_at = Column(DateTime(timezone=True), nullable=True)

    # Public access
    access_code = Column(String(8), nullable=True)

    # Billing
    exam_type_id = Column(Integer, nullable=True)
    specialty_id = Column(Integer, nullable=True)
    payment_value = Column(Numeric(10, 2), nullable=True)
    payment_registered = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        Index('ix_laudos_exam_valid', 'exam_id', 'valid'),
    )

    def has_signed_artifact(self) -> bool:
        """A signed report must point at a stored signed document"""
        return bool(self.signed_key or self.legacy_url)

    def __repr__(self):
        return f"<Report(id={self.id}, exam_id={self.exam_id}, version={self.version}, status={self.status})>"


class ReportPrice(Base):
    """Amount paid to the physician per exam type and specialty"""
    __tablename__ = "report_prices"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, nullable=False, index=True)
    exam_type_id = Column(Integer, ForeignKey("exam_types.id"), nullable=False)
    specialty_id = Column(Integer, nullable=False)
    value = Column(Numeric(10, 2), nullable=False)

    __table_args__ = (
        Index('ix_report_prices_lookup', 'tenant_id', 'exam_type_id', 'specialty_id', unique=True),
    )

    def __repr__(self):
        return f"<ReportPrice(exam_type_id={self.exam_type_id}, specialty_id={self.specialty_id}, value={self.value})>"
