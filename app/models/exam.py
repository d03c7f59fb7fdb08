"""
Exam and exam type models
"""

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Enum as SQLEnum
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
import enum

from database import Base


class ExamStatus(str, enum.Enum):
    PENDENTE = "Pendente"
    LAUDO_REALIZADO = "Laudo realizado"
    LAUDO_ASSINADO = "Laudo assinado"


class ExamType(Base):
    __tablename__ = "exam_types"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(120), nullable=False, unique=True)

    def __repr__(self):
        return f"<ExamType(id={self.id}, name='{self.name}')>"


class Exam(Base):
    __tablename__ = "exams"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, nullable=False, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False, index=True)
    exam_type_id = Column(Integer, ForeignKey("exam_types.id"), nullable=True)
    technician_id = Column(Integer, ForeignKey("users.id"), nullable=True)

    exam_date = Column(DateTime(timezone=True), nullable=True)

    # Measurements as typed by the technician, validated at render time
    height = Column(String(20), nullable=True)
    weight = Column(String(20), nullable=True)
    heart_rate = Column(String(20), nullable=True)
    pr_interval = Column(String(20), nullable=True)
    qrs_duration = Column(String(20), nullable=True)

    status = Column(SQLEnum(ExamStatus, native_enum=False, values_callable=lambda e: [m.value for m in e]),
                    default=ExamStatus.PENDENTE, nullable=False, index=True)

    # Report currently attached to this exam (laudos.id)
    active_report_id = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    patient = relationship("Patient", lazy="selectin")
    exam_type = relationship("ExamType", lazy="selectin")

    def __repr__(self):
        return f"<Exam(id={self.id}, status={self.status}, active_report_id={self.active_report_id})>"
