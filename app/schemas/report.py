"""
Pydantic schemas for laudos
"""

from typing import List, Optional
from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, Field

from app.models.report import ReportStatus, SigningMethod


class ReportCreate(BaseModel):
    """Request to create a laudo for an exam"""
    exam_id: int = Field(..., description="Exam the laudo belongs to")
    conclusion: str = Field(..., min_length=1, description="Medical conclusion")


class ReportRedo(BaseModel):
    """Request to redo a laudo. Without a new conclusion the previous one is reused"""
    conclusion: Optional[str] = None


class PublicAuthRequest(BaseModel):
    access_code: str = Field(..., min_length=4, max_length=8)


class ReportCreateResponse(BaseModel):
    id: int
    exam_id: int
    status: ReportStatus
    valid: bool
    version: int
    auto_sign_available: bool
    artifact_url: Optional[str] = None
    message: str = "Laudo criado com sucesso"


class ReportSignResponse(BaseModel):
    id: int
    status: ReportStatus
    signing_method: SigningMethod
    digitally_signed: bool
    signed_at: Optional[datetime] = None
    artifact_url: Optional[str] = None
    message: str = "Laudo assinado com sucesso"


class ReportRedoResponse(BaseModel):
    id: int
    previous_report_id: int
    version: int
    status: ReportStatus
    signed: bool
    artifact_url: Optional[str] = None
    message: str = "Laudo refeito com sucesso"


class ReportSummary(BaseModel):
    """Summary returned after invalidation"""
    id: int
    exam_id: int
    status: ReportStatus
    valid: bool
    version: int
    invalidated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ReportExamInfo(BaseModel):
    id: int
    status: str
    exam_type: Optional[str] = None
    exam_date: Optional[datetime] = None
    patient_name: Optional[str] = None


class ReportDetail(BaseModel):
    id: int
    exam_id: int
    status: ReportStatus
    valid: bool
    version: int
    conclusion: Optional[str] = None
    physician_id: int
    physician_name: Optional[str] = None
    created_by_name: Optional[str] = None
    digitally_signed: bool
    signing_method: SigningMethod
    signed_at: Optional[datetime] = None
    has_original: bool
    has_signed: bool
    previous_report_id: Optional[int] = None
    payment_value: Optional[Decimal] = None
    exam: ReportExamInfo
    created_at: Optional[datetime] = None


class HistoryEntry(BaseModel):
    timestamp: str
    actor_id: Optional[int] = None
    actor_name: Optional[str] = None
    action: str
    detail: Optional[str] = None
    version: Optional[int] = None


class ReportHistoryResponse(BaseModel):
    report_id: int
    history: List[HistoryEntry]


class PublicReportView(BaseModel):
    """Unauthenticated projection of a laudo"""
    id: int
    patient_name: Optional[str] = None
    exam_type: Optional[str] = None
    exam_date: Optional[datetime] = None
    status: ReportStatus
    valid: bool
    signed: bool
    digitally_signed: bool
    signed_at: Optional[datetime] = None
    access_code: Optional[str] = None


class PublicAuthResponse(BaseModel):
    id: int
    url: str
    expires_in: int
