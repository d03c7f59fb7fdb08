"""
Pydantic schemas for physician certificates
"""

from typing import Optional
from datetime import datetime
from pydantic import BaseModel, Field


class CertificateResponse(BaseModel):
    """Certificate metadata, never the material or the password"""
    id: int
    subject_name: Optional[str] = None
    issuer: Optional[str] = None
    serial_number: Optional[str] = None
    issued_at: Optional[datetime] = None
    expires_at: datetime
    days_until_expiry: int
    status: str = Field(..., description="ativo, inativo or vencido")
    total_uses: int = 0
    last_used_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class CertificatePasswordCheck(BaseModel):
    password: str = Field(..., min_length=1)


class CertificatePasswordCheckResponse(BaseModel):
    valid: bool
    message: str
