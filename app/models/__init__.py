from app.models.user import User, UserRole
from app.models.patient import Patient
from app.models.exam import Exam, ExamType, ExamStatus
from app.models.report import Report, ReportPrice, ReportStatus, SigningMethod
from app.models.certificate import DigitalCertificate
from app.models.audit_log import AuditLog

__all__ = [
    "User",
    "UserRole",
    "Patient",
    "Exam",
    "ExamType",
    "ExamStatus",
    "Report",
    "ReportPrice",
    "ReportStatus",
    "SigningMethod",
    "DigitalCertificate",
    "AuditLog",
]
