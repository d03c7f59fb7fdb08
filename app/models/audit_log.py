"""
Audit Log Model
Append-only trail of report and certificate operations (LGPD)
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON, Text, Index
from sqlalchemy.sql import func

from database import Base


class AuditLog(Base):
    __tablename__ = "audit_logs"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, nullable=True, index=True)
    user_id = Column(Integer, nullable=True, index=True)

    action = Column(String(50), nullable=False)
    # Actions: 'create', 'sign', 'upload', 'recreate', 'invalidate', 'certificate_register', 'certificate_deactivate'
    description = Column(Text, nullable=True)

    collection_name = Column(String(50), nullable=False)
    document_id = Column(String(64), nullable=True)

    before = Column(JSON, nullable=True)
    after = Column(JSON, nullable=True)

    ip_address = Column(String(45), nullable=True)
    user_agent = Column(String(500), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    __table_args__ = (
        Index('ix_audit_logs_document', 'collection_name', 'document_id'),
    )

    def __repr__(self):
        return f"<AuditLog(id={self.id}, action='{self.action}', collection='{self.collection_name}')>"
