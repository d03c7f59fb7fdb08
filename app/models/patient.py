"""
Patient model. Identifying fields are stored encrypted.
"""

from sqlalchemy import Column, Integer, DateTime, Date, Text
from sqlalchemy.sql import func

from database import Base


class Patient(Base):
    __tablename__ = "patients"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, nullable=False, index=True)

    name = Column(Text, nullable=False)  # encrypted
    cpf = Column(Text, nullable=True)  # encrypted
    email = Column(Text, nullable=True)  # encrypted
    birth_date = Column(Date, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    def __repr__(self):
        return f"<Patient(id={self.id}, tenant_id={self.tenant_id})>"
