"""
User model (physicians and clinic staff)
"""

from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text, Enum as SQLEnum
from sqlalchemy.sql import func
import enum

from database import Base


class UserRole(str, enum.Enum):
    """Roles that interact with reports"""
    MEDICO = "medico"
    TECNICO = "tecnico"
    RECEPCIONISTA = "recepcionista"
    ADMIN = "admin"


class User(Base):
    __tablename__ = "users"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, nullable=False, index=True)

    name = Column(Text, nullable=False)  # encrypted
    email = Column(String(255), unique=True, nullable=False, index=True)
    crm = Column(String(30), nullable=True)
    role = Column(SQLEnum(UserRole, native_enum=False, values_callable=lambda e: [m.value for m in e]),
                  nullable=False, default=UserRole.MEDICO)
    specialty_id = Column(Integer, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    def __repr__(self):
        return f"<User(id={self.id}, role={self.role}, tenant_id={self.tenant_id})>"
