"""
Audit Service
Writes audit records for report and certificate operations
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.audit_log import AuditLog

logger = logging.getLogger(__name__)


class AuditService:
    """Fire-and-forget audit trail. A failed write never fails the caller."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record(
        self,
        actor_id: Optional[int],
        action: str,
        description: str,
        collection_name: str,
        document_id: Any,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
        request_meta: Optional[Dict[str, Any]] = None,
        tenant_id: Optional[int] = None,
    ) -> None:
        request_meta = request_meta or {}
        entry = AuditLog(
            tenant_id=tenant_id,
            user_id=actor_id,
            action=action,
            description=description,
            collection_name=collection_name,
            document_id=str(document_id) if document_id is not None else None,
            before=before,
            after=after,
            ip_address=request_meta.get("ip"),
            user_agent=(request_meta.get("user_agent") or "")[:500] or None,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(entry)
        except SQLAlchemyError as e:
            logger.warning(f"Audit record '{action}' on {collection_name}/{document_id} not written: {e}")
