"""
Storage Reconciler
Puts laudo PDFs in S3, falls back to the legacy CDN, and cleans up superseded
artifacts
"""

import logging
from typing import AsyncIterator, Optional

from app.core.error_handling import NotFoundException, StorageException
from app.services.legacy_storage import UploadcareStore
from app.services.s3_service import S3ReportStore
from app.services.storage_types import (
    Backend,
    DocumentKind,
    ObjectNotFound,
    ObjectStoreError,
    StoredObject,
)

logger = logging.getLogger(__name__)


class StorageReconciler:
    """
    Primary store first, legacy store second. Deletions of superseded files
    are advisory: `cleanup` logs failures and never raises.
    """

    def __init__(self, primary: S3ReportStore, legacy: UploadcareStore, presigned_ttl: int = 3600):
        self.primary = primary
        self.legacy = legacy
        self.presigned_ttl = presigned_ttl

    async def persist(
        self,
        data: bytes,
        report_id,
        tenant_id,
        kind: str,
        filename: Optional[str] = None,
    ) -> StoredObject:
        if kind not in DocumentKind.ALL:
            raise ValueError(f"Unknown document kind: {kind}")
        filename = filename or f"laudo_{kind}_{report_id}.pdf"

        if self.primary.is_enabled():
            key = self.primary.build_key(tenant_id, report_id, kind)
            try:
                await self.primary.upload(
                    data, key, metadata={"tenant_id": tenant_id, "report_id": report_id, "kind": kind}
                )
            except ObjectStoreError as e:
                logger.warning(f"Primary store failed for laudo {report_id} ({kind}), trying legacy store: {e}")
            else:
                try:
                    url = self.primary.presign(key, self.presigned_ttl)
                except ObjectStoreError as e:
                    # The object is stored; downloads presign again from the key
                    logger.warning(f"Stored laudo {report_id} ({kind}) as {key} but presigning failed: {e}")
                    url = None
                return StoredObject(url=url, key=key, backend=Backend.PRIMARY)
        else:
            logger.warning(f"Primary store disabled, storing laudo {report_id} ({kind}) on legacy store")

        try:
            url = await self.legacy.upload(data, filename)
        except ObjectStoreError as e:
            logger.error(f"Legacy store failed for laudo {report_id} ({kind}): {e}")
            raise StorageException(details={"report_id": report_id, "kind": kind}) from e
        return StoredObject(url=url, key=None, backend=Backend.LEGACY)

    async def get_access_url(self, key: str, ttl: Optional[int] = None) -> str:
        """Time-boxed URL for a primary-store object"""
        try:
            return await self.primary.generate_presigned_url(key, ttl or self.presigned_ttl)
        except ObjectNotFound as e:
            raise NotFoundException("Documento não encontrado") from e
        except ObjectStoreError as e:
            raise StorageException("Falha ao gerar link do documento") from e

    async def delete(self, key: str) -> None:
        try:
            await self.primary.delete(key)
        except ObjectNotFound as e:
            raise NotFoundException("Documento não encontrado") from e
        except ObjectStoreError as e:
            raise StorageException("Falha ao remover documento") from e

    async def delete_legacy(self, url: str) -> None:
        try:
            await self.legacy.delete(url)
        except ObjectNotFound as e:
            raise NotFoundException("Documento não encontrado") from e
        except ObjectStoreError as e:
            raise StorageException("Falha ao remover documento") from e

    async def cleanup(self, key: Optional[str] = None, legacy_url: Optional[str] = None) -> None:
        """Best-effort removal of a superseded document"""
        if key:
            try:
                await self.delete(key)
                logger.info(f"Removed superseded document {key}")
            except (NotFoundException, StorageException) as e:
                logger.warning(f"Could not remove superseded document {key}: {e.message}")
        if legacy_url:
            try:
                await self.delete_legacy(legacy_url)
                logger.info("Removed superseded legacy document")
            except (NotFoundException, StorageException) as e:
                logger.warning(f"Could not remove superseded legacy document: {e.message}")

    async def open_stream(self, key: Optional[str] = None, legacy_url: Optional[str] = None) -> AsyncIterator[bytes]:
        """
        Stream a document from whichever store holds it.

        The first chunk is fetched before returning so a missing object is
        reported before any byte reaches the client.
        """
        if key:
            source = self.primary.stream(key)
        elif legacy_url:
            source = self.legacy.stream(legacy_url)
        else:
            raise NotFoundException("Documento não encontrado")

        try:
            first = await source.__anext__()
        except StopAsyncIteration:
            first = b""
        except ObjectNotFound as e:
            await source.aclose()
            raise NotFoundException("Documento não encontrado") from e
        except ObjectStoreError as e:
            await source.aclose()
            raise StorageException("Falha ao ler documento") from e

        async def body():
            try:
                if first:
                    yield first
                async for chunk in source:
                    yield chunk
            finally:
                await source.aclose()

        return body()
