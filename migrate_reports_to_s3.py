"""
Copy laudos stored only on the legacy CDN (Uploadcare) into S3

For every report with a legacy URL and no matching S3 key:
1. download the file from the CDN
2. upload it to S3 under the tenant/report/kind key
3. record the key on the report
4. optionally remove the CDN file (--delete-legacy)

Usage:
    python migrate_reports_to_s3.py [--dry-run] [--delete-legacy]
"""
import asyncio
import logging
import sys
from typing import List, Optional, Tuple

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import AsyncSessionLocal
from app.models import Report
from app.services.legacy_storage import UploadcareStore, is_legacy_url
from app.services.s3_service import S3ReportStore
from app.services.storage_types import DocumentKind, ObjectStoreError

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger("migrate_reports_to_s3")

BATCH_SIZE = 10
BATCH_PAUSE_SECONDS = 1.0


class ReportMigration:
    """Moves legacy CDN documents to S3, counting processed, skipped and failed reports"""

    def __init__(
        self,
        db: AsyncSession,
        primary: S3ReportStore,
        legacy: UploadcareStore,
        dry_run: bool = False,
        delete_legacy: bool = False,
        batch_size: int = BATCH_SIZE,
        pause_seconds: float = BATCH_PAUSE_SECONDS,
    ):
        self.db = db
        self.primary = primary
        self.legacy = legacy
        self.dry_run = dry_run
        self.delete_legacy = delete_legacy
        self.batch_size = batch_size
        self.pause_seconds = pause_seconds
        self.processed_count = 0
        self.skipped_count = 0
        self.error_count = 0

    @staticmethod
    def pending_documents(report: Report) -> List[Tuple[str, str]]:
        """(kind, legacy url) pairs that still have no S3 key"""
        pending = []
        if report.legacy_url and not report.signed_key and is_legacy_url(report.legacy_url):
            pending.append((DocumentKind.SIGNED, report.legacy_url))
        if report.original_legacy_url and not report.original_key and is_legacy_url(report.original_legacy_url):
            pending.append((DocumentKind.ORIGINAL, report.original_legacy_url))
        return pending

    async def candidates(self) -> List[Report]:
        result = await self.db.execute(
            select(Report)
            .where(or_(
                (Report.legacy_url.isnot(None)) & (Report.signed_key.is_(None)),
                (Report.original_legacy_url.isnot(None)) & (Report.original_key.is_(None)),
            ))
            .order_by(Report.id)
        )
        return list(result.scalars().all())

    async def migrate_report(self, report: Report) -> bool:
        pending = self.pending_documents(report)
        if not pending:
            logger.info(f"Laudo {report.id} has nothing to migrate, skipping")
            self.skipped_count += 1
            return True

        try:
            for kind, url in pending:
                data = await self.legacy.download(url)
                key = self.primary.build_key(report.tenant_id, report.id, kind)
                if self.dry_run:
                    logger.info(f"[dry-run] laudo {report.id}: {len(data)} bytes would go to {key}")
                    continue

                await self.primary.upload(
                    data, key, metadata={"tenant_id": report.tenant_id, "report_id": report.id, "kind": kind}
                )
                if kind == DocumentKind.SIGNED:
                    report.signed_key = key
                else:
                    report.original_key = key

                if self.delete_legacy:
                    await self._remove_legacy(report, kind, url)

            if not self.dry_run:
                await self.db.commit()
        except ObjectStoreError as e:
            await self.db.rollback()
            logger.error(f"Failed to migrate laudo {report.id}: {e}")
            self.error_count += 1
            return False

        logger.info(f"Laudo {report.id} migrated to S3")
        self.processed_count += 1
        return True

    async def _remove_legacy(self, report: Report, kind: str, url: str) -> None:
        try:
            await self.legacy.delete(url)
        except ObjectStoreError as e:
            logger.warning(f"Could not remove legacy file of laudo {report.id}: {e}")
            return
        if kind == DocumentKind.SIGNED:
            report.legacy_url = None
        else:
            report.original_legacy_url = None

    async def run(self) -> None:
        reports = await self.candidates()
        logger.info(f"Found {len(reports)} laudos to migrate")
        if not reports:
            return

        total_batches = (len(reports) + self.batch_size - 1) // self.batch_size
        for index in range(0, len(reports), self.batch_size):
            batch = reports[index:index + self.batch_size]
            logger.info(f"Processing batch {index // self.batch_size + 1}/{total_batches}")
            # One session, so reports within a batch go one at a time
            for report in batch:
                await self.migrate_report(report)
            if self.pause_seconds:
                await asyncio.sleep(self.pause_seconds)

        logger.info("=== MIGRATION FINISHED ===")
        logger.info(f"Processed: {self.processed_count}")
        logger.info(f"Errors: {self.error_count}")
        logger.info(f"Skipped: {self.skipped_count}")
        logger.info(f"Total analysed: {len(reports)}")


async def main(argv: Optional[List[str]] = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    primary = S3ReportStore(
        bucket_name=settings.AWS_S3_BUCKET_NAME,
        region=settings.AWS_REGION,
        access_key_id=settings.AWS_ACCESS_KEY_ID,
        secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
        timeout_seconds=settings.STORAGE_TIMEOUT_SECONDS,
    )
    if not primary.is_enabled():
        logger.error("AWS S3 is not configured, nothing to migrate to")
        return 1

    legacy = UploadcareStore(
        public_key=settings.UPLOADCARE_PUBLIC_KEY,
        secret_key=settings.UPLOADCARE_SECRET_KEY,
        cdn_base=settings.UPLOADCARE_CDN_BASE,
        timeout_seconds=30.0,
    )
    try:
        async with AsyncSessionLocal() as session:
            migration = ReportMigration(
                session, primary, legacy,
                dry_run="--dry-run" in argv,
                delete_legacy="--delete-legacy" in argv,
            )
            await migration.run()
    finally:
        await legacy.aclose()
    return 0 if migration.error_count == 0 else 2


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
