"""
AWS S3 Service
Primary storage for laudo PDFs

Objects are private and encrypted at rest; clients only ever receive
time-boxed presigned URLs.
"""

import asyncio
import logging
from datetime import datetime
from functools import partial
from typing import AsyncIterator, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from app.services.storage_types import ObjectNotFound, ObjectStoreError

logger = logging.getLogger(__name__)

STREAM_CHUNK_SIZE = 64 * 1024
NOT_FOUND_CODES = {"NoSuchKey", "NotFound", "404"}


class S3ReportStore:
    """Laudo storage in AWS S3"""

    def __init__(
        self,
        bucket_name: Optional[str],
        region: str = "us-east-1",
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        timeout_seconds: float = 10.0,
        client=None,
    ):
        self.bucket_name = bucket_name
        self.region = region
        self.timeout_seconds = timeout_seconds
        self.s3_client = client

        if self.s3_client is None and bucket_name and access_key_id and secret_access_key:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key_id,
                aws_secret_access_key=secret_access_key,
                region_name=region,
                config=Config(
                    connect_timeout=timeout_seconds,
                    read_timeout=timeout_seconds,
                    retries={"max_attempts": 2},
                ),
            )
            logger.info(f"AWS S3 configured. Bucket: {bucket_name}, Region: {region}")
        elif self.s3_client is None:
            logger.warning("AWS S3 not configured. Set AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY, and AWS_S3_BUCKET_NAME")

    def is_enabled(self) -> bool:
        return self.s3_client is not None and bool(self.bucket_name)

    @staticmethod
    def build_key(tenant_id, report_id, kind: str) -> str:
        """laudos/<tenant>/<report>/<kind>/laudo_<kind>_<report>.pdf"""
        return f"laudos/{tenant_id}/{report_id}/{kind}/laudo_{kind}_{report_id}.pdf"

    async def _call(self, operation: str, **params):
        if not self.is_enabled():
            raise ObjectStoreError("AWS S3 is not enabled")

        method = getattr(self.s3_client, operation)
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(partial(method, Bucket=self.bucket_name, **params)),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"S3 {operation} timed out after {self.timeout_seconds}s")
            raise ObjectStoreError(f"S3 {operation} timed out") from e
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            error_message = e.response.get('Error', {}).get('Message', str(e))
            if error_code in NOT_FOUND_CODES:
                raise ObjectNotFound(f"Object not found: {params.get('Key')}") from e
            logger.error(f"S3 {operation} error ({error_code}): {error_message}")
            raise ObjectStoreError(f"S3 {operation} failed: {error_message}") from e
        except BotoCoreError as e:
            logger.error(f"S3 {operation} error: {e}")
            raise ObjectStoreError(f"S3 {operation} failed: {e}") from e

    async def upload(self, data: bytes, key: str, metadata: Optional[dict] = None) -> str:
        upload_metadata = {"uploaded_at": datetime.now().isoformat()}
        if metadata:
            upload_metadata.update({k: str(v) for k, v in metadata.items()})

        await self._call(
            "put_object",
            Key=key,
            Body=data,
            ContentType='application/pdf',
            Metadata=upload_metadata,
            ServerSideEncryption='AES256',
        )
        logger.info(f"Uploaded laudo to S3: {key} ({len(data)} bytes)")
        return key

    async def exists(self, key: str) -> bool:
        try:
            await self._call("head_object", Key=key)
            return True
        except ObjectNotFound:
            return False

    async def generate_presigned_url(self, key: str, expiration: int = 3600, download: bool = False) -> str:
        """Time-boxed URL for an existing object. Raises ObjectNotFound."""
        if not await self.exists(key):
            raise ObjectNotFound(f"Object not found: {key}")

        return self.presign(key, expiration, download)

    def presign(self, key: str, expiration: int = 3600, download: bool = False) -> str:
        """Presigned GET URL, without checking that the object exists"""
        filename = key.split("/")[-1]
        disposition = f'attachment; filename="{filename}"' if download else f'inline; filename="{filename}"'
        try:
            return self.s3_client.generate_presigned_url(
                'get_object',
                Params={
                    'Bucket': self.bucket_name,
                    'Key': key,
                    'ResponseContentDisposition': disposition,
                },
                ExpiresIn=expiration,
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error generating presigned URL for {key}: {e}")
            raise ObjectStoreError("Failed to generate download URL") from e

    async def delete(self, key: str) -> None:
        if not await self.exists(key):
            raise ObjectNotFound(f"Object not found: {key}")
        await self._call("delete_object", Key=key)
        logger.info(f"Deleted laudo from S3: {key}")

    async def stream(self, key: str, chunk_size: int = STREAM_CHUNK_SIZE) -> AsyncIterator[bytes]:
        """Yield the object body chunk by chunk"""
        response = await self._call("get_object", Key=key)
        body = response['Body']
        chunks = body.iter_chunks(chunk_size=chunk_size)
        try:
            while True:
                chunk = await asyncio.wait_for(
                    asyncio.to_thread(next, chunks, None),
                    timeout=self.timeout_seconds,
                )
                if chunk is None:
                    break
                yield chunk
        finally:
            body.close()
