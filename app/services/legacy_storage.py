"""
Uploadcare (legacy CDN) storage

Used as fallback when S3 is unavailable, and for laudos created before the S3
migration. Files are addressed by CDN URL: https://ucarecdn.com/<uuid>/
"""

import logging
import re
from typing import AsyncIterator, Optional

import httpx

from app.services.storage_types import ObjectNotFound, ObjectStoreError

logger = logging.getLogger(__name__)

UPLOAD_URL = "https://upload.uploadcare.com/base/"
REST_API_URL = "https://api.uploadcare.com"
UUID_PATTERN = re.compile(r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}")


def extract_uuid(url: str) -> Optional[str]:
    match = UUID_PATTERN.search(url or "")
    return match.group(0) if match else None


def is_legacy_url(url: Optional[str]) -> bool:
    return bool(url) and ("ucarecdn" in url or "uploadcare" in url)


class UploadcareStore:
    """Upload, delete and stream files on Uploadcare"""

    def __init__(
        self,
        public_key: Optional[str],
        secret_key: Optional[str] = None,
        cdn_base: str = "https://ucarecdn.com",
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.public_key = public_key
        self.secret_key = secret_key
        self.cdn_base = cdn_base.rstrip("/")
        self.timeout = timeout_seconds
        self._client = client

    def is_enabled(self) -> bool:
        return bool(self.public_key)

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def upload(self, data: bytes, filename: str) -> str:
        if not self.is_enabled():
            raise ObjectStoreError("Uploadcare is not configured")

        try:
            response = await self._http().post(
                UPLOAD_URL,
                data={"UPLOADCARE_PUB_KEY": self.public_key, "UPLOADCARE_STORE": "1"},
                files={"file": (filename, data, "application/pdf")},
            )
            response.raise_for_status()
            file_uuid = response.json()["file"]
        except httpx.HTTPError as e:
            logger.error(f"Uploadcare upload error: {e}")
            raise ObjectStoreError(f"Uploadcare upload failed: {e}") from e
        except (KeyError, ValueError) as e:
            raise ObjectStoreError("Unexpected Uploadcare upload response") from e

        url = f"{self.cdn_base}/{file_uuid}/"
        logger.info(f"Uploaded laudo to Uploadcare: {file_uuid}")
        return url

    async def delete(self, url: str) -> None:
        file_uuid = extract_uuid(url)
        if not file_uuid:
            raise ObjectNotFound(f"Not an Uploadcare file URL: {url}")
        if not self.secret_key:
            raise ObjectStoreError("Uploadcare secret key not configured")

        try:
            response = await self._http().delete(
                f"{REST_API_URL}/files/{file_uuid}/storage/",
                headers={
                    "Authorization": f"Uploadcare.Simple {self.public_key}:{self.secret_key}",
                    "Accept": "application/vnd.uploadcare-v0.7+json",
                },
            )
            if response.status_code == 404:
                raise ObjectNotFound(f"Uploadcare file not found: {file_uuid}")
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Uploadcare delete error: {e}")
            raise ObjectStoreError(f"Uploadcare delete failed: {e}") from e
        logger.info(f"Deleted laudo from Uploadcare: {file_uuid}")

    async def stream(self, url: str) -> AsyncIterator[bytes]:
        try:
            async with self._http().stream("GET", url) as response:
                if response.status_code == 404:
                    raise ObjectNotFound(f"Uploadcare file not found: {url}")
                response.raise_for_status()
                async for chunk in response.aiter_bytes():
                    yield chunk
        except httpx.HTTPError as e:
            logger.error(f"Uploadcare download error: {e}")
            raise ObjectStoreError(f"Uploadcare download failed: {e}") from e

    async def download(self, url: str) -> bytes:
        chunks = [chunk async for chunk in self.stream(url)]
        return b"".join(chunks)
