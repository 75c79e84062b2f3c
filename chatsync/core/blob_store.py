"""
媒体文件存储
MinIO/S3 对象存储，上传附件并生成访问 URL
"""
from __future__ import annotations

import asyncio
import io
import logging
import mimetypes
from datetime import timedelta
from typing import Optional, Set

import magic
from minio import Minio
from minio.error import S3Error
from urllib3.exceptions import HTTPError as TransportError

from .config import Settings, settings as default_settings
from .errors import BlobStoreError

logger = logging.getLogger(__name__)

# MinIO 不可达时 urllib3 抛 MaxRetryError 等
STORAGE_ERRORS = (S3Error, TransportError, OSError)

SNIFF_BYTES = 2048


def message_type_for_mime(content_type: Optional[str]) -> str:
    """Map a MIME type onto a message type by its major part."""
    major = (content_type or "").split("/", 1)[0].lower()
    if major == "audio":
        return "voice"
    if major == "video":
        return "video"
    if major == "image":
        return "image"
    return "file"


def sniff_content_type(data: bytes) -> Optional[str]:
    """使用python-magic检测真实文件类型"""
    if not data:
        return None
    try:
        return magic.from_buffer(data[:SNIFF_BYTES], mime=True)
    except magic.MagicException as e:
        logger.warning("Content sniffing failed: %s", e)
        return None


def guess_content_type(
    file_name: str, declared: Optional[str] = None, data: Optional[bytes] = None
) -> str:
    """Type of an upload: the sniffed type of ``data`` wins over the declared
    one, which wins over the file extension."""
    sniffed = sniff_content_type(data) if data else None
    if sniffed and sniffed != "application/octet-stream":
        # webm/ogg/mp4 containers hold audio or video; trust the client's major type
        if declared and declared.split("/")[-1] == sniffed.split("/")[-1]:
            return declared
        return sniffed
    if declared and declared != "application/octet-stream":
        return declared
    guessed, _ = mimetypes.guess_type(file_name)
    return guessed or declared or "application/octet-stream"


class MinioBlobStore:
    """Blob store backed by MinIO; the client connects on first use."""

    def __init__(self, config: Settings | None = None):
        self._config = config or default_settings
        self._client: Optional[Minio] = None
        self._known_buckets: Set[str] = set()

    @property
    def client(self) -> Minio:
        if self._client is None:
            self._client = Minio(
                self._config.MINIO_ENDPOINT,
                access_key=self._config.MINIO_ACCESS_KEY,
                secret_key=self._config.MINIO_SECRET_KEY,
                secure=self._config.MINIO_SECURE,
            )
        return self._client

    def _ensure_bucket_exists(self, bucket: str) -> None:
        """确保存储桶存在"""
        if bucket in self._known_buckets:
            return
        if not self.client.bucket_exists(bucket):
            self.client.make_bucket(bucket)
            logger.info("Created bucket %s", bucket)
        self._known_buckets.add(bucket)

    async def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        def put() -> None:
            self._ensure_bucket_exists(bucket)
            self.client.put_object(
                bucket,
                path,
                io.BytesIO(data),
                length=len(data),
                content_type=content_type,
            )

        try:
            await asyncio.to_thread(put)
        except STORAGE_ERRORS as e:
            logger.error("Upload of %s/%s failed: %s", bucket, path, e)
            raise BlobStoreError(f"Failed to upload {path}: {e}") from e
        return path

    async def get_url(self, bucket: str, path: str) -> str:
        base = self._config.MEDIA_PUBLIC_BASE_URL
        if base:
            return f"{base.rstrip('/')}/{bucket}/{path}"
        try:
            return await asyncio.to_thread(
                self.client.presigned_get_object,
                bucket,
                path,
                expires=timedelta(seconds=self._config.MEDIA_URL_EXPIRE_SECONDS),
            )
        except STORAGE_ERRORS as e:
            raise BlobStoreError(f"Failed to generate download URL: {e}") from e
