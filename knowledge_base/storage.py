# knowledge_base/storage.py
"""
Blob storage for original uploads: put/get/delete by object path.

A store may refuse a content type (bucket MIME policy); it then raises
BlobMimeTypeError so the uploader can retry once as application/octet-stream.
"""
import asyncio
import io
import logging
import os
from typing import List, Optional

import aiofiles
from minio import Minio
from minio.error import S3Error

from knowledge_base.config import settings
from knowledge_base.errors import BlobMimeTypeError, StorageError

logger = logging.getLogger(__name__)

GENERIC_CONTENT_TYPE = "application/octet-stream"


def ensure_dir(path):
    os.makedirs(path, exist_ok=True)


class BlobStorage:
    bucket: str = "documents"

    async def put(self, path: str, data: bytes, content_type: str) -> None:
        raise NotImplementedError

    async def get(self, path: str) -> bytes:
        raise NotImplementedError

    async def delete(self, path: str) -> None:
        raise NotImplementedError


class LocalBlobStorage(BlobStorage):
    def __init__(self, root: Optional[str] = None, bucket: Optional[str] = None,
                 allowed_mime_types: Optional[List[str]] = None):
        self.bucket = bucket or settings.storage_bucket
        self.root = os.path.abspath(os.path.join(root or settings.upload_dir, self.bucket))
        self.allowed_mime_types = list(allowed_mime_types if allowed_mime_types is not None
                                       else settings.storage_allowed_mime_types)

    def _resolve(self, path: str) -> str:
        full = os.path.abspath(os.path.join(self.root, path))
        if not full.startswith(self.root + os.sep):
            raise StorageError(f"Invalid storage path: {path}")
        return full

    async def put(self, path: str, data: bytes, content_type: str) -> None:
        if (self.allowed_mime_types and content_type != GENERIC_CONTENT_TYPE
                and content_type not in self.allowed_mime_types):
            raise BlobMimeTypeError(f"mime type {content_type} is not supported by bucket {self.bucket}")
        full = self._resolve(path)
        ensure_dir(os.path.dirname(full))
        try:
            async with aiofiles.open(full, "wb") as out_file:
                await out_file.write(data)
        except OSError as e:
            raise StorageError(f"Failed to write {path}: {e}") from e

    async def get(self, path: str) -> bytes:
        full = self._resolve(path)
        try:
            async with aiofiles.open(full, "rb") as in_file:
                return await in_file.read()
        except OSError as e:
            raise StorageError(f"Failed to download file: {e}") from e

    async def delete(self, path: str) -> None:
        full = self._resolve(path)
        try:
            os.remove(full)
        except FileNotFoundError:
            logger.debug("Blob %s already absent", path)
        except OSError as e:
            raise StorageError(f"Failed to delete {path}: {e}") from e


class MinioBlobStorage(BlobStorage):
    def __init__(self, client: Optional[Minio] = None, bucket: Optional[str] = None):
        self.bucket = bucket or settings.storage_bucket
        self.client = client or Minio(
            settings.minio_endpoint,
            access_key=settings.minio_access_key,
            secret_key=settings.minio_secret_key,
            secure=settings.minio_secure,
        )
        self._bucket_checked = False

    def _ensure_bucket(self):
        if not self._bucket_checked:
            if not self.client.bucket_exists(self.bucket):
                self.client.make_bucket(self.bucket)
            self._bucket_checked = True

    def _put(self, path: str, data: bytes, content_type: str) -> None:
        self._ensure_bucket()
        self.client.put_object(self.bucket, path, io.BytesIO(data), length=len(data), content_type=content_type)

    async def put(self, path: str, data: bytes, content_type: str) -> None:
        try:
            await asyncio.to_thread(self._put, path, data, content_type)
        except S3Error as e:
            text = f"{e.code} {e.message}".lower()
            if "mime" in text or "content-type" in text or "content type" in text:
                raise BlobMimeTypeError(str(e)) from e
            raise StorageError(f"Failed to upload file: {e}") from e

    def _get(self, path: str) -> bytes:
        response = self.client.get_object(self.bucket, path)
        try:
            return response.read()
        finally:
            response.close()
            response.release_conn()

    async def get(self, path: str) -> bytes:
        try:
            return await asyncio.to_thread(self._get, path)
        except S3Error as e:
            raise StorageError(f"Failed to download file: {e}") from e

    async def delete(self, path: str) -> None:
        try:
            await asyncio.to_thread(self.client.remove_object, self.bucket, path)
        except S3Error as e:
            raise StorageError(f"Failed to delete {path}: {e}") from e


_storage: Optional[BlobStorage] = None

def get_blob_storage() -> BlobStorage:
    global _storage
    if _storage is None:
        if settings.storage_backend == "minio":
            _storage = MinioBlobStorage()
        else:
            _storage = LocalBlobStorage()
    return _storage
