"""S3 object storage for quarantined file uploads.

The server never touches file bytes: it hands the device a presigned PUT
URL and records the object key on the quarantine row.
"""

import logging
import time
from typing import Optional

import boto3
from botocore.config import Config as BotoConfig

from aegis.config import settings

logger = logging.getLogger(__name__)


class StorageNotConfigured(Exception):
    pass


def quarantine_key(user_id: str, device_id: str, file_hash: str) -> str:
    return f"quarantine/{user_id}/{device_id}/{int(time.time() * 1000)}-{file_hash}"


class QuarantineStorage:
    def __init__(self):
        self._client = None

    def _get_client(self):
        if not settings.storage_configured:
            raise StorageNotConfigured("S3 storage is not configured")
        if self._client is None:
            self._client = boto3.client(
                "s3",
                region_name=settings.AWS_REGION,
                aws_access_key_id=settings.AWS_ACCESS_KEY_ID,
                aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
                config=BotoConfig(signature_version="s3v4"),
            )
        return self._client

    def presign_upload(
        self,
        key: str,
        content_type: str,
        content_length: int,
        metadata: dict[str, str],
        expires_in: int,
    ) -> str:
        """Return a presigned PUT URL with server-side AES256 encryption."""
        client = self._get_client()
        return client.generate_presigned_url(
            "put_object",
            Params={
                "Bucket": settings.S3_BUCKET_NAME,
                "Key": key,
                "ContentType": content_type,
                "ContentLength": content_length,
                "ServerSideEncryption": "AES256",
                "Metadata": metadata,
            },
            ExpiresIn=expires_in,
        )


_storage: Optional[QuarantineStorage] = None


def get_quarantine_storage() -> QuarantineStorage:
    global _storage
    if _storage is None:
        _storage = QuarantineStorage()
    return _storage
