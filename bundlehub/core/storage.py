import logging
import re
import time
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .config import settings

logger = logging.getLogger(__name__)

S3_PREFIX = "s3://"


class StorageError(Exception):
    """Raised when the object store cannot complete a request."""


def parse_object_reference(reference: Optional[str]) -> Optional[str]:
    """Return the object key for an ``s3://<key>`` reference, else None."""
    if reference and reference.startswith(S3_PREFIX):
        return reference[len(S3_PREFIX):]
    return None


def sanitize_filename(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9.-]", "_", name or "file")


def payment_screenshot_key(order_id: str, filename: str) -> str:
    return f"payment-screenshots/{order_id}/{int(time.time() * 1000)}-{sanitize_filename(filename)}"


class S3BlobStore:
    """Key-based blob store on S3 with presigned GET URLs."""

    def __init__(self, bucket: str, region: Optional[str] = None, client=None):
        self.bucket = bucket
        self.s3 = client or boto3.client(
            "s3",
            region_name=region or None,
            config=Config(signature_version="s3v4"),
        )

    @classmethod
    def from_settings(cls):
        return cls(settings.AWS_S3_BUCKET_NAME, settings.AWS_REGION)

    def _require_bucket(self):
        if not self.bucket:
            raise StorageError("AWS_S3_BUCKET_NAME environment variable is required")

    def presign_get(self, object_key: str, ttl_seconds: int) -> str:
        self._require_bucket()
        try:
            return self.s3.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": object_key},
                ExpiresIn=ttl_seconds,
            )
        except (BotoCoreError, ClientError) as e:
            logger.error("Error generating signed URL for %s: %s", object_key, e)
            raise StorageError(f"Failed to generate download URL: {e}") from e

    def put(self, object_key: str, data: bytes, content_type: Optional[str] = None) -> str:
        self._require_bucket()
        extra = {"ContentType": content_type} if content_type else {}
        try:
            self.s3.put_object(Bucket=self.bucket, Key=object_key, Body=data, **extra)
        except (BotoCoreError, ClientError) as e:
            logger.error("Error uploading %s: %s", object_key, e)
            raise StorageError(f"Failed to upload file: {e}") from e
        return object_key
