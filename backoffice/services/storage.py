# backoffice/services/storage.py
from functools import lru_cache
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError
import structlog

from backoffice.config import settings

logger = structlog.get_logger()


class ReceiptStorage:
    """S3-compatible bucket holding receipt files. Only keys live in the DB."""

    def __init__(self, s3=None, bucket: Optional[str] = None):
        self.s3 = s3 or boto3.client(
            "s3",
            endpoint_url=settings.RECEIPTS_ENDPOINT_URL or None,
            aws_access_key_id=settings.RECEIPTS_ACCESS_KEY_ID or None,
            aws_secret_access_key=settings.RECEIPTS_SECRET_ACCESS_KEY or None,
            config=Config(signature_version="s3v4"),
            region_name="auto",
        )
        self.bucket = bucket or settings.RECEIPTS_BUCKET_NAME

    def put_object(
        self, file_bytes: bytes, key: str, content_type: str = "application/octet-stream"
    ) -> str:
        self.s3.put_object(
            Bucket=self.bucket, Key=key, Body=file_bytes, ContentType=content_type
        )
        logger.info("receipt_uploaded", key=key, size=len(file_bytes))
        return key

    def exists(self, key: str) -> bool:
        try:
            self.s3.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("404", "NoSuchKey", "NotFound"):
                return False
            raise
        return True

    def get_signed_url(self, key: str, expires_in: Optional[int] = None) -> str:
        return self.s3.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_in or settings.RECEIPT_URL_EXPIRES_IN,
        )

    def delete_object(self, key: str):
        self.s3.delete_object(Bucket=self.bucket, Key=key)
        logger.info("receipt_deleted", key=key)


@lru_cache()
def get_storage() -> ReceiptStorage:
    return ReceiptStorage()
