import os
import asyncio
import logging
import boto3
from typing import Optional
from .base import BaseStorage
from app.core.config import Settings
from app.core.errors import StorageFailure
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

class S3Storage(BaseStorage):
    def __init__(self, settings: Settings, s3_client=None):
        self.bucket = settings.S3_BUCKET_NAME
        self.prefix = settings.S3_KEY_PREFIX
        self.s3_client = s3_client or boto3.client(
            's3',
            aws_access_key_id=settings.S3_ACCESS_KEY,
            aws_secret_access_key=settings.S3_SECRET_KEY,
            endpoint_url=settings.S3_ENDPOINT_URL,
            region_name=settings.S3_REGION_NAME
        )

    def _key(self, name: str) -> str:
        return f"{self.prefix}{name}"

    async def store(self, file_path: str, name: str, content_type: Optional[str] = None) -> str:
        s3_key = self._key(name)
        await asyncio.to_thread(self._upload_to_s3, file_path, s3_key, content_type)
        # the local artifact is only removed once the object exists remotely
        await asyncio.to_thread(self._remove_local, file_path)
        return s3_key

    def _upload_to_s3(self, file_path, s3_key, content_type):
        extra = {"ContentType": content_type} if content_type else {}
        try:
            with open(file_path, "rb") as f:
                self.s3_client.put_object(Bucket=self.bucket, Key=s3_key, Body=f, **extra)
        except (BotoCoreError, ClientError, OSError) as e:
            raise StorageFailure(f"S3 upload failed: {e}")
        logger.info(f"Uploaded {file_path} to s3://{self.bucket}/{s3_key}")

    def _remove_local(self, path):
        # the object is already stored, a leftover local copy is only logged
        try:
            if os.path.exists(path):
                os.remove(path)
        except OSError as e:
            logger.warning(f"Could not remove local artifact {path} after upload: {e}")

    async def exists(self, name: str) -> bool:
        return await asyncio.to_thread(self._head, self._key(name))

    def _head(self, s3_key):
        try:
            self.s3_client.head_object(Bucket=self.bucket, Key=s3_key)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise StorageFailure(f"S3 head failed: {e}")
        except BotoCoreError as e:
            raise StorageFailure(f"S3 head failed: {e}")
