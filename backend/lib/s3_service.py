"""
=============================================================================
S3 SERVICE - Reading photos and CSV backups on Amazon S3
=============================================================================
Two kinds of objects end up in the bucket:

    photos/<user_id>/<reading_id>.<ext>      meter photos taken with a reading
    uploads/<YYYYMMDDTHHMMSSZ>_<filename>    raw CSV imports, kept as backup

Photo upload is best-effort: the sync engine calls upload_reading_photo after
a reading was pushed, and a failure here never marks the reading unsynced.
=============================================================================
"""

import logging
import mimetypes
import os
from pathlib import Path
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from backend.lib.dynamodb_service import client_config
from backend.lib.meter_core.errors import SyncPushError
from backend.lib.meter_core.models import EntityType, MeterReading, utc_now

logger = logging.getLogger(__name__)


def photo_key(reading: MeterReading) -> str:
    suffix = Path(reading.photo_path or '').suffix.lower() or '.jpg'
    return f"photos/{reading.user_id}/{reading.id}{suffix}"


class S3Service:
    """
    Photo channel and CSV backup store.

    Usage:
        s3 = S3Service(bucket_name="meter-tracker-photos")
        s3.create_bucket_if_not_exists()
        key = s3.upload_reading_photo(reading)
        url = s3.get_presigned_url(key)
    """

    def __init__(self, bucket_name: str = None, region: str = None,
                 timeout_seconds: int = 10, client=None):
        """
        Args:
            bucket_name: Bucket to use; defaults to S3_BUCKET_NAME
            region: AWS region; defaults to AWS_REGION
            timeout_seconds: connect/read timeout for every call
            client: Pre-built boto3 S3 client (tests pass a fake)
        """
        self.bucket_name = bucket_name or os.getenv('S3_BUCKET_NAME', 'meter-tracker-photos')
        self.region = region or os.getenv('AWS_REGION', 'us-east-1')

        if client is None:
            session_token = os.getenv('AWS_SESSION_TOKEN')
            client = boto3.client(
                's3',
                region_name=self.region,
                aws_access_key_id=os.getenv('AWS_ACCESS_KEY_ID'),
                aws_secret_access_key=os.getenv('AWS_SECRET_ACCESS_KEY'),
                aws_session_token=session_token if session_token else None,
                config=client_config(timeout_seconds),
            )
        self.s3_client = client

    def create_bucket_if_not_exists(self) -> bool:
        """
        Create the bucket if head_bucket says it is missing.

        Note:
            us-east-1 rejects an explicit LocationConstraint, every other
            region requires one.
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            if e.response['Error']['Code'] != '404':
                logger.error("Error checking bucket %s: %s", self.bucket_name, e)
                return False

        try:
            if self.region == 'us-east-1':
                self.s3_client.create_bucket(Bucket=self.bucket_name)
            else:
                self.s3_client.create_bucket(
                    Bucket=self.bucket_name,
                    CreateBucketConfiguration={'LocationConstraint': self.region}
                )
            logger.info("Created bucket: %s", self.bucket_name)
            return True
        except ClientError as e:
            logger.error("Failed to create bucket %s: %s", self.bucket_name, e)
            return False

    def upload_reading_photo(self, reading: MeterReading) -> str:
        """
        Upload the photo stored at ``reading.photo_path``.

        Returns:
            str: The S3 key of the photo

        Raises:
            SyncPushError: if the file cannot be read or the upload fails
        """
        key = photo_key(reading)
        content_type = mimetypes.guess_type(reading.photo_path)[0] or 'image/jpeg'
        try:
            body = Path(reading.photo_path).read_bytes()
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=body,
                ContentType=content_type,
                Metadata={'user_id': reading.user_id, 'reading_id': reading.id},
            )
        except (OSError, ClientError, BotoCoreError) as e:
            raise SyncPushError(EntityType.METER_READINGS.value, reading.id, f"photo upload: {e}")
        return key

    def upload_file(self, file_content: bytes, filename: str, content_type: str = 'text/csv') -> Optional[str]:
        """
        Keep a copy of an imported CSV file.

        Returns:
            str: The S3 key, e.g. "uploads/20251128T120000Z_data.csv",
                 or None if the upload failed
        """
        timestamp = utc_now().strftime('%Y%m%dT%H%M%SZ')
        s3_key = f"uploads/{timestamp}_{Path(filename).name}"
        try:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=s3_key,
                Body=file_content,
                ContentType=content_type
            )
            return s3_key
        except (ClientError, BotoCoreError) as e:
            logger.warning("Failed to upload %s to S3: %s", filename, e)
            return None

    def get_presigned_url(self, s3_key: str, expiration: int = 3600) -> Optional[str]:
        """
        Temporary download link for a private object (default 1 hour).
        """
        try:
            return self.s3_client.generate_presigned_url(
                'get_object',
                Params={'Bucket': self.bucket_name, 'Key': s3_key},
                ExpiresIn=expiration
            )
        except (ClientError, BotoCoreError) as e:
            logger.warning("Failed to generate presigned URL for %s: %s", s3_key, e)
            return None
