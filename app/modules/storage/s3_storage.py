import boto3
from botocore.exceptions import ClientError
from app.config import settings
from app.modules.storage.base import ContentStore, StoredObject, object_key
from typing import Optional
import logging

logger = logging.getLogger(__name__)

_MISSING_CODES = {"NoSuchKey", "404", "NotFound"}


class S3ContentStore(ContentStore):
    """Published build output in an S3-compatible bucket (AWS S3, Cloudflare R2, MinIO)."""

    def __init__(self, client=None, bucket_name: Optional[str] = None):
        self.bucket_name = bucket_name or settings.s3_bucket_name
        if client is None:
            if not all([settings.aws_access_key_id, settings.aws_secret_access_key, self.bucket_name]):
                raise ValueError("S3 credentials and bucket name must be configured")
            client = boto3.client(
                's3',
                aws_access_key_id=settings.aws_access_key_id,
                aws_secret_access_key=settings.aws_secret_access_key,
                region_name=settings.aws_region,
                endpoint_url=settings.s3_endpoint_url,
            )
        if not self.bucket_name:
            raise ValueError("S3 bucket name must be configured")
        self.s3_client = client

    def put(self, namespace: str, path: str, body: bytes, content_type: str) -> str:
        """Upload one object and return its key"""
        key = object_key(namespace, path)
        try:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=body,
                ContentType=content_type
            )
            return key
        except ClientError as e:
            logger.error(f"Failed to upload {key} to S3: {str(e)}")
            raise

    def get(self, namespace: str, path: str) -> Optional[StoredObject]:
        key = object_key(namespace, path)
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in _MISSING_CODES:
                return None
            raise
        return StoredObject(
            body=response["Body"].read(),
            content_type=response.get("ContentType"),
            etag=response.get("ETag"),
            last_modified=response.get("LastModified"),
        )

    def delete(self, namespace: str, path: str) -> bool:
        """Delete object from S3"""
        key = object_key(namespace, path)
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=key)
            return True
        except ClientError as e:
            logger.error(f"Failed to delete {key} from S3: {str(e)}")
            return False
