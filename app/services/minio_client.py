"""
MinIO content store for message attachments.
Stores image/audio bytes under opaque object keys; metadata lives in the database.
"""
import logging
from typing import BinaryIO, Optional
from minio import Minio
from minio.error import S3Error
from core.config import settings

logger = logging.getLogger(__name__)


class MinIOClient:
    """Client for MinIO object storage operations."""

    def __init__(self, bucket: Optional[str] = None):
        """Initialize MinIO client and make sure the bucket exists."""
        self.bucket = bucket or settings.minio_bucket
        try:
            self.client = Minio(
                settings.minio_endpoint,
                access_key=settings.minio_access_key,
                secret_key=settings.minio_secret_key,
                secure=settings.minio_secure
            )

            if not self.client.bucket_exists(self.bucket):
                self.client.make_bucket(self.bucket)
                logger.info(f"Created MinIO bucket: {self.bucket}")
            else:
                logger.info(f"MinIO bucket exists: {self.bucket}")

        except S3Error as e:
            logger.error(f"Failed to initialize MinIO client: {e}")
            raise

    def put_object(self, object_name: str, data: BinaryIO, length: int, content_type: str = "application/octet-stream") -> bool:
        """
        Upload an object to MinIO.

        Args:
            object_name: Name/path of the object in MinIO
            data: File-like object to upload
            length: Size of the data in bytes
            content_type: MIME type of the object

        Returns:
            True if upload successful
        """
        try:
            self.client.put_object(
                self.bucket,
                object_name,
                data,
                length,
                content_type=content_type
            )
            logger.info(f"Uploaded object: {object_name} ({length} bytes)")
            return True
        except S3Error as e:
            logger.error(f"Failed to upload object: {e}")
            raise

    def get_object(self, object_name: str) -> Optional[bytes]:
        """
        Read an object's bytes.

        Returns:
            Object content, or None if the key does not exist
        """
        response = None
        try:
            response = self.client.get_object(self.bucket, object_name)
            return response.read()
        except S3Error as e:
            if e.code == "NoSuchKey":
                logger.warning(f"Object not found: {object_name}")
                return None
            logger.error(f"Failed to read object: {e}")
            raise
        finally:
            if response is not None:
                response.close()
                response.release_conn()

    def remove_object(self, object_name: str) -> bool:
        """Remove an object. Returns False if MinIO refused."""
        try:
            self.client.remove_object(self.bucket, object_name)
            logger.info(f"Removed object: {object_name}")
            return True
        except S3Error as e:
            logger.error(f"Failed to remove object: {e}")
            return False

    def ping(self) -> bool:
        """Cheap connectivity check used by the readiness probe."""
        return self.client.bucket_exists(self.bucket)


# Global MinIO client instance (initialized on first use)
_minio_client: Optional[MinIOClient] = None


def get_content_store() -> MinIOClient:
    """
    Get or create global MinIO client instance.

    Also used as a FastAPI dependency so tests can override it.

    Returns:
        MinIOClient instance
    """
    global _minio_client
    if _minio_client is None:
        _minio_client = MinIOClient()
    return _minio_client
