"""Cloudflare R2 document storage using the S3-compatible API"""
import logging
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from doctrack.core.config import settings
from doctrack.core.errors import StorageError

logger = logging.getLogger(__name__)


class R2Service:
    """Presigned access to, and deletion of, stored document objects"""
    
    def __init__(self):
        """Initialize R2 client from settings"""
        if not settings.R2_ACCESS_KEY_ID or not settings.R2_SECRET_ACCESS_KEY:
            raise StorageError("R2 configuration is missing. Set R2_ACCESS_KEY_ID and R2_SECRET_ACCESS_KEY.")
        if not settings.R2_BUCKET_NAME:
            raise StorageError("R2_BUCKET_NAME is not set.")
        
        endpoint_url = settings.R2_ENDPOINT_URL
        if not endpoint_url and settings.R2_ACCOUNT_ID:
            endpoint_url = f"https://{settings.R2_ACCOUNT_ID}.r2.cloudflarestorage.com"
        if not endpoint_url:
            raise StorageError("R2_ENDPOINT_URL (or R2_ACCOUNT_ID) is not set.")
        
        self.bucket = settings.R2_BUCKET_NAME
        self.s3_client = boto3.client(
            's3',
            endpoint_url=endpoint_url,
            aws_access_key_id=settings.R2_ACCESS_KEY_ID,
            aws_secret_access_key=settings.R2_SECRET_ACCESS_KEY,
            config=Config(signature_version='s3v4')
        )
        logger.info(f"R2Service initialized for bucket: {self.bucket}")
    
    def generate_download_url(self, object_key: str, expires_in: Optional[int] = None) -> str:
        """Generate a presigned GET URL for a stored document
        
        Args:
            object_key: Object key (path in bucket)
            expires_in: URL lifetime in seconds (default: SIGNED_URL_EXPIRY)
            
        Returns:
            Presigned GET URL
            
        Raises:
            StorageError: If the key is empty or signing fails
        """
        if not object_key:
            raise StorageError("Document has no storage path")
        if expires_in is None:
            expires_in = settings.SIGNED_URL_EXPIRY
        
        try:
            url = self.s3_client.generate_presigned_url(
                'get_object',
                Params={'Bucket': self.bucket, 'Key': object_key},
                ExpiresIn=expires_in
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to generate download URL for {object_key}: {e}", exc_info=True)
            raise StorageError("Failed to generate download URL") from e
        
        logger.debug(f"Generated download URL for {object_key} (expires in {expires_in}s)")
        return url
    
    def delete_object(self, object_key: str) -> bool:
        """Delete an object
        
        Returns:
            True if deleted or already absent, False on error
        """
        if not object_key:
            logger.error("object_key cannot be empty")
            return False
        
        try:
            self.s3_client.delete_object(Bucket=self.bucket, Key=object_key)
            logger.info(f"Deleted {object_key} from R2")
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == 'NoSuchKey':
                logger.debug(f"Object already deleted or doesn't exist: {object_key}")
                return True
            logger.error(f"Failed to delete {object_key} from R2: {e}", exc_info=True)
            return False
        except BotoCoreError as e:
            logger.error(f"Unexpected error deleting {object_key} from R2: {e}", exc_info=True)
            return False


# Global R2 service instance (lazy initialization)
_r2_service: Optional[R2Service] = None


def get_r2_service() -> R2Service:
    """Get or create R2 service instance (lazy initialization)
    
    Raises:
        StorageError: If R2 configuration is missing
    """
    global _r2_service
    if _r2_service is None:
        _r2_service = R2Service()
    return _r2_service
