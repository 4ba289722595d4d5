import os
import time
import mimetypes
import structlog
from pathlib import Path
from typing import Any, Dict, Optional

from google.cloud import storage
from google.cloud.exceptions import GoogleCloudError

from artcert import config
from artcert.core.utils import calculate_content_hash, create_artwork_storage_path, format_file_size

logger = structlog.get_logger()


class StorageError(Exception):
    """Custom exception for storage operations."""
    pass


class StorageClient:
    """Stores raw artwork bytes in GCS or a local directory and returns a locator URI."""

    def __init__(self, use_gcs: bool = None, bucket_name: str = None, local_dir: str = None):
        self.use_gcs = config.USE_GCS if use_gcs is None else use_gcs
        self.bucket_name = bucket_name or config.GCS_BUCKET_NAME
        self.local_dir = Path(local_dir or config.LOCAL_STORAGE_DIR)
        self.gcs_client = None

        if self.use_gcs:
            try:
                self._initialize_gcs()
            except Exception as e:
                logger.error("Failed to initialize GCS client", error=str(e))
                logger.warning("GCS initialization failed, continuing with local storage")

        logger.info("Storage client initialized",
                    gcs_enabled=self.gcs_client is not None,
                    local_dir=str(self.local_dir))

    def _initialize_gcs(self):
        """Initialize Google Cloud Storage client."""
        credentials_path = os.getenv("GOOGLE_APPLICATION_CREDENTIALS")
        if credentials_path and not os.path.exists(credentials_path):
            logger.warning("GCS credentials file not found", path=credentials_path)

        self.gcs_client = storage.Client()

        bucket = self.gcs_client.bucket(self.bucket_name)
        if not bucket.exists():
            logger.warning("GCS bucket does not exist", bucket_name=self.bucket_name)
        else:
            logger.info("GCS client initialized successfully", bucket_name=self.bucket_name)

    def upload(self, data: bytes, filename: str) -> str:
        """
        Store artwork bytes under a content-addressed path.

        Args:
            data: Raw file content
            filename: Original filename, kept in the path for readability

        Returns:
            Storage URI (gs:// or local://)
        """
        storage_path = create_artwork_storage_path(calculate_content_hash(data), filename)
        logger.info("Starting artwork upload",
                    filename=filename,
                    file_size_human=format_file_size(len(data)),
                    storage_path=storage_path)

        if self.gcs_client is not None:
            try:
                return self._upload_to_gcs(storage_path, data, filename)
            except GoogleCloudError as e:
                logger.error("GCS upload failed", filename=filename, error=str(e),
                             error_code=getattr(e, 'code', None))
                raise StorageError(f"GCS upload failed: {e}") from e

        return self._upload_to_local(storage_path, data)

    def _upload_to_gcs(self, storage_path: str, data: bytes, filename: str) -> str:
        bucket = self.gcs_client.bucket(self.bucket_name)
        blob = bucket.blob(storage_path)
        blob.metadata = {
            "original_filename": filename,
            "upload_timestamp": str(int(time.time())),
        }

        start_time = time.time()
        blob.upload_from_string(data, content_type=self._get_content_type(filename))
        upload_time = time.time() - start_time

        storage_uri = f"gs://{self.bucket_name}/{storage_path}"
        logger.info("GCS upload completed successfully",
                    storage_uri=storage_uri,
                    upload_time_seconds=round(upload_time, 2))
        return storage_uri

    def _upload_to_local(self, storage_path: str, data: bytes) -> str:
        local_path = self.local_dir / storage_path
        try:
            local_path.parent.mkdir(parents=True, exist_ok=True)
            # Same content always lands on the same path
            if not local_path.exists():
                local_path.write_bytes(data)
        except OSError as e:
            logger.error("Local upload failed", path=str(local_path), error=str(e))
            raise StorageError(f"Local upload failed: {e}") from e

        storage_uri = f"local://{local_path}"
        logger.info("Local upload completed successfully", storage_uri=storage_uri)
        return storage_uri

    def _get_content_type(self, filename: str) -> Optional[str]:
        content_type, _ = mimetypes.guess_type(filename)
        return content_type

    def health_check(self) -> Dict[str, Any]:
        """Check the health of storage backends."""
        health = {
            "gcs": {"enabled": self.use_gcs, "available": False, "error": None},
            "local": {"available": False, "error": None},
        }

        if self.gcs_client is not None:
            try:
                self.gcs_client.bucket(self.bucket_name).exists()
                health["gcs"]["available"] = True
            except Exception as e:
                health["gcs"]["error"] = str(e)

        try:
            self.local_dir.mkdir(parents=True, exist_ok=True)
            health["local"]["available"] = os.access(self.local_dir, os.W_OK)
        except OSError as e:
            health["local"]["error"] = str(e)

        return health
