"""
Google Cloud Storage access for transcript uploads
"""

import os
import logging
from typing import List, Optional

from google.cloud import storage

from .importers.json_records import SUPPORTED_SUFFIXES

logger = logging.getLogger(__name__)


class GCSClient:
    """Reads transcript objects dropped into the grading bucket"""

    def __init__(self, bucket_name: Optional[str] = None, client: Optional[storage.Client] = None):
        """
        Initialize GCS client

        Args:
            bucket_name: Cloud Storage bucket name (defaults to env var)
            client: Pre-built storage client
        """
        self.client = client or storage.Client()
        self.bucket_name = bucket_name or os.getenv('GCS_BUCKET_NAME', 'session-grader-cache')
        self.bucket = self.client.bucket(self.bucket_name)

    @staticmethod
    def is_transcript_file(blob_name: str, prefix: str = "transcripts/") -> bool:
        return blob_name.startswith(prefix) and blob_name.endswith(SUPPORTED_SUFFIXES)

    def list_transcripts(self, prefix: str = "transcripts/", max_files: int = 100) -> List[storage.Blob]:
        blobs = self.client.list_blobs(self.bucket_name, prefix=prefix, max_results=max_files)
        return [blob for blob in blobs if self.is_transcript_file(blob.name, prefix)]

    def download_transcript(self, blob_name: str) -> str:
        """
        Download a transcript file from Cloud Storage

        Raises:
            FileNotFoundError: Object does not exist
        """
        blob = self.bucket.blob(blob_name)
        if not blob.exists():
            raise FileNotFoundError(f"File not found: gs://{self.bucket_name}/{blob_name}")
        logger.info(f"Downloading gs://{self.bucket_name}/{blob_name}")
        return blob.download_as_text(encoding='utf-8')
