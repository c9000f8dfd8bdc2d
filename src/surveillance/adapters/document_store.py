"""Rendered report documents, stored in MinIO."""

import abc
import json
import logging
from io import BytesIO
from typing import Any, Dict, Optional

from minio import Minio
from minio.error import S3Error

import config

logger = logging.getLogger(__name__)


class DocumentStoreError(Exception):
    pass


class AbstractDocumentStore(abc.ABC):
    @abc.abstractmethod
    def put_json(self, object_key: str, document: Dict[str, Any]) -> str:
        """Store document under object_key and return the key."""
        raise NotImplementedError

    @abc.abstractmethod
    def get_json(self, object_key: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError


class MinIODocumentStore(AbstractDocumentStore):
    """MinIO implementation of the report document store."""

    def __init__(self, client: Optional[Minio] = None, bucket_name: Optional[str] = None):
        minio_config = config.get_minio_config()
        self.client = client or Minio(
            minio_config["endpoint"],
            access_key=minio_config["access_key"],
            secret_key=minio_config["secret_key"],
            secure=minio_config["secure"],
        )
        self.bucket_name = bucket_name or minio_config["bucket_name"]
        self._bucket_checked = False

    def _ensure_bucket_exists(self):
        """Ensure the bucket exists, create if it doesn't."""
        if self._bucket_checked:
            return
        if not self.client.bucket_exists(self.bucket_name):
            self.client.make_bucket(self.bucket_name)
            logger.info(f"Created MinIO bucket: {self.bucket_name}")
        self._bucket_checked = True

    def put_json(self, object_key: str, document: Dict[str, Any]) -> str:
        try:
            self._ensure_bucket_exists()
            payload = json.dumps(document, indent=2, default=str).encode("utf-8")
            self.client.put_object(
                bucket_name=self.bucket_name,
                object_name=object_key,
                data=BytesIO(payload),
                length=len(payload),
                content_type="application/json",
            )
        except S3Error as e:
            logger.error(f"Failed to store document {object_key}: {e}")
            raise DocumentStoreError(str(e)) from e
        logger.info(f"Stored report document at {object_key}")
        return object_key

    def get_json(self, object_key: str) -> Optional[Dict[str, Any]]:
        response = None
        try:
            response = self.client.get_object(self.bucket_name, object_key)
            return json.loads(response.read().decode("utf-8"))
        except S3Error as e:
            logger.error(f"Failed to retrieve document {object_key}: {e}")
            return None
        finally:
            if response is not None:
                response.close()
                response.release_conn()
