"""Durable storage for final artifacts: local filesystem or S3-compatible bucket."""

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from promopipe.errors import StorageError

logger = logging.getLogger(__name__)


def _clean_key(path: str) -> str:
    key = path.replace("\\", "/").lstrip("/")
    if not key or any(part == ".." for part in key.split("/")):
        raise StorageError(f"Invalid object path: {path!r}")
    return key


class ObjectStore(ABC):
    @abstractmethod
    async def put(self, path: str, data: bytes, content_type: str) -> str:
        """Store ``data`` under ``path`` and return its public URL."""
        ...


class LocalObjectStore(ObjectStore):
    """Writes objects under a root directory served at ``public_base_url``."""

    def __init__(self, root: str | Path, public_base_url: str):
        self.root = Path(root).resolve()
        self.public_base_url = public_base_url.rstrip("/")

    def _write(self, key: str, data: bytes) -> None:
        target = (self.root / key).resolve()
        # Path traversal protection
        if not target.is_relative_to(self.root):
            raise StorageError("Invalid object path")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    async def put(self, path: str, data: bytes, content_type: str) -> str:
        key = _clean_key(path)
        try:
            await asyncio.to_thread(self._write, key, data)
        except OSError as e:
            raise StorageError(f"Failed to write {key}: {e}") from e
        logger.info(f"Stored {key} ({len(data)} bytes, {content_type})")
        return f"{self.public_base_url}/{key}"


class S3ObjectStore(ObjectStore):
    """S3 or MinIO bucket through boto3, called from a worker thread."""

    def __init__(
        self,
        bucket: str,
        *,
        region: str = "us-east-1",
        endpoint_url: Optional[str] = None,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        public_base_url: Optional[str] = None,
        client=None,
    ):
        self.bucket = bucket
        self.endpoint_url = endpoint_url
        self.region = region
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None
        if client is None:
            session = boto3.session.Session(
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
            )
            client = session.client(
                "s3",
                endpoint_url=endpoint_url,
                config=BotoConfig(s3={"addressing_style": "path"}, signature_version="s3v4"),
            )
        self._client = client

    def object_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket}/{key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    async def put(self, path: str, data: bytes, content_type: str) -> str:
        key = _clean_key(path)
        try:
            await asyncio.to_thread(
                self._client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Upload of {key} to s3://{self.bucket} failed: {e}") from e
        logger.info(f"Uploaded s3://{self.bucket}/{key} ({len(data)} bytes)")
        return self.object_url(key)
