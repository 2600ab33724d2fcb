# storage.py — S3-compatible object storage for evidence documents
# Bytes never touch the API: clients upload/download through pre-signed URLs.

import os
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import boto3
from botocore.client import BaseClient
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger("cumpliros.storage")

S3_ENDPOINT_URL = os.getenv("S3_ENDPOINT_URL", "")
S3_REGION = os.getenv("S3_REGION", "us-east-1")
S3_BUCKET = os.getenv("S3_BUCKET", "cumpliros-documents")
S3_ACCESS_KEY_ID = os.getenv("S3_ACCESS_KEY_ID", "")
S3_SECRET_ACCESS_KEY = os.getenv("S3_SECRET_ACCESS_KEY", "")
S3_ADDRESSING_STYLE = os.getenv("S3_ADDRESSING_STYLE", "path")
SIGNED_URL_EXPIRE_SECONDS = int(os.getenv("SIGNED_URL_EXPIRE_SECONDS", "3600"))


@dataclass
class ObjectMetadata:
    content_type: str
    size_bytes: int


class ObjectStore:
    """Interface for the document store. Implementations must be safe to await."""

    async def presigned_upload_url(self, key: str, content_type: str, expires_in: int = SIGNED_URL_EXPIRE_SECONDS) -> str:
        raise NotImplementedError

    async def presigned_download_url(self, key: str, expires_in: int = SIGNED_URL_EXPIRE_SECONDS) -> str:
        raise NotImplementedError

    async def head(self, key: str) -> Optional[ObjectMetadata]:
        """Stored metadata, or None when the object does not exist."""
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError


def get_s3_client() -> BaseClient:
    """Return a configured S3 client (supports S3-compatible endpoints such as MinIO/R2)."""
    style = S3_ADDRESSING_STYLE.strip().lower()
    config = Config(
        signature_version="s3v4",
        s3={"addressing_style": style} if style in {"path", "virtual"} else {},
    )
    return boto3.client(
        "s3",
        region_name=S3_REGION or None,
        aws_access_key_id=S3_ACCESS_KEY_ID or None,
        aws_secret_access_key=S3_SECRET_ACCESS_KEY or None,
        endpoint_url=S3_ENDPOINT_URL.rstrip("/") or None,
        config=config,
    )


class S3ObjectStore(ObjectStore):
    def __init__(self, client: Optional[BaseClient] = None, bucket: str = S3_BUCKET):
        self._client = client
        self.bucket = bucket

    @property
    def client(self) -> BaseClient:
        if self._client is None:
            self._client = get_s3_client()
        return self._client

    async def presigned_upload_url(self, key: str, content_type: str, expires_in: int = SIGNED_URL_EXPIRE_SECONDS) -> str:
        return await asyncio.to_thread(
            self.client.generate_presigned_url,
            "put_object",
            Params={"Bucket": self.bucket, "Key": key, "ContentType": content_type},
            ExpiresIn=expires_in,
        )

    async def presigned_download_url(self, key: str, expires_in: int = SIGNED_URL_EXPIRE_SECONDS) -> str:
        return await asyncio.to_thread(
            self.client.generate_presigned_url,
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_in,
        )

    async def head(self, key: str) -> Optional[ObjectMetadata]:
        try:
            head = await asyncio.to_thread(self.client.head_object, Bucket=self.bucket, Key=key)
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in {"404", "NoSuchKey", "NotFound"}:
                return None
            raise
        return ObjectMetadata(
            content_type=head.get("ContentType") or "",
            size_bytes=int(head.get("ContentLength") or 0),
        )

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self.client.delete_object, Bucket=self.bucket, Key=key)


async def delete_quietly(store: ObjectStore, key: str) -> bool:
    """Best-effort delete: failures are logged, never raised."""
    try:
        await store.delete(key)
        return True
    except (ClientError, BotoCoreError, OSError) as exc:
        logger.warning(f"Could not delete object {key}: {exc}")
        return False


_default_store = S3ObjectStore()


def get_object_store() -> ObjectStore:
    """Dependency for the object store (FastAPI Depends)"""
    return _default_store
