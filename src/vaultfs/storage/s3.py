"""S3Backend — S3-compatible object storage (AWS, MinIO, R2, Supabase)."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from vaultfs.exceptions import ObjectNotFoundError, StorageBackendError
from vaultfs.utils import generate_storage_name

from .types import DEFAULT_CHUNK_SIZE, CountingReader, StoredObject

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from .types import ByteRange, Content, ObjectMetadata

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = frozenset({"404", "NoSuchKey", "NotFound"})


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


class S3Backend:
    """S3 storage backend built on a ``boto3`` client.

    Storage keys are full object keys, ``{prefix}{uuid}{ext}``. boto3 is
    synchronous, so every call runs in a worker thread. Path-style
    addressing keeps MinIO and other custom endpoints working.
    """

    def __init__(
        self,
        bucket: str,
        region: str | None = None,
        *,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        prefix: str = "uploads/",
        endpoint_url: str | None = None,
        client: Any = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self.bucket = bucket
        self.region = region
        self.prefix = prefix
        self.endpoint_url = endpoint_url
        self.chunk_size = chunk_size

        if client is None:
            client = boto3.client(
                "s3",
                region_name=region,
                endpoint_url=endpoint_url,
                aws_access_key_id=access_key_id,
                aws_secret_access_key=secret_access_key,
                config=BotoConfig(s3={"addressing_style": "path"}),
            )
        self._client = client

    @property
    def client(self) -> Any:
        """The underlying boto3 S3 client."""
        return self._client

    async def open(self) -> None:
        pass

    async def close(self) -> None:
        pass

    def _wrap(self, exc: Exception, action: str, storage_key: str) -> StorageBackendError:
        return StorageBackendError(
            f"S3 {action} failed for {self.bucket}/{storage_key}: {exc}",
            storage_key=storage_key,
        )

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    async def save(self, content: Content, metadata: ObjectMetadata) -> StoredObject:
        storage_key = generate_storage_name(metadata.original_name, self.prefix)

        try:
            if isinstance(content, bytes | bytearray | memoryview):
                body = bytes(content)
                await asyncio.to_thread(
                    self._client.put_object,
                    Bucket=self.bucket,
                    Key=storage_key,
                    Body=body,
                    ContentType=metadata.mime_type,
                )
                size = len(body)
            else:
                reader = CountingReader(content)
                await asyncio.to_thread(
                    self._client.upload_fileobj,
                    reader,
                    self.bucket,
                    storage_key,
                    ExtraArgs={"ContentType": metadata.mime_type},
                )
                size = reader.bytes_read
        except (ClientError, BotoCoreError) as e:
            raise self._wrap(e, "upload", storage_key) from e

        logger.debug("Uploaded %s (%d bytes) to s3://%s", storage_key, size, self.bucket)
        return StoredObject(storage_key=storage_key, size=size)

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def _get_object(self, storage_key: str, byte_range: ByteRange | None) -> Any:
        params: dict[str, Any] = {"Bucket": self.bucket, "Key": storage_key}
        if byte_range is not None:
            params["Range"] = byte_range.as_header()
        try:
            return await asyncio.to_thread(self._client.get_object, **params)
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                raise ObjectNotFoundError(storage_key) from None
            if _error_code(e) == "InvalidRange":
                return None
            raise self._wrap(e, "download", storage_key) from e
        except BotoCoreError as e:
            raise self._wrap(e, "download", storage_key) from e

    async def read_all(self, storage_key: str) -> bytes:
        response = await self._get_object(storage_key, None)
        body = response["Body"]
        try:
            return await asyncio.to_thread(body.read)
        except (BotoCoreError, OSError) as e:
            raise self._wrap(e, "download", storage_key) from e
        finally:
            body.close()

    async def read_stream(
        self,
        storage_key: str,
        byte_range: ByteRange | None = None,
    ) -> AsyncIterator[bytes]:
        response = await self._get_object(storage_key, byte_range)
        if response is None:
            return _empty()
        return self._iter_body(response["Body"], storage_key)

    async def _iter_body(self, body: Any, storage_key: str) -> AsyncIterator[bytes]:
        try:
            while True:
                chunk = await asyncio.to_thread(body.read, self.chunk_size)
                if not chunk:
                    break
                yield chunk
        except (BotoCoreError, OSError) as e:
            raise self._wrap(e, "download", storage_key) from e
        finally:
            body.close()

    async def exists(self, storage_key: str) -> bool:
        try:
            await asyncio.to_thread(
                self._client.head_object, Bucket=self.bucket, Key=storage_key
            )
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                return False
            raise self._wrap(e, "head", storage_key) from e
        except BotoCoreError as e:
            raise self._wrap(e, "head", storage_key) from e
        return True

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def delete(self, storage_key: str) -> None:
        """Delete the object. S3 deletes are idempotent; missing keys are ignored."""
        try:
            await asyncio.to_thread(
                self._client.delete_object, Bucket=self.bucket, Key=storage_key
            )
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                return
            raise self._wrap(e, "delete", storage_key) from e
        except BotoCoreError as e:
            raise self._wrap(e, "delete", storage_key) from e
        logger.debug("Deleted s3://%s/%s", self.bucket, storage_key)

    def public_url(self, storage_key: str) -> str | None:
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket}/{storage_key}"
        if not self.region:
            return f"https://{self.bucket}.s3.amazonaws.com/{storage_key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{storage_key}"


async def _empty() -> AsyncIterator[bytes]:
    return
    yield
