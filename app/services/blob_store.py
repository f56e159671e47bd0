"""Blob storage over an S3-compatible service.

The engine only needs five operations from blob storage: ``put``, ``get``,
``stream``, ``sign`` and ``delete``. :class:`BlobStore` describes that contract and
:class:`S3BlobStore` implements it with boto3. boto3 is synchronous, so each
call runs in the default thread pool and is bounded by
``settings.blob_timeout_seconds``. Transient transport errors are retried with
exponential backoff; anything else surfaces immediately as
:class:`BlobStoreError`.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any, Protocol

import boto3
from botocore.client import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.core.config import Settings, settings
from app.exceptions.storage import BlobStoreError

logger = logging.getLogger(__name__)

TRANSIENT_ERROR_CODES = {
    "InternalError",
    "RequestTimeout",
    "ServiceUnavailable",
    "SlowDown",
    "500",
    "503",
}


class TransientBlobError(Exception):
    """A blob operation failed in a way that is worth retrying."""


class BlobStore(Protocol):
    bucket_name: str

    async def put(self, key: str, data: bytes, content_type: str) -> str: ...

    async def get(self, key: str) -> bytes: ...

    def stream(self, key: str, chunk_size: int) -> AsyncIterator[bytes]: ...

    async def sign(self, key: str, ttl_seconds: int) -> str: ...

    async def delete(self, key: str) -> None: ...


def is_transient(error: Exception) -> bool:
    if isinstance(
        error, (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError, ConnectionClosedError)
    ):
        return True
    if isinstance(error, ClientError):
        code = str(error.response.get("Error", {}).get("Code", ""))
        return code in TRANSIENT_ERROR_CODES
    return False


class S3BlobStore:
    """S3 / MinIO blob store."""

    def __init__(self, config: Settings | None = None, client: Any = None):
        self.config = config or settings
        self.bucket_name = self.config.s3_bucket_name
        self.timeout = self.config.blob_timeout_seconds
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client(
                "s3",
                endpoint_url=self.config.s3_endpoint_url,
                aws_access_key_id=self.config.s3_access_key_id,
                aws_secret_access_key=self.config.s3_secret_access_key,
                region_name=self.config.s3_region,
                use_ssl=self.config.s3_use_ssl,
                config=Config(signature_version="s3v4"),
            )
        return self._client

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        await self._run(
            "put",
            key,
            self.client.put_object,
            Bucket=self.bucket_name,
            Key=key,
            Body=data,
            ContentType=content_type,
        )
        logger.debug(f"Stored blob {key} ({len(data)} bytes)")
        return key

    async def get(self, key: str) -> bytes:
        return await self._run("get", key, self._read_object, key)

    async def stream(self, key: str, chunk_size: int = 64 * 1024) -> AsyncIterator[bytes]:
        """Yield the object in chunks without holding all of it in memory."""
        response = await self._run("get", key, self.client.get_object, Bucket=self.bucket_name, Key=key)
        body = response["Body"]
        chunks = body.iter_chunks(chunk_size)
        loop = asyncio.get_event_loop()
        try:
            while True:
                try:
                    chunk = await asyncio.wait_for(
                        loop.run_in_executor(None, next, chunks, None), timeout=self.timeout
                    )
                except TimeoutError as e:
                    raise BlobStoreError(
                        "Blob read timed out", details={"key": key, "timeout": self.timeout}
                    ) from e
                except (BotoCoreError, ClientError) as e:
                    raise BlobStoreError(f"Blob read failed: {e}", details={"key": key}) from e
                if chunk is None:
                    break
                yield chunk
        finally:
            body.close()

    async def sign(self, key: str, ttl_seconds: int) -> str:
        # Presigning is computed locally, so there is nothing to retry.
        try:
            return self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket_name, "Key": key},
                ExpiresIn=ttl_seconds,
            )
        except (BotoCoreError, ClientError) as e:
            raise BlobStoreError(f"Failed to sign blob URL: {e}", details={"key": key}) from e

    async def delete(self, key: str) -> None:
        await self._run("delete", key, self.client.delete_object, Bucket=self.bucket_name, Key=key)

    def _read_object(self, key: str) -> bytes:
        response = self.client.get_object(Bucket=self.bucket_name, Key=key)
        return response["Body"].read()

    async def _run(self, operation: str, key: str, fn, *args, **kwargs):
        try:
            return await asyncio.wait_for(
                self._call_with_retry(fn, *args, **kwargs),
                timeout=self.timeout,
            )
        except TimeoutError as e:
            logger.error(f"Blob {operation} timed out after {self.timeout}s for key {key}")
            raise BlobStoreError(
                f"Blob {operation} timed out", details={"key": key, "timeout": self.timeout}
            ) from e
        except TransientBlobError as e:
            logger.error(f"Blob {operation} failed after retries for key {key}: {e}")
            raise BlobStoreError(f"Blob {operation} failed: {e}", details={"key": key}) from e

    @retry(
        retry=retry_if_exception_type(TransientBlobError),
        stop=stop_after_attempt(settings.blob_max_retry_attempts),
        wait=wait_exponential(
            multiplier=1,
            min=settings.blob_retry_min_wait,
            max=settings.blob_retry_max_wait,
        ),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _call_with_retry(self, fn, *args, **kwargs):
        loop = asyncio.get_event_loop()
        try:
            return await loop.run_in_executor(None, lambda: fn(*args, **kwargs))
        except (BotoCoreError, ClientError) as e:
            if is_transient(e):
                raise TransientBlobError(str(e)) from e
            raise BlobStoreError(f"Blob store error: {e}") from e


_blob_store: BlobStore | None = None


def get_blob_store() -> BlobStore:
    """Return the process-wide blob store."""
    global _blob_store
    if _blob_store is None:
        _blob_store = S3BlobStore()
    return _blob_store
