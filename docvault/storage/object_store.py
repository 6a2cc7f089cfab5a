"""
DocVault Object Store — async interface over S3-compatible storage.

ObjectStore is the contract (upload / delete / exists / list_by_prefix /
presign). S3ObjectStore implements it with boto3 against any S3-compatible
endpoint (Backblaze B2 in production). boto3 is blocking, so each call runs
via asyncio.to_thread.

Transient failures (5xx, throttling, connection errors) are retried with
backoff; anything else, or exhausted retries, raises StorageError.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import boto3
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from docvault.engine.config import StorageConfig
from docvault.engine.errors import StorageError

logger = logging.getLogger("docvault.storage.object_store")

_TRANSIENT_CODES = {
    "InternalError",
    "ServiceUnavailable",
    "SlowDown",
    "RequestTimeout",
    "Throttling",
    "ThrottlingException",
}
_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}


class ObjectStore(abc.ABC):
    """Async object storage interface."""

    @abc.abstractmethod
    async def upload(
        self,
        key: str,
        data: bytes,
        content_type: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        """Store data under key; returns the key written."""

    @abc.abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abc.abstractmethod
    async def exists(self, key: str) -> bool:
        ...

    @abc.abstractmethod
    async def list_by_prefix(self, prefix: str) -> List[str]:
        ...

    @abc.abstractmethod
    async def presign(self, key: str, ttl_seconds: int) -> str:
        """Time-limited GET URL for key."""


def calc_delay(attempt: int, base_delay: float, backoff: str) -> float:
    """Retry delay for a zero-based attempt number."""
    if backoff == "exponential":
        return base_delay * (2 ** attempt)
    elif backoff == "linear":
        return base_delay * (attempt + 1)
    return base_delay


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def _is_transient(exc: Exception) -> bool:
    if isinstance(exc, (EndpointConnectionError, ConnectionClosedError, ReadTimeoutError)):
        return True
    if isinstance(exc, ClientError):
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        return _error_code(exc) in _TRANSIENT_CODES or status >= 500
    return False


class S3ObjectStore(ObjectStore):
    """
    boto3-backed store.

    Usage:
        store = S3ObjectStore.from_config(config.storage)
        await store.upload("CUBS/E1/passport.pdf", data, "application/pdf")
    """

    def __init__(
        self,
        client: Any,
        bucket: str,
        max_retries: int = 3,
        retry_delay: float = 0.5,
        backoff: str = "exponential",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._client = client
        self._bucket = bucket
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._backoff = backoff
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: StorageConfig) -> "S3ObjectStore":
        client = boto3.client(
            "s3",
            endpoint_url=config.endpoint,
            region_name=config.region,
            aws_access_key_id=config.access_key_id or None,
            aws_secret_access_key=config.secret_access_key or None,
        )
        return cls(
            client,
            config.bucket,
            max_retries=config.max_retries,
            retry_delay=config.retry_delay,
            backoff=config.backoff,
        )

    @property
    def bucket(self) -> str:
        return self._bucket

    async def upload(
        self,
        key: str,
        data: bytes,
        content_type: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        params: Dict[str, Any] = {"Bucket": self._bucket, "Key": key, "Body": data}
        if content_type:
            params["ContentType"] = content_type
        if metadata:
            params["Metadata"] = {k: str(v) for k, v in metadata.items()}
        await self._with_retry("upload", key, lambda: self._client.put_object(**params))
        logger.info(f"Uploaded {key} ({len(data)} bytes)")
        return key

    async def delete(self, key: str) -> None:
        await self._with_retry(
            "delete", key, lambda: self._client.delete_object(Bucket=self._bucket, Key=key)
        )
        logger.info(f"Deleted {key}")

    async def exists(self, key: str) -> bool:
        def head() -> bool:
            try:
                self._client.head_object(Bucket=self._bucket, Key=key)
                return True
            except ClientError as e:
                if _error_code(e) in _MISSING_CODES:
                    return False
                raise

        return await self._with_retry("exists", key, head)

    async def list_by_prefix(self, prefix: str) -> List[str]:
        def list_keys() -> List[str]:
            paginator = self._client.get_paginator("list_objects_v2")
            keys: List[str] = []
            for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix):
                keys.extend(obj["Key"] for obj in page.get("Contents", []))
            return keys

        return await self._with_retry("list", prefix, list_keys)

    async def presign(self, key: str, ttl_seconds: int) -> str:
        return await self._with_retry(
            "presign",
            key,
            lambda: self._client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self._bucket, "Key": key},
                ExpiresIn=ttl_seconds,
            ),
        )

    async def _with_retry(self, operation: str, key: str, fn: Callable[[], Any]) -> Any:
        attempt = 0
        while True:
            try:
                return await asyncio.to_thread(fn)
            except (ClientError, BotoCoreError) as e:
                if _is_transient(e) and attempt < self._max_retries:
                    delay = calc_delay(attempt, self._retry_delay, self._backoff)
                    logger.warning(
                        f"Storage {operation} for {key} failed: {e}, retrying in {delay}s "
                        f"(attempt {attempt + 1}/{self._max_retries})"
                    )
                    attempt += 1
                    await self._sleep(delay)
                    continue
                raise StorageError(
                    f"Storage {operation} failed for {key}: {e}",
                    operation=operation,
                    storage_key=key,
                    attempts=attempt + 1,
                ) from e
