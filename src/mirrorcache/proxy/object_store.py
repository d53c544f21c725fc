"""Durable object cache backends: local disk or S3-compatible storage."""

from __future__ import annotations

import asyncio
import hashlib
import os
import time
import uuid
from pathlib import Path
from typing import AsyncIterator, Callable, Optional, Union
from urllib.parse import quote, unquote

import boto3
from botocore.exceptions import ClientError
from pydantic import BaseModel, ValidationError
import structlog

from ..common.schemas import DEFAULT_CONTENT_TYPE, CustomMetadata, HttpMetadata, StoredObject
from ..common.settings import ProxySettings
from .errors import CacheLookupError, PersistError


LOGGER = structlog.get_logger("mirrorcache.object_store")

Body = Union[bytes, AsyncIterator[bytes]]

MISSING_CODES = {"404", "NoSuchKey", "NotFound"}
MAX_S3_METADATA_VALUE = 1024


async def collect_body(body: Body) -> bytes:
    if isinstance(body, (bytes, bytearray)):
        return bytes(body)
    data = bytearray()
    async for chunk in body:
        data.extend(chunk)
    return bytes(data)


class ObjectCache:
    async def get(self, key: str) -> Optional[StoredObject]:  # pragma: no cover - interface
        """Return the stored object, None when absent; raise CacheLookupError on store failure."""
        raise NotImplementedError

    async def put(
        self,
        key: str,
        body: Body,
        http_metadata: HttpMetadata,
        custom_metadata: Optional[CustomMetadata] = None,
    ) -> int:  # pragma: no cover - interface
        """Store a whole object and return its size; raise PersistError on failure."""
        raise NotImplementedError

    def status(self) -> dict[str, object]:  # pragma: no cover - interface
        raise NotImplementedError


class CircuitBreaker:
    def __init__(self, failure_threshold: int, reset_timeout: float):
        self._failure_threshold = max(1, failure_threshold)
        self._reset_timeout = max(0.0, reset_timeout)
        self._failure_count = 0
        self._opened_at: float | None = None

    def _maybe_reset(self) -> None:
        if self._opened_at is None:
            return
        if time.monotonic() - self._opened_at >= self._reset_timeout:
            self._opened_at = None
            self._failure_count = 0

    def allow_request(self) -> bool:
        self._maybe_reset()
        return self._opened_at is None

    def record_success(self) -> None:
        self._failure_count = 0
        self._opened_at = None

    def record_failure(self) -> None:
        self._failure_count += 1
        if self._failure_count >= self._failure_threshold:
            self._opened_at = time.monotonic()

    @property
    def is_open(self) -> bool:
        self._maybe_reset()
        return self._opened_at is not None


class LocalObjectCache(ObjectCache):
    """Objects on local disk, one file each: a JSON metadata line, then the body.

    Files are named by the SHA-256 of the key, so arbitrary URL characters never
    reach the filesystem. Writes go to a temp file that is renamed into place.
    """

    def __init__(self, storage_path: Path):
        self._root = Path(storage_path).expanduser().resolve()

    def _path(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self._root / "objects" / digest[:2] / digest

    def _read(self, key: str) -> Optional[StoredObject]:
        path = self._path(key)
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return None
        header, _, body = raw.partition(b"\n")
        record = _LocalRecord.model_validate_json(header)
        if record.key != key:
            raise CacheLookupError(f"object file for {key!r} holds {record.key!r}")
        return StoredObject(
            key=key,
            body=body,
            size=len(body),
            http_metadata=record.http_metadata,
            custom_metadata=record.custom_metadata,
        )

    async def get(self, key: str) -> Optional[StoredObject]:
        try:
            return await asyncio.to_thread(self._read, key)
        except (OSError, ValidationError, ValueError) as exc:
            raise CacheLookupError(str(exc)) from exc

    async def put(
        self,
        key: str,
        body: Body,
        http_metadata: HttpMetadata,
        custom_metadata: Optional[CustomMetadata] = None,
    ) -> int:
        path = self._path(key)
        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        header = _LocalRecord(key=key, http_metadata=http_metadata, custom_metadata=custom_metadata)
        size = 0
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tmp_path.open("wb") as handle:
                handle.write(header.model_dump_json().encode("utf-8") + b"\n")
                if isinstance(body, (bytes, bytearray)):
                    handle.write(body)
                    size = len(body)
                else:
                    async for chunk in body:
                        handle.write(chunk)
                        size += len(chunk)
            os.replace(tmp_path, path)
        except OSError as exc:
            raise PersistError(str(exc)) from exc
        finally:
            if tmp_path.exists():
                tmp_path.unlink()
        return size

    def status(self) -> dict[str, object]:
        self._root.mkdir(parents=True, exist_ok=True)
        return {
            "backend": "local",
            "storage_path": str(self._root),
            "writable": self._root.exists() and os.access(self._root, os.W_OK),
        }


class _LocalRecord(BaseModel):
    key: str
    http_metadata: HttpMetadata
    custom_metadata: Optional[CustomMetadata] = None


class _ObjectMissing(Exception):
    pass


def _error_code(exc: ClientError) -> str:
    response = getattr(exc, "response", None) or {}
    return str(response.get("Error", {}).get("Code", ""))


def _encode_meta(value: str) -> str:
    # S3 user metadata must be ASCII and is capped at 2KB in total
    return quote(value, safe="/:?=&%-._~")[:MAX_S3_METADATA_VALUE]


class S3ObjectCache(ObjectCache):
    def __init__(self, settings: ProxySettings, client=None):
        self._settings = settings
        if client is None:
            session = boto3.session.Session()
            client_args: dict[str, Optional[str]] = {
                "endpoint_url": settings.s3_endpoint_url,
                "region_name": settings.s3_region,
            }
            client = session.client("s3", **{k: v for k, v in client_args.items() if v})
        self._client = client
        self._bucket = settings.s3_bucket
        self._max_retries = max(0, settings.s3_max_retries)
        self._retry_base = max(0.0, settings.s3_retry_base_seconds)
        self._retry_max = max(self._retry_base, settings.s3_retry_max_seconds)
        self._breaker = CircuitBreaker(
            failure_threshold=max(1, settings.s3_circuit_breaker_failures),
            reset_timeout=max(0.0, settings.s3_circuit_breaker_reset_seconds),
        )

    async def get(self, key: str) -> Optional[StoredObject]:
        try:
            response = await self._call_with_retry(self._client.get_object, Bucket=self._bucket, Key=key)
        except _ObjectMissing:
            return None
        try:
            body = await asyncio.to_thread(response["Body"].read)
        except Exception as exc:  # noqa: BLE001 - any SDK/transport failure is a lookup error
            raise CacheLookupError(f"failed to read body for {key!r}") from exc
        http_metadata = HttpMetadata(
            content_type=response.get("ContentType") or DEFAULT_CONTENT_TYPE,
            cache_control=response.get("CacheControl"),
            content_disposition=response.get("ContentDisposition"),
            content_encoding=response.get("ContentEncoding"),
            content_language=response.get("ContentLanguage"),
        )
        size = response.get("ContentLength")
        return StoredObject(
            key=key,
            body=body,
            size=int(size) if size is not None else len(body),
            http_metadata=http_metadata,
            custom_metadata=self._custom_metadata(response.get("Metadata") or {}),
        )

    async def put(
        self,
        key: str,
        body: Body,
        http_metadata: HttpMetadata,
        custom_metadata: Optional[CustomMetadata] = None,
    ) -> int:
        # put_object needs the full length up front
        data = await collect_body(body)
        kwargs: dict[str, object] = {
            "Bucket": self._bucket,
            "Key": key,
            "Body": data,
            "ContentType": http_metadata.content_type,
        }
        optional = {
            "CacheControl": http_metadata.cache_control,
            "ContentDisposition": http_metadata.content_disposition,
            "ContentEncoding": http_metadata.content_encoding,
            "ContentLanguage": http_metadata.content_language,
        }
        kwargs.update({k: v for k, v in optional.items() if v})
        if custom_metadata is not None:
            kwargs["Metadata"] = {
                "original-url": _encode_meta(custom_metadata.original_url),
                "url-hash": custom_metadata.url_hash,
                "request-path": _encode_meta(custom_metadata.request_path),
            }
        try:
            await self._call_with_retry(self._client.put_object, **kwargs)
        except CacheLookupError as exc:
            raise PersistError(str(exc)) from exc
        return len(data)

    def status(self) -> dict[str, object]:
        return {
            "backend": "s3",
            "bucket": self._bucket,
            "endpoint": self._settings.s3_endpoint_url,
            "circuit_open": self._breaker.is_open,
        }

    @staticmethod
    def _custom_metadata(metadata: dict[str, str]) -> Optional[CustomMetadata]:
        if "url-hash" not in metadata:
            return None
        return CustomMetadata(
            original_url=unquote(metadata.get("original-url", "")),
            url_hash=metadata["url-hash"],
            request_path=unquote(metadata.get("request-path", "")),
        )

    async def _call_with_retry(self, func: Callable[..., object], **kwargs) -> dict:
        if not self._breaker.allow_request():
            raise CacheLookupError("object store temporarily unavailable")

        attempt = 0
        while True:
            try:
                result = await asyncio.to_thread(func, **kwargs)
                self._breaker.record_success()
                return result
            except self._client.exceptions.NoSuchKey as exc:
                self._breaker.record_success()
                raise _ObjectMissing(kwargs.get("Key")) from exc
            except Exception as exc:  # noqa: BLE001
                if isinstance(exc, ClientError) and _error_code(exc) in MISSING_CODES:
                    self._breaker.record_success()
                    raise _ObjectMissing(kwargs.get("Key")) from exc
                attempt += 1
                if attempt > self._max_retries:
                    self._breaker.record_failure()
                    LOGGER.warning("object_store_call_failed", operation=getattr(func, "__name__", "s3_call"), attempts=attempt, error=str(exc))
                    raise CacheLookupError("object store temporarily unavailable") from exc
                delay = min(self._retry_base * (2 ** (attempt - 1)), self._retry_max)
                if delay:
                    await asyncio.sleep(delay)


def build_object_cache(settings: ProxySettings) -> ObjectCache:
    if settings.s3_bucket:
        if not settings.s3_endpoint_url and not settings.s3_region:
            raise RuntimeError("S3 configuration incomplete for object cache")
        return S3ObjectCache(settings)
    return LocalObjectCache(settings.storage_path)
