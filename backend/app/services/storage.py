import asyncio
import hashlib
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from app.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

NOT_FOUND_CODES: Final[frozenset[str]] = frozenset({"404", "NoSuchKey", "NotFound"})


def normalize_etag(etag: str | None) -> str | None:
    if etag is None:
        return None
    return etag.replace('"', "")


@dataclass(frozen=True)
class ObjectMetadata:
    content_length: int | None
    etag: str | None
    exists: bool = True


@dataclass(frozen=True)
class ObjectFound:
    metadata: ObjectMetadata
    body: AsyncIterator[bytes] | None = None


@dataclass(frozen=True)
class ObjectNotFound:
    key: str


@dataclass(frozen=True)
class StoreFailure:
    key: str
    detail: str
    error: BaseException | None = None


StoreResult = ObjectFound | ObjectNotFound | StoreFailure


class StorageService:
    """S3-compatible object store (Cloudflare R2 by default)."""

    scheme: Final[str] = "s3"

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self.session = boto3.session.Session(
            aws_access_key_id=self.settings.r2_access_key_id,
            aws_secret_access_key=self.settings.r2_secret_access_key,
            region_name=self.settings.r2_region,
        )
        self.client = self.session.client(
            "s3",
            endpoint_url=str(self.settings.r2_endpoint),
            config=Config(signature_version="s3v4", s3={"addressing_style": "path"}),
        )
        self.bucket = self.settings.r2_bucket_name
        self.chunk_size = self.settings.stream_chunk_size

    def has_credentials(self) -> bool:
        credentials = self.session.get_credentials()
        return credentials is not None and bool(credentials.access_key)

    async def head_object(self, key: str) -> StoreResult:
        try:
            response = await asyncio.to_thread(
                self.client.head_object, Bucket=self.bucket, Key=key
            )
        except (ClientError, BotoCoreError) as exc:
            return self._failure(key, exc)
        return ObjectFound(metadata=self._metadata(response))

    async def get_object(self, key: str) -> StoreResult:
        try:
            response = await asyncio.to_thread(
                self.client.get_object, Bucket=self.bucket, Key=key
            )
        except (ClientError, BotoCoreError) as exc:
            return self._failure(key, exc)
        return ObjectFound(
            metadata=self._metadata(response),
            body=self._iter_body(response["Body"]),
        )

    async def _iter_body(self, body: Any) -> AsyncIterator[bytes]:
        try:
            while True:
                chunk = await asyncio.to_thread(body.read, self.chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            body.close()

    @staticmethod
    def _metadata(response: dict[str, Any]) -> ObjectMetadata:
        length = response.get("ContentLength")
        return ObjectMetadata(
            content_length=int(length) if length is not None else None,
            etag=normalize_etag(response.get("ETag")),
        )

    @staticmethod
    def _failure(key: str, exc: Exception) -> ObjectNotFound | StoreFailure:
        if isinstance(exc, ClientError):
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in NOT_FOUND_CODES:
                return ObjectNotFound(key=key)
        return StoreFailure(key=key, detail=f"{type(exc).__name__}: {exc}", error=exc)


class LocalStorageService(StorageService):
    """Local filesystem storage intended for development use."""

    scheme: Final[str] = "local"

    def __init__(self, settings: Settings | None = None) -> None:  # type: ignore[override]
        self.settings = settings or get_settings()
        self.base_path = Path(self.settings.local_storage_dir).resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.chunk_size = self.settings.stream_chunk_size

    def _key_path(self, key: str) -> Path:
        # Prevent directory traversal by resolving inside base path
        candidate = self.base_path.joinpath(*Path(key).parts).resolve()
        if not candidate.is_relative_to(self.base_path):
            raise ValueError("Invalid storage key")
        return candidate

    def has_credentials(self) -> bool:  # type: ignore[override]
        return self.base_path.is_dir()

    async def head_object(self, key: str) -> StoreResult:  # type: ignore[override]
        _, result = await self._locate(key)
        return result

    async def get_object(self, key: str) -> StoreResult:  # type: ignore[override]
        path, result = await self._locate(key)
        if path is None or not isinstance(result, ObjectFound):
            return result
        return ObjectFound(metadata=result.metadata, body=self._iter_file(path))

    async def _locate(self, key: str) -> tuple[Path | None, StoreResult]:
        try:
            path = self._key_path(key)
            if not path.is_file():
                return None, ObjectNotFound(key=key)
            metadata = await asyncio.to_thread(self._stat, path)
        except (OSError, ValueError) as exc:
            return None, StoreFailure(key=key, detail=f"{type(exc).__name__}: {exc}", error=exc)
        return path, ObjectFound(metadata=metadata)

    @staticmethod
    def _stat(path: Path) -> ObjectMetadata:
        # Tag from mtime and size; the body is only ever read by _iter_file
        stat = path.stat()
        tag = f"{stat.st_mtime_ns}-{stat.st_size}".encode()
        return ObjectMetadata(
            content_length=stat.st_size,
            etag=hashlib.md5(tag, usedforsecurity=False).hexdigest(),
        )

    async def _iter_file(self, path: Path) -> AsyncIterator[bytes]:
        handle = await asyncio.to_thread(path.open, "rb")
        try:
            while True:
                chunk = await asyncio.to_thread(handle.read, self.chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            handle.close()


def create_storage_service(settings: Settings) -> StorageService:
    if settings.storage_backend == "local":
        logger.info("Using local storage at %s", settings.local_storage_dir)
        return LocalStorageService(settings)
    return StorageService(settings)
