"""Request pipeline serving images out of the object store.

validate -> classify -> cache lookup -> store head/get -> respond, with the
cache populated in the background once the body has been fully streamed.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable, Mapping
from contextlib import aclosing
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from app.core.config import Settings
from app.services.cache import (
    CachedResponse,
    RequestIdentity,
    ResponseCache,
    create_response_cache,
    request_identity,
)
from app.services.storage import (
    ObjectFound,
    ObjectMetadata,
    ObjectNotFound,
    StorageService,
    StoreResult,
    create_storage_service,
)
from app.services.validation import ImageType, classify_extension, validate_filename
from app.tasks.runner import BackgroundRunner

logger = logging.getLogger(__name__)

CACHE_CONTROL = "public, max-age=604800"
CACHE_STATUS_HEADER = "X-Cache-Status"


class CacheStatus(str, Enum):
    HIT = "HIT"
    MISS = "MISS"


class GatewayError(Exception):
    status_code: int = 500
    message: str = "Internal Server Error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)
        if message:
            self.message = message


class InvalidFilenameError(GatewayError):
    status_code = 400
    message = "Invalid filename format"


class UnsupportedFileTypeError(GatewayError):
    status_code = 415
    message = "Unsupported file type"


class ImageNotFoundError(GatewayError):
    status_code = 404
    message = "Image not found"


class StoreUnavailableError(GatewayError):
    status_code = 500
    message = "Internal Server Error"


@dataclass
class ImageResponse:
    headers: dict[str, str]
    cache_status: CacheStatus
    body: bytes | None = None
    stream: AsyncIterator[bytes] | None = None
    status_code: int = 200


def log_store_error(key: str, detail: object) -> None:
    logger.error(
        "[S3 Error] %s key=%s %s",
        datetime.now(timezone.utc).isoformat(),
        key,
        detail,
    )


class ImageGateway:
    def __init__(
        self,
        storage: StorageService,
        cache: ResponseCache,
        runner: BackgroundRunner,
        metadata_source: Literal["head", "stream"] = "head",
        cache_max_object_bytes: int = 10 * 1024 * 1024,
        vary_headers: Iterable[str] = (),
    ) -> None:
        self.storage = storage
        self.cache = cache
        self.runner = runner
        self.metadata_source = metadata_source
        self.cache_max_object_bytes = cache_max_object_bytes
        self.vary_headers = tuple(vary_headers)

    def identity_for(
        self, method: str, url: str, headers: Mapping[str, str] | None = None
    ) -> RequestIdentity:
        return request_identity(method, url, headers, self.vary_headers)

    async def fetch(self, filename: str, identity: RequestIdentity) -> ImageResponse:
        if not validate_filename(filename):
            raise InvalidFilenameError()
        image_type = classify_extension(filename)
        if image_type is None:
            raise UnsupportedFileTypeError()

        cached = await self._lookup(identity)
        if cached is not None:
            return self._hit(cached)

        if self.metadata_source == "head":
            metadata = self._unwrap(filename, await self.storage.head_object(filename)).metadata
            found = self._unwrap(filename, await self.storage.get_object(filename))
        else:
            found = self._unwrap(filename, await self.storage.get_object(filename))
            metadata = found.metadata
        if found.body is None:
            log_store_error(filename, "object store returned no body")
            raise StoreUnavailableError()

        headers = self._headers(image_type, metadata)
        capture = self.cache.enabled and self._cacheable(metadata)
        return ImageResponse(
            headers=headers,
            cache_status=CacheStatus.MISS,
            stream=self._stream(filename, found.body, identity, headers, metadata, capture),
        )

    async def storage_connected(self) -> bool:
        try:
            return await asyncio.to_thread(self.storage.has_credentials)
        except Exception:
            logger.warning("Credential probe failed", exc_info=True)
            return False

    async def _lookup(self, identity: RequestIdentity) -> CachedResponse | None:
        try:
            return await self.cache.lookup(identity)
        except Exception:
            logger.warning("Cache lookup failed for %s; treating as miss", identity.url, exc_info=True)
            return None

    @staticmethod
    def _hit(cached: CachedResponse) -> ImageResponse:
        headers = {
            name: value
            for name, value in cached.headers
            if name.lower() != CACHE_STATUS_HEADER.lower()
        }
        headers[CACHE_STATUS_HEADER] = CacheStatus.HIT.value
        return ImageResponse(headers=headers, cache_status=CacheStatus.HIT, body=cached.body)

    @staticmethod
    def _unwrap(key: str, result: StoreResult) -> ObjectFound:
        if isinstance(result, ObjectFound):
            return result
        if isinstance(result, ObjectNotFound):
            raise ImageNotFoundError()
        log_store_error(key, result.detail)
        raise StoreUnavailableError()

    @staticmethod
    def _headers(image_type: ImageType, metadata: ObjectMetadata) -> dict[str, str]:
        headers = {
            "Content-Type": image_type.content_type,
            "Cache-Control": CACHE_CONTROL,
        }
        if metadata.etag:
            headers["ETag"] = metadata.etag.replace('"', "")
        if metadata.content_length is not None:
            headers["Content-Length"] = str(metadata.content_length)
        headers["X-Content-Type-Options"] = "nosniff"
        headers[CACHE_STATUS_HEADER] = CacheStatus.MISS.value
        return headers

    def _cacheable(self, metadata: ObjectMetadata) -> bool:
        return (
            metadata.content_length is None
            or metadata.content_length <= self.cache_max_object_bytes
        )

    async def _stream(
        self,
        key: str,
        body: AsyncIterator[bytes],
        identity: RequestIdentity,
        headers: dict[str, str],
        metadata: ObjectMetadata,
        capture: bool,
    ) -> AsyncIterator[bytes]:
        buffer: bytearray | None = bytearray() if capture else None
        try:
            async with aclosing(body) as chunks:
                async for chunk in chunks:
                    if buffer is not None:
                        buffer.extend(chunk)
                        if len(buffer) > self.cache_max_object_bytes:
                            buffer = None
                    yield chunk
        except Exception as exc:
            log_store_error(key, exc)
            raise

        if buffer is None:
            return
        if metadata.content_length is not None and len(buffer) != metadata.content_length:
            logger.warning(
                "Not caching %s: received %d of %d bytes",
                key,
                len(buffer),
                metadata.content_length,
            )
            return
        self._schedule_store(identity, CachedResponse.build(headers, bytes(buffer)))

    def _schedule_store(self, identity: RequestIdentity, entry: CachedResponse) -> None:
        async def write() -> None:
            try:
                await self.cache.store(identity, entry)
            except Exception:
                logger.warning("Cache write failed for %s", identity.url, exc_info=True)

        try:
            self.runner.submit(write)
        except RuntimeError:
            logger.warning("Background runner not ready; skipped caching %s", identity.url)


def create_gateway(settings: Settings, runner: BackgroundRunner) -> ImageGateway:
    return ImageGateway(
        storage=create_storage_service(settings),
        cache=create_response_cache(settings),
        runner=runner,
        metadata_source=settings.metadata_source,
        cache_max_object_bytes=settings.cache_max_object_bytes,
        vary_headers=settings.vary_headers,
    )
