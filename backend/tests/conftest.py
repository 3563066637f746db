import importlib
import os
import sys
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

# Ensure project root is on sys.path
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from app.core.config import get_settings
from app.services import storage as storage_service
from app.services.cache import MemoryResponseCache, ResponseCache
from app.services.gateway import ImageGateway
from app.tasks.runner import BackgroundRunner


class FakeStorage(storage_service.StorageService):
    """In-memory object store recording every call made against it."""

    def __init__(self, chunk_size: int = 4) -> None:  # type: ignore[super-init-not-called]
        self.settings = get_settings()
        self.bucket = "dummy"
        self.chunk_size = chunk_size
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.calls: list[tuple[str, str]] = []
        self.failure: Exception | None = None
        self.credentials = True

    def put(self, key: str, data: bytes, etag: str) -> None:
        self.objects[key] = (data, etag)

    def has_credentials(self) -> bool:  # type: ignore[override]
        return self.credentials

    def _lookup(self, key: str) -> storage_service.StoreResult:
        if self.failure is not None:
            return storage_service.StoreFailure(key=key, detail=str(self.failure), error=self.failure)
        if key not in self.objects:
            return storage_service.ObjectNotFound(key=key)
        data, etag = self.objects[key]
        return storage_service.ObjectFound(
            metadata=storage_service.ObjectMetadata(
                content_length=len(data),
                etag=storage_service.normalize_etag(etag),
            )
        )

    async def head_object(self, key: str) -> storage_service.StoreResult:  # type: ignore[override]
        self.calls.append(("head", key))
        return self._lookup(key)

    async def get_object(self, key: str) -> storage_service.StoreResult:  # type: ignore[override]
        self.calls.append(("get", key))
        result = self._lookup(key)
        if not isinstance(result, storage_service.ObjectFound):
            return result
        return storage_service.ObjectFound(
            metadata=result.metadata,
            body=self._chunks(self.objects[key][0]),
        )

    async def _chunks(self, data: bytes):
        for offset in range(0, len(data), self.chunk_size):
            yield data[offset : offset + self.chunk_size]


class BrokenCache(ResponseCache):
    def __init__(self) -> None:
        self.lookups = 0
        self.stores = 0

    async def lookup(self, identity):
        self.lookups += 1
        raise ConnectionError("cache offline")

    async def store(self, identity, entry):
        self.stores += 1
        raise ConnectionError("cache offline")


@pytest.fixture(scope="session", autouse=True)
def configure_environment():
    os.environ["ENV"] = "test"
    os.environ["R2_ACCESS_KEY_ID"] = "test"
    os.environ["R2_SECRET_ACCESS_KEY"] = "test"
    os.environ["R2_BUCKET_NAME"] = "test-bucket"
    os.environ["R2_ENDPOINT"] = "https://account.r2.example.com"
    os.environ["STORAGE_BACKEND"] = "s3"
    get_settings.cache_clear()


@pytest.fixture(scope="session")
def app_instance(configure_environment):
    from app import main as app_module

    importlib.reload(app_module)
    return app_module.app


@pytest.fixture
def storage():
    fake = FakeStorage()
    fake.put("photo.jpg", b"\xff\xd8\xff" + b"j" * 12342, '"abc123"')
    return fake


@pytest.fixture
def cache():
    return MemoryResponseCache(ttl_seconds=604800, max_entries=16)


@pytest_asyncio.fixture
async def runner():
    background = BackgroundRunner(max_parallel=2)
    await background.start()
    yield background
    await background.stop()


@pytest.fixture
def gateway(storage, cache, runner):
    return ImageGateway(storage=storage, cache=cache, runner=runner)


@pytest_asyncio.fixture
async def client(app_instance, gateway, runner):
    # Setup state for tests, mimicking lifespan events
    app_instance.state.background_runner = runner
    app_instance.state.image_gateway = gateway
    transport = ASGITransport(app=app_instance)
    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
