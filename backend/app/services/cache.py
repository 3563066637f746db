"""Response cache sitting in front of the object store.

Entries are keyed by a normalised request identity and hold a header copy
plus an immutable body snapshot. The gateway only reads and writes entries;
expiry and eviction happen here.
"""

import logging
import re
import time
from collections import OrderedDict
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from app.core.config import Settings

logger = logging.getLogger(__name__)

_MAX_AGE = re.compile(r"max-age=(\d+)", re.IGNORECASE)


@dataclass(frozen=True)
class RequestIdentity:
    method: str
    url: str
    vary: tuple[tuple[str, str], ...] = ()


def request_identity(
    method: str,
    url: str,
    headers: Mapping[str, str] | None = None,
    vary_headers: Iterable[str] = (),
) -> RequestIdentity:
    parts = urlsplit(url)
    query = urlencode(sorted(parse_qsl(parts.query, keep_blank_values=True)))
    normalized = urlunsplit(
        (parts.scheme.lower(), parts.netloc.lower(), parts.path or "/", query, "")
    )
    lowered = {k.lower(): v for k, v in (headers or {}).items()}
    names = sorted({name.lower() for name in vary_headers})
    vary = tuple((name, lowered.get(name, "")) for name in names)
    return RequestIdentity(method=method.upper(), url=normalized, vary=vary)


@dataclass(frozen=True)
class CachedResponse:
    headers: tuple[tuple[str, str], ...]
    body: bytes

    @classmethod
    def build(cls, headers: Mapping[str, str], body: bytes) -> "CachedResponse":
        return cls(headers=tuple(headers.items()), body=bytes(body))

    def max_age(self) -> int | None:
        for name, value in self.headers:
            if name.lower() == "cache-control":
                match = _MAX_AGE.search(value)
                if match:
                    return int(match.group(1))
        return None


@dataclass
class _Slot:
    entry: CachedResponse
    expires_at: float

    @property
    def size(self) -> int:
        return len(self.entry.body)


class ResponseCache:
    enabled: bool = True

    async def lookup(self, identity: RequestIdentity) -> CachedResponse | None:  # pragma: no cover - interface
        raise NotImplementedError

    async def store(self, identity: RequestIdentity, entry: CachedResponse) -> None:  # pragma: no cover - interface
        raise NotImplementedError


class NullResponseCache(ResponseCache):
    """Always misses; used when no cache is deployed."""

    enabled = False

    async def lookup(self, identity: RequestIdentity) -> CachedResponse | None:
        return None

    async def store(self, identity: RequestIdentity, entry: CachedResponse) -> None:
        return None


class MemoryResponseCache(ResponseCache):
    def __init__(
        self,
        ttl_seconds: int,
        max_entries: int,
        max_total_bytes: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = max(0, ttl_seconds)
        self.max_entries = max(1, max_entries)
        self.max_total_bytes = max_total_bytes
        self._clock = clock
        self._slots: OrderedDict[RequestIdentity, _Slot] = OrderedDict()
        self._total_bytes = 0

    def __len__(self) -> int:
        return len(self._slots)

    @property
    def total_bytes(self) -> int:
        return self._total_bytes

    async def lookup(self, identity: RequestIdentity) -> CachedResponse | None:
        slot = self._slots.get(identity)
        if slot is None:
            return None
        if slot.expires_at <= self._clock():
            self._discard(identity)
            return None
        self._slots.move_to_end(identity)
        return slot.entry

    async def store(self, identity: RequestIdentity, entry: CachedResponse) -> None:
        ttl = self.ttl_seconds
        max_age = entry.max_age()
        if max_age is not None:
            ttl = min(ttl, max_age)
        if ttl <= 0:
            return
        if self.max_total_bytes is not None and len(entry.body) > self.max_total_bytes:
            return
        self._discard(identity)
        slot = _Slot(entry=entry, expires_at=self._clock() + ttl)
        self._slots[identity] = slot
        self._total_bytes += slot.size
        while len(self._slots) > self.max_entries or self._over_budget():
            evicted = next(iter(self._slots))
            self._discard(evicted)
            logger.debug("Evicted cache entry %s", evicted.url)

    def _over_budget(self) -> bool:
        return self.max_total_bytes is not None and self._total_bytes > self.max_total_bytes

    def _discard(self, identity: RequestIdentity) -> None:
        slot = self._slots.pop(identity, None)
        if slot is not None:
            self._total_bytes -= slot.size


def create_response_cache(settings: Settings) -> ResponseCache:
    if settings.cache_backend == "none":
        return NullResponseCache()
    return MemoryResponseCache(
        ttl_seconds=settings.cache_ttl_seconds,
        max_entries=settings.cache_max_entries,
        max_total_bytes=settings.cache_max_total_bytes,
    )
