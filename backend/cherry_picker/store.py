"""
Quality Store Adapter
======================
Thin async interface over a TTL-capable key/value cache holding the raw
quality records. Keys are bucketed by the current local hour:

    {domain}-{candidate_id}-{hour_of_day}

Backends:
- RedisQualityStore  → redis.asyncio client (production)
- MemoryQualityStore → process-local dict with expiry (tests, degraded mode)

fetch + persist is NOT atomic. Use transact() for a read-modify-write that
cannot lose a concurrent increment.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Callable, Dict, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError, WatchError

logger = logging.getLogger(__name__)

Fold = Callable[[Optional[str]], str]


class QualityStoreError(Exception):
    """Base for every failure to read or write quality records."""
    pass


class StoreUnavailableError(QualityStoreError):
    """The counter store could not be reached or rejected the command."""
    pass


class QualityStore:
    """
    Base adapter. Subclasses implement get/set/transact against a backend.

    The clock is injectable so tests can pin the hour bucket.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or datetime.now

    def key(self, domain: str, candidate_id: str) -> str:
        return f"{domain}-{candidate_id}-{self._clock().hour}"

    async def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def set(self, key: str, value: str, ttl: int) -> None:
        raise NotImplementedError

    async def transact(
        self, domain: str, candidate_id: str, fold: Fold, ttl: int
    ) -> str:
        raise NotImplementedError

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass

    async def fetch(self, domain: str, candidate_id: str) -> Optional[str]:
        """Current-hour raw record for a candidate, or None."""
        return await self.get(self.key(domain, candidate_id))

    async def persist(
        self, domain: str, candidate_id: str, record: str, ttl: int
    ) -> None:
        """Overwrite the current-hour record and reset its expiry."""
        await self.set(self.key(domain, candidate_id), record, ttl)


class MemoryQualityStore(QualityStore):
    """In-process store with per-key expiry. Single process only."""

    def __init__(
        self,
        clock: Optional[Callable[[], datetime]] = None,
        timer: Callable[[], float] = time.monotonic,
    ):
        super().__init__(clock)
        self._timer = timer
        self._data: Dict[str, Tuple[str, float]] = {}
        self._lock = asyncio.Lock()

    def _read(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._timer() >= expires_at:
            del self._data[key]
            return None
        return value

    def _write(self, key: str, value: str, ttl: int) -> None:
        self._data[key] = (value, self._timer() + ttl)

    async def get(self, key: str) -> Optional[str]:
        return self._read(key)

    async def set(self, key: str, value: str, ttl: int) -> None:
        self._write(key, value, ttl)

    async def transact(
        self, domain: str, candidate_id: str, fold: Fold, ttl: int
    ) -> str:
        async with self._lock:
            key = self.key(domain, candidate_id)
            updated = fold(self._read(key))
            self._write(key, updated, ttl)
            return updated

    def ttl(self, key: str) -> Optional[float]:
        """Seconds left before a key expires (None if absent)."""
        if self._read(key) is None:
            return None
        return self._data[key][1] - self._timer()


class RedisQualityStore(QualityStore):
    """
    Redis-backed store.

    Every RedisError is re-raised as StoreUnavailableError. No retries on
    failure; transact() only retries when a WATCHed key changed underneath.
    """

    def __init__(
        self,
        client: "aioredis.Redis",
        clock: Optional[Callable[[], datetime]] = None,
        max_cas_attempts: int = 5,
    ):
        super().__init__(clock)
        self._client = client
        self.max_cas_attempts = max_cas_attempts

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisQualityStore":
        client = aioredis.from_url(url, decode_responses=True)
        return cls(client, **kwargs)

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self._client.get(key)
        except RedisError as e:
            raise StoreUnavailableError(f"GET {key} failed: {e}") from e

    async def set(self, key: str, value: str, ttl: int) -> None:
        try:
            await self._client.set(key, value, ex=ttl)
        except RedisError as e:
            raise StoreUnavailableError(f"SET {key} failed: {e}") from e

    async def transact(
        self, domain: str, candidate_id: str, fold: Fold, ttl: int
    ) -> str:
        """WATCH/MULTI compare-and-swap around fold()."""
        key = self.key(domain, candidate_id)
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                for attempt in range(1, self.max_cas_attempts + 1):
                    try:
                        await pipe.watch(key)
                        current = await pipe.get(key)
                        updated = fold(current)
                        pipe.multi()
                        pipe.set(key, updated, ex=ttl)
                        await pipe.execute()
                        return updated
                    except WatchError:
                        logger.debug(f"Write conflict on {key} (attempt {attempt})")
        except RedisError as e:
            raise StoreUnavailableError(f"Transaction on {key} failed: {e}") from e

        raise StoreUnavailableError(
            f"Transaction on {key} gave up after {self.max_cas_attempts} conflicting writes"
        )

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except RedisError as e:
            raise StoreUnavailableError(f"PING failed: {e}") from e

    async def close(self) -> None:
        await self._client.aclose()
