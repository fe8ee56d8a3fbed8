"""
Tests for the quality store adapters.
"""

import asyncio
import json
from collections import defaultdict
from datetime import datetime
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import WatchError

from cherry_picker.service_log import apply_result
from cherry_picker.store import MemoryQualityStore, RedisQualityStore, StoreUnavailableError

from conftest import FIXED_NOW, FakeTimer


class VersionedRedis:
    """
    Just enough of redis.asyncio for WATCH/MULTI. Every write bumps the key's
    version; EXEC fails if a watched version moved.
    """

    def __init__(self, always_conflict: bool = False):
        self.data = {}
        self.expiry = {}
        self.versions = defaultdict(int)
        self.always_conflict = always_conflict
        self.executions = 0
        self.conflicts = 0

    def pipeline(self, transaction=True):
        return VersionedPipeline(self)


class VersionedPipeline:
    def __init__(self, db: VersionedRedis):
        self.db = db
        self.watched = {}
        self.queued = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.reset()

    def reset(self):
        self.watched = {}
        self.queued = []

    async def watch(self, *keys):
        for key in keys:
            self.watched[key] = self.db.versions[key]

    async def get(self, key):
        await asyncio.sleep(0)  # let other writers interleave
        return self.db.data.get(key)

    def multi(self):
        pass

    def set(self, key, value, ex=None):
        self.queued.append((key, value, ex))

    async def execute(self):
        self.db.executions += 1
        try:
            moved = any(self.db.versions[k] != v for k, v in self.watched.items())
            if moved or self.db.always_conflict:
                self.db.conflicts += 1
                raise WatchError("Watched variable changed.")
            for key, value, ex in self.queued:
                self.db.data[key] = value
                self.db.expiry[key] = ex
                self.db.versions[key] += 1
            return [True] * len(self.queued)
        finally:
            self.reset()


class TestKeys:
    def test_key_uses_local_hour(self):
        store = MemoryQualityStore(clock=lambda: datetime(2024, 1, 1, 7, 59))

        assert store.key("0021", "abc") == "0021-abc-7"

    def test_key_rolls_with_the_hour(self):
        now = {"t": datetime(2024, 1, 1, 23, 10)}
        store = MemoryQualityStore(clock=lambda: now["t"])
        before = store.key("eth", "n1")
        now["t"] = datetime(2024, 1, 2, 0, 0)

        assert before == "eth-n1-23"
        assert store.key("eth", "n1") == "eth-n1-0"


class TestMemoryQualityStore:

    @pytest.mark.asyncio
    async def test_absent_is_none(self, store):
        assert await store.fetch("eth", "nobody") is None

    @pytest.mark.asyncio
    async def test_persist_overwrites_and_resets_expiry(self):
        timer = FakeTimer()
        store = MemoryQualityStore(clock=lambda: FIXED_NOW, timer=timer)

        await store.persist("eth", "a", "one", 10)
        timer.advance(8)
        await store.persist("eth", "a", "two", 10)
        timer.advance(8)

        assert await store.fetch("eth", "a") == "two"
        timer.advance(3)
        assert await store.fetch("eth", "a") is None

    @pytest.mark.asyncio
    async def test_new_hour_starts_empty(self, timer):
        now = {"t": datetime(2024, 1, 1, 10, 59)}
        store = MemoryQualityStore(clock=lambda: now["t"], timer=timer)
        await store.persist("eth", "a", "x", 3600)
        now["t"] = datetime(2024, 1, 1, 11, 0)

        assert await store.fetch("eth", "a") is None

    @pytest.mark.asyncio
    async def test_transact_folds_current_value(self, store):
        await store.persist("eth", "a", "1", 60)

        result = await store.transact("eth", "a", lambda raw: str(int(raw) + 1), 60)

        assert result == "2"
        assert await store.fetch("eth", "a") == "2"


class TestRedisQualityStore:

    def make(self, **client_attrs):
        client = AsyncMock()
        for name, value in client_attrs.items():
            setattr(client, name, value)
        return client, RedisQualityStore(client, clock=lambda: FIXED_NOW)

    @pytest.mark.asyncio
    async def test_fetch_reads_hour_key(self):
        client, store = self.make(get=AsyncMock(return_value='{"results": {}}'))

        assert await store.fetch("0021", "app1") == '{"results": {}}'
        client.get.assert_awaited_once_with("0021-app1-14")

    @pytest.mark.asyncio
    async def test_fetch_absent(self):
        _, store = self.make(get=AsyncMock(return_value=None))

        assert await store.fetch("0021", "app1") is None

    @pytest.mark.asyncio
    async def test_persist_sets_with_expiry(self):
        client, store = self.make(set=AsyncMock(return_value=True))

        await store.persist("0021", "node9", "{}", 3600)

        client.set.assert_awaited_once_with("0021-node9-14", "{}", ex=3600)

    @pytest.mark.asyncio
    async def test_redis_errors_become_store_unavailable(self):
        _, store = self.make(get=AsyncMock(side_effect=RedisConnectionError("refused")))

        with pytest.raises(StoreUnavailableError, match="refused"):
            await store.fetch("0021", "app1")

    @pytest.mark.asyncio
    async def test_persist_error(self):
        _, store = self.make(set=AsyncMock(side_effect=RedisConnectionError("down")))

        with pytest.raises(StoreUnavailableError):
            await store.persist("0021", "app1", "{}", 900)

    @pytest.mark.asyncio
    async def test_ping(self):
        _, store = self.make(ping=AsyncMock(return_value=True))

        assert await store.ping() is True

    @pytest.mark.asyncio
    async def test_close(self):
        client, store = self.make(aclose=AsyncMock())

        await store.close()

        client.aclose.assert_awaited_once()


class TestRedisTransact:

    def fold_success(self, elapsed):
        return lambda raw: apply_result(raw, elapsed, 200).to_wire()

    @pytest.mark.asyncio
    async def test_concurrent_updates_keep_every_increment(self):
        db = VersionedRedis()
        store = RedisQualityStore(db, clock=lambda: FIXED_NOW, max_cas_attempts=12)

        await asyncio.gather(*(
            store.transact("0021", "app1", self.fold_success(100), 900)
            for _ in range(12)
        ))

        data = json.loads(db.data["0021-app1-14"])
        assert data["results"]["200"] == 12
        assert data["averageSuccessLatency"] == "100.00000"
        assert db.expiry["0021-app1-14"] == 900
        assert db.conflicts > 0

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        db = VersionedRedis(always_conflict=True)
        store = RedisQualityStore(db, clock=lambda: FIXED_NOW, max_cas_attempts=2)

        with pytest.raises(StoreUnavailableError, match="gave up after 2"):
            await store.transact("0021", "app1", self.fold_success(50), 900)

        assert db.executions == 2
        assert "0021-app1-14" not in db.data

    @pytest.mark.asyncio
    async def test_redis_error_inside_transaction(self):
        db = VersionedRedis()
        store = RedisQualityStore(db, clock=lambda: FIXED_NOW)

        async def refuse(*keys):
            raise RedisConnectionError("refused")

        pipe = db.pipeline()
        pipe.watch = refuse
        db.pipeline = lambda transaction=True: pipe

        with pytest.raises(StoreUnavailableError, match="refused"):
            await store.transact("0021", "app1", self.fold_success(50), 900)
