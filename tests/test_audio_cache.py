"""
Audio cache tests - LRU tier 1 in front of the catalog's durable audio.
"""

import sqlite3

import pytest
import pytest_asyncio

from lernwelt.audio.cache import AudioCache
from lernwelt.catalog.task_catalog import TaskCatalog
from lernwelt.errors import PersistenceFailure

from .conftest import make_clip, make_task


class CountingCatalog:
    """Tier 2 stand-in that records reads and can refuse writes."""

    def __init__(self, fail_writes: bool = False):
        self.store = {}
        self.reads = []
        self.fail_writes = fail_writes
        self.cleared = False
        self.listeners = []

    def on_remove(self, callback):
        self.listeners.append(callback)

    async def get_audio(self, key):
        self.reads.append(key)
        return self.store.get(key)

    async def save_audio(self, key, clip):
        if self.fail_writes:
            raise PersistenceFailure("disk full")
        self.store[key] = clip

    async def clear_audio(self):
        self.cleared = True
        self.store.clear()


@pytest_asyncio.fixture()
async def local_catalog(factory):
    c = TaskCatalog(factory, repository_type="local")
    await c.load()
    return c


async def test_lru_evicts_least_recently_used_and_falls_through(local_catalog):
    cache = AudioCache(local_catalog, capacity=2)
    await cache.set("a", make_clip(freq=220))
    await cache.set("b", make_clip(freq=330))
    await cache.set("c", make_clip(freq=440))

    assert not cache.contains("a")
    assert cache.contains("b") and cache.contains("c")

    # Evicted key comes back from tier 2 and is resident again
    clip = await cache.get("a")
    assert clip is not None
    assert cache.contains("a")
    assert not cache.contains("b")


async def test_get_refreshes_recency():
    tier2 = CountingCatalog()
    cache = AudioCache(tier2, capacity=2)
    await cache.set("a", make_clip())
    await cache.set("b", make_clip())
    await cache.get("a")
    await cache.set("c", make_clip())

    assert cache.contains("a")
    assert not cache.contains("b")
    assert tier2.reads == []


async def test_setting_existing_key_makes_it_most_recent():
    cache = AudioCache(CountingCatalog(), capacity=2)
    await cache.set("a", make_clip())
    await cache.set("b", make_clip())
    await cache.set("a", make_clip(freq=550))
    await cache.set("c", make_clip())
    assert cache.contains("a")
    assert not cache.contains("b")
    assert len(cache) == 2


async def test_miss_returns_none():
    cache = AudioCache(CountingCatalog())
    assert await cache.get("nothing") is None
    assert not cache.contains("nothing")


async def test_tier2_write_failure_keeps_clip_in_memory():
    cache = AudioCache(CountingCatalog(fail_writes=True))
    clip = make_clip()
    await cache.set("a", clip)
    assert await cache.get("a") is clip


async def test_clear_all_empties_both_tiers():
    tier2 = CountingCatalog()
    cache = AudioCache(tier2)
    await cache.set("a", make_clip())
    await cache.clear_all()
    assert len(cache) == 0
    assert tier2.cleared
    assert await cache.get("a") is None


async def test_preload_counts_only_newly_warmed():
    tier2 = CountingCatalog()
    tier2.store = {"a": make_clip(), "b": make_clip()}
    cache = AudioCache(tier2, capacity=10)
    await cache.set("b", make_clip())

    warmed = await cache.preload(["a", "b", "missing"])
    assert warmed == 1
    assert cache.contains("a")
    assert "b" not in tier2.reads


async def test_preload_against_sqlite(factory):
    c = TaskCatalog(factory, repository_type="sqlite")
    await c.add_tasks([make_task("t1"), make_task("t2")])
    await c.save_audio("t1", make_clip())

    cache = AudioCache(c)
    assert await cache.preload(["t1", "t2"]) == 1



async def test_preload_skips_unreadable_sqlite_audio(factory, app_config):
    c = TaskCatalog(factory, repository_type="sqlite")
    await c.add_tasks([make_task("t1")])
    conn = sqlite3.connect(app_config.resolved_sqlite_path)
    conn.execute("DROP TABLE audio_buffers")
    conn.close()

    cache = AudioCache(c)
    assert await cache.preload(["t1"]) == 0
    assert not cache.contains("t1")


async def test_removed_task_leaves_memory_tier(local_catalog):
    await local_catalog.add_tasks([make_task("t1"), make_task("t2")])
    cache = AudioCache(local_catalog)
    await cache.set("t1", make_clip())
    await cache.set("t2", make_clip())

    await local_catalog.remove_task("t1")

    assert not cache.contains("t1")
    assert cache.contains("t2")
    assert await cache.get("t1") is None


async def test_clearing_test_data_discards_its_clips(local_catalog):
    await local_catalog.add_tasks([make_task("real"), make_task("mock", is_test_data=True)])
    cache = AudioCache(local_catalog)
    await cache.set("real", make_clip())
    await cache.set("mock", make_clip())

    await local_catalog.clear(only_test_data=True)

    assert cache.contains("real")
    assert not cache.contains("mock")


def test_discard_reports_residency():
    cache = AudioCache(CountingCatalog())
    cache._put("a", make_clip())
    assert cache.discard("a") is True
    assert cache.discard("a") is False

def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        AudioCache(CountingCatalog(), capacity=0)
