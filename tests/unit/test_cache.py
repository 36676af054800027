"""Tests for the LocalCacheStore and its key-value backends."""

import json

import pytest
from helpers import OTHER_USER_ID, START, USER_ID

from secretary.core.models import Provenance, Recording, UserProfile
from secretary.services.storage.cache import LocalCacheStore
from secretary.services.storage.kv import SqlKeyValueStore


def _recording(recording_id: str, provenance: Provenance = Provenance.local, **fields) -> Recording:
    return Recording(
        id=recording_id,
        user_id=USER_ID,
        captured_at=START,
        provenance=provenance,
        **fields,
    )


class TestRecordings:
    async def test_empty_cache(self, cache):
        assert await cache.load(USER_ID) == []
        assert await cache.get(USER_ID, "rec-1") is None

    async def test_upsert_inserts_then_replaces(self, cache):
        await cache.upsert(USER_ID, _recording("rec-1"))
        await cache.upsert(USER_ID, _recording("rec-2"))
        await cache.upsert(USER_ID, _recording("rec-1", title="Renamed"))

        recordings = await cache.load(USER_ID)

        assert [r.id for r in recordings] == ["rec-1", "rec-2"]
        assert recordings[0].title == "Renamed"

    async def test_users_are_isolated(self, cache):
        await cache.upsert(USER_ID, _recording("rec-1"))
        assert await cache.load(OTHER_USER_ID) == []

    async def test_remove(self, cache):
        await cache.upsert(USER_ID, _recording("rec-1"))
        await cache.remove(USER_ID, "rec-1")
        await cache.remove(USER_ID, "never-there")
        assert await cache.load(USER_ID) == []

    async def test_save_replaces_everything(self, cache):
        await cache.upsert(USER_ID, _recording("rec-1"))
        await cache.save(USER_ID, [_recording("rec-9")])
        assert [r.id for r in await cache.load(USER_ID)] == ["rec-9"]

    async def test_clear(self, cache):
        await cache.upsert(USER_ID, _recording("rec-1"))
        await cache.add_tombstone(USER_ID, "rec-2")
        await cache.save_profile(UserProfile(user_id=USER_ID))

        await cache.clear(USER_ID)

        assert await cache.load(USER_ID) == []
        assert await cache.tombstones(USER_ID) == set()
        assert await cache.load_profile(USER_ID) is None

    async def test_round_trips_device_fields(self, cache):
        original = _recording("rec-1", local_audio_path="/data/rec-1.m4a", provenance=Provenance.both)
        await cache.upsert(USER_ID, original)
        assert await cache.get(USER_ID, "rec-1") == original


class TestExpiry:
    async def test_fresh_cache_kept(self, cache, clock):
        await cache.upsert(USER_ID, _recording("remote", Provenance.remote))
        clock.advance(3600)
        assert len(await cache.load(USER_ID)) == 1

    async def test_stale_cache_drops_remote_only_entries(self, cache, clock):
        await cache.save(
            USER_ID,
            [
                _recording("local", Provenance.local),
                _recording("both", Provenance.both),
                _recording("remote", Provenance.remote),
            ],
        )
        clock.advance(86_401)

        kept = await cache.load(USER_ID)

        assert {r.id for r in kept} == {"local", "both"}

    async def test_expired_entries_stay_dropped_after_a_write(self, cache, clock):
        await cache.save(
            USER_ID, [_recording("local", Provenance.local), _recording("remote", Provenance.remote)]
        )
        clock.advance(86_401)
        await cache.load(USER_ID)

        await cache.upsert(USER_ID, _recording("new", Provenance.local))

        assert {r.id for r in await cache.load(USER_ID)} == {"local", "new"}

    async def test_zero_ttl_disables_expiry(self, kv, clock):
        cache = LocalCacheStore(kv, ttl_seconds=0, clock=clock)
        await cache.upsert(USER_ID, _recording("remote", Provenance.remote))
        clock.advance(10 * 86_400)
        assert len(await cache.load(USER_ID)) == 1


class TestCorruptDocuments:
    async def test_unreadable_document_treated_as_empty(self, cache, kv):
        kv.data[f"recordings:{USER_ID}"] = "{not json"
        assert await cache.load(USER_ID) == []

    async def test_invalid_recording_treated_as_empty(self, cache, kv):
        kv.data[f"recordings:{USER_ID}"] = json.dumps(
            {"cached_at": START.isoformat(), "recordings": [{"id": "x"}]}
        )
        assert await cache.load(USER_ID) == []

    async def test_unreadable_tombstones(self, cache, kv):
        kv.data[f"tombstones:{USER_ID}"] = "nope"
        assert await cache.tombstones(USER_ID) == set()

    async def test_unreadable_profile(self, cache, kv):
        kv.data[f"profile:{USER_ID}"] = "{}"
        assert await cache.load_profile(USER_ID) is None


class TestTombstonesAndProfile:
    async def test_tombstones_accumulate(self, cache):
        await cache.add_tombstone(USER_ID, "rec-1")
        await cache.add_tombstone(USER_ID, "rec-2")
        await cache.add_tombstone(USER_ID, "rec-1")
        assert await cache.tombstones(USER_ID) == {"rec-1", "rec-2"}

    async def test_profile_round_trip(self, cache):
        profile = UserProfile(user_id=USER_ID, webhook_url="https://hooks.test", dictionary=["k8s"])
        await cache.save_profile(profile)
        assert await cache.load_profile(USER_ID) == profile


class TestSqlKeyValueStore:
    @pytest.fixture
    async def sql_kv(self, tmp_path):
        store = SqlKeyValueStore(f"sqlite+aiosqlite:///{tmp_path / 'cache.db'}")
        yield store
        await store.close()

    async def test_set_get_remove(self, sql_kv):
        assert await sql_kv.get("a") is None
        await sql_kv.set("a", "1")
        await sql_kv.set("a", "2")
        assert await sql_kv.get("a") == "2"
        await sql_kv.remove("a")
        assert await sql_kv.get("a") is None

    async def test_backs_a_cache(self, sql_kv, clock):
        cache = LocalCacheStore(sql_kv, clock=clock)
        await cache.upsert(USER_ID, _recording("rec-1"))
        assert [r.id for r in await cache.load(USER_ID)] == ["rec-1"]

    async def test_survives_reopen(self, tmp_path):
        url = f"sqlite+aiosqlite:///{tmp_path / 'cache.db'}"
        first = SqlKeyValueStore(url)
        await first.set("k", "v")
        await first.close()

        second = SqlKeyValueStore(url)
        assert await second.get("k") == "v"
        await second.close()

    def test_requires_url_or_engine(self):
        with pytest.raises(ValueError):
            SqlKeyValueStore()
