import json
from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_quote
from core.data.cache import CACHE_KEY, FileSnapshotStore, MemorySnapshotStore, SnapshotCache
from core.errors import AggregationError
from core.models.market import Sentiment, Snapshot

NOW = datetime(2024, 1, 10, 6, 0, tzinfo=timezone.utc)


def snapshot_at(captured_at: datetime) -> Snapshot:
    return Snapshot(
        quotes=(make_quote("TCS.NS", 4210, 10),),
        sentiment=Sentiment(label="bullish", advance_decline_ratio=1.0, positive_count=1, total_count=1),
        captured_at=captured_at,
    )


class TestSnapshotCache:

    def test_empty_store_loads_none(self):
        assert SnapshotCache(MemorySnapshotStore(), clock=lambda: NOW).load() is None

    def test_round_trip(self):
        cache = SnapshotCache(MemorySnapshotStore(), clock=lambda: NOW)
        original = snapshot_at(NOW - timedelta(minutes=5))

        cache.save(original)
        loaded = cache.load()

        assert loaded == original
        assert loaded.quotes[0].symbol == "TCS.NS"

    def test_stale_entry_is_absent(self):
        cache = SnapshotCache(MemorySnapshotStore(), clock=lambda: NOW)
        cache.save(snapshot_at(NOW - timedelta(hours=2)))

        assert cache.load() is None

    def test_max_age_boundary(self):
        cache = SnapshotCache(MemorySnapshotStore(), max_age=timedelta(hours=1), clock=lambda: NOW)
        cache.save(snapshot_at(NOW - timedelta(minutes=59)))
        assert cache.load() is not None

    def test_corrupt_entry_is_absent(self):
        store = MemorySnapshotStore()
        store.write(CACHE_KEY, "{not json")
        assert SnapshotCache(store, clock=lambda: NOW).load() is None

    def test_invalid_model_is_absent(self):
        store = MemorySnapshotStore()
        store.write(CACHE_KEY, json.dumps({"quotes": [{"symbol": "X", "price": -1}]}))
        assert SnapshotCache(store, clock=lambda: NOW).load() is None

    def test_naive_timestamp_is_utc(self):
        store = MemorySnapshotStore()
        blob = snapshot_at(NOW).model_dump(mode="json")
        blob["captured_at"] = "2024-01-10T05:50:00"
        store.write(CACHE_KEY, json.dumps(blob))

        loaded = SnapshotCache(store, clock=lambda: NOW).load()

        assert loaded is not None
        assert loaded.captured_at.tzinfo is not None

    def test_write_failure_raises_aggregation_error(self):
        class ReadOnlyStore(MemorySnapshotStore):
            def write(self, key, blob):
                raise PermissionError("read-only")

        with pytest.raises(AggregationError):
            SnapshotCache(ReadOnlyStore()).save(snapshot_at(NOW))

    def test_info(self):
        cache = SnapshotCache(MemorySnapshotStore(), clock=lambda: NOW)
        assert cache.info()["has_cache"] is False

        cache.save(snapshot_at(NOW - timedelta(hours=2)))
        info = cache.info()
        assert info["has_cache"] is True
        assert info["stale"] is True
        assert info["age_seconds"] == pytest.approx(7200)


class TestFileSnapshotStore:

    def test_write_read_delete(self, tmp_path):
        store = FileSnapshotStore(tmp_path / "state")

        store.write(CACHE_KEY, '{"a": 1}')

        assert (tmp_path / "state" / "market-data-cache.json").exists()
        assert store.read(CACHE_KEY) == '{"a": 1}'
        assert not any(p.suffix == ".tmp" for p in (tmp_path / "state").iterdir())

        store.delete(CACHE_KEY)
        assert store.read(CACHE_KEY) is None
        store.delete(CACHE_KEY)

    def test_overwrite_replaces_whole_blob(self, tmp_path):
        store = FileSnapshotStore(tmp_path)
        store.write(CACHE_KEY, "x" * 1000)
        store.write(CACHE_KEY, "short")
        assert store.read(CACHE_KEY) == "short"

    def test_cache_over_file_store(self, tmp_path):
        cache = SnapshotCache(FileSnapshotStore(tmp_path), clock=lambda: NOW)
        cache.save(snapshot_at(NOW))
        assert SnapshotCache(FileSnapshotStore(tmp_path), clock=lambda: NOW).load() is not None

    def test_clear(self, tmp_path):
        cache = SnapshotCache(FileSnapshotStore(tmp_path), clock=lambda: NOW)
        cache.save(snapshot_at(NOW))

        cache.clear()

        assert cache.load() is None
        assert not (tmp_path / "market-data-cache.json").exists()
