import json
import os
import sys

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from config_store import ConfigStore
from models import (
    ErrorEvent, ErrorHistory, MAX_RECENT_ERRORS, StreamHealth, StreamRecord,
    StreamStatus, parse_timestamp
)


@pytest.fixture
def config_path(tmp_path):
    return str(tmp_path / "streams.json")


class TestStreamRecord:
    """Test StreamRecord serialization"""

    def test_create_defaults(self):
        record = StreamRecord.create("News", "http://example.com/live.m3u8")
        assert record.id
        assert record.status == StreamStatus.STOPPED
        assert record.health == StreamHealth.UNKNOWN
        assert record.stats.uptime == 0
        assert record.errors.total == 0
        assert parse_timestamp(record.created_at) is not None

    def test_to_dict_uses_enum_values(self):
        record = StreamRecord.create("News", "http://example.com/live.m3u8")
        record.status = StreamStatus.RUNNING
        record.health = StreamHealth.DEGRADED

        data = record.to_dict()

        assert data["status"] == "running"
        assert data["health"] == "degraded"
        json.dumps(data)

    def test_from_dict_ignores_unknown_keys(self):
        record = StreamRecord.from_dict({
            "id": "abc",
            "name": "Legacy",
            "url": "http://example.com/a.m3u8",
            "created_at": "2024-01-01T00:00:00+00:00",
            "status": "error",
            "legacy_field": 1,
            "stats": {"restarts": 4, "retired": True},
            "diagnostics": {"network_errors": 2, "something_else": "x"},
        })

        assert record.status == StreamStatus.ERROR
        assert record.stats.restarts == 4
        assert record.diagnostics.network_errors == 2
        assert record.stream_info.resolution is None


class TestErrorHistory:
    """Test bounded error history"""

    def test_recent_is_capped_and_chronological(self):
        history = ErrorHistory()
        for i in range(15):
            history.add(ErrorEvent(timestamp=f"t{i}", type="network", message=str(i)))

        assert history.total == 15
        assert history.by_type == {"network": 15}
        assert len(history.recent) == MAX_RECENT_ERRORS
        assert [e.message for e in history.recent] == [str(i) for i in range(5, 15)]

    def test_from_dict_trims_oversized_history(self):
        recent = [{"timestamp": f"t{i}", "type": "ffmpeg", "message": str(i)}
                  for i in range(12)]
        history = ErrorHistory.from_dict({"total": 12, "by_type": {"ffmpeg": 12},
                                          "recent": recent})
        assert len(history.recent) == MAX_RECENT_ERRORS
        assert history.recent[-1].message == "11"


class TestConfigStore:
    """Test ConfigStore persistence"""

    def test_missing_file_loads_empty(self, config_path):
        store = ConfigStore(config_path)
        assert store.load() == 0
        assert len(store) == 0

    def test_corrupt_file_loads_empty(self, config_path):
        with open(config_path, "w") as f:
            f.write("{not json")

        store = ConfigStore(config_path)
        assert store.load() == 0
        assert store.all() == []

    def test_save_and_reload(self, config_path):
        store = ConfigStore(config_path)
        record = StreamRecord.create("News", "http://example.com/live.m3u8")
        record.stats.restarts = 2
        record.stream_info.resolution = "720p"
        store.put(record)

        assert store.save() is True

        reloaded = ConfigStore(config_path)
        assert reloaded.load() == 1
        loaded = reloaded.get(record.id)
        assert loaded.name == "News"
        assert loaded.stats.restarts == 2
        assert loaded.stream_info.resolution == "720p"

    def test_save_document_shape(self, config_path):
        store = ConfigStore(config_path)
        record = StreamRecord.create("News", "http://example.com/live.m3u8")
        store.put(record)
        store.save()

        with open(config_path) as f:
            data = json.load(f)

        assert set(data.keys()) == {"streams", "updated_at"}
        assert data["streams"][record.id]["name"] == "News"

    def test_save_leaves_no_temp_files(self, tmp_path, config_path):
        store = ConfigStore(config_path)
        store.put(StreamRecord.create("News", "http://example.com/live.m3u8"))
        store.save()
        store.save()

        assert os.listdir(tmp_path) == ["streams.json"]

    def test_failed_save_keeps_previous_file(self, tmp_path, config_path):
        store = ConfigStore(config_path)
        first = StreamRecord.create("First", "http://example.com/1.m3u8")
        store.put(first)
        store.save()

        store.put(StreamRecord.create("Second", "http://example.com/2.m3u8"))
        with pytest.MonkeyPatch.context() as mp:
            def broken_replace(src, dst):
                raise OSError("disk full")
            mp.setattr(os, "replace", broken_replace)
            assert store.save() is False

        reloaded = ConfigStore(config_path)
        assert reloaded.load() == 1
        assert reloaded.get(first.id) is not None
        assert os.listdir(tmp_path) == ["streams.json"]

    def test_load_skips_bad_entries_and_fills_id(self, config_path):
        with open(config_path, "w") as f:
            json.dump({"streams": {
                "good": {"name": "Good", "url": "http://example.com/a.m3u8"},
                "bad": {"name": "Bad", "url": "http://x", "status": "exploding"},
            }}, f)

        store = ConfigStore(config_path)
        assert store.load() == 1
        assert store.get("good").id == "good"
        assert "bad" not in store

    def test_iteration_is_safe_while_removing(self, config_path):
        store = ConfigStore(config_path)
        records = [StreamRecord.create(f"S{i}", "http://example.com/a.m3u8")
                   for i in range(3)]
        for record in records:
            store.put(record)

        for record in store:
            store.remove(record.id)

        assert len(store) == 0
