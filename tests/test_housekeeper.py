import os
import sys

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from housekeeper import Housekeeper
from models import StreamRecord, StreamStatus


def make_segments(path, count):
    os.makedirs(path, exist_ok=True)
    for i in range(count):
        with open(os.path.join(path, f"segment_{i:03d}.ts"), "wb") as f:
            f.write(b"\0")
    with open(os.path.join(path, "playlist.m3u8"), "w") as f:
        f.write("#EXTM3U\n")


@pytest.fixture
def settings_small(test_settings):
    test_settings.HLS_RETENTION_SEGMENTS = 3
    return test_settings


@pytest.fixture
def housekeeper(store, settings_small):
    return Housekeeper(store, config=settings_small)


class TestHousekeeper:
    """Test segment trimming and orphan removal"""

    def test_trims_stopped_stream_to_retention(self, store, housekeeper, settings_small):
        record = StreamRecord.create("News", "http://example.com/live.m3u8")
        store.put(record)
        stream_dir = os.path.join(settings_small.hls_dir, record.id)
        make_segments(stream_dir, 5)

        report = housekeeper.run_once()

        assert report.segments_removed == 2
        assert sorted(os.listdir(stream_dir)) == [
            "playlist.m3u8", "segment_002.ts", "segment_003.ts", "segment_004.ts"]

    def test_running_stream_untouched(self, store, housekeeper, settings_small):
        record = StreamRecord.create("News", "http://example.com/live.m3u8")
        record.status = StreamStatus.RUNNING
        store.put(record)
        stream_dir = os.path.join(settings_small.hls_dir, record.id)
        make_segments(stream_dir, 6)

        report = housekeeper.run_once()

        assert report.segments_removed == 0
        assert len([n for n in os.listdir(stream_dir) if n.endswith(".ts")]) == 6

    def test_removes_orphans(self, store, housekeeper, settings_small):
        record = StreamRecord.create("Kept", "http://example.com/live.m3u8")
        store.put(record)
        kept_dir = os.path.join(settings_small.hls_dir, record.id)
        orphan_dir = os.path.join(settings_small.hls_dir, "gone")
        make_segments(kept_dir, 1)
        make_segments(orphan_dir, 1)

        os.makedirs(settings_small.screenshots_dir, exist_ok=True)
        kept_preview = os.path.join(settings_small.screenshots_dir, f"{record.id}.jpg")
        orphan_preview = os.path.join(settings_small.screenshots_dir, "gone.jpg")
        for path in (kept_preview, orphan_preview):
            with open(path, "wb") as f:
                f.write(b"\xff\xd8")

        report = housekeeper.run_once()

        assert report.dirs_removed == 1
        assert report.screenshots_removed == 1
        assert os.path.isdir(kept_dir)
        assert not os.path.exists(orphan_dir)
        assert os.path.exists(kept_preview)
        assert not os.path.exists(orphan_preview)

    def test_missing_directories_are_fine(self, housekeeper):
        report = housekeeper.run_once()
        assert report.errors == 0
        assert report.dirs_removed == 0

    @pytest.mark.asyncio
    async def test_start_stop(self, housekeeper):
        await housekeeper.start()
        assert housekeeper._cleanup_task is not None
        await housekeeper.stop()
        assert housekeeper._cleanup_task is None
