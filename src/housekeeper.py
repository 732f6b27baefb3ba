import asyncio
import logging
import os
import shutil
from dataclasses import dataclass
from typing import Optional

from config import settings as default_settings
from config_store import ConfigStore
from models import StreamStatus

logger = logging.getLogger(__name__)

SCREENSHOT_SUFFIX = ".jpg"


@dataclass
class CleanupReport:
    segments_removed: int = 0
    dirs_removed: int = 0
    screenshots_removed: int = 0
    errors: int = 0


class Housekeeper:
    """
    Periodic disk cleanup for segment output and preview images.

    Segment directories of streams that are not running are trimmed to the
    newest HLS_RETENTION_SEGMENTS files; directories and previews whose stream
    id is no longer configured are removed. File errors are logged and
    skipped so one bad entry never stops the sweep.
    """

    def __init__(self, store: ConfigStore, config=None):
        self.store = store
        self.config = config or default_settings
        self._running = False
        self._cleanup_task: Optional[asyncio.Task] = None

    def run_once(self) -> CleanupReport:
        report = CleanupReport()
        self._trim_segments(report)
        self._remove_orphans(report)
        if report.segments_removed or report.dirs_removed or report.screenshots_removed:
            logger.info(
                f"Cleanup complete: removed {report.segments_removed} segments, "
                f"{report.dirs_removed} orphaned dirs, "
                f"{report.screenshots_removed} orphaned previews "
                f"({report.errors} errors)")
        return report

    def _list_dir(self, path: str, report: CleanupReport):
        if not os.path.isdir(path):
            return []
        try:
            return os.listdir(path)
        except Exception as e:
            logger.warning(f"Failed to list {path}: {e}")
            report.errors += 1
            return []

    def _trim_segments(self, report: CleanupReport) -> None:
        hls_dir = self.config.hls_dir
        retention = self.config.HLS_RETENTION_SEGMENTS
        for entry in self._list_dir(hls_dir, report):
            stream_dir = os.path.join(hls_dir, entry)
            if not os.path.isdir(stream_dir):
                continue

            record = self.store.get(entry)
            if record is not None and record.status == StreamStatus.RUNNING:
                # The transcoder rotates its own segments
                continue

            segments = sorted(
                name for name in self._list_dir(stream_dir, report)
                if name.endswith(".ts"))
            if len(segments) <= retention:
                continue

            for name in segments[:len(segments) - retention]:
                path = os.path.join(stream_dir, name)
                try:
                    os.remove(path)
                    report.segments_removed += 1
                except Exception as e:
                    logger.warning(f"Failed to remove segment {path}: {e}")
                    report.errors += 1

    def _remove_orphans(self, report: CleanupReport) -> None:
        hls_dir = self.config.hls_dir
        for entry in self._list_dir(hls_dir, report):
            stream_dir = os.path.join(hls_dir, entry)
            if entry in self.store or not os.path.isdir(stream_dir):
                continue
            try:
                shutil.rmtree(stream_dir)
                report.dirs_removed += 1
                logger.info(f"Removed orphaned HLS dir: {stream_dir}")
            except Exception as e:
                logger.warning(f"Failed to remove HLS dir {stream_dir}: {e}")
                report.errors += 1

        screenshots_dir = self.config.screenshots_dir
        for entry in self._list_dir(screenshots_dir, report):
            if not entry.endswith(SCREENSHOT_SUFFIX):
                continue
            stream_id = entry[:-len(SCREENSHOT_SUFFIX)]
            if stream_id in self.store:
                continue
            path = os.path.join(screenshots_dir, entry)
            try:
                os.remove(path)
                report.screenshots_removed += 1
                logger.info(f"Removed orphaned preview: {path}")
            except Exception as e:
                logger.warning(f"Failed to remove preview {path}: {e}")
                report.errors += 1

    async def start(self):
        if self._running:
            return
        self._running = True
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def stop(self):
        self._running = False
        if self._cleanup_task and not self._cleanup_task.done():
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
        self._cleanup_task = None

    async def _cleanup_loop(self):
        while self._running:
            try:
                await asyncio.sleep(self.config.CLEANUP_INTERVAL)
                self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Cleanup error: {e}")
