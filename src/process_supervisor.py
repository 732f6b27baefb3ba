"""
Supervisor for ffmpeg restream processes.

Owns the stream records (through ConfigStore), the process table and every
per-stream timer, and exposes the admin operations used by the API:
- start/stop/restart with at most one live transcoder per stream id
- automatic recovery via ReconnectPolicy when a transcoder dies
- health tracking via HealthMonitor and disk cleanup via Housekeeper
- import/export of the whole configuration
"""

import asyncio
import logging
import os
import shutil
import uuid
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
from urllib.parse import urlparse

from config import settings as default_settings
from config_store import ConfigStore
from diagnostics import build_diagnostics, health_summary
from errors import InvalidStreamError, StreamNotFoundError
from health_monitor import HealthMonitor, PLAYLIST_NAME
from housekeeper import Housekeeper
from media_inspector import Launcher, MediaInspector, resolution_label
from models import (
    ErrorType, StreamHealth, StreamRecord, StreamStatus, parse_timestamp,
    utc_now, utc_now_iso
)
from reconnect_policy import ReconnectPolicy
from timers import (
    INITIAL_HEALTH_CHECK, MONITOR, RESOLUTION_DETECT, SCREENSHOT,
    SEGMENT_HEALTH, TimerBundle
)
from variant_selector import VariantSelector

logger = logging.getLogger(__name__)

# Uptime is persisted every this many seconds of running time
UPTIME_SAVE_INTERVAL = 300
# Diagnostics requests re-run stream analysis when the last check is older
DIAGNOSTICS_REANALYZE_AFTER = timedelta(minutes=2)

IMPORT_MODES = ("append", "overwrite")

_STDERR_PREFIXES = {
    ErrorType.NETWORK: "Connection error",
    ErrorType.SOURCE: "Source error",
    ErrorType.FORMAT: "Format error",
    ErrorType.FFMPEG: "FFmpeg error",
}


def classify_stderr_line(line: str) -> Optional[ErrorType]:
    """Map an ffmpeg stderr line to an error category, None for non-errors."""
    lower = line.lower()
    if "error" not in lower and "failed" not in lower:
        return None
    if "connection refused" in lower or "connection reset" in lower:
        return ErrorType.NETWORK
    if "403" in line or "404" in line:
        return ErrorType.SOURCE
    if "invalid data" in lower or "error while decoding" in lower:
        return ErrorType.FORMAT
    return ErrorType.FFMPEG


def validate_stream_input(name: Optional[str], url: Optional[str]) -> None:
    if not name or not str(name).strip():
        raise InvalidStreamError("Stream name is required")
    if not url or not str(url).strip():
        raise InvalidStreamError("Stream URL is required")
    parsed = urlparse(str(url).strip())
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvalidStreamError(f"Invalid stream URL: {url}")


class StreamProcess:
    """
    One running transcoder and the two tasks that watch it.

    The stderr task classifies error lines; the exit task reports an exit
    that was not requested through stop().
    """

    CHUNK_SIZE = 4096
    MAX_BUFFER = 1024 * 1024

    def __init__(
        self,
        stream_id: str,
        process: asyncio.subprocess.Process,
        on_error: Callable[[str, ErrorType, str], None],
        on_exit: Callable[["StreamProcess", Optional[int]], Awaitable[None]]
    ):
        self.stream_id = stream_id
        self.process = process
        self.on_error = on_error
        self.on_exit = on_exit
        self._stopping = False
        self._monitor_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    @property
    def stopping(self) -> bool:
        return self._stopping

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    def attach(self) -> None:
        self._stderr_task = asyncio.create_task(self._log_stderr())
        self._monitor_task = asyncio.create_task(self._monitor_process())

    async def stop(self, timeout: float) -> None:
        """SIGTERM, wait up to timeout, then SIGKILL."""
        self._stopping = True
        if self.process.returncode is None:
            try:
                self.process.terminate()
                try:
                    await asyncio.wait_for(self.process.wait(), timeout=timeout)
                except asyncio.TimeoutError:
                    logger.warning(
                        f"Stream {self.stream_id} did not terminate gracefully, killing")
                    self.process.kill()
                    await self.process.wait()
            except ProcessLookupError:
                pass  # Process already dead

        current = asyncio.current_task()
        for task in [self._monitor_task, self._stderr_task]:
            if task and not task.done() and task is not current:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    def _handle_line(self, line: str) -> None:
        error_type = classify_stderr_line(line)
        if error_type is None:
            return
        logger.error(f"Stream {self.stream_id} ffmpeg: {line}")
        self.on_error(
            self.stream_id, error_type,
            f"{_STDERR_PREFIXES[error_type]}: {line[:100]}")

    async def _log_stderr(self):
        if not self.process.stderr:
            return

        # Buffer lines ourselves; ffmpeg progress output can exceed the
        # StreamReader line limit.
        buf = b""
        try:
            while True:
                chunk = await self.process.stderr.read(self.CHUNK_SIZE)
                if not chunk:
                    break
                buf += chunk
                while b"\n" in buf or b"\r" in buf:
                    line, buf = _split_line(buf)
                    line_str = line.decode("utf-8", errors="ignore").strip()
                    if line_str:
                        self._handle_line(line_str)
                if len(buf) > self.MAX_BUFFER:
                    buf = buf[-self.CHUNK_SIZE:]
            tail = buf.decode("utf-8", errors="ignore").strip()
            if tail:
                self._handle_line(tail)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Error reading ffmpeg stderr for {self.stream_id}: {e}")

    async def _monitor_process(self):
        try:
            returncode = await self.process.wait()
            if self._stopping:
                return
            await self.on_exit(self, returncode)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Error monitoring stream {self.stream_id}: {e}")


def _split_line(buf: bytes):
    positions = [p for p in (buf.find(b"\n"), buf.find(b"\r")) if p != -1]
    cut = min(positions)
    return buf[:cut], buf[cut + 1:]


class ProcessSupervisor:
    def __init__(
        self,
        config=None,
        launcher: Optional[Launcher] = None,
        inspector: Optional[MediaInspector] = None,
        variant_selector: Optional[VariantSelector] = None,
        store: Optional[ConfigStore] = None
    ):
        self.config = config or default_settings
        self.launcher = launcher or asyncio.create_subprocess_exec
        self.inspector = inspector or MediaInspector(self.config)
        self.variant_selector = variant_selector or VariantSelector(self.config)
        self.store = store or ConfigStore(self.config.config_path)

        self.processes: Dict[str, StreamProcess] = {}
        self._timers: Dict[str, TimerBundle] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._background_tasks: Set[asyncio.Task] = set()
        self._started = False

        self.health = HealthMonitor(
            self.store,
            inspector=self.inspector,
            config=self.config,
            on_segments_healthy=self._on_segments_healthy
        )
        self.reconnect = ReconnectPolicy(
            self.store,
            timers_for=self.timers_for,
            start_stream=self._auto_start,
            probe_source=self.health.test_source_url,
            config=self.config
        )
        self.housekeeper = Housekeeper(self.store, config=self.config)

    # ------------------------------------------------------------------
    # Supervisor lifecycle

    def initialize(self) -> List[str]:
        """
        Create data directories and load the config.

        Records persisted in a live state have no process behind them after a
        restart, so they are reset to stopped. Returns the ids that were live.
        """
        for path in (self.config.DATA_DIR, self.config.hls_dir,
                     self.config.screenshots_dir):
            os.makedirs(path, exist_ok=True)

        self.store.load()
        interrupted = []
        for record in self.store:
            if record.status in (StreamStatus.RUNNING, StreamStatus.STARTING):
                interrupted.append(record.id)
                record.status = StreamStatus.STOPPED
                record.health = StreamHealth.UNKNOWN
        if interrupted:
            self.store.save()
        return interrupted

    async def start(self):
        if self._started:
            return
        interrupted = self.initialize()
        self._started = True
        await self.health.start()
        await self.housekeeper.start()
        logger.info(f"Process supervisor started with {len(self.store)} streams")

        if interrupted and self.config.RESUME_STREAMS_ON_STARTUP:
            logger.info(f"Resuming {len(interrupted)} interrupted streams")
            await asyncio.gather(*(self._safe_start(i) for i in interrupted))

    async def shutdown(self):
        logger.info("Shutting down process supervisor...")
        await self.health.stop()
        await self.housekeeper.stop()

        for record in self.store.all():
            if record.status == StreamStatus.RUNNING or record.id in self.processes:
                try:
                    await self.stop_stream(record.id)
                except Exception as e:
                    logger.error(f"Error stopping stream {record.id}: {e}")
        for bundle in self._timers.values():
            bundle.cancel_all()

        for task in list(self._background_tasks):
            task.cancel()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)

        await self.variant_selector.aclose()
        self._started = False
        logger.info("Process supervisor shutdown complete")

    # ------------------------------------------------------------------
    # Helpers

    def timers_for(self, stream_id: str) -> TimerBundle:
        bundle = self._timers.get(stream_id)
        if bundle is None:
            bundle = self._timers[stream_id] = TimerBundle(stream_id)
        return bundle

    def _lock_for(self, stream_id: str) -> asyncio.Lock:
        lock = self._locks.get(stream_id)
        if lock is None:
            lock = self._locks[stream_id] = asyncio.Lock()
        return lock

    def _require(self, stream_id: str) -> StreamRecord:
        record = self.store.get(stream_id)
        if record is None:
            raise StreamNotFoundError(stream_id)
        return record

    def _spawn_background(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    def hls_path_for(self, stream_id: str) -> str:
        return self._path_under(self.config.hls_dir, stream_id)

    def screenshot_path_for(self, stream_id: str) -> str:
        return self._path_under(self.config.screenshots_dir, f"{stream_id}.jpg")

    @staticmethod
    def _path_under(root: str, name: str) -> str:
        """Join name onto root, refusing anything that resolves outside root."""
        path = os.path.join(root, name)
        real_root = os.path.realpath(root)
        real_path = os.path.realpath(path)
        if os.path.dirname(real_path) != real_root:
            raise InvalidStreamError(f"Stream path escapes {root}: {name}")
        return path

    def _build_ffmpeg_command(self, url: str, hls_path: str) -> List[str]:
        return [
            self.config.FFMPEG_PATH,
            "-protocol_whitelist", "file,http,https,tcp,tls",
            "-user_agent", self.config.DEFAULT_USER_AGENT,
            "-i", url,
            "-c:v", "copy",
            "-c:a", "copy",
            "-f", "hls",
            "-hls_time", str(self.config.HLS_SEGMENT_TIME),
            "-hls_list_size", str(self.config.HLS_LIST_SIZE),
            "-hls_flags", "delete_segments",
            "-hls_segment_filename", os.path.join(hls_path, "segment_%03d.ts"),
            os.path.join(hls_path, PLAYLIST_NAME),
        ]

    def _on_segments_healthy(self, stream_id: str) -> None:
        if self.reconnect.attempt_count(stream_id):
            logger.info(f"Stream {stream_id} recovered, resetting reconnect attempts")
            self.reconnect.reset(stream_id)

    # ------------------------------------------------------------------
    # Start / stop / restart

    async def start_stream(self, stream_id: str) -> bool:
        """Explicit start. Resets the reconnect counter."""
        async with self._lock_for(stream_id):
            return await self._start_locked(stream_id, explicit=True)

    async def _auto_start(self, stream_id: str) -> bool:
        async with self._lock_for(stream_id):
            if stream_id not in self.store:
                return False
            return await self._start_locked(stream_id, explicit=False)

    async def _safe_start(self, stream_id: str) -> bool:
        try:
            return await self.start_stream(stream_id)
        except Exception as e:
            logger.error(f"Failed to start stream {stream_id}: {e}")
            return False

    async def _start_locked(self, stream_id: str, explicit: bool) -> bool:
        record = self._require(stream_id)
        if record.status == StreamStatus.RUNNING:
            logger.info(f"Stream {stream_id} is already running")
            return True

        hls_path = self.hls_path_for(stream_id)
        record.status = StreamStatus.STARTING
        # The previous run's segment verdict does not describe the new process
        record.diagnostics.segment_health = None
        record.diagnostics.last_segment_check = None
        record.diagnostics.last_analysis = None
        record.updated_at = utc_now_iso()
        self.store.save()

        try:
            os.makedirs(hls_path, exist_ok=True)
        except OSError as e:
            logger.error(f"Failed to create HLS dir {hls_path}: {e}")
        record.hls_path = hls_path

        if explicit:
            self.reconnect.reset(stream_id)

        try:
            selection = await self.variant_selector.resolve(record.url)
        except Exception as e:
            logger.warning(f"[{record.name}] Variant selection failed, using original URL: {e}")
            selection = None

        record = self.store.get(stream_id)
        if record is None:
            return False

        if selection is not None:
            record.url = selection.url
            if selection.resolution:
                record.selected_resolution = selection.resolution
                record.stream_info.resolution = resolution_label(selection.height)
                logger.info(
                    f"[{record.name}] Selected resolution: "
                    f"{record.stream_info.resolution} ({selection.resolution})")

        cmd = self._build_ffmpeg_command(record.url, hls_path)
        logger.info(f"Starting stream {stream_id}: {' '.join(cmd)}")
        try:
            process = await self.launcher(
                *cmd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE
            )
        except Exception as e:
            logger.error(f"Failed to start stream {stream_id}: {e}")
            record.status = StreamStatus.ERROR
            self.health.record_error(stream_id, ErrorType.SYSTEM, f"Failed to start: {e}")
            self.store.save()
            return False

        handle = StreamProcess(
            stream_id, process,
            on_error=self.health.record_error,
            on_exit=self._handle_exit
        )
        self.processes[stream_id] = handle
        record.status = StreamStatus.RUNNING
        record.updated_at = utc_now_iso()
        handle.attach()
        self._schedule_stream_timers(stream_id)
        self.store.save()

        logger.info(f"Stream {stream_id} started with PID {handle.pid}")
        return True

    def _schedule_stream_timers(self, stream_id: str) -> None:
        timers = self.timers_for(stream_id)
        timers.call_every(MONITOR, 1.0, lambda: self._tick_uptime(stream_id))
        timers.call_every(
            SCREENSHOT, self.config.SCREENSHOT_INTERVAL,
            lambda: self._capture_preview(stream_id))
        timers.call_every(
            SEGMENT_HEALTH, self.config.SEGMENT_HEALTH_CHECK_INTERVAL,
            lambda: self._check_segments(stream_id))
        timers.call_later(
            INITIAL_HEALTH_CHECK, self.config.INITIAL_HEALTH_CHECK_DELAY,
            lambda: self._check_segments(stream_id))
        timers.call_later(
            RESOLUTION_DETECT, self.config.RESOLUTION_DETECT_DELAY,
            lambda: self._detect_then_analyze(stream_id))

    async def _tick_uptime(self, stream_id: str):
        record = self.store.get(stream_id)
        if record is None or record.status != StreamStatus.RUNNING:
            return
        record.stats.uptime += 1
        if record.stats.uptime % UPTIME_SAVE_INTERVAL == 0:
            self.store.save()

    async def _check_segments(self, stream_id: str):
        self.health.check_segments(stream_id)

    async def _capture_preview(self, stream_id: str):
        await self.take_screenshot(stream_id)

    async def _detect_then_analyze(self, stream_id: str):
        self.health.detect_resolution(stream_id)
        await asyncio.sleep(self.config.STREAM_ANALYSIS_DELAY)
        await self.health.analyze_stream_info(stream_id)

    async def _handle_exit(self, handle: StreamProcess, returncode: Optional[int]):
        stream_id = handle.stream_id
        if self.processes.get(stream_id) is not handle:
            logger.debug(f"Ignoring exit of stale process for stream {stream_id}")
            return

        record = self.store.get(stream_id)
        if record is None or record.status != StreamStatus.RUNNING:
            self.processes.pop(stream_id, None)
            return

        logger.warning(f"Stream {stream_id} process exited with code {returncode}")
        # A negative return code means the process was killed by a signal
        error_type = (ErrorType.SYSTEM if returncode is not None and returncode < 0
                      else ErrorType.FFMPEG)
        self.health.record_error(
            stream_id, error_type, f"Process exited with code {returncode}")

        self.processes.pop(stream_id, None)
        self.timers_for(stream_id).cancel_all()
        record = self.store.get(stream_id)
        if record is None:
            return
        record.status = StreamStatus.ERROR
        record.updated_at = utc_now_iso()
        self.store.save()
        self.reconnect.schedule_reconnect(stream_id)

    async def stop_stream(self, stream_id: str) -> bool:
        async with self._lock_for(stream_id):
            return await self._stop_locked(stream_id)

    async def _stop_locked(self, stream_id: str) -> bool:
        record = self._require(stream_id)
        handle = self.processes.get(stream_id)
        if record.status == StreamStatus.STOPPED and handle is None:
            self.timers_for(stream_id).cancel_all()
            return True

        if handle is not None:
            await handle.stop(self.config.STOP_TIMEOUT)
            self.processes.pop(stream_id, None)

        self.timers_for(stream_id).cancel_all()

        record = self.store.get(stream_id)
        if record is None:
            return True
        record.status = StreamStatus.STOPPED
        record.health = StreamHealth.UNKNOWN
        record.diagnostics.next_reconnect_time = None
        record.diagnostics.segment_health = None
        record.diagnostics.last_segment_check = None
        record.diagnostics.source_check_in_progress = False
        record.updated_at = utc_now_iso()
        self.store.save()
        logger.info(f"Stream {stream_id} stopped")
        return True

    async def restart_stream(self, stream_id: str) -> bool:
        async with self._lock_for(stream_id):
            self._require(stream_id)
            await self._stop_locked(stream_id)
            await asyncio.sleep(self.config.RESTART_GRACE_DELAY)

            record = self._require(stream_id)
            record.stats.restarts = 0
            record.stats.last_restart = utc_now_iso()
            return await self._start_locked(stream_id, explicit=True)

    # ------------------------------------------------------------------
    # CRUD

    def list_streams(self) -> List[StreamRecord]:
        return self.store.all()

    def get_stream(self, stream_id: str) -> StreamRecord:
        return self._require(stream_id)

    def add_stream(self, name: str, url: str) -> StreamRecord:
        validate_stream_input(name, url)
        record = StreamRecord.create(name.strip(), url.strip())
        self.store.put(record)
        self.store.save()
        logger.info(f"Added stream {record.id} ({record.name})")
        return record

    async def update_stream(self, stream_id: str, name: Optional[str] = None,
                            url: Optional[str] = None) -> StreamRecord:
        async with self._lock_for(stream_id):
            record = self._require(stream_id)
            new_name = name if name is not None else record.name
            new_url = url if url is not None else record.url
            validate_stream_input(new_name, new_url)

            was_running = record.status == StreamStatus.RUNNING
            if was_running:
                await self._stop_locked(stream_id)

            record = self._require(stream_id)
            if new_url.strip() != record.url:
                record.selected_resolution = None
            record.name = new_name.strip()
            record.url = new_url.strip()
            record.updated_at = utc_now_iso()
            self.store.save()

            if was_running:
                await self._start_locked(stream_id, explicit=True)
            return self._require(stream_id)

    async def delete_stream(self, stream_id: str) -> bool:
        async with self._lock_for(stream_id):
            self._require(stream_id)
            await self._stop_locked(stream_id)
            self._remove_stream_files(stream_id)

            self.timers_for(stream_id).cancel_all()
            self._timers.pop(stream_id, None)
            self.reconnect.forget(stream_id)
            self.processes.pop(stream_id, None)
            self.store.remove(stream_id)
            self.store.save()
        self._locks.pop(stream_id, None)
        logger.info(f"Stream {stream_id} deleted with all associated files")
        return True

    def _remove_stream_files(self, stream_id: str) -> None:
        try:
            hls_path = self.hls_path_for(stream_id)
            screenshot = self.screenshot_path_for(stream_id)
        except InvalidStreamError as e:
            logger.error(f"Not deleting files for stream {stream_id}: {e}")
            return

        if os.path.isdir(hls_path):
            try:
                shutil.rmtree(hls_path)
            except Exception as e:
                logger.error(f"Error deleting HLS directory for stream {stream_id}: {e}")

        if os.path.exists(screenshot):
            try:
                os.remove(screenshot)
            except Exception as e:
                logger.error(f"Error deleting screenshot for stream {stream_id}: {e}")

    # ------------------------------------------------------------------
    # Import / export

    def export_config(self) -> Dict[str, Any]:
        return {"streams": self.store.to_dict()}

    async def import_config(self, payload: Dict[str, Any], mode: str = "overwrite",
                            start_streams: bool = True) -> List[str]:
        """
        Load streams from an exported config.

        Every entry is validated before anything changes. In overwrite mode all
        current streams are stopped and dropped first; in append mode entries
        whose id already exists are skipped. Returns the imported ids.
        """
        if mode not in IMPORT_MODES:
            raise InvalidStreamError(f"Invalid import mode: {mode}")
        streams = payload.get("streams") if isinstance(payload, dict) else None
        if not isinstance(streams, dict):
            raise InvalidStreamError("Invalid backup data")
        for key, entry in streams.items():
            if not (isinstance(entry, dict) and entry.get("id")
                    and entry.get("name") and entry.get("url")):
                raise InvalidStreamError(f"Invalid stream data in backup: {key}")
            try:
                uuid.UUID(str(entry["id"]))
            except ValueError:
                raise InvalidStreamError(f"Invalid stream id in backup: {entry['id']!r}")

        if mode == "overwrite":
            for record in self.store.all():
                if record.status != StreamStatus.STOPPED or record.id in self.processes:
                    await self.stop_stream(record.id)
            for stream_id in self.store.ids():
                self.timers_for(stream_id).cancel_all()
                self.reconnect.forget(stream_id)
            self._timers.clear()
            self.store.clear()

        imported = []
        for key, entry in streams.items():
            stream_id = entry["id"]
            if mode == "append" and stream_id in self.store:
                logger.info(f"Skipping existing stream with ID {stream_id} in append mode")
                continue
            record = StreamRecord.from_dict({
                "id": stream_id,
                "name": entry["name"],
                "url": entry["url"],
                "created_at": entry.get("created_at") or utc_now_iso(),
                "stream_info": entry.get("stream_info") or {},
                "resolution_check_count": entry.get("resolution_check_count") or 0,
            })
            self.store.put(record)
            imported.append(stream_id)

        self.store.save()
        logger.info(f"Imported {len(imported)} streams ({mode})")

        if start_streams and imported:
            await asyncio.gather(*(self._safe_start(i) for i in imported))
        return imported

    # ------------------------------------------------------------------
    # Inspection

    async def analyze_stream(self, stream_id: str) -> bool:
        record = self._require(stream_id)
        if record.status != StreamStatus.RUNNING:
            raise InvalidStreamError("Stream must be running to analyze")
        return await self.health.analyze_stream_info(stream_id)

    async def take_screenshot(self, stream_id: str) -> bool:
        record = self._require(stream_id)
        if record.status != StreamStatus.RUNNING:
            return False

        dest = self.screenshot_path_for(stream_id)
        try:
            await self.inspector.capture_frame(record.url, dest)
        except Exception as e:
            logger.error(f"[{record.name}] Failed to take screenshot: {e}")
            return False

        record = self.store.get(stream_id)
        if record is None:
            return False
        record.screenshot_path = dest
        record.screenshot_timestamp = utc_now_iso()
        self.store.save()
        logger.info(f"[{record.name}] Screenshot taken successfully")
        return True

    async def test_url(self, url: str) -> Dict[str, Any]:
        """Probe an arbitrary source and describe its first video stream."""
        validate_stream_input("test", url)
        probe = await self.inspector.probe_video(url)
        return probe.to_dict()

    def get_diagnostics(self, stream_id: str) -> Dict[str, Any]:
        record = self._require(stream_id)
        if record.status == StreamStatus.RUNNING:
            self.health.refresh_health(stream_id)
            last_analysis = parse_timestamp(record.diagnostics.last_analysis)
            if last_analysis is None or utc_now() - last_analysis > DIAGNOSTICS_REANALYZE_AFTER:
                self._spawn_background(self.health.analyze_stream_info(stream_id))

        attempts = self.reconnect.attempt_count(stream_id)
        backoff = self.reconnect.backoff_delay(attempts - 1) if attempts else 0
        return build_diagnostics(record, backoff_delay=backoff)

    def get_health_status(self) -> Dict[str, Any]:
        return health_summary(self.store.all())
