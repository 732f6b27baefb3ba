"""
Health tracking for supervised streams.

Health is a quality signal kept apart from the lifecycle status. Two triggers
feed it: errors (from stderr, process exits and failed checks) and periodic
inspections of the segment directory the transcoder writes. Both go through
classify_health() so the two never disagree about precedence.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional

import m3u8

from config import settings as default_settings
from config_store import ConfigStore
from errors import ProbeError
from media_inspector import MediaInspector, parse_frame_rate, resolution_label
from models import (
    ErrorEvent, ErrorType, MAX_ERROR_MESSAGE_LENGTH, StreamHealth, StreamRecord,
    StreamStatus, UNKNOWN, parse_timestamp, utc_now, utc_now_iso
)

logger = logging.getLogger(__name__)

PLAYLIST_NAME = "playlist.m3u8"
SEGMENT_SUFFIX = ".ts"

# health_check_status values written by the segment check
STATUS_HEALTHY = "Healthy"
STATUS_NO_PLAYLIST = "No playlist"
STATUS_NO_SEGMENTS = "No segments"
STATUS_NO_SEGMENT_FILES = "No segment files"
STATUS_STALE = "Stale segments"
STATUS_CHECK_ERROR = "Check error"

CONSECUTIVE_ERROR_THRESHOLD = 3

_ERROR_COUNTERS = {
    ErrorType.NETWORK.value: "network_errors",
    ErrorType.SOURCE.value: "source_errors",
    ErrorType.FFMPEG.value: "ffmpeg_errors",
    ErrorType.SYSTEM.value: "system_errors",
    ErrorType.SEGMENT.value: "segment_gaps",
}


@dataclass
class SegmentFile:
    name: str
    path: str
    mtime: float
    size: int


def list_segments(hls_path: str) -> List[SegmentFile]:
    """Segment files in hls_path, newest first."""
    segments = []
    for name in os.listdir(hls_path):
        if not name.endswith(SEGMENT_SUFFIX):
            continue
        path = os.path.join(hls_path, name)
        try:
            stat = os.stat(path)
        except FileNotFoundError:
            # Rotated away by the transcoder between listdir and stat
            continue
        segments.append(SegmentFile(name, path, stat.st_mtime, stat.st_size))
    segments.sort(key=lambda s: s.mtime, reverse=True)
    return segments


def resolution_from_dimensions(value: Optional[str]) -> Optional[str]:
    """'1280x720' -> '720p'."""
    if not value or "x" not in value:
        return None
    try:
        return resolution_label(int(value.lower().split("x", 1)[1]))
    except ValueError:
        return None


def resolution_from_bandwidth(bandwidth: int) -> str:
    if bandwidth > 5_000_000:
        return "1080p"
    if bandwidth > 2_500_000:
        return "720p"
    if bandwidth > 1_000_000:
        return "480p"
    return "360p"


def resolution_from_segment_size(avg_size: float) -> str:
    if avg_size > 2_000_000:
        return "1080p"
    if avg_size > 1_000_000:
        return "720p"
    if avg_size > 500_000:
        return "480p"
    return "360p"


def classify_health(
    status: StreamStatus,
    current: StreamHealth,
    recent_errors: Iterable[ErrorEvent],
    segment_verdict: Optional[str],
    segment_checked_at: Optional[str],
    now: Optional[datetime] = None,
    window_seconds: float = 300.0
) -> StreamHealth:
    """
    Derive a stream's health.

    A stream that is not running keeps its current health. For a running
    stream the latest segment-check verdict wins when it is at least as new as
    the newest error inside the window; otherwise the number of errors in the
    window decides: none is good, one or two degraded, more poor.
    """
    if status != StreamStatus.RUNNING:
        return current

    now = now or utc_now()
    cutoff = now - timedelta(seconds=window_seconds)
    window = []
    for event in recent_errors:
        ts = parse_timestamp(event.timestamp)
        if ts is not None and ts > cutoff:
            window.append(ts)

    checked_at = parse_timestamp(segment_checked_at)
    if segment_verdict and checked_at is not None:
        if not window or checked_at >= max(window):
            return StreamHealth(segment_verdict)

    if not window:
        return StreamHealth.GOOD
    if len(window) <= 2:
        return StreamHealth.DEGRADED
    return StreamHealth.POOR


class HealthMonitor:
    def __init__(
        self,
        store: ConfigStore,
        inspector: Optional[MediaInspector] = None,
        config=None,
        on_segments_healthy: Optional[Callable[[str], None]] = None
    ):
        self.store = store
        self.config = config or default_settings
        self.inspector = inspector or MediaInspector(self.config)
        self.on_segments_healthy = on_segments_healthy
        self._running = False
        self._health_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Errors and classification

    def record_error(self, stream_id: str, error_type, message: str) -> None:
        record = self.store.get(stream_id)
        if record is None:
            return

        type_value = ErrorType(error_type).value
        message = str(message)
        record.errors.add(ErrorEvent(
            timestamp=utc_now_iso(),
            type=type_value,
            message=message[:MAX_ERROR_MESSAGE_LENGTH]
        ))

        diag = record.diagnostics
        diag.last_error_type = type_value
        diag.error_count += 1
        counter = _ERROR_COUNTERS.get(type_value)
        if counter:
            setattr(diag, counter, getattr(diag, counter) + 1)

        if diag.consecutive_error_type == type_value:
            diag.consecutive_error_count += 1
        else:
            diag.consecutive_error_type = type_value
            diag.consecutive_error_count = 1
        if diag.consecutive_error_count == CONSECUTIVE_ERROR_THRESHOLD:
            logger.warning(
                f"[{record.name}] {CONSECUTIVE_ERROR_THRESHOLD} consecutive "
                f"{type_value} errors")

        record.stats.last_error = f"[{type_value}] {message[:200]}"
        record.updated_at = utc_now_iso()
        self._reclassify(record)

        logger.warning(f"[{record.name}] {type_value} error: {message}")
        self.store.save()

    def _reclassify(self, record: StreamRecord) -> StreamHealth:
        record.health = classify_health(
            record.status,
            record.health,
            record.errors.recent,
            record.diagnostics.segment_health,
            record.diagnostics.last_segment_check,
            window_seconds=self.config.ERROR_WINDOW_SECONDS
        )
        return record.health

    def refresh_health(self, stream_id: str) -> Optional[StreamHealth]:
        record = self.store.get(stream_id)
        if record is None:
            return None
        return self._reclassify(record)

    def _segment_verdict(self, record: StreamRecord, status: str,
                         health: StreamHealth) -> None:
        record.diagnostics.health_check_status = status
        record.diagnostics.segment_health = health.value
        record.diagnostics.last_segment_check = utc_now_iso()
        self._reclassify(record)

    # ------------------------------------------------------------------
    # Segment inspection

    def check_segments(self, stream_id: str) -> Optional[str]:
        """
        Inspect the segment output of a running stream.

        Returns the health_check_status written, or None if the stream is
        unknown or not running.
        """
        record = self.store.get(stream_id)
        if record is None or record.status != StreamStatus.RUNNING:
            return None

        diag = record.diagnostics
        try:
            if not record.hls_path:
                record.hls_path = os.path.join(self.config.hls_dir, stream_id)
            hls_path = record.hls_path
            os.makedirs(hls_path, exist_ok=True)
            diag.last_health_check = utc_now_iso()

            playlist_path = os.path.join(hls_path, PLAYLIST_NAME)
            if not os.path.exists(playlist_path):
                self.record_error(stream_id, ErrorType.SEGMENT, "Playlist file not found")
                self._segment_verdict(record, STATUS_NO_PLAYLIST, StreamHealth.POOR)
                return self._finish_check(record)

            with open(playlist_path, "r", encoding="utf-8", errors="ignore") as f:
                playlist = m3u8.loads(f.read())
            diag.segment_count = len(playlist.segments)
            if diag.segment_count == 0:
                self.record_error(stream_id, ErrorType.SEGMENT, "No segments in playlist")
                self._segment_verdict(record, STATUS_NO_SEGMENTS, StreamHealth.POOR)
                return self._finish_check(record)

            segments = list_segments(hls_path)
            if not segments:
                self.record_error(
                    stream_id, ErrorType.SEGMENT, "No segment files in directory")
                self._segment_verdict(record, STATUS_NO_SEGMENT_FILES, StreamHealth.POOR)
                return self._finish_check(record)

            latest = segments[0]
            age = max(0.0, utc_now().timestamp() - latest.mtime)
            diag.latest_segment = latest.name
            diag.latest_segment_age = round(age)

            if age > self.config.max_segment_age:
                self.record_error(
                    stream_id, ErrorType.SEGMENT,
                    f"Latest segment is too old ({round(age)}s)")
                self._segment_verdict(record, STATUS_STALE, StreamHealth.POOR)
                return self._finish_check(record)

            self._segment_verdict(record, STATUS_HEALTHY, StreamHealth.GOOD)
            if self.on_segments_healthy:
                self.on_segments_healthy(stream_id)

            if not record.stream_info.resolution:
                resolution = self._detect_resolution(record)
                if resolution:
                    record.stream_info.resolution = resolution
                    logger.info(f"[{record.name}] Detected resolution: {resolution}")

        except Exception as e:
            logger.error(f"[{record.name}] Error checking segment health: {e}")
            self.record_error(stream_id, ErrorType.SYSTEM, f"Health check error: {e}")
            self._segment_verdict(record, STATUS_CHECK_ERROR, StreamHealth.POOR)

        return self._finish_check(record)

    def _finish_check(self, record: StreamRecord) -> str:
        self.store.save()
        return record.diagnostics.health_check_status

    # ------------------------------------------------------------------
    # Source availability

    async def test_source_url(self, stream_id: str) -> bool:
        """Probe the record's source URL. Returns True when ffprobe can read it."""
        record = self.store.get(stream_id)
        if record is None:
            return False

        url = record.url
        logger.info(f"Testing source URL for stream {stream_id}: {url}")
        record.diagnostics.last_source_check = utc_now_iso()
        record.diagnostics.source_check_in_progress = True
        self.store.save()

        result, error = "success", None
        try:
            await self.inspector.probe(
                url, "format=duration", timeout=self.config.SOURCE_CHECK_TIMEOUT)
        except asyncio.CancelledError:
            interrupted = self.store.get(stream_id)
            if interrupted is not None:
                interrupted.diagnostics.source_check_in_progress = False
                self.store.save()
            raise
        except ProbeError as e:
            result = "timeout" if e.timed_out else "failed"
            error = (e.stderr or str(e))[:200]
        except Exception as e:
            result, error = "error", str(e)[:200]

        record = self.store.get(stream_id)
        if record is None:
            logger.debug(f"Stream {stream_id} deleted during source check")
            return False

        available = result == "success"
        diag = record.diagnostics
        diag.source_check_in_progress = False
        diag.source_available = available
        diag.source_check_result = result
        diag.source_check_error = error
        self.store.save()

        if available:
            logger.info(f"Source URL for stream {stream_id} is valid")
        else:
            logger.warning(
                f"Source URL for stream {stream_id} unavailable ({result}): {error}")
        return available

    # ------------------------------------------------------------------
    # Stream info enrichment

    def _read_output_playlist(self, hls_path: str) -> Optional[m3u8.M3U8]:
        playlist_path = os.path.join(hls_path, PLAYLIST_NAME)
        if not os.path.exists(playlist_path):
            return None
        with open(playlist_path, "r", encoding="utf-8", errors="ignore") as f:
            return m3u8.loads(f.read())

    def _estimate_bitrate(self, segments: List[SegmentFile]) -> Optional[int]:
        if len(segments) < 2:
            return None
        samples = segments[:3]
        total = sum(s.size for s in samples)
        per_second = total / (len(samples) * self.config.HLS_SEGMENT_TIME)
        return round(per_second * 8)

    async def analyze_stream_info(self, stream_id: str) -> bool:
        """
        Fill in stream_info for a running stream from its playlist header, an
        ffprobe of the newest segment and segment sizes. Partial results are
        persisted even when a step fails.
        """
        record = self.store.get(stream_id)
        if record is None or record.status != StreamStatus.RUNNING:
            return False
        hls_path = record.hls_path
        if not hls_path or not os.path.isdir(hls_path):
            logger.warning(f"[{record.name}] HLS path not found for analysis: {hls_path}")
            return False

        record.diagnostics.last_analysis = utc_now_iso()
        info = record.stream_info
        try:
            logger.info(f"[{record.name}] Starting stream analysis")
            playlist = self._read_output_playlist(hls_path)
            if playlist is not None and playlist.is_variant and playlist.playlists:
                variant_info = playlist.playlists[0].stream_info
                if variant_info.bandwidth:
                    info.bitrate = variant_info.bandwidth
                if variant_info.codecs:
                    codecs = [c.strip() for c in variant_info.codecs.split(",")]
                    info.video_codec = codecs[0]
                    if len(codecs) > 1:
                        info.audio_codec = codecs[1]

            segments = list_segments(hls_path)
            if segments and not (info.video_codec and info.audio_codec and info.bitrate):
                try:
                    data = await self.inspector.probe(
                        segments[0].path,
                        "stream=codec_name,codec_type,width,height,bit_rate,avg_frame_rate"
                    )
                    self._apply_segment_probe(record, data)
                except ProbeError as e:
                    logger.warning(f"[{record.name}] ffprobe of {segments[0].name} failed: {e}")

            # The probe awaited; the stream may be gone now
            record = self.store.get(stream_id)
            if record is None:
                return False
            info = record.stream_info

            if not info.bitrate:
                estimate = self._estimate_bitrate(list_segments(hls_path))
                if estimate:
                    info.bitrate = estimate
                    logger.info(f"[{record.name}] Estimated bitrate from segment size: {estimate} bps")

            if not info.video_codec:
                info.video_codec = UNKNOWN
            if not info.resolution:
                info.resolution = UNKNOWN
            if not info.fps:
                info.fps = 0

            self.store.save()
            logger.info(f"[{record.name}] Stream analysis complete")
            return True
        except Exception as e:
            logger.error(f"[{record.name}] Error analyzing stream: {e}")
            self.store.save()
            return False

    def _apply_segment_probe(self, record: StreamRecord, data: dict) -> None:
        info = record.stream_info
        streams = data.get("streams") or []
        video = next((s for s in streams if s.get("codec_type") == "video"), None)
        audio = next((s for s in streams if s.get("codec_type") == "audio"), None)

        if video:
            if video.get("codec_name"):
                info.video_codec = video["codec_name"].upper()
            if video.get("width") and video.get("height"):
                info.raw_resolution = f"{video['width']}x{video['height']}"
                info.resolution = resolution_label(int(video["height"]))
            if video.get("bit_rate"):
                info.bitrate = int(video["bit_rate"])
            fps = parse_frame_rate(video.get("avg_frame_rate"))
            if fps:
                info.fps = fps
        else:
            logger.warning(f"[{record.name}] No video stream found in ffprobe data")

        if audio:
            if audio.get("codec_name"):
                info.audio_codec = audio["codec_name"].upper()
            if audio.get("bit_rate"):
                info.audio_bitrate = int(audio["bit_rate"])

    def _detect_resolution(self, record: StreamRecord) -> Optional[str]:
        if not record.hls_path or not os.path.isdir(record.hls_path):
            return None

        if record.selected_resolution:
            return (resolution_from_dimensions(record.selected_resolution)
                    or record.selected_resolution)

        playlist = self._read_output_playlist(record.hls_path)
        if playlist is None:
            return None
        if playlist.is_variant and playlist.playlists:
            stream_info = playlist.playlists[0].stream_info
            if stream_info.resolution:
                return resolution_label(stream_info.resolution[1])
            if stream_info.bandwidth:
                return resolution_from_bandwidth(stream_info.bandwidth)

        samples = list_segments(record.hls_path)[:3]
        if samples:
            avg_size = sum(s.size for s in samples) / len(samples)
            return resolution_from_segment_size(avg_size)
        return None

    def detect_resolution(self, stream_id: str) -> Optional[str]:
        """Best-effort resolution label, stored in stream_info.resolution."""
        record = self.store.get(stream_id)
        if record is None:
            return None
        try:
            resolution = self._detect_resolution(record)
        except Exception as e:
            logger.error(f"[{record.name}] Error analyzing stream resolution: {e}")
            return None
        if resolution and resolution != record.stream_info.resolution:
            record.stream_info.resolution = resolution
            logger.info(f"[{record.name}] Detected resolution: {resolution}")
            self.store.save()
        return resolution

    # ------------------------------------------------------------------
    # Fleet-wide periodic check

    async def run_fleet_check(self) -> dict:
        records = self.store.all()
        counts = {status.value: 0 for status in StreamStatus}
        for record in records:
            counts[record.status.value] += 1
        logger.info(
            f"Health check: {len(records)} streams, {counts['running']} running, "
            f"{counts['error']} error, {counts['stopped']} stopped")

        now = utc_now()
        for record in records:
            if record.status != StreamStatus.RUNNING:
                continue
            self._reclassify(record)

            record.resolution_check_count += 1
            if record.resolution_check_count >= self.config.RESOLUTION_CHECK_EVERY:
                record.resolution_check_count = 0
                self.detect_resolution(record.id)

            last_check = parse_timestamp(record.diagnostics.last_source_check)
            stale = (last_check is None or
                     (now - last_check).total_seconds() > self.config.SOURCE_RECHECK_INTERVAL)
            if (record.health == StreamHealth.DEGRADED
                    and record.diagnostics.last_error_type == ErrorType.NETWORK.value
                    and stale):
                await self.test_source_url(record.id)

        self.store.save()
        return counts

    async def start(self):
        if self._running:
            return
        self._running = True
        self._health_task = asyncio.create_task(self._health_loop())

    async def stop(self):
        self._running = False
        if self._health_task and not self._health_task.done():
            self._health_task.cancel()
            try:
                await self._health_task
            except asyncio.CancelledError:
                pass
        self._health_task = None

    async def _health_loop(self):
        while self._running:
            try:
                await asyncio.sleep(self.config.HEALTH_CHECK_INTERVAL)
                await self.run_fleet_check()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Health check error: {e}")
