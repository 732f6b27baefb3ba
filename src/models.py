"""
Stream records and the nested state they carry.

A StreamRecord is the unit persisted by the ConfigStore and mutated by the
supervisor, the reconnect policy and the health monitor. Records round-trip
through plain dicts (to_dict/from_dict) so the whole configuration can be
written as one JSON document.
"""

import uuid
from dataclasses import dataclass, field, asdict, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

# Sentinel written into stream_info fields that could not be determined
UNKNOWN = "UNKNOWN"

# Number of error events kept in StreamRecord.errors.recent
MAX_RECENT_ERRORS = 10
MAX_ERROR_MESSAGE_LENGTH = 500


class StreamStatus(str, Enum):
    """Lifecycle state of a stream."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    ERROR = "error"


class StreamHealth(str, Enum):
    """Derived quality signal, independent of the lifecycle state."""

    UNKNOWN = "unknown"
    GOOD = "good"
    DEGRADED = "degraded"
    POOR = "poor"
    FAILED = "failed"


class ErrorType(str, Enum):
    """Category tag attached to every recorded error."""

    NETWORK = "network"
    SOURCE = "source"
    FORMAT = "format"
    FFMPEG = "ffmpeg"
    SYSTEM = "system"
    SEGMENT = "segment"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp written by utc_now_iso(), None if unparsable."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _known_fields(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


@dataclass
class ErrorEvent:
    timestamp: str
    type: str
    message: str


@dataclass
class ErrorHistory:
    total: int = 0
    by_type: Dict[str, int] = field(default_factory=dict)
    recent: List[ErrorEvent] = field(default_factory=list)

    def add(self, event: ErrorEvent) -> None:
        """Append an event, evicting the oldest entries beyond MAX_RECENT_ERRORS."""
        self.total += 1
        self.by_type[event.type] = self.by_type.get(event.type, 0) + 1
        self.recent.append(event)
        if len(self.recent) > MAX_RECENT_ERRORS:
            self.recent = self.recent[-MAX_RECENT_ERRORS:]

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ErrorHistory":
        if not data:
            return cls()
        recent = [ErrorEvent(**_known_fields(ErrorEvent, e))
                  for e in data.get("recent") or []]
        return cls(
            total=data.get("total", 0),
            by_type=dict(data.get("by_type") or {}),
            recent=recent[-MAX_RECENT_ERRORS:]
        )


@dataclass
class StreamStats:
    uptime: int = 0
    restarts: int = 0
    last_error: Optional[str] = None
    last_restart: Optional[str] = None


@dataclass
class StreamDiagnostics:
    last_error_type: Optional[str] = None
    error_count: int = 0
    network_errors: int = 0
    source_errors: int = 0
    ffmpeg_errors: int = 0
    system_errors: int = 0
    segment_gaps: int = 0
    consecutive_error_type: Optional[str] = None
    consecutive_error_count: int = 0
    # Segment health check
    last_health_check: Optional[str] = None
    health_check_status: Optional[str] = None
    segment_count: int = 0
    latest_segment: Optional[str] = None
    latest_segment_age: Optional[int] = None
    # Verdict of the last segment check and when it ran; consulted by
    # classify_health to decide whether it outranks the error rate.
    segment_health: Optional[str] = None
    last_segment_check: Optional[str] = None
    # When analyze_stream_info last ran for the current process
    last_analysis: Optional[str] = None
    # Reconnection
    reconnect_attempt: int = 0
    max_reconnect_attempts: int = 0
    next_reconnect_time: Optional[str] = None
    # Source availability probe
    source_available: Optional[bool] = None
    source_check_in_progress: bool = False
    source_check_result: Optional[str] = None
    source_check_error: Optional[str] = None
    last_source_check: Optional[str] = None


@dataclass
class StreamInfo:
    resolution: Optional[str] = None
    raw_resolution: Optional[str] = None
    video_codec: Optional[str] = None
    audio_codec: Optional[str] = None
    bitrate: Optional[int] = None
    audio_bitrate: Optional[int] = None
    fps: Optional[float] = None


@dataclass
class StreamRecord:
    id: str
    name: str
    url: str
    created_at: str
    updated_at: Optional[str] = None
    status: StreamStatus = StreamStatus.STOPPED
    health: StreamHealth = StreamHealth.UNKNOWN
    stats: StreamStats = field(default_factory=StreamStats)
    diagnostics: StreamDiagnostics = field(default_factory=StreamDiagnostics)
    errors: ErrorHistory = field(default_factory=ErrorHistory)
    stream_info: StreamInfo = field(default_factory=StreamInfo)
    hls_path: Optional[str] = None
    selected_resolution: Optional[str] = None
    screenshot_path: Optional[str] = None
    screenshot_timestamp: Optional[str] = None
    resolution_check_count: int = 0

    @classmethod
    def create(cls, name: str, url: str) -> "StreamRecord":
        return cls(id=str(uuid.uuid4()), name=name, url=url,
                   created_at=utc_now_iso())

    @property
    def is_running(self) -> bool:
        return self.status == StreamStatus.RUNNING

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["health"] = self.health.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StreamRecord":
        values = _known_fields(cls, data)
        values["status"] = StreamStatus(values.get("status") or "stopped")
        values["health"] = StreamHealth(values.get("health") or "unknown")
        values["stats"] = StreamStats(
            **_known_fields(StreamStats, data.get("stats") or {}))
        values["diagnostics"] = StreamDiagnostics(
            **_known_fields(StreamDiagnostics, data.get("diagnostics") or {}))
        values["errors"] = ErrorHistory.from_dict(data.get("errors"))
        values["stream_info"] = StreamInfo(
            **_known_fields(StreamInfo, data.get("stream_info") or {}))
        if not values.get("created_at"):
            values["created_at"] = utc_now_iso()
        return cls(**values)
