"""Read-only views over stream records for the admin API."""

from dataclasses import asdict
from typing import Any, Dict, Iterable, Optional

from models import StreamHealth, StreamRecord, StreamStatus


def build_diagnostics(record: StreamRecord,
                      backoff_delay: Optional[float] = None) -> Dict[str, Any]:
    """Point-in-time diagnostic snapshot of one stream."""
    diag = record.diagnostics
    errors = record.errors
    return {
        "id": record.id,
        "name": record.name,
        "status": record.status.value,
        "health": record.health.value,
        "uptime": record.stats.uptime or 0,
        "last_restart": record.stats.last_restart,
        "source": record.url,
        "segment_count": diag.segment_count or 0,
        "health_check_status": diag.health_check_status or "Unknown",
        "last_health_check": diag.last_health_check,
        "latest_segment": diag.latest_segment,
        "latest_segment_age": diag.latest_segment_age,
        "errors": {
            "total": errors.total,
            "by_type": dict(errors.by_type),
            "recent": [asdict(e) for e in errors.recent],
        },
        "reconnection": {
            "attempts": diag.reconnect_attempt or 0,
            "max_attempts": diag.max_reconnect_attempts or 0,
            "next_attempt": diag.next_reconnect_time,
            "backoff_delay": backoff_delay or 0,
        },
        "source_check": {
            "available": diag.source_available,
            "in_progress": diag.source_check_in_progress,
            "result": diag.source_check_result,
            "error": diag.source_check_error,
            "last_checked": diag.last_source_check,
        },
        "stats": asdict(record.stats),
        "diagnostics": asdict(diag),
        "stream_info": asdict(record.stream_info),
    }


def health_summary(records: Iterable[StreamRecord]) -> Dict[str, Any]:
    """Counts of streams by status and by health."""
    summary: Dict[str, Any] = {status.value: 0 for status in StreamStatus}
    summary["health"] = {health.value: 0 for health in StreamHealth}
    total = 0
    for record in records:
        total += 1
        summary[record.status.value] += 1
        summary["health"][record.health.value] += 1
    summary["total"] = total
    return summary
