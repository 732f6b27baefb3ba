"""
Exponential-backoff reconnection for streams whose transcoder died.

Each backoff cycle consumes one attempt whether the source probe fails or the
automatic start goes ahead, so an unreachable source runs out of attempts after
MAX_RECONNECT_ATTEMPTS cycles and the stream is parked in error/failed until
someone starts it by hand.
"""

import logging
from datetime import timedelta
from typing import Awaitable, Callable, Dict, Optional

from config import settings as default_settings
from config_store import ConfigStore
from models import StreamHealth, StreamStatus, utc_now, utc_now_iso
from timers import RECONNECT, TimerBundle

logger = logging.getLogger(__name__)

MAX_RECONNECT_EXCEEDED = "max_reconnect_exceeded"


class ReconnectPolicy:
    def __init__(
        self,
        store: ConfigStore,
        timers_for: Callable[[str], TimerBundle],
        start_stream: Callable[[str], Awaitable[bool]],
        probe_source: Callable[[str], Awaitable[bool]],
        config=None
    ):
        """
        Args:
            store: Shared record store.
            timers_for: Returns the TimerBundle of a stream id.
            start_stream: Automatic start; must not reset the attempt counter.
            probe_source: Returns True when the stream's source answers.
            config: Settings object, the global settings by default.
        """
        self.store = store
        self.timers_for = timers_for
        self.start_stream = start_stream
        self.probe_source = probe_source
        self.config = config or default_settings
        self.attempts: Dict[str, int] = {}

    def backoff_delay(self, attempt: int) -> float:
        """Delay before the attempt-th retry (0-based)."""
        delay = self.config.RECONNECT_DELAY * (self.config.BACKOFF_FACTOR ** attempt)
        return min(delay, self.config.MAX_BACKOFF_DELAY)

    def attempt_count(self, stream_id: str) -> int:
        return self.attempts.get(stream_id, 0)

    def reset(self, stream_id: str) -> None:
        """Zero the counter and drop any pending retry."""
        self.attempts[stream_id] = 0
        self.timers_for(stream_id).cancel(RECONNECT)
        record = self.store.get(stream_id)
        if record:
            record.diagnostics.reconnect_attempt = 0
            record.diagnostics.next_reconnect_time = None

    def forget(self, stream_id: str) -> None:
        self.attempts.pop(stream_id, None)

    def schedule_reconnect(self, stream_id: str) -> Optional[float]:
        """
        Schedule the next retry for stream_id.

        Returns the backoff delay, or None when the attempt ceiling was reached
        (or the record is gone) and nothing was scheduled.
        """
        record = self.store.get(stream_id)
        if record is None:
            self.forget(stream_id)
            return None

        attempt = self.attempt_count(stream_id)
        max_attempts = self.config.MAX_RECONNECT_ATTEMPTS
        if attempt >= max_attempts:
            logger.error(
                f"Stream {stream_id} exceeded {max_attempts} reconnect attempts, giving up")
            record.status = StreamStatus.ERROR
            record.health = StreamHealth.FAILED
            record.diagnostics.health_check_status = MAX_RECONNECT_EXCEEDED
            record.diagnostics.next_reconnect_time = None
            record.updated_at = utc_now_iso()
            self.timers_for(stream_id).cancel(RECONNECT)
            self.store.save()
            return None

        delay = self.backoff_delay(attempt)
        self.attempts[stream_id] = attempt + 1
        record.diagnostics.reconnect_attempt = attempt + 1
        record.diagnostics.max_reconnect_attempts = max_attempts
        record.diagnostics.next_reconnect_time = (
            utc_now() + timedelta(seconds=delay)).isoformat()
        self.store.save()

        logger.info(
            f"Reconnecting stream {stream_id} in {delay:.1f}s "
            f"(attempt {attempt + 1}/{max_attempts})")
        self.timers_for(stream_id).call_later(
            RECONNECT, delay, lambda: self._attempt(stream_id))
        return delay

    async def _attempt(self, stream_id: str) -> None:
        record = self.store.get(stream_id)
        if record is None or record.status != StreamStatus.ERROR:
            logger.debug(f"Reconnect for {stream_id} no longer needed")
            return

        available = await self.probe_source(stream_id)

        # The record may have been deleted or restarted while probing
        record = self.store.get(stream_id)
        if record is None or record.status != StreamStatus.ERROR:
            return

        if not available:
            logger.warning(f"Source for stream {stream_id} still unavailable")
            self.schedule_reconnect(stream_id)
            return

        record.stats.restarts += 1
        record.stats.last_restart = utc_now_iso()
        record.diagnostics.next_reconnect_time = None
        self.store.save()

        logger.info(f"Source for stream {stream_id} is back, restarting")
        started = await self.start_stream(stream_id)
        if not started:
            record = self.store.get(stream_id)
            if record is not None and record.status == StreamStatus.ERROR:
                self.schedule_reconnect(stream_id)
