import os
import sys
from unittest.mock import AsyncMock

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from config import Settings
from config_store import ConfigStore
from fakes import wait_until
from models import StreamHealth, StreamRecord, StreamStatus
from reconnect_policy import MAX_RECONNECT_EXCEEDED, ReconnectPolicy
from timers import RECONNECT, TimerBundle


def make_policy(tmp_path, probe_result=True, start_result=True, **overrides):
    config = Settings(DATA_DIR=str(tmp_path), **overrides)
    store = ConfigStore(config.config_path)
    record = StreamRecord.create("News", "http://example.com/live.m3u8")
    record.status = StreamStatus.ERROR
    store.put(record)

    bundles = {}

    def timers_for(stream_id):
        return bundles.setdefault(stream_id, TimerBundle(stream_id))

    policy = ReconnectPolicy(
        store,
        timers_for=timers_for,
        start_stream=AsyncMock(return_value=start_result),
        probe_source=AsyncMock(return_value=probe_result),
        config=config
    )
    return policy, store, record, timers_for


class TestBackoff:
    """Test backoff delay computation"""

    def test_default_sequence(self, tmp_path):
        policy, _, _, _ = make_policy(tmp_path)
        delays = [policy.backoff_delay(n) for n in range(8)]
        expected = [min(5.0 * 1.5 ** n, 60.0) for n in range(8)]
        assert delays == pytest.approx(expected)
        assert delays[0] == 5.0
        assert delays[-1] == 60.0

    def test_delay_is_capped(self, tmp_path):
        policy, _, _, _ = make_policy(tmp_path, MAX_BACKOFF_DELAY=10.0)
        assert policy.backoff_delay(20) == 10.0


class TestScheduleReconnect:
    """Test scheduling and the attempt ceiling"""

    @pytest.mark.asyncio
    async def test_schedules_timer_and_updates_diagnostics(self, tmp_path):
        policy, store, record, timers_for = make_policy(tmp_path)

        delay = policy.schedule_reconnect(record.id)

        assert delay == 5.0
        assert policy.attempt_count(record.id) == 1
        assert RECONNECT in timers_for(record.id)
        assert record.diagnostics.reconnect_attempt == 1
        assert record.diagnostics.max_reconnect_attempts == 10
        assert record.diagnostics.next_reconnect_time is not None

        timers_for(record.id).cancel_all()

    @pytest.mark.asyncio
    async def test_ceiling_marks_stream_failed(self, tmp_path):
        policy, store, record, timers_for = make_policy(
            tmp_path, MAX_RECONNECT_ATTEMPTS=2)
        policy.attempts[record.id] = 2

        assert policy.schedule_reconnect(record.id) is None

        assert record.status == StreamStatus.ERROR
        assert record.health == StreamHealth.FAILED
        assert record.diagnostics.health_check_status == MAX_RECONNECT_EXCEEDED
        assert RECONNECT not in timers_for(record.id)

    @pytest.mark.asyncio
    async def test_missing_record_schedules_nothing(self, tmp_path):
        policy, store, record, timers_for = make_policy(tmp_path)
        store.remove(record.id)

        assert policy.schedule_reconnect(record.id) is None
        assert len(timers_for(record.id)) == 0

    @pytest.mark.asyncio
    async def test_reset_cancels_pending_retry(self, tmp_path):
        policy, store, record, timers_for = make_policy(tmp_path)
        policy.schedule_reconnect(record.id)

        policy.reset(record.id)

        assert policy.attempt_count(record.id) == 0
        assert RECONNECT not in timers_for(record.id)
        assert record.diagnostics.reconnect_attempt == 0
        assert record.diagnostics.next_reconnect_time is None


class TestReconnectAttempts:
    """Test the probe-then-start retry cycle"""

    @pytest.mark.asyncio
    async def test_available_source_restarts_stream(self, tmp_path):
        policy, store, record, _ = make_policy(
            tmp_path, RECONNECT_DELAY=0.01, MAX_BACKOFF_DELAY=0.01)

        policy.schedule_reconnect(record.id)
        await wait_until(lambda: policy.start_stream.await_count == 1)

        policy.start_stream.assert_awaited_with(record.id)
        assert record.stats.restarts == 1
        assert record.stats.last_restart is not None
        # An automatic start does not reset the counter
        assert policy.attempt_count(record.id) == 1

    @pytest.mark.asyncio
    async def test_unavailable_source_exhausts_attempts(self, tmp_path):
        policy, store, record, timers_for = make_policy(
            tmp_path, probe_result=False,
            RECONNECT_DELAY=0.01, MAX_BACKOFF_DELAY=0.01, MAX_RECONNECT_ATTEMPTS=3)

        policy.schedule_reconnect(record.id)
        await wait_until(lambda: record.health == StreamHealth.FAILED)

        assert policy.probe_source.await_count == 3
        policy.start_stream.assert_not_awaited()
        assert record.diagnostics.health_check_status == MAX_RECONNECT_EXCEEDED
        assert RECONNECT not in timers_for(record.id)

    @pytest.mark.asyncio
    async def test_failed_start_schedules_next_attempt(self, tmp_path):
        policy, store, record, timers_for = make_policy(
            tmp_path, start_result=False,
            RECONNECT_DELAY=0.01, MAX_BACKOFF_DELAY=0.01, MAX_RECONNECT_ATTEMPTS=2)

        policy.schedule_reconnect(record.id)
        await wait_until(lambda: record.health == StreamHealth.FAILED)

        assert policy.start_stream.await_count == 2

    @pytest.mark.asyncio
    async def test_skips_when_stream_no_longer_in_error(self, tmp_path):
        policy, store, record, timers_for = make_policy(
            tmp_path, RECONNECT_DELAY=0.01, MAX_BACKOFF_DELAY=0.01)

        policy.schedule_reconnect(record.id)
        record.status = StreamStatus.STOPPED
        await wait_until(lambda: RECONNECT not in timers_for(record.id))

        policy.probe_source.assert_not_awaited()
        policy.start_stream.assert_not_awaited()
