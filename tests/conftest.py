import os
import sys

import pytest
import pytest_asyncio

# Add src and tests to path so modules import the same way the app does
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))
sys.path.insert(0, os.path.dirname(__file__))

from config import Settings  # noqa: E402
from config_store import ConfigStore  # noqa: E402
from fakes import FakeLauncher, passthrough_selector, stub_inspector  # noqa: E402
from process_supervisor import ProcessSupervisor  # noqa: E402


@pytest.fixture
def test_settings(tmp_path):
    """Settings rooted in tmp_path with periodic work pushed far out."""
    return Settings(
        DATA_DIR=str(tmp_path / "data"),
        RECONNECT_DELAY=3600.0,
        MAX_BACKOFF_DELAY=3600.0,
        MAX_RECONNECT_ATTEMPTS=3,
        RESTART_GRACE_DELAY=0.0,
        STOP_TIMEOUT=0.2,
        INITIAL_HEALTH_CHECK_DELAY=3600.0,
        RESOLUTION_DETECT_DELAY=3600.0,
        STREAM_ANALYSIS_DELAY=3600.0,
        SCREENSHOT_INTERVAL=3600.0,
        SEGMENT_HEALTH_CHECK_INTERVAL=3600.0,
        HEALTH_CHECK_INTERVAL=3600.0,
        CLEANUP_INTERVAL=3600.0,
        RESUME_STREAMS_ON_STARTUP=False,
        API_TOKEN=None,
    )


@pytest.fixture
def store(test_settings):
    return ConfigStore(test_settings.config_path)


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest.fixture
def inspector():
    return stub_inspector()


@pytest.fixture
def selector():
    return passthrough_selector()


@pytest_asyncio.fixture
async def supervisor(test_settings, launcher, inspector, selector):
    sup = ProcessSupervisor(
        config=test_settings,
        launcher=launcher,
        inspector=inspector,
        variant_selector=selector
    )
    sup.initialize()
    yield sup
    await sup.shutdown()
