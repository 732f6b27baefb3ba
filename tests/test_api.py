import os
import sys
from unittest.mock import AsyncMock, Mock, patch

import pytest
from fastapi.testclient import TestClient

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import api
from api import app
from config import VERSION
from errors import InvalidStreamError, ProbeError, StreamNotFoundError
from models import StreamHealth, StreamRecord, StreamStatus

SOURCE = "http://example.com/live.m3u8"


def make_record(status=StreamStatus.STOPPED, health=StreamHealth.UNKNOWN):
    record = StreamRecord.create("News", SOURCE)
    record.status = status
    record.health = health
    return record


class TestAPI:
    """Test FastAPI endpoints"""

    @pytest.fixture
    def client(self):
        return TestClient(app)

    @pytest.fixture
    def record(self):
        return make_record()

    @pytest.fixture
    def mock_supervisor(self, record):
        with patch('api.supervisor') as mock:
            mock.list_streams = Mock(return_value=[record])
            mock.get_stream = Mock(return_value=record)
            mock.add_stream = Mock(return_value=record)
            mock.update_stream = AsyncMock(return_value=record)
            mock.delete_stream = AsyncMock(return_value=True)
            mock.start_stream = AsyncMock(return_value=True)
            mock.stop_stream = AsyncMock(return_value=True)
            mock.restart_stream = AsyncMock(return_value=True)
            mock.analyze_stream = AsyncMock(return_value=True)
            mock.take_screenshot = AsyncMock(return_value=True)
            mock.test_url = AsyncMock(return_value={"resolution": "720p"})
            mock.get_diagnostics = Mock(return_value={"id": record.id, "status": "stopped"})
            mock.get_health_status = Mock(return_value={
                "stopped": 1, "starting": 0, "running": 0, "error": 0,
                "health": {}, "total": 1
            })
            mock.export_config = Mock(return_value={"streams": {record.id: record.to_dict()}})
            mock.import_config = AsyncMock(return_value=[record.id])
            yield mock

    def test_root_endpoint(self, client, mock_supervisor):
        response = client.get("/")
        assert response.status_code == 200
        data = response.json()
        assert data["version"] == VERSION
        assert data["streams"] == 1
        assert data["running"] == 0

    def test_health_endpoint(self, client, mock_supervisor):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["streams"]["total"] == 1

    def test_list_streams(self, client, mock_supervisor, record):
        response = client.get("/api/streams")
        assert response.status_code == 200
        assert response.json()[0]["id"] == record.id
        assert response.json()[0]["status"] == "stopped"

    def test_create_stream(self, client, mock_supervisor, record):
        response = client.post("/api/streams", json={"name": " News ", "url": f" {SOURCE} "})
        assert response.status_code == 200
        assert response.json()["id"] == record.id
        mock_supervisor.add_stream.assert_called_once_with("News", SOURCE)

    def test_create_stream_invalid(self, client, mock_supervisor):
        mock_supervisor.add_stream.side_effect = InvalidStreamError("Invalid stream URL: x")
        response = client.post("/api/streams", json={"name": "News", "url": "x"})
        assert response.status_code == 400

    def test_create_stream_missing_fields(self, client, mock_supervisor):
        response = client.post("/api/streams", json={"name": "News"})
        assert response.status_code == 422

    def test_get_stream_not_found(self, client, mock_supervisor):
        mock_supervisor.get_stream.side_effect = StreamNotFoundError("missing")
        response = client.get("/api/streams/missing")
        assert response.status_code == 404

    def test_update_stream(self, client, mock_supervisor, record):
        response = client.put(f"/api/streams/{record.id}", json={"name": "Renamed"})
        assert response.status_code == 200
        mock_supervisor.update_stream.assert_awaited_once_with(
            record.id, name="Renamed", url=None)

    def test_update_stream_not_found(self, client, mock_supervisor):
        mock_supervisor.update_stream.side_effect = StreamNotFoundError("missing")
        response = client.put("/api/streams/missing", json={"name": "Renamed"})
        assert response.status_code == 404

    def test_delete_stream(self, client, mock_supervisor, record):
        response = client.delete(f"/api/streams/{record.id}")
        assert response.status_code == 200
        assert response.json()["success"] is True

    def test_delete_stream_not_found(self, client, mock_supervisor):
        mock_supervisor.delete_stream.side_effect = StreamNotFoundError("missing")
        response = client.delete("/api/streams/missing")
        assert response.status_code == 404

    @pytest.mark.parametrize("action", ["start", "stop", "restart"])
    def test_lifecycle_actions(self, client, mock_supervisor, record, action):
        record.status = StreamStatus.RUNNING
        record.health = StreamHealth.GOOD

        response = client.post(f"/api/streams/{record.id}/{action}")

        assert response.status_code == 200
        assert response.json() == {"success": True, "status": "running", "health": "good"}
        getattr(mock_supervisor, f"{action}_stream").assert_awaited_once_with(record.id)

    def test_lifecycle_not_found(self, client, mock_supervisor):
        mock_supervisor.start_stream.side_effect = StreamNotFoundError("missing")
        response = client.post("/api/streams/missing/start")
        assert response.status_code == 404

    def test_lifecycle_unexpected_error(self, client, mock_supervisor):
        mock_supervisor.stop_stream.side_effect = RuntimeError("boom")
        response = client.post("/api/streams/abc/stop")
        assert response.status_code == 500
        assert response.json()["detail"] == "boom"

    def test_diagnostics(self, client, mock_supervisor, record):
        response = client.get(f"/api/streams/{record.id}/diagnostics")
        assert response.status_code == 200
        assert response.json()["id"] == record.id

    def test_analyze_not_running(self, client, mock_supervisor, record):
        mock_supervisor.analyze_stream.side_effect = InvalidStreamError(
            "Stream must be running to analyze")
        response = client.post(f"/api/streams/{record.id}/analyze")
        assert response.status_code == 400

    def test_analyze(self, client, mock_supervisor, record):
        response = client.post(f"/api/streams/{record.id}/analyze")
        assert response.status_code == 200
        assert response.json()["success"] is True
        assert "stream_info" in response.json()

    def test_screenshot(self, client, mock_supervisor, record):
        record.screenshot_path = f"/data/screenshots/{record.id}.jpg"
        response = client.post(f"/api/streams/{record.id}/screenshot")
        assert response.status_code == 200
        assert response.json()["screenshot_url"] == f"/api/screenshots/{record.id}.jpg"

    def test_screenshot_failure(self, client, mock_supervisor, record):
        mock_supervisor.take_screenshot.return_value = False
        response = client.post(f"/api/streams/{record.id}/screenshot")
        assert response.status_code == 404

    def test_test_stream(self, client, mock_supervisor):
        response = client.post("/api/test-stream", json={"url": SOURCE})
        assert response.status_code == 200
        assert response.json()["stream_info"] == {"resolution": "720p"}

    def test_test_stream_unreachable(self, client, mock_supervisor):
        mock_supervisor.test_url.side_effect = ProbeError("timed out", timed_out=True)
        response = client.post("/api/test-stream", json={"url": SOURCE})
        assert response.status_code == 400

    def test_backup(self, client, mock_supervisor, record):
        response = client.get("/api/backup")
        assert response.status_code == 200
        assert record.id in response.json()["streams"]

    def test_restore(self, client, mock_supervisor, record):
        payload = {"config": {"streams": {}}, "mode": "Append"}
        response = client.post("/api/restore", json=payload)
        assert response.status_code == 200
        assert response.json() == {"success": True, "mode": "append", "streams_count": 1}
        mock_supervisor.import_config.assert_awaited_once_with({"streams": {}}, mode="append")

    def test_restore_invalid(self, client, mock_supervisor):
        mock_supervisor.import_config.side_effect = InvalidStreamError("Invalid backup data")
        response = client.post("/api/restore", json={"config": {}})
        assert response.status_code == 400

    def test_cors_headers(self, client, mock_supervisor):
        response = client.get("/", headers={"Origin": "http://example.org"})
        assert response.headers["access-control-allow-origin"] in ("*", "http://example.org")


class TestAuthentication:
    """Test API token enforcement"""

    @pytest.fixture
    def client(self, monkeypatch):
        monkeypatch.setattr(api.settings, "API_TOKEN", "secret")
        with patch('api.supervisor') as mock:
            mock.get_health_status = Mock(return_value={"total": 0, "running": 0})
            yield TestClient(app)

    def test_missing_token(self, client):
        response = client.get("/api/health")
        assert response.status_code == 401

    def test_wrong_token(self, client):
        response = client.get("/api/health", headers={"X-API-Token": "nope"})
        assert response.status_code == 403

    def test_header_token(self, client):
        response = client.get("/api/health", headers={"X-API-Token": "secret"})
        assert response.status_code == 200

    def test_query_token(self, client):
        response = client.get("/?api_token=secret")
        assert response.status_code == 200
