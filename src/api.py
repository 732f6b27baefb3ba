from fastapi import FastAPI, HTTPException, Query, Depends, Header
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from contextlib import asynccontextmanager
import logging
from typing import Optional, Dict, Any
from pydantic import BaseModel, field_validator

from config import settings, VERSION
from errors import InvalidStreamError, ProbeError, StreamNotFoundError
from process_supervisor import ProcessSupervisor

# Set up logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
)
logger = logging.getLogger(__name__)


def _strip(v):
    return v.strip() if isinstance(v, str) else v


# Request models
class StreamCreateRequest(BaseModel):
    name: str
    url: str

    @field_validator('name', 'url')
    @classmethod
    def strip_whitespace(cls, v):
        return _strip(v)


class StreamUpdateRequest(BaseModel):
    name: Optional[str] = None
    url: Optional[str] = None

    @field_validator('name', 'url')
    @classmethod
    def strip_whitespace(cls, v):
        return _strip(v)


class TestStreamRequest(BaseModel):
    """Request model for probing an arbitrary source URL"""
    url: str

    @field_validator('url')
    @classmethod
    def strip_whitespace(cls, v):
        return _strip(v)


class RestoreRequest(BaseModel):
    config: Dict[str, Any]
    mode: str = "overwrite"

    @field_validator('mode')
    @classmethod
    def normalize_mode(cls, v):
        return (v or "overwrite").strip().lower()


# Global process supervisor
supervisor = ProcessSupervisor()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    logger.info("HLS restream supervisor starting up...")
    await supervisor.start()

    yield

    logger.info("HLS restream supervisor shutting down...")
    await supervisor.shutdown()


app = FastAPI(
    title="hls restream",
    version=VERSION,
    description="Supervises ffmpeg restreams of remote sources into local HLS output",
    lifespan=lifespan,
    docs_url=settings.DOCS_URL,
    redoc_url=settings.REDOC_URL,
    openapi_url=settings.OPENAPI_URL,
)

# Configure CORS to allow all origins for player compatibility
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["*"],
)


async def verify_token(
    x_api_token: Optional[str] = Header(None, alias="X-API-Token"),
    api_token: Optional[str] = Query(
        None, description="API token (alternative to X-API-Token header)")
):
    """
    Verify API token if API_TOKEN is configured.
    Token can be provided via:
    - X-API-Token header (recommended)
    - api_token query parameter (for browser access or when headers are difficult)

    If API_TOKEN is not set in environment, authentication is disabled.
    """
    if not settings.API_TOKEN:
        return True

    provided_token = x_api_token or api_token

    if not provided_token:
        raise HTTPException(
            status_code=401,
            detail="API token required. Provide token via X-API-Token header or api_token query parameter.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if provided_token != settings.API_TOKEN:
        raise HTTPException(
            status_code=403,
            detail="Invalid API token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return True


@app.get("/", dependencies=[Depends(verify_token)])
async def root():
    summary = supervisor.get_health_status()
    return {
        "status": "running",
        "message": "hls restream supervisor is running",
        "version": VERSION,
        "streams": summary["total"],
        "running": summary["running"]
    }


@app.get("/api/streams", dependencies=[Depends(verify_token)])
async def list_streams():
    try:
        return [record.to_dict() for record in supervisor.list_streams()]
    except Exception as e:
        logger.error(f"Error listing streams: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/api/streams", dependencies=[Depends(verify_token)])
async def create_stream(request: StreamCreateRequest):
    try:
        record = supervisor.add_stream(request.name, request.url)
        return record.to_dict()
    except InvalidStreamError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error creating stream: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/streams/{stream_id}", dependencies=[Depends(verify_token)])
async def get_stream(stream_id: str):
    try:
        return supervisor.get_stream(stream_id).to_dict()
    except StreamNotFoundError:
        raise HTTPException(status_code=404, detail="Stream not found")
    except Exception as e:
        logger.error(f"Error getting stream {stream_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.put("/api/streams/{stream_id}", dependencies=[Depends(verify_token)])
async def update_stream(stream_id: str, request: StreamUpdateRequest):
    try:
        record = await supervisor.update_stream(
            stream_id, name=request.name, url=request.url)
        return record.to_dict()
    except StreamNotFoundError:
        raise HTTPException(status_code=404, detail="Stream not found")
    except InvalidStreamError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error updating stream {stream_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.delete("/api/streams/{stream_id}", dependencies=[Depends(verify_token)])
async def delete_stream(stream_id: str):
    try:
        await supervisor.delete_stream(stream_id)
        return {"success": True, "message": f"Stream {stream_id} deleted"}
    except StreamNotFoundError:
        raise HTTPException(status_code=404, detail="Stream not found")
    except Exception as e:
        logger.error(f"Error deleting stream {stream_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


async def _lifecycle(stream_id: str, action: str):
    operations = {
        "start": supervisor.start_stream,
        "stop": supervisor.stop_stream,
        "restart": supervisor.restart_stream,
    }
    try:
        success = await operations[action](stream_id)
        record = supervisor.get_stream(stream_id)
        return {
            "success": success,
            "status": record.status.value,
            "health": record.health.value
        }
    except StreamNotFoundError:
        raise HTTPException(status_code=404, detail="Stream not found")
    except Exception as e:
        logger.error(f"Error during {action} of stream {stream_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/api/streams/{stream_id}/start", dependencies=[Depends(verify_token)])
async def start_stream(stream_id: str):
    return await _lifecycle(stream_id, "start")


@app.post("/api/streams/{stream_id}/stop", dependencies=[Depends(verify_token)])
async def stop_stream(stream_id: str):
    return await _lifecycle(stream_id, "stop")


@app.post("/api/streams/{stream_id}/restart", dependencies=[Depends(verify_token)])
async def restart_stream(stream_id: str):
    return await _lifecycle(stream_id, "restart")


@app.get("/api/streams/{stream_id}/diagnostics", dependencies=[Depends(verify_token)])
async def get_stream_diagnostics(stream_id: str):
    try:
        return supervisor.get_diagnostics(stream_id)
    except StreamNotFoundError:
        raise HTTPException(status_code=404, detail="Stream not found")
    except Exception as e:
        logger.error(f"Error fetching diagnostics for stream {stream_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/api/streams/{stream_id}/analyze", dependencies=[Depends(verify_token)])
async def analyze_stream(stream_id: str):
    try:
        success = await supervisor.analyze_stream(stream_id)
        record = supervisor.get_stream(stream_id)
        return {
            "success": success,
            "stream_info": record.to_dict()["stream_info"],
            "message": ("Analysis completed successfully" if success
                        else "Analysis completed with partial results")
        }
    except StreamNotFoundError:
        raise HTTPException(status_code=404, detail="Stream not found")
    except InvalidStreamError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error analyzing stream {stream_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/api/streams/{stream_id}/screenshot", dependencies=[Depends(verify_token)])
async def take_screenshot(stream_id: str):
    try:
        success = await supervisor.take_screenshot(stream_id)
        if not success:
            raise HTTPException(
                status_code=404,
                detail="Stream not running or could not take screenshot")
        record = supervisor.get_stream(stream_id)
        return {
            "success": True,
            "screenshot_path": record.screenshot_path,
            "screenshot_url": f"/api/screenshots/{stream_id}.jpg",
            "screenshot_timestamp": record.screenshot_timestamp
        }
    except HTTPException:
        raise
    except StreamNotFoundError:
        raise HTTPException(status_code=404, detail="Stream not found")
    except Exception as e:
        logger.error(f"Error taking screenshot of stream {stream_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/api/test-stream", dependencies=[Depends(verify_token)])
async def test_stream(request: TestStreamRequest):
    """Probe a source URL with ffprobe before adding it as a stream."""
    try:
        stream_info = await supervisor.test_url(request.url)
        return {
            "success": True,
            "message": "Stream is valid and accessible",
            "stream_info": stream_info
        }
    except InvalidStreamError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ProbeError as e:
        logger.warning(f"Stream test failed for {request.url}: {e}")
        raise HTTPException(
            status_code=400,
            detail=f"Invalid stream URL or stream not accessible: {e}")
    except Exception as e:
        logger.error(f"Error testing stream {request.url}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/health", dependencies=[Depends(verify_token)])
async def health_check():
    """Health check endpoint with per-status stream counts"""
    try:
        return {
            "status": "healthy",
            "version": VERSION,
            "streams": supervisor.get_health_status()
        }
    except Exception as e:
        logger.error(f"Error in health check: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/backup", dependencies=[Depends(verify_token)])
async def backup():
    return supervisor.export_config()


@app.post("/api/restore", dependencies=[Depends(verify_token)])
async def restore(request: RestoreRequest):
    try:
        imported = await supervisor.import_config(request.config, mode=request.mode)
        return {
            "success": True,
            "mode": request.mode,
            "streams_count": len(imported)
        }
    except InvalidStreamError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error restoring config: {e}")
        raise HTTPException(status_code=500, detail=str(e))


# Segment output and preview images are served straight from disk
app.mount("/hls", StaticFiles(directory=settings.hls_dir, check_dir=False), name="hls")
app.mount("/api/screenshots",
          StaticFiles(directory=settings.screenshots_dir, check_dir=False),
          name="screenshots")
