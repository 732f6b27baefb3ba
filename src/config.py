import os
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional

# Application version
VERSION = "1.2.0"


class Settings(BaseSettings):
    """
    Application configuration loaded from environment variables.
    Utilizes pydantic-settings for robust validation and type-casting.
    """

    # Server Configuration
    HOST: str = "0.0.0.0"
    PORT: int = 8080
    LOG_LEVEL: str = "info"
    RELOAD: bool = False
    DOCS_URL: str = "/docs"
    REDOC_URL: str = "/redoc"
    OPENAPI_URL: str = "/openapi.json"

    # Storage layout. HLS_DIR, SCREENSHOTS_DIR and CONFIG_PATH default to
    # locations under DATA_DIR when unset.
    DATA_DIR: str = "data"
    HLS_DIR: Optional[str] = None
    SCREENSHOTS_DIR: Optional[str] = None
    CONFIG_PATH: Optional[str] = None

    # External binaries
    FFMPEG_PATH: str = "ffmpeg"
    FFPROBE_PATH: str = "ffprobe"
    DEFAULT_USER_AGENT: str = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/115.0.0.0 Safari/537.36"

    # HLS output written by the transcoder
    HLS_SEGMENT_TIME: int = 2  # seconds per segment
    HLS_LIST_SIZE: int = 10  # segments listed in the live playlist
    # Segments kept on disk by the housekeeper for streams that are not running
    HLS_RETENTION_SEGMENTS: int = 15

    # Reconnection - delays in seconds
    MAX_RECONNECT_ATTEMPTS: int = 10
    RECONNECT_DELAY: float = 5.0
    MAX_BACKOFF_DELAY: float = 60.0
    BACKOFF_FACTOR: float = 1.5
    # Grace period between stop and start on a manual restart
    RESTART_GRACE_DELAY: float = 1.0
    # How long stop() waits for the transcoder to exit after SIGTERM before killing it
    STOP_TIMEOUT: float = 5.0

    # Health monitoring - intervals in seconds
    HEALTH_CHECK_INTERVAL: float = 30.0
    SEGMENT_HEALTH_CHECK_INTERVAL: float = 15.0
    # A segment older than MAX_SEGMENT_AGE_FACTOR * HLS_SEGMENT_TIME is stale
    MAX_SEGMENT_AGE_FACTOR: int = 3
    # Window used for error-rate based health classification
    ERROR_WINDOW_SECONDS: float = 300.0
    SOURCE_CHECK_TIMEOUT: float = 10.0
    # Minimum spacing between opportunistic source probes of a degraded stream
    SOURCE_RECHECK_INTERVAL: float = 60.0
    # Resolution re-detection runs every N fleet health ticks
    RESOLUTION_CHECK_EVERY: int = 5

    # Deferred passes after a stream starts
    INITIAL_HEALTH_CHECK_DELAY: float = 5.0
    RESOLUTION_DETECT_DELAY: float = 10.0
    STREAM_ANALYSIS_DELAY: float = 5.0

    # Preview capture
    SCREENSHOT_INTERVAL: float = 60.0
    SCREENSHOT_TIMEOUT: float = 10.0
    PROBE_TIMEOUT: float = 10.0

    # Housekeeping
    CLEANUP_INTERVAL: float = 3600.0

    # Streams persisted as running (the previous process died without a clean
    # shutdown) are started again when the supervisor comes up
    RESUME_STREAMS_ON_STARTUP: bool = True

    # Variant playlist fetch
    MAX_REDIRECTS: int = 5
    PLAYLIST_FETCH_TIMEOUT: float = 10.0
    # A multi-variant playlist is small; a larger body is treated as media
    MAX_PLAYLIST_BYTES: int = 512 * 1024

    # API Authentication
    API_TOKEN: Optional[str] = None

    # Model configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="",  # No prefix, read directly from .env
        extra="ignore"  # Ignore extra environment variables from container
    )

    @property
    def hls_dir(self) -> str:
        return self.HLS_DIR or os.path.join(self.DATA_DIR, "hls")

    @property
    def screenshots_dir(self) -> str:
        return self.SCREENSHOTS_DIR or os.path.join(self.DATA_DIR, "screenshots")

    @property
    def config_path(self) -> str:
        return self.CONFIG_PATH or os.path.join(self.DATA_DIR, "streams.json")

    @property
    def max_segment_age(self) -> float:
        """Age in seconds after which the newest segment counts as stale."""
        return float(self.MAX_SEGMENT_AGE_FACTOR * self.HLS_SEGMENT_TIME)


# Global settings instance
settings = Settings()
