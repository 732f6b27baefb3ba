"""
One-shot ffprobe / ffmpeg invocations.

MediaInspector wraps the two short-lived media tools the supervisor needs
besides the long-running transcoder: ffprobe for metadata and ffmpeg for
capturing a single preview frame. Both run through an injectable launcher with
the signature of asyncio.create_subprocess_exec so tests can substitute them.
"""

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from config import settings as default_settings
from errors import ProbeError

logger = logging.getLogger(__name__)

Launcher = Callable[..., Awaitable[asyncio.subprocess.Process]]


def parse_frame_rate(value: Optional[str]) -> Optional[float]:
    """Convert an ffprobe rational such as '30000/1001' to frames per second."""
    if not value:
        return None
    try:
        if "/" in value:
            numerator, denominator = value.split("/", 1)
            if float(denominator) == 0:
                return None
            return round(float(numerator) / float(denominator), 2)
        return round(float(value), 2)
    except (TypeError, ValueError):
        return None


def resolution_label(height: Optional[int]) -> Optional[str]:
    if not height:
        return None
    if height >= 1080:
        return "1080p"
    if height >= 720:
        return "720p"
    if height >= 480:
        return "480p"
    if height >= 360:
        return "360p"
    return f"{height}p"


def detailed_resolution_label(height: Optional[int]) -> Optional[str]:
    """resolution_label() extended with the 4K, 1440p and 240p tiers."""
    if not height:
        return None
    if height >= 2160:
        return "4K"
    if height >= 1440:
        return "1440p"
    if height < 360 and height >= 240:
        return "240p"
    return resolution_label(height)


@dataclass
class VideoProbe:
    """First video stream of a source as reported by ffprobe."""
    width: Optional[int] = None
    height: Optional[int] = None
    codec: Optional[str] = None
    bitrate_kbps: Optional[int] = None
    fps: Optional[float] = None

    @property
    def resolution(self) -> Optional[str]:
        return detailed_resolution_label(self.height)

    def to_dict(self) -> dict:
        return {
            "resolution": self.resolution,
            "width": self.width,
            "height": self.height,
            "codec": self.codec,
            "bitrate": self.bitrate_kbps,
            "frame_rate": self.fps,
        }


class MediaInspector:
    def __init__(self, config=None, launcher: Optional[Launcher] = None):
        self.config = config or default_settings
        self.launcher = launcher or asyncio.create_subprocess_exec

    def _input_args(self, target: str) -> List[str]:
        if target.startswith(("http://", "https://")):
            return [
                "-protocol_whitelist", "file,http,https,tcp,tls",
                "-user_agent", self.config.DEFAULT_USER_AGENT,
            ]
        return []

    @staticmethod
    async def _kill(process, name: str) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
        try:
            await process.wait()
        except Exception as e:
            logger.debug(f"Error reaping {name}: {e}")

    async def _run(self, cmd: List[str], timeout: float) -> bytes:
        try:
            process = await self.launcher(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except FileNotFoundError:
            raise ProbeError(f"{cmd[0]} not found")
        except Exception as e:
            raise ProbeError(f"Failed to launch {cmd[0]}: {e}")

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await self._kill(process, cmd[0])
            raise ProbeError(f"{cmd[0]} timed out after {timeout}s", timed_out=True)
        except asyncio.CancelledError:
            await self._kill(process, cmd[0])
            raise

        if process.returncode != 0:
            err = (stderr or b"").decode("utf-8", errors="ignore").strip()
            raise ProbeError(
                f"{cmd[0]} exited with code {process.returncode}: {err[:200]}",
                returncode=process.returncode,
                stderr=err
            )
        return stdout or b""

    async def probe(self, target: str, entries: str,
                    timeout: Optional[float] = None,
                    select_streams: Optional[str] = None) -> Dict[str, Any]:
        """
        Run ffprobe against a URL or file and return its parsed JSON output.

        Args:
            target: URL or local path.
            entries: Value for -show_entries, e.g. 'format=duration'.
            timeout: Seconds before the probe is killed (PROBE_TIMEOUT by default).
            select_streams: Optional -select_streams specifier such as 'v:0'.

        Raises:
            ProbeError: On launch failure, non-zero exit, timeout or bad JSON.
        """
        timeout = timeout if timeout is not None else self.config.PROBE_TIMEOUT
        cmd = [self.config.FFPROBE_PATH, "-v", "error"]
        cmd.extend(self._input_args(target))
        if select_streams:
            cmd.extend(["-select_streams", select_streams])
        cmd.extend(["-show_entries", entries, "-of", "json", "-i", target])

        stdout = await self._run(cmd, timeout)
        try:
            data = json.loads(stdout.decode("utf-8", errors="ignore") or "{}")
        except json.JSONDecodeError as e:
            raise ProbeError(f"Failed to parse ffprobe output: {e}")
        if not isinstance(data, dict):
            raise ProbeError("Unexpected ffprobe output")
        return data

    async def probe_video(self, target: str,
                          timeout: Optional[float] = None) -> VideoProbe:
        """Describe the first video stream of target."""
        data = await self.probe(
            target,
            "stream=width,height,codec_name,bit_rate,avg_frame_rate,r_frame_rate",
            timeout=timeout,
            select_streams="v:0"
        )
        streams = data.get("streams") or []
        if not streams:
            raise ProbeError("No video stream found")

        stream = streams[0]
        bitrate = stream.get("bit_rate")
        return VideoProbe(
            width=_as_int(stream.get("width")),
            height=_as_int(stream.get("height")),
            codec=stream.get("codec_name"),
            bitrate_kbps=_as_int(bitrate) // 1000 if _as_int(bitrate) else None,
            fps=parse_frame_rate(stream.get("avg_frame_rate"))
            or parse_frame_rate(stream.get("r_frame_rate"))
        )

    async def capture_frame(self, source: str, dest: str,
                            timeout: Optional[float] = None) -> str:
        """Grab a single JPEG frame one second into source and write it to dest."""
        timeout = timeout if timeout is not None else self.config.SCREENSHOT_TIMEOUT
        os.makedirs(os.path.dirname(os.path.abspath(dest)), exist_ok=True)
        cmd = [self.config.FFMPEG_PATH, "-y"]
        cmd.extend(self._input_args(source))
        cmd.extend([
            "-i", source,
            "-ss", "00:00:01",
            "-vframes", "1",
            "-q:v", "2",
            dest
        ])
        await self._run(cmd, timeout)
        if not os.path.exists(dest):
            raise ProbeError(f"ffmpeg produced no image at {dest}")
        return dest


def _as_int(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
