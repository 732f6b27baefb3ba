import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import httpx
import m3u8

from config import settings as default_settings
from errors import TooManyRedirectsError

logger = logging.getLogger(__name__)

# Bodies of these types are segments or raw streams, never playlists
MEDIA_CONTENT_TYPES = ("video/", "audio/", "application/octet-stream")


@dataclass
class VariantSelection:
    url: str
    resolution: Optional[str] = None  # "WxH"
    bandwidth: Optional[int] = None

    @property
    def height(self) -> Optional[int]:
        if not self.resolution or "x" not in self.resolution:
            return None
        try:
            return int(self.resolution.split("x", 1)[1])
        except ValueError:
            return None


class VariantSelector:
    """
    Pick the highest-bandwidth rendition of a multi-variant source playlist.

    Anything that is not a readable multi-variant playlist resolves to the
    original URL so the transcoder can still be pointed at it.
    """

    def __init__(self, config=None, http_client: Optional[httpx.AsyncClient] = None):
        self.config = config or default_settings
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.config.PLAYLIST_FETCH_TIMEOUT),
            follow_redirects=True,
            max_redirects=self.config.MAX_REDIRECTS,
            headers={"User-Agent": self.config.DEFAULT_USER_AGENT}
        )

    async def aclose(self):
        if self._owns_client:
            await self.http_client.aclose()

    async def _fetch_playlist(self, url: str):
        """
        Return (final_url, text) for a playlist-sized body, or None when the
        response looks like media or outgrows MAX_PLAYLIST_BYTES.
        """
        limit = self.config.MAX_PLAYLIST_BYTES
        async with self.http_client.stream("GET", url) as response:
            response.raise_for_status()
            content_type = response.headers.get("content-type", "").lower()
            if "mpegurl" not in content_type and content_type.startswith(MEDIA_CONTENT_TYPES):
                logger.info(f"Source {url} serves {content_type}, not a playlist")
                return None

            body = bytearray()
            async for chunk in response.aiter_bytes(chunk_size=32768):
                body.extend(chunk)
                if len(body) > limit:
                    logger.info(f"Source {url} body exceeds {limit} bytes, not a playlist")
                    return None

            text = bytes(body).decode(response.encoding or "utf-8", errors="ignore")
            return str(response.url), text

    async def resolve(self, url: str) -> VariantSelection:
        """
        Resolve url to its best variant.

        The fetch is bounded by PLAYLIST_FETCH_TIMEOUT in total and by
        MAX_PLAYLIST_BYTES, so a live media source never holds the caller.

        Raises:
            TooManyRedirectsError: The redirect chain exceeded MAX_REDIRECTS.
        """
        try:
            fetched = await asyncio.wait_for(
                self._fetch_playlist(url), timeout=self.config.PLAYLIST_FETCH_TIMEOUT)
        except httpx.TooManyRedirects:
            raise TooManyRedirectsError(url, self.config.MAX_REDIRECTS)
        except asyncio.TimeoutError:
            logger.warning(
                f"Playlist fetch for {url} took longer than "
                f"{self.config.PLAYLIST_FETCH_TIMEOUT}s")
            return VariantSelection(url=url)
        except Exception as e:
            logger.warning(f"Could not fetch playlist {url}: {e}")
            return VariantSelection(url=url)

        if fetched is None:
            return VariantSelection(url=url)

        final_url, text = fetched
        try:
            playlist = m3u8.loads(text, uri=final_url)
        except Exception as e:
            logger.warning(f"Could not parse playlist {url}: {e}")
            return VariantSelection(url=url)

        if not playlist.is_variant or not playlist.playlists:
            return VariantSelection(url=url)

        best = None
        best_bandwidth = -1
        for variant in playlist.playlists:
            bandwidth = variant.stream_info.bandwidth or 0
            # Strictly greater so the first of equal-bandwidth variants wins
            if bandwidth > best_bandwidth:
                best = variant
                best_bandwidth = bandwidth

        resolution = None
        if best.stream_info.resolution:
            width, height = best.stream_info.resolution
            resolution = f"{width}x{height}"

        selected_url = best.absolute_uri
        logger.info(
            f"Selected variant {selected_url} ({resolution or 'unknown resolution'}, "
            f"{best_bandwidth} bps) from {url}")
        return VariantSelection(url=selected_url, resolution=resolution,
                                bandwidth=best_bandwidth or None)
