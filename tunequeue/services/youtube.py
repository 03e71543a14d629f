"""
YouTube Resolver - turns /play queries into Tracks and stream URLs via yt-dlp
"""
import asyncio
import logging
import random
import re
from concurrent.futures import ThreadPoolExecutor
from functools import partial, wraps
from typing import Any

import yt_dlp
from yt_dlp.utils import DownloadError, ExtractorError, GeoRestrictedError, UnavailableVideoError

from tunequeue.core.errors import AcquisitionError, AcquisitionErrorKind, ResolutionError
from tunequeue.core.interfaces import Resolver
from tunequeue.core.track import Track

logger = logging.getLogger(__name__)

WATCH_URL = "https://www.youtube.com/watch?v={}"
YOUTUBE_DOMAINS = ("youtube.com", "youtu.be", "music.youtube.com")
VIDEO_ID_PATTERN = re.compile(r"(?:v=|\/|embed\/|shorts\/|youtu\.be\/)([0-9A-Za-z_-]{11})")

# yt-dlp "availability" values that mean the viewer would have to sign in
_RESTRICTED_AVAILABILITY = {"private", "needs_auth", "premium_only", "subscriber_only"}


def retry_with_backoff(retries=2, backoff_in_seconds=1):
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            x = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    if x == retries:
                        logger.error(f"Failed after {retries} retries: {e}")
                        raise
                    sleep = (backoff_in_seconds * 2 ** x + random.uniform(0, 1))
                    logger.warning(f"Retry {x + 1}/{retries} for {func.__name__} after {sleep:.2f}s due to: {e}")
                    await asyncio.sleep(sleep)
                    x += 1
        return wrapper
    return decorator


def classify_extraction_error(error: BaseException) -> AcquisitionErrorKind:
    """Map a yt-dlp failure to an AcquisitionErrorKind by exception type."""
    # YoutubeDL wraps extractor failures in DownloadError and keeps the original
    if isinstance(error, DownloadError) and error.exc_info and error.exc_info[1] is not None:
        error = error.exc_info[1]

    if isinstance(error, TimeoutError):
        return AcquisitionErrorKind.TIMEOUT
    if isinstance(error, GeoRestrictedError):
        return AcquisitionErrorKind.REGION_LOCKED
    if isinstance(error, UnavailableVideoError):
        return AcquisitionErrorKind.UNAVAILABLE
    if isinstance(error, ExtractorError):
        if isinstance(error.cause, TimeoutError):
            return AcquisitionErrorKind.TIMEOUT
        if error.expected:
            return AcquisitionErrorKind.UNAVAILABLE
    return AcquisitionErrorKind.UNKNOWN


def _thumbnail(info: dict[str, Any]) -> str | None:
    if info.get("thumbnail"):
        return info["thumbnail"]
    thumbnails = info.get("thumbnails") or [{}]
    return thumbnails[-1].get("url")


class YouTubeService(Resolver):
    """YouTube lookups and stream extraction on a dedicated worker pool."""

    def __init__(
        self,
        cookies_path: str | None = None,
        po_token: str | None = None,
        stream_timeout: float = 25.0,
        lookup_timeout: float = 15.0,
    ):
        self.cookies_path = cookies_path
        self.po_token = po_token
        self.stream_timeout = stream_timeout
        self.lookup_timeout = lookup_timeout

        # Dedicated executor so extraction never starves the default pool
        self.executor = ThreadPoolExecutor(max_workers=5, thread_name_prefix="YouTubeWorker")

        self._ydl_opts = {
            "format": "bestaudio/best",
            "source_address": "0.0.0.0",
            "quiet": True,
            "no_warnings": True,
            "socket_timeout": 10,
            "nocheckcertificate": True,
            "ignoreerrors": False,  # Failures must surface as exceptions to be classified
            "logtostderr": False,
            "noplaylist": True,
        }
        if cookies_path:
            self._ydl_opts["cookiefile"] = cookies_path
        if po_token:
            self._ydl_opts["extractor_args"] = {"youtube": {"po_token": [po_token]}}

    def parse_url(self, url: str) -> str | None:
        """Return the video id of a YouTube video URL, or None."""
        # Check domain first to avoid false positives (e.g. Spotify)
        if not any(domain in url for domain in YOUTUBE_DOMAINS):
            return None
        match = VIDEO_ID_PATTERN.search(url)
        return match.group(1) if match else None

    async def shutdown(self):
        """Shutdown the executor."""
        self.executor.shutdown(wait=False)

    def _extract(self, target: str, flat: bool = False) -> dict[str, Any] | None:
        opts = dict(self._ydl_opts)
        if flat:
            opts["extract_flat"] = "in_playlist"
        with yt_dlp.YoutubeDL(opts) as ydl:
            return ydl.extract_info(target, download=False)

    async def _run_extract(self, target: str, timeout: float, flat: bool = False) -> dict[str, Any] | None:
        loop = asyncio.get_event_loop()
        return await asyncio.wait_for(
            loop.run_in_executor(self.executor, partial(self._extract, target, flat)),
            timeout=timeout,
        )

    # =========================================================================
    # Resolver
    # =========================================================================

    async def resolve(self, query: str, requester_id: int | None = None) -> Track | None:
        """Resolve a direct video URL or search terms to a single Track."""
        query = query.strip()
        if not query:
            return None

        video_id = self.parse_url(query)
        if video_id:
            return await self.get_track_info(video_id, requester_id)
        return await self.search(query, requester_id)

    @retry_with_backoff()
    async def search(self, query: str, requester_id: int | None = None) -> Track | None:
        """Search YouTube and return the best match."""
        try:
            results = await self._run_extract(f"ytsearch1:{query}", self.lookup_timeout, flat=True)
        except asyncio.TimeoutError as e:
            logger.error(f"YouTube search timed out for query: {query}")
            raise ResolutionError(f"Search timed out for {query!r}") from e
        except Exception as e:
            logger.error(f"YouTube search error: {e}")
            raise ResolutionError(f"Search failed for {query!r}") from e

        for entry in (results or {}).get("entries") or []:
            if entry and entry.get("id"):
                return self._to_track(entry, requester_id)
        return None

    @retry_with_backoff()
    async def get_track_info(self, video_id: str, requester_id: int | None = None) -> Track | None:
        """Get track info for a specific video. None if the video is gone."""
        try:
            info = await self._run_extract(WATCH_URL.format(video_id), self.lookup_timeout)
        except asyncio.TimeoutError as e:
            logger.error(f"YouTube track info timed out for: {video_id}")
            raise ResolutionError(f"Lookup timed out for {video_id}") from e
        except Exception as e:
            kind = classify_extraction_error(e)
            if kind in (AcquisitionErrorKind.UNAVAILABLE, AcquisitionErrorKind.REGION_LOCKED):
                logger.info(f"Video {video_id} is not playable ({kind.value})")
                return None
            logger.error(f"Error getting track info for {video_id}: {e}")
            raise ResolutionError(f"Lookup failed for {video_id}") from e

        if not info or not info.get("id"):
            return None
        return self._to_track(info, requester_id)

    def _to_track(self, info: dict[str, Any], requester_id: int | None) -> Track:
        duration = 0 if info.get("is_live") else int(info.get("duration") or 0)
        return Track(
            title=info.get("title") or "Unknown",
            source_locator=info.get("webpage_url") or WATCH_URL.format(info["id"]),
            duration_seconds=duration,
            thumbnail_url=_thumbnail(info),
            requester_id=requester_id,
        )

    # =========================================================================
    # Stream acquisition
    # =========================================================================

    async def get_stream_url(self, source_locator: str) -> str:
        """Get the direct audio URL for a track.

        Raises AcquisitionError classified from the yt-dlp failure.
        """
        try:
            info = await self._run_extract(source_locator, self.stream_timeout)
        except asyncio.TimeoutError as e:
            logger.error(f"YouTube stream URL extraction timed out for: {source_locator}")
            raise AcquisitionError(AcquisitionErrorKind.TIMEOUT, "Stream extraction timed out") from e
        except Exception as e:
            kind = classify_extraction_error(e)
            logger.error(f"Error getting stream URL for {source_locator} ({kind.value}): {e}")
            raise AcquisitionError(kind, str(e)) from e

        if not info:
            raise AcquisitionError(AcquisitionErrorKind.UNAVAILABLE, "No info returned")
        if info.get("availability") in _RESTRICTED_AVAILABILITY and not info.get("url"):
            raise AcquisitionError(AcquisitionErrorKind.PRIVATE, f"Video is {info['availability']}")
        if not info.get("url"):
            raise AcquisitionError(AcquisitionErrorKind.UNAVAILABLE, "No playable audio format")
        return info["url"]
