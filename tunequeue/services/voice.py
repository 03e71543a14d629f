"""
Discord voice sink - streams tracks into voice channels with FFmpeg
"""
import asyncio
import logging
from typing import Any

import discord

from tunequeue.core.errors import AcquisitionError, AcquisitionErrorKind, TransportError
from tunequeue.core.interfaces import OpenedStream, PlaybackSink, ResourceEvent
from tunequeue.services.youtube import YouTubeService

logger = logging.getLogger(__name__)


FFMPEG_OPTIONS = {
    "before_options": "-reconnect 1 -reconnect_streamed 1 -reconnect_delay_max 5 -nostdin",
    "options": "-vn",
}


class TrackAudio(discord.PCMVolumeTransformer):
    """Volume-controlled FFmpeg source carrying the future that reports how it ended."""

    def __init__(self, original: discord.AudioSource, events: asyncio.Future, volume: float = 1.0):
        super().__init__(original, volume=volume)
        self.events = events


def _settle(events: asyncio.Future, event: ResourceEvent) -> None:
    if not events.done():
        events.set_result(event)


class DiscordSink(PlaybackSink):
    """PlaybackSink over discord.py voice clients."""

    def __init__(self, youtube: YouTubeService, connect_timeout: float = 20.0):
        self.youtube = youtube
        self.connect_timeout = connect_timeout

    async def connect(self, channel_ref: discord.VoiceChannel) -> discord.VoiceClient:
        guild = channel_ref.guild
        existing = guild.voice_client
        try:
            if existing and existing.is_connected():
                if existing.channel != channel_ref:
                    await existing.move_to(channel_ref)
                return existing
            vc = await channel_ref.connect(self_deaf=True, timeout=self.connect_timeout)
        except (asyncio.TimeoutError, discord.DiscordException) as e:
            raise TransportError(f"Could not join {channel_ref.name}: {e}") from e

        logger.info(f"Connected to {channel_ref.name} in {guild.name}")
        return vc

    async def disconnect(self, handle: discord.VoiceClient) -> None:
        if handle.is_playing() or handle.is_paused():
            handle.stop()
        await handle.disconnect(force=True)
        logger.info(f"Disconnected from voice in guild {handle.guild.id}")

    async def open_stream(self, source_locator: str) -> OpenedStream:
        url = await self.youtube.get_stream_url(source_locator)
        loop = asyncio.get_event_loop()
        events = loop.create_future()
        try:
            source = TrackAudio(discord.FFmpegPCMAudio(url, **FFMPEG_OPTIONS), events)
        except discord.ClientException as e:
            # ffmpeg missing or failed to spawn
            raise AcquisitionError(AcquisitionErrorKind.UNKNOWN, str(e)) from e
        return OpenedStream(resource=source, events=events)

    def play(self, handle: discord.VoiceClient, resource: TrackAudio) -> None:
        loop = asyncio.get_event_loop()
        events = resource.events

        # Runs on the voice player thread
        def after_play(error: Exception | None):
            if error:
                logger.error(f"Playback error: {error}")
            event = ResourceEvent.ERRORED if error else ResourceEvent.FINISHED
            loop.call_soon_threadsafe(_settle, events, event)

        handle.play(resource, after=after_play)

    def pause(self, handle: discord.VoiceClient) -> None:
        handle.pause()

    def resume(self, handle: discord.VoiceClient) -> None:
        handle.resume()

    def stop(self, handle: discord.VoiceClient) -> None:
        handle.stop()

    def set_gain(self, resource: TrackAudio, fraction: float) -> None:
        resource.volume = fraction

    def release(self, resource: Any) -> None:
        if isinstance(resource, discord.AudioSource):
            resource.cleanup()
