"""Tests for the Discord voice sink."""

import asyncio
import threading
from unittest.mock import AsyncMock, MagicMock, patch

import discord
import pytest

from tunequeue.core.errors import AcquisitionError, AcquisitionErrorKind, TransportError
from tunequeue.core.interfaces import ResourceEvent
from tunequeue.services.voice import FFMPEG_OPTIONS, DiscordSink, TrackAudio


def _pcm_source() -> MagicMock:
    source = MagicMock(spec=discord.AudioSource)
    source.is_opus.return_value = False
    return source


def _track_audio() -> TrackAudio:
    return TrackAudio(_pcm_source(), asyncio.get_running_loop().create_future())


@pytest.fixture
def youtube() -> MagicMock:
    youtube = MagicMock()
    youtube.get_stream_url = AsyncMock(return_value="https://media.example/audio")
    return youtube


@pytest.fixture
def sink(youtube: MagicMock) -> DiscordSink:
    return DiscordSink(youtube, connect_timeout=5)


class TestConnect:
    """Tests for joining voice channels."""

    @pytest.mark.asyncio
    async def test_connect(self, sink: DiscordSink) -> None:
        """A fresh connection joins deafened with the configured timeout."""
        channel = MagicMock()
        channel.guild.voice_client = None
        vc = MagicMock()
        channel.connect = AsyncMock(return_value=vc)

        assert await sink.connect(channel) is vc
        channel.connect.assert_awaited_once_with(self_deaf=True, timeout=5)

    @pytest.mark.asyncio
    async def test_reuses_existing_connection(self, sink: DiscordSink) -> None:
        """A live connection in the guild is moved instead of duplicated."""
        channel = MagicMock()
        existing = MagicMock()
        existing.is_connected.return_value = True
        existing.channel = MagicMock()
        existing.move_to = AsyncMock()
        channel.guild.voice_client = existing
        channel.connect = AsyncMock()

        assert await sink.connect(channel) is existing
        existing.move_to.assert_awaited_once_with(channel)
        channel.connect.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_connect_timeout(self, sink: DiscordSink) -> None:
        """Connection timeouts become TransportError."""
        channel = MagicMock()
        channel.guild.voice_client = None
        channel.connect = AsyncMock(side_effect=asyncio.TimeoutError())

        with pytest.raises(TransportError):
            await sink.connect(channel)

    @pytest.mark.asyncio
    async def test_disconnect(self, sink: DiscordSink) -> None:
        """Disconnect stops audio and forces the voice client off."""
        vc = MagicMock()
        vc.is_playing.return_value = True
        vc.disconnect = AsyncMock()

        await sink.disconnect(vc)
        vc.stop.assert_called_once()
        vc.disconnect.assert_awaited_once_with(force=True)


class TestOpenStream:
    """Tests for stream acquisition."""

    @pytest.mark.asyncio
    async def test_open_stream(self, sink: DiscordSink, youtube: MagicMock) -> None:
        """The stream URL is wrapped in a volume-controlled FFmpeg source."""
        pcm = _pcm_source()
        with patch("tunequeue.services.voice.discord.FFmpegPCMAudio", return_value=pcm) as ffmpeg:
            opened = await sink.open_stream("https://youtu.be/x")

        youtube.get_stream_url.assert_awaited_once_with("https://youtu.be/x")
        ffmpeg.assert_called_once_with("https://media.example/audio", **FFMPEG_OPTIONS)
        assert isinstance(opened.resource, TrackAudio)
        assert opened.resource.original is pcm
        assert opened.events is opened.resource.events
        assert not opened.events.done()

    @pytest.mark.asyncio
    async def test_extraction_error_propagates(self, sink: DiscordSink, youtube: MagicMock) -> None:
        """Classified extraction failures pass straight through."""
        youtube.get_stream_url.side_effect = AcquisitionError(AcquisitionErrorKind.PRIVATE)
        with pytest.raises(AcquisitionError) as exc_info:
            await sink.open_stream("https://youtu.be/x")
        assert exc_info.value.kind is AcquisitionErrorKind.PRIVATE

    @pytest.mark.asyncio
    async def test_ffmpeg_failure(self, sink: DiscordSink) -> None:
        """A missing FFmpeg binary is an unknown acquisition failure."""
        with patch(
            "tunequeue.services.voice.discord.FFmpegPCMAudio",
            side_effect=discord.ClientException("ffmpeg was not found."),
        ):
            with pytest.raises(AcquisitionError) as exc_info:
                await sink.open_stream("https://youtu.be/x")
        assert exc_info.value.kind is AcquisitionErrorKind.UNKNOWN


class TestPlayback:
    """Tests for playback control and completion events."""

    @pytest.mark.asyncio
    async def test_finished_from_player_thread(self, sink: DiscordSink) -> None:
        """A clean end reported on the audio thread resolves FINISHED on the loop."""
        vc = MagicMock()
        source = _track_audio()
        sink.play(vc, source)

        after = vc.play.call_args.kwargs["after"]
        thread = threading.Thread(target=after, args=(None,))
        thread.start()
        thread.join()

        assert await asyncio.wait_for(source.events, 1) is ResourceEvent.FINISHED

    @pytest.mark.asyncio
    async def test_errored(self, sink: DiscordSink) -> None:
        """A player error resolves ERRORED, and only the first event counts."""
        vc = MagicMock()
        source = _track_audio()
        sink.play(vc, source)

        after = vc.play.call_args.kwargs["after"]
        after(RuntimeError("ffmpeg died"))
        after(None)

        assert await asyncio.wait_for(source.events, 1) is ResourceEvent.ERRORED

    @pytest.mark.asyncio
    async def test_transport_verbs(self, sink: DiscordSink) -> None:
        """pause/resume/stop map onto the voice client."""
        vc = MagicMock()
        sink.pause(vc)
        sink.resume(vc)
        sink.stop(vc)
        vc.pause.assert_called_once()
        vc.resume.assert_called_once()
        vc.stop.assert_called_once()

    @pytest.mark.asyncio
    async def test_set_gain_and_release(self, sink: DiscordSink) -> None:
        """Gain sets the transformer volume; release cleans up FFmpeg."""
        source = _track_audio()
        sink.set_gain(source, 0.75)
        assert source.volume == 0.75

        sink.release(source)
        source.original.cleanup.assert_called_once()
