"""Tests for the music commands."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import FakeSink, make_track, wait_for_state
from tunequeue.config import config
from tunequeue.cogs.music import MusicCog, NowPlayingView
from tunequeue.core.errors import ResolutionError, TransportError
from tunequeue.core.manager import QueueManager
from tunequeue.core.queue import QueueState

GUILD = 77


def make_interaction(in_voice: bool = True, can_speak: bool = True) -> MagicMock:
    interaction = MagicMock()
    interaction.guild_id = GUILD
    interaction.user.id = 9

    if in_voice:
        channel = MagicMock()
        channel.permissions_for.return_value = MagicMock(connect=True, speak=can_speak)
        interaction.user.voice.channel = channel
    else:
        interaction.user.voice = None

    interaction.response.is_done.return_value = False

    def mark_done(*args, **kwargs):
        interaction.response.is_done.return_value = True

    interaction.response.defer = AsyncMock(side_effect=mark_done)
    interaction.response.send_message = AsyncMock(side_effect=mark_done)
    interaction.followup.send = AsyncMock(return_value=MagicMock(delete=AsyncMock()))
    return interaction


def assert_public_followup(interaction: MagicMock) -> None:
    """The reply went out as a visible followup that cleans itself up."""
    reply = interaction.followup.send.await_args.kwargs
    assert "ephemeral" not in reply
    assert reply["wait"] is True
    interaction.followup.send.return_value.delete.assert_awaited_once_with(delay=config.EPHEMERAL_DURATION)


def sent(interaction: MagicMock) -> dict:
    """kwargs of the single message sent in reply."""
    if interaction.followup.send.await_count:
        return interaction.followup.send.await_args.kwargs
    return interaction.response.send_message.await_args.kwargs


@pytest.fixture
def youtube() -> MagicMock:
    youtube = MagicMock()
    youtube.parse_url.return_value = None
    youtube.resolve = AsyncMock(return_value=make_track("Song", duration=200, requester_id=9))
    return youtube


@pytest.fixture
def cog(manager: QueueManager, youtube: MagicMock) -> MusicCog:
    bot = MagicMock()
    bot.manager = manager
    bot.youtube = youtube
    bot.user.id = 1
    return MusicCog(bot)


class TestPlay:
    """Tests for /play."""

    @pytest.mark.asyncio
    async def test_requires_voice_channel(self, cog: MusicCog, youtube: MagicMock) -> None:
        """Users outside voice are told to join one."""
        interaction = make_interaction(in_voice=False)
        await cog.play.callback(cog, interaction, "song")

        assert "voice channel" in sent(interaction)["embed"].description
        youtube.resolve.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_requires_permissions(self, cog: MusicCog, youtube: MagicMock) -> None:
        """The bot needs Connect and Speak in the user's channel."""
        interaction = make_interaction(can_speak=False)
        await cog.play.callback(cog, interaction, "song")

        assert "Speak" in sent(interaction)["embed"].description
        youtube.resolve.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_now_playing(self, cog: MusicCog, manager: QueueManager, sink: FakeSink) -> None:
        """The first track is announced as now playing with controls."""
        interaction = make_interaction()
        await cog.play.callback(cog, interaction, "song")

        reply = sent(interaction)
        assert reply["embed"].title == "🎵 Now Playing"
        assert isinstance(reply["view"], NowPlayingView)
        assert manager.snapshot(GUILD).head.title == "Song"
        assert sink.handles[0].channel_ref is interaction.user.voice.channel
        await wait_for_state(manager, GUILD, QueueState.PLAYING)

    @pytest.mark.asyncio
    async def test_added_to_queue(self, cog: MusicCog, manager: QueueManager) -> None:
        """Later tracks report their queue position."""
        await manager.enqueue(GUILD, make_track("First"), "channel")
        interaction = make_interaction()
        await cog.play.callback(cog, interaction, "song")

        embed = sent(interaction)["embed"]
        assert embed.title == "📝 Added to Queue"
        assert {field.name: field.value for field in embed.fields}["Position"] == "2"

    @pytest.mark.asyncio
    async def test_no_results(self, cog: MusicCog, manager: QueueManager, youtube: MagicMock) -> None:
        """No match leaves the queue untouched."""
        youtube.resolve.return_value = None
        interaction = make_interaction()
        await cog.play.callback(cog, interaction, "qwertyuiop")

        assert sent(interaction)["embed"].title == "❌ No results"
        assert_public_followup(interaction)
        assert GUILD not in manager

    @pytest.mark.asyncio
    async def test_lookup_failure(self, cog: MusicCog, manager: QueueManager, youtube: MagicMock) -> None:
        """Resolver failures are reported without queueing anything."""
        youtube.resolve.side_effect = ResolutionError("network down")
        interaction = make_interaction()
        await cog.play.callback(cog, interaction, "song")

        assert "Search failed" in sent(interaction)["embed"].description
        assert_public_followup(interaction)
        assert GUILD not in manager

    @pytest.mark.asyncio
    async def test_connect_failure(self, cog: MusicCog, manager: QueueManager, sink: FakeSink) -> None:
        """A voice connection failure is reported to the user."""
        sink.connect_error = TransportError("timed out")
        interaction = make_interaction()
        await cog.play.callback(cog, interaction, "song")

        assert "Failed to connect" in sent(interaction)["embed"].description
        assert_public_followup(interaction)
        assert GUILD not in manager


class TestControls:
    """Tests for the control commands."""

    @pytest.mark.asyncio
    async def test_skip_nothing_playing(self, cog: MusicCog) -> None:
        """Controls on an idle guild say nothing is playing."""
        interaction = make_interaction()
        await cog.skip.callback(cog, interaction)
        assert sent(interaction)["content"] == "❌ Nothing is playing"

    @pytest.mark.asyncio
    async def test_pause_resume(self, cog: MusicCog, manager: QueueManager) -> None:
        """Pause and resume report their outcome."""
        await manager.enqueue(GUILD, make_track("A"), "channel")
        await wait_for_state(manager, GUILD, QueueState.PLAYING)

        interaction = make_interaction()
        await cog.pause.callback(cog, interaction)
        assert sent(interaction)["content"] == "⏸️ Paused"

        interaction = make_interaction()
        await cog.pause.callback(cog, interaction)
        assert sent(interaction)["ephemeral"] is True

        interaction = make_interaction()
        await cog.resume.callback(cog, interaction)
        assert sent(interaction)["content"] == "▶️ Resumed"

    @pytest.mark.asyncio
    async def test_volume(self, cog: MusicCog, manager: QueueManager) -> None:
        """Volume replies with the clamped value."""
        await manager.enqueue(GUILD, make_track("A"), "channel")
        interaction = make_interaction()
        await cog.volume.callback(cog, interaction, 150)
        assert sent(interaction)["content"] == "🔊 Volume set to 100%"

    @pytest.mark.asyncio
    async def test_stop(self, cog: MusicCog, manager: QueueManager) -> None:
        """Stop tears the guild down."""
        await manager.enqueue(GUILD, make_track("A"), "channel")
        interaction = make_interaction()
        await cog.stop.callback(cog, interaction)

        assert sent(interaction)["content"] == "⏹️ Stopped and cleared queue!"
        assert GUILD not in manager

    @pytest.mark.asyncio
    async def test_queue(self, cog: MusicCog, manager: QueueManager) -> None:
        """The queue embed lists the head and what is up next."""
        for name in ("A", "B", "C"):
            await manager.enqueue(GUILD, make_track(name, duration=60), "channel")
        interaction = make_interaction()
        await cog.queue.callback(cog, interaction)

        embed = sent(interaction)["embed"]
        fields = {field.name.split(" (")[0]: field.value for field in embed.fields}
        assert "**A**" in fields["Now Playing"]
        assert fields["Up Next"] == "1. **B** `1:00`\n2. **C** `1:00`"
        assert embed.footer.text.startswith("3 song(s) • 3:00 total")

    @pytest.mark.asyncio
    async def test_queue_empty(self, cog: MusicCog) -> None:
        """An empty queue says so."""
        interaction = make_interaction()
        await cog.queue.callback(cog, interaction)
        assert sent(interaction)["content"] == "📭 Queue is empty"


class TestVoiceStateGlue:
    """Tests for feeding voice state changes to the manager."""

    @pytest.mark.asyncio
    async def test_own_disconnect_and_reconnect(self, cog: MusicCog, manager: QueueManager) -> None:
        """The bot's own drop and return start and abort the grace delay."""
        await manager.enqueue(GUILD, make_track("A"), "channel")
        await wait_for_state(manager, GUILD, QueueState.PLAYING)
        member = MagicMock(id=1)
        member.guild.id = GUILD
        in_channel = MagicMock(channel=MagicMock())
        out_of_channel = MagicMock(channel=None)

        await cog.on_voice_state_update(member, in_channel, out_of_channel)
        assert manager._controllers[GUILD].transport_down is True

        await cog.on_voice_state_update(member, out_of_channel, in_channel)
        assert manager._controllers[GUILD].transport_down is False
        assert manager.get(GUILD).state is QueueState.PLAYING

    @pytest.mark.asyncio
    async def test_other_members_ignored(self, cog: MusicCog, manager: QueueManager) -> None:
        """Other members leaving voice does not affect playback."""
        await manager.enqueue(GUILD, make_track("A"), "channel")
        member = MagicMock(id=2)
        member.guild.id = GUILD

        await cog.on_voice_state_update(member, MagicMock(channel=MagicMock()), MagicMock(channel=None))
        assert manager._controllers[GUILD].transport_down is False
