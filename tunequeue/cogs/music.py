"""
Music Cog - Slash commands and controls on top of the queue manager
"""
import logging

import discord
from discord import app_commands
from discord.ext import commands

from tunequeue.config import config
from tunequeue.core.controller import ControlOutcome
from tunequeue.core.errors import ResolutionError, TransportError
from tunequeue.core.queue import QueueSnapshot, QueueState
from tunequeue.core.track import Track, format_duration

logger = logging.getLogger(__name__)

VOLUME_PRESETS = (25, 50, 75, 100)
QUEUE_PAGE_SIZE = 10

STATE_LABELS = {
    QueueState.CONNECTING: "⏳ Loading",
    QueueState.PLAYING: "▶️ Playing",
    QueueState.PAUSED: "⏸️ Paused",
    QueueState.ERROR_RETRY: "⚠️ Skipping a broken track",
}


def _error_embed(message: str) -> discord.Embed:
    return discord.Embed(description=f"❌ {message}", color=discord.Color.red())


def _track_embed(track: Track, title: str, color: discord.Color, source: str) -> discord.Embed:
    embed = discord.Embed(
        title=title,
        description=f"**[{track.title}]({track.source_locator})**",
        color=color,
    )
    embed.add_field(name="Duration", value=track.display_duration, inline=True)
    if track.requester_id:
        embed.add_field(name="Requested by", value=f"<@{track.requester_id}>", inline=True)
    embed.add_field(name="Source", value=source, inline=True)
    if track.thumbnail_url:
        embed.set_thumbnail(url=track.thumbnail_url)
    return embed


class VolumeSelect(discord.ui.Select):
    """Preset volume picker."""

    def __init__(self, cog: "MusicCog", guild_id: int, current: int):
        options = [
            discord.SelectOption(label=f"{value}%", value=str(value), default=value == current)
            for value in VOLUME_PRESETS
        ]
        super().__init__(placeholder="Choose a volume", options=options)
        self.cog = cog
        self.guild_id = guild_id

    async def callback(self, interaction: discord.Interaction):
        outcome, applied = await self.cog.manager.set_volume(self.guild_id, int(self.values[0]))
        if outcome is ControlOutcome.NOTHING_PLAYING:
            await interaction.response.send_message("❌ Nothing is playing", ephemeral=True)
            return
        await interaction.response.edit_message(content=f"🔊 Volume set to {applied}%", view=None)


class VolumeView(discord.ui.View):
    def __init__(self, cog: "MusicCog", guild_id: int, current: int):
        super().__init__(timeout=60)
        self.add_item(VolumeSelect(cog, guild_id, current))


class NowPlayingView(discord.ui.View):
    """Interactive Now Playing controls."""

    def __init__(self, cog: "MusicCog", guild_id: int):
        super().__init__(timeout=300)  # 5 minute timeout
        self.cog = cog
        self.guild_id = guild_id

    @discord.ui.button(emoji="⏸️", style=discord.ButtonStyle.secondary)
    async def pause_resume(self, interaction: discord.Interaction, button: discord.ui.Button):
        outcome, state = await self.cog.manager.toggle_pause(self.guild_id)
        if outcome is ControlOutcome.DONE:
            button.emoji = "▶️" if state is QueueState.PAUSED else "⏸️"
            await interaction.response.edit_message(view=self)
        elif outcome is ControlOutcome.NOTHING_PLAYING:
            await interaction.response.send_message("❌ Nothing is playing", ephemeral=True)
        else:
            await interaction.response.defer()

    @discord.ui.button(emoji="⏭️", style=discord.ButtonStyle.secondary)
    async def skip(self, interaction: discord.Interaction, button: discord.ui.Button):
        outcome = await self.cog.manager.skip(self.guild_id)
        if outcome is ControlOutcome.DONE:
            await interaction.response.send_message("⏭️ Skipped!", delete_after=config.EPHEMERAL_DURATION)
        else:
            await interaction.response.send_message("❌ Nothing is playing", ephemeral=True)

    @discord.ui.button(emoji="⏹️", style=discord.ButtonStyle.danger)
    async def stop_button(self, interaction: discord.Interaction, button: discord.ui.Button):
        outcome = await self.cog.manager.stop(self.guild_id)
        if outcome is ControlOutcome.DONE:
            await interaction.response.send_message(
                "⏹️ Stopped and cleared queue!", delete_after=config.EPHEMERAL_DURATION
            )
            self.stop()  # Stop the view from listening for more interactions
        else:
            await interaction.response.send_message("❌ Nothing is playing", ephemeral=True)

    @discord.ui.button(emoji="🔊", style=discord.ButtonStyle.secondary)
    async def volume(self, interaction: discord.Interaction, button: discord.ui.Button):
        snapshot = self.cog.manager.snapshot(self.guild_id)
        if snapshot is None:
            await interaction.response.send_message("❌ Nothing is playing", ephemeral=True)
            return
        await interaction.response.send_message(
            f"🔊 Current volume: {snapshot.volume_percent}%",
            view=VolumeView(self.cog, self.guild_id, snapshot.volume_percent),
            ephemeral=True,
        )


class MusicCog(commands.Cog):
    """Music playback commands and queue management."""

    def __init__(self, bot: commands.Bot):
        self.bot = bot

    @property
    def manager(self):
        return self.bot.manager

    @property
    def youtube(self):
        return self.bot.youtube

    async def cog_unload(self):
        """Called when the cog is unloaded."""
        await self.manager.shutdown()
        logger.info("Music cog unloaded")

    async def _send(self, interaction: discord.Interaction, **kwargs):
        if not interaction.response.is_done():
            return await interaction.response.send_message(**kwargs)

        # Followups are webhook messages and have no delete_after
        delete_after = kwargs.pop("delete_after", None)
        msg = await interaction.followup.send(wait=True, **kwargs)
        if delete_after is not None:
            try:
                await msg.delete(delay=delete_after)
            except discord.HTTPException as e:
                logger.debug(f"Could not delete followup in guild {interaction.guild_id}: {e}")
        return msg

    async def _nothing_playing(self, interaction: discord.Interaction):
        await self._send(interaction, content="❌ Nothing is playing", ephemeral=True)

    # ==================== COMMANDS ====================

    @app_commands.command(name="play", description="Play a song from YouTube")
    @app_commands.describe(query="Song name or YouTube URL")
    async def play(self, interaction: discord.Interaction, query: str):
        """Resolve a query and add it to the guild's queue."""
        # Check if user is in a voice channel
        if not interaction.user.voice or not interaction.user.voice.channel:
            await self._send(interaction, embed=_error_embed("You need to be in a voice channel!"), ephemeral=True)
            return

        voice_channel = interaction.user.voice.channel
        permissions = voice_channel.permissions_for(interaction.guild.me)
        if not permissions.connect or not permissions.speak:
            await self._send(
                interaction,
                embed=_error_embed(f"I need **Connect** and **Speak** permissions in {voice_channel.mention}!"),
                ephemeral=True,
            )
            return

        await interaction.response.defer()

        is_direct = self.youtube.parse_url(query) is not None
        try:
            track = await self.youtube.resolve(query, requester_id=interaction.user.id)
        except ResolutionError as e:
            logger.error(f"Guild {interaction.guild_id}: lookup failed for {query!r}: {e}")
            await self._send(
                interaction,
                embed=_error_embed("Search failed, please try again."),
                delete_after=config.EPHEMERAL_DURATION,
            )
            return

        if track is None:
            embed = discord.Embed(
                title="❌ No results",
                description=f"Nothing found for: `{query}`",
                color=discord.Color.orange(),
            )
            embed.add_field(
                name="Suggestions",
                value="• Check the spelling\n• Try the artist and song name\n• Paste a YouTube link",
                inline=False,
            )
            await self._send(interaction, embed=embed, delete_after=config.EPHEMERAL_DURATION)
            return

        try:
            position = await self.manager.enqueue(interaction.guild_id, track, voice_channel)
        except TransportError as e:
            logger.error(f"Guild {interaction.guild_id}: {e}")
            await self._send(
                interaction,
                embed=_error_embed(f"Failed to connect: {e}"),
                delete_after=config.EPHEMERAL_DURATION,
            )
            return

        source = "🔗 Direct URL" if is_direct else "🔍 Search"
        if position == 1:
            embed = _track_embed(track, "🎵 Now Playing", discord.Color.green(), source)
        else:
            embed = _track_embed(track, "📝 Added to Queue", discord.Color.blue(), source)
            embed.add_field(name="Position", value=str(position), inline=True)

        await self._send(interaction, embed=embed, view=NowPlayingView(self, interaction.guild_id))

    @app_commands.command(name="pause", description="Pause the current song")
    async def pause(self, interaction: discord.Interaction):
        """Pause playback."""
        outcome = await self.manager.pause(interaction.guild_id)
        if outcome is ControlOutcome.DONE:
            await self._send(interaction, content="⏸️ Paused", delete_after=config.EPHEMERAL_DURATION)
        elif outcome is ControlOutcome.NOOP:
            await self._send(interaction, content="ℹ️ Nothing to pause right now", ephemeral=True)
        else:
            await self._nothing_playing(interaction)

    @app_commands.command(name="resume", description="Resume the paused song")
    async def resume(self, interaction: discord.Interaction):
        """Resume playback."""
        outcome = await self.manager.resume(interaction.guild_id)
        if outcome is ControlOutcome.DONE:
            await self._send(interaction, content="▶️ Resumed", delete_after=config.EPHEMERAL_DURATION)
        elif outcome is ControlOutcome.NOOP:
            await self._send(interaction, content="❌ Nothing is paused", ephemeral=True)
        else:
            await self._nothing_playing(interaction)

    @app_commands.command(name="skip", description="Skip the current song")
    async def skip(self, interaction: discord.Interaction):
        """Skip the current song."""
        outcome = await self.manager.skip(interaction.guild_id)
        if outcome is ControlOutcome.DONE:
            await self._send(interaction, content="⏭️ Skipped!", delete_after=config.EPHEMERAL_DURATION)
        else:
            await self._nothing_playing(interaction)

    @app_commands.command(name="stop", description="Stop playback, clear the queue and leave")
    async def stop(self, interaction: discord.Interaction):
        outcome = await self.manager.stop(interaction.guild_id)
        if outcome is ControlOutcome.DONE:
            await self._send(
                interaction, content="⏹️ Stopped and cleared queue!", delete_after=config.EPHEMERAL_DURATION
            )
        else:
            await self._nothing_playing(interaction)

    @app_commands.command(name="volume", description="Set the playback volume")
    @app_commands.describe(percent="Volume from 0 to 100")
    async def volume(self, interaction: discord.Interaction, percent: int):
        outcome, applied = await self.manager.set_volume(interaction.guild_id, percent)
        if outcome is ControlOutcome.NOTHING_PLAYING:
            await self._nothing_playing(interaction)
            return
        await self._send(interaction, content=f"🔊 Volume set to {applied}%", delete_after=config.EPHEMERAL_DURATION)

    @app_commands.command(name="queue", description="Show the current queue")
    async def queue(self, interaction: discord.Interaction):
        """Show the queue."""
        snapshot = self.manager.snapshot(interaction.guild_id)
        if snapshot is None or snapshot.head is None:
            await self._send(interaction, content="📭 Queue is empty", ephemeral=True)
            return
        await self._send(interaction, embed=self._queue_embed(snapshot), ephemeral=True)

    @app_commands.command(name="nowplaying", description="Show the current song")
    async def nowplaying(self, interaction: discord.Interaction):
        snapshot = self.manager.snapshot(interaction.guild_id)
        if snapshot is None or snapshot.head is None or snapshot.state is QueueState.IDLE:
            await self._nothing_playing(interaction)
            return

        embed = _track_embed(snapshot.head, "🎵 Now Playing", discord.Color.green(), "YouTube")
        embed.add_field(name="Status", value=STATE_LABELS.get(snapshot.state, snapshot.state.value), inline=True)
        embed.add_field(name="Volume", value=f"{snapshot.volume_percent}%", inline=True)
        embed.set_footer(text=f"{len(snapshot.upcoming)} song(s) up next")
        await self._send(interaction, embed=embed, view=NowPlayingView(self, interaction.guild_id))

    def _queue_embed(self, snapshot: QueueSnapshot) -> discord.Embed:
        embed = discord.Embed(title="🎵 Queue", color=discord.Color.blue())
        head = snapshot.head
        embed.add_field(
            name=f"Now Playing ({STATE_LABELS.get(snapshot.state, snapshot.state.value)})",
            value=f"**{head.title}** `{head.display_duration}`",
            inline=False,
        )

        if not snapshot.upcoming:
            embed.add_field(name="Up Next", value="Nothing queued", inline=False)
        else:
            lines = [
                f"{i}. **{track.title}** `{track.display_duration}`"
                for i, track in enumerate(snapshot.upcoming[:QUEUE_PAGE_SIZE], 1)
            ]
            hidden = len(snapshot.upcoming) - QUEUE_PAGE_SIZE
            if hidden > 0:
                lines.append(f"...and {hidden} more")
            embed.add_field(name="Up Next", value="\n".join(lines), inline=False)

        total = sum(track.duration_seconds for track in (head, *snapshot.upcoming))
        embed.set_footer(
            text=f"{snapshot.length} song(s) • {format_duration(total)} total • Volume {snapshot.volume_percent}%"
        )
        return embed

    # ==================== EVENTS ====================

    @commands.Cog.listener()
    async def on_voice_state_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState
    ):
        """Feed the bot's own voice connection drops and recoveries to the manager."""
        if self.bot.user is None or member.id != self.bot.user.id:
            return

        guild_id = member.guild.id
        if guild_id not in self.manager:
            return

        if before.channel and after.channel is None:
            await self.manager.notify_disconnected(guild_id)
        elif after.channel and before.channel is None:
            if await self.manager.notify_reconnected(guild_id):
                logger.info(f"Guild {guild_id}: voice reconnected to {after.channel.name}")


async def setup(bot: commands.Bot):
    """Load the music cog."""
    await bot.add_cog(MusicCog(bot))
