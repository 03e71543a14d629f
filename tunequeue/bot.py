"""
TuneQueue Discord Music Bot - Main Entry Point
"""
import asyncio
import logging
import os
from datetime import datetime, UTC
from pathlib import Path

import discord
from discord import app_commands
from discord.ext import commands

from tunequeue.config import config

# Setup logging
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
logging.getLogger("discord").setLevel(logging.WARNING)
logger = logging.getLogger("bot")


def setup_file_logging(path: Path) -> None:
    """Mirror the root logger into a file."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path, encoding="utf-8")
    except OSError as e:
        logger.warning(f"File logging disabled, cannot open {path}: {e}")
        return
    handler.setFormatter(logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    logging.getLogger().addHandler(handler)


class MusicBot(commands.Bot):
    """Discord music bot with one playback queue per server."""

    def __init__(self):
        intents = discord.Intents.default()
        intents.voice_states = True
        intents.guilds = True

        super().__init__(
            command_prefix="!",  # Fallback prefix, we use slash commands
            intents=intents,
            help_command=None,
        )

        # Will be initialized in setup_hook
        self.youtube = None
        self.manager = None
        self.start_time = datetime.now(UTC)

    async def setup_hook(self) -> None:
        """Called when the bot is starting up."""
        logger.info("Setting up bot...")

        from tunequeue.core.manager import QueueManager
        from tunequeue.services.voice import DiscordSink
        from tunequeue.services.youtube import YouTubeService

        self.youtube = YouTubeService(
            config.YTDL_COOKIES_PATH,
            config.YTDL_PO_TOKEN,
            stream_timeout=config.STREAM_TIMEOUT_SECONDS,
        )
        sink = DiscordSink(self.youtube, connect_timeout=config.CONNECT_TIMEOUT_SECONDS)
        self.manager = QueueManager(
            sink,
            policy=config.playback_policy(),
            default_volume=config.DEFAULT_VOLUME,
        )
        logger.info("Services initialized")

        self.tree.on_error = self.on_app_command_error

        # Load all cogs from the cogs directory
        cogs_dir = Path(__file__).parent / "cogs"
        for cog_file in cogs_dir.glob("*.py"):
            if cog_file.name.startswith("_"):
                continue
            cog_name = f"tunequeue.cogs.{cog_file.stem}"
            try:
                await self.load_extension(cog_name)
                logger.info(f"Loaded cog: {cog_name}")
            except Exception as e:
                logger.error(f"Failed to load cog {cog_name}: {e}")

        # Sync slash commands
        logger.info("Syncing slash commands...")
        await self.tree.sync()
        logger.info("Slash commands synced")

    async def on_ready(self) -> None:
        """Called when the bot is fully ready."""
        logger.info(f"Logged in as {self.user} (ID: {self.user.id})")
        logger.info(f"Connected to {len(self.guilds)} guild(s)")

        # Set presence
        activity = discord.Activity(
            type=discord.ActivityType.listening,
            name="/play"
        )
        await self.change_presence(activity=activity)

    async def on_app_command_error(
        self,
        interaction: discord.Interaction,
        error: app_commands.AppCommandError,
    ) -> None:
        command = interaction.command.name if interaction.command else "?"
        logger.error(f"Command /{command} failed in guild {interaction.guild_id}: {error}", exc_info=error)
        message = "❌ Something went wrong, please try again."
        try:
            if interaction.response.is_done():
                await interaction.followup.send(message, ephemeral=True)
            else:
                await interaction.response.send_message(message, ephemeral=True)
        except discord.HTTPException as e:
            logger.warning(f"Could not report command error: {e}")

    async def on_error(self, event_method: str, *args, **kwargs) -> None:
        logger.exception(f"Unhandled error in {event_method}")

    async def on_guild_join(self, guild: discord.Guild) -> None:
        logger.info(f"Joined guild: {guild.name} (ID: {guild.id})")

    async def on_guild_remove(self, guild: discord.Guild) -> None:
        """Called when the bot is removed from a guild."""
        logger.info(f"Left guild: {guild.name} (ID: {guild.id})")
        if self.manager:
            await self.manager.forget(guild.id)

    async def close(self) -> None:
        """Cleanup when the bot is shutting down."""
        logger.info("Shutting down...")

        # Tear down every queue first so FFmpeg processes and voice connections close
        if self.manager:
            try:
                await self.manager.shutdown()
            except Exception as e:
                logger.error(f"Failed to shut down queues: {e}")

        if self.youtube:
            await self.youtube.shutdown()

        await super().close()
        logger.info("Shutdown complete.")


async def main():
    """Main entry point."""
    if not config.DISCORD_TOKEN:
        logger.critical("DISCORD_TOKEN is not set")
        return

    setup_file_logging(config.LOG_FILE)
    bot = MusicBot()

    async with bot:
        try:
            await bot.start(config.DISCORD_TOKEN)
        except KeyboardInterrupt:
            logger.info("Shutdown initiated by user...")
        except Exception as e:
            logger.error(f"Bot error: {e}")
        finally:
            if not bot.is_closed():
                await bot.close()


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        # standard exit
        os._exit(0)
    except Exception as e:
        logger.critical(f"Fatal error: {e}")
        os._exit(1)


if __name__ == "__main__":
    run()
