"""
Health Cog - keep-alive status page and JSON status endpoints
"""
import html
import logging
from datetime import datetime, UTC

import psutil
from aiohttp import web
from discord.ext import commands

from tunequeue.core.queue import QueueSnapshot

logger = logging.getLogger(__name__)


STATUS_PAGE = """<!DOCTYPE html>
<html>
<head>
    <title>TuneQueue - {status}</title>
    <style>
        body {{ font-family: Arial, sans-serif; background: #2f3136; color: white; text-align: center; padding: 50px; }}
        h1 {{ color: #7289da; }}
        .status {{ background: {color}; padding: 15px; border-radius: 5px; display: inline-block; margin: 20px; }}
    </style>
</head>
<body>
    <h1>🎵 TuneQueue</h1>
    <div class="status">{status}</div>
    <p>🤖 Bot: {bot_tag}</p>
    <p>📊 Servers: {guilds}</p>
    <p>⏰ Uptime: {uptime} minutes</p>
    <p>🎵 Active Queues: {queues}</p>
    <p>📅 Last Check: {checked}</p>
</body>
</html>
"""


def _snapshot_to_dict(snapshot: QueueSnapshot) -> dict:
    head = snapshot.head
    return {
        "guild_id": str(snapshot.guild_id),
        "state": snapshot.state.value,
        "volume": snapshot.volume_percent,
        "length": snapshot.length,
        "current": {
            "title": head.title,
            "url": head.source_locator,
            "duration_seconds": head.duration_seconds,
            "requester_id": str(head.requester_id) if head.requester_id else None,
        } if head else None,
        "upcoming": [track.title for track in snapshot.upcoming],
    }


class HealthCog(commands.Cog):
    """Small web server that keeps hosting platforms from idling the bot."""

    def __init__(self, bot: commands.Bot, host: str = "0.0.0.0", port: int = 10000):
        self.bot = bot
        self.host = host
        self.port = port
        self.app: web.Application | None = None
        self.runner: web.AppRunner | None = None

    async def cog_load(self):
        self.app = self.build_app()
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, self.host, self.port)
        await site.start()
        logger.info(f"Health page at http://{self.host}:{self.port}")

    async def cog_unload(self):
        if self.runner:
            await self.runner.cleanup()
            self.runner = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/", self._handle_index)
        app.router.add_get("/api/status", self._handle_status)
        app.router.add_get("/api/queues", self._handle_queues)
        return app

    @property
    def _active_queues(self) -> int:
        manager = getattr(self.bot, "manager", None)
        return manager.active_count if manager else 0

    def _get_status_data(self) -> dict:
        ready = self.bot.is_ready()
        process = psutil.Process()
        return {
            "status": "online" if ready else "starting",
            "bot": str(self.bot.user) if self.bot.user else None,
            "guilds": len(self.bot.guilds),
            "active_queues": self._active_queues,
            "voice_connections": len(self.bot.voice_clients),
            "latency_ms": round(self.bot.latency * 1000, 2) if ready else None,
            "cpu_percent": psutil.cpu_percent(),
            "ram_percent": psutil.virtual_memory().percent,
            "process_ram_mb": round(process.memory_info().rss / 1024 / 1024, 2),
            "uptime_seconds": int((datetime.now(UTC) - self.bot.start_time).total_seconds()),
            "checked_at": datetime.now(UTC).isoformat(),
        }

    async def _handle_index(self, request: web.Request) -> web.Response:
        ready = self.bot.is_ready()
        uptime = int((datetime.now(UTC) - self.bot.start_time).total_seconds() // 60)
        page = STATUS_PAGE.format(
            status="✅ Online" if ready else "⏳ Starting",
            color="#43b581" if ready else "#faa61a",
            bot_tag=html.escape(str(self.bot.user)) if self.bot.user else "Loading...",
            guilds=len(self.bot.guilds),
            uptime=uptime,
            queues=self._active_queues,
            checked=datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S UTC"),
        )
        return web.Response(text=page, content_type="text/html")

    async def _handle_status(self, request: web.Request) -> web.Response:
        return web.json_response(self._get_status_data())

    async def _handle_queues(self, request: web.Request) -> web.Response:
        manager = getattr(self.bot, "manager", None)
        snapshots = manager.snapshots() if manager else []
        return web.json_response({"queues": [_snapshot_to_dict(s) for s in snapshots]})


async def setup(bot: commands.Bot):
    from tunequeue.config import config
    await bot.add_cog(HealthCog(bot, config.HEALTH_HOST, config.PORT))
