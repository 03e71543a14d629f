"""
Configuration - environment driven settings
"""
import logging
import os
from pathlib import Path

from dotenv import load_dotenv

from tunequeue.core.controller import PlaybackPolicy

logger = logging.getLogger(__name__)

load_dotenv()


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid integer for {name}: {raw!r}, using {default}")
        return default


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid number for {name}: {raw!r}, using {default}")
        return default


class Config:
    """Bot settings read from the environment (and .env)."""

    def __init__(self):
        self.DISCORD_TOKEN = os.getenv("DISCORD_TOKEN")

        # Logging
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self.LOG_FILE = Path(os.getenv("LOG_FILE", "data/bot.log"))

        # Playback policy
        self.DEFAULT_VOLUME = _get_int("DEFAULT_VOLUME", 50)
        self.IDLE_DISCONNECT_SECONDS = _get_float("IDLE_DISCONNECT_SECONDS", 300)
        self.RETRY_BACKOFF_SECONDS = _get_float("RETRY_BACKOFF_SECONDS", 3)
        self.DISCONNECT_GRACE_SECONDS = _get_float("DISCONNECT_GRACE_SECONDS", 5)
        self.CONNECT_TIMEOUT_SECONDS = _get_float("CONNECT_TIMEOUT_SECONDS", 20)
        self.STREAM_TIMEOUT_SECONDS = _get_float("STREAM_TIMEOUT_SECONDS", 25)

        # YouTube
        self.YTDL_COOKIES_PATH = os.getenv("YTDL_COOKIES_PATH") or None
        self.YTDL_PO_TOKEN = os.getenv("YTDL_PO_TOKEN") or None

        # Health page
        self.HEALTH_HOST = os.getenv("HEALTH_HOST", "0.0.0.0")
        self.PORT = _get_int("PORT", 10000)

        # Seconds before confirmation messages are deleted
        self.EPHEMERAL_DURATION = _get_int("EPHEMERAL_DURATION", 10)

    def playback_policy(self) -> PlaybackPolicy:
        return PlaybackPolicy(
            retry_backoff=self.RETRY_BACKOFF_SECONDS,
            idle_timeout=self.IDLE_DISCONNECT_SECONDS,
            disconnect_grace=self.DISCONNECT_GRACE_SECONDS,
        )


config = Config()
