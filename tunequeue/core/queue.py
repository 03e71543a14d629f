"""
Guild Queue - per-guild pending tracks, playback state and volume
"""
import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, UTC
from enum import Enum
from typing import Any

from tunequeue.core.track import Track

DEFAULT_VOLUME = 50
MIN_VOLUME = 0
MAX_VOLUME = 100


class QueueState(Enum):
    """
    Playback state of a guild queue.

    IDLE: Nothing playing (may still hold a connection while the idle timer runs)
    CONNECTING: Acquiring a stream for the head track
    PLAYING: Head track is streaming into the sink
    PAUSED: Head track is loaded but paused
    ERROR_RETRY: A track failed; waiting out the backoff before trying the next one
    DRAINING: Being torn down; terminal
    """
    IDLE = "idle"
    CONNECTING = "connecting"
    PLAYING = "playing"
    PAUSED = "paused"
    ERROR_RETRY = "error_retry"
    DRAINING = "draining"


# States in which the head of ``pending`` is owned by playback
BUSY_STATES = frozenset({
    QueueState.CONNECTING,
    QueueState.PLAYING,
    QueueState.PAUSED,
    QueueState.ERROR_RETRY,
})


def clamp_volume(percent: int) -> int:
    """Clamp a volume percentage to [0, 100]."""
    return max(MIN_VOLUME, min(MAX_VOLUME, int(percent)))


@dataclass(frozen=True)
class QueueSnapshot:
    """Read-only view of a guild queue for reporting."""
    guild_id: int
    state: QueueState
    volume_percent: int
    length: int
    head: Track | None
    upcoming: tuple[Track, ...]

    @property
    def is_playing(self) -> bool:
        return self.state in (QueueState.PLAYING, QueueState.PAUSED)


@dataclass
class GuildQueue:
    """Per-guild queue state."""
    guild_id: int
    channel_ref: Any = None
    pending: deque[Track] = field(default_factory=deque)
    volume_percent: int = DEFAULT_VOLUME
    state: QueueState = QueueState.IDLE
    connection_handle: Any = None  # Owned voice connection
    disconnect_timer: asyncio.Task | None = None  # Idle auto-disconnect
    resource: Any = None  # Live audio resource, when one is playing
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_activity: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self):
        self.volume_percent = clamp_volume(self.volume_percent)

    def __len__(self) -> int:
        return len(self.pending)

    @property
    def head(self) -> Track | None:
        """The currently playing or about-to-play track."""
        return self.pending[0] if self.pending else None

    @property
    def gain(self) -> float:
        return self.volume_percent / 100

    def append(self, track: Track) -> int:
        """Add a track to the tail and return its 1-based position."""
        self.pending.append(track)
        self.last_activity = datetime.now(UTC)
        return len(self.pending)

    def shift(self) -> Track | None:
        """Remove and return the head track."""
        if not self.pending:
            return None
        return self.pending.popleft()

    def clear(self) -> int:
        """Drop every pending track, returning how many were removed."""
        removed = len(self.pending)
        self.pending.clear()
        return removed

    def set_volume(self, percent: int) -> int:
        self.volume_percent = clamp_volume(percent)
        return self.volume_percent

    def snapshot(self) -> QueueSnapshot:
        return QueueSnapshot(
            guild_id=self.guild_id,
            state=self.state,
            volume_percent=self.volume_percent,
            length=len(self.pending),
            head=self.head,
            upcoming=tuple(list(self.pending)[1:]),
        )
