"""
Track descriptor - immutable description of a playable item
"""
from dataclasses import dataclass, field
from datetime import datetime, UTC


def format_duration(seconds: int | None) -> str:
    """Format seconds as M:SS or H:MM:SS ("Live/Unknown" for 0)."""
    if not seconds:
        return "Live/Unknown"

    hours, remainder = divmod(int(seconds), 3600)
    minutes, secs = divmod(remainder, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


@dataclass(frozen=True)
class Track:
    """A resolved, playable track."""
    title: str
    source_locator: str  # URL handed to the sink to open a stream
    duration_seconds: int = 0  # 0 = live/unknown
    thumbnail_url: str | None = None
    requester_id: int | None = None
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self):
        if self.duration_seconds < 0:
            raise ValueError(f"duration_seconds must be non-negative, got {self.duration_seconds}")

    @property
    def is_live(self) -> bool:
        return self.duration_seconds == 0

    @property
    def display_duration(self) -> str:
        return format_duration(self.duration_seconds)
