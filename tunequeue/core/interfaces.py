"""
Collaborator contracts consumed by the playback core.

The core never talks to Discord or YouTube directly. It drives a PlaybackSink
(voice transport + audio resources) and is fed Tracks produced by a Resolver.
"""
import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any

from tunequeue.core.track import Track


class ResourceEvent(Enum):
    """Terminal event reported once per opened stream."""
    FINISHED = "finished"
    ERRORED = "errored"


@dataclass
class OpenedStream:
    """A stream ready to be played.

    ``events`` resolves exactly once, to the ResourceEvent that ended the
    resource. It stays pending until the resource has been played and stopped.
    """
    resource: Any
    events: asyncio.Future


class PlaybackSink(ABC):
    """Real-time audio transport the core streams into."""

    @abstractmethod
    async def connect(self, channel_ref: Any) -> Any:
        """Join a voice channel and return an opaque connection handle.

        Raises TransportError if the connection cannot be established.
        """

    @abstractmethod
    async def disconnect(self, handle: Any) -> None:
        """Release a connection handle."""

    @abstractmethod
    async def open_stream(self, source_locator: str) -> OpenedStream:
        """Open a streamable resource.

        Raises AcquisitionError with a structured kind on failure.
        """

    @abstractmethod
    def play(self, handle: Any, resource: Any) -> None:
        """Start playing an opened resource on a connection."""

    @abstractmethod
    def pause(self, handle: Any) -> None:
        ...

    @abstractmethod
    def resume(self, handle: Any) -> None:
        ...

    @abstractmethod
    def stop(self, handle: Any) -> None:
        """Terminate the current resource immediately (reports FINISHED)."""

    @abstractmethod
    def set_gain(self, resource: Any, fraction: float) -> None:
        """Apply a gain in [0.0, 1.0] to a live resource."""

    def release(self, resource: Any) -> None:
        """Free an opened resource that will never be played."""


class Resolver(ABC):
    """Turns a user query into a single playable Track."""

    @abstractmethod
    async def resolve(self, query: str, requester_id: int | None = None) -> Track | None:
        """Return the best match for ``query`` or None when nothing was found.

        Raises ResolutionError when the lookup itself failed.
        """
