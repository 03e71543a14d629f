"""
Queue Manager - process-wide registry of guild queues

The single entry point for inbound commands and transport events. Every
operation on a guild runs under that guild's lock, so create/destroy of the
same guild id never interleave and different guilds never contend.
"""
import asyncio
import logging
from collections import defaultdict
from functools import partial
from typing import Any

from tunequeue.core.controller import ControlOutcome, PlaybackController, PlaybackPolicy
from tunequeue.core.errors import TransportError
from tunequeue.core.interfaces import PlaybackSink
from tunequeue.core.queue import GuildQueue, QueueSnapshot, QueueState, clamp_volume
from tunequeue.core.track import Track

logger = logging.getLogger(__name__)


class QueueManager:
    """Registry mapping guild id -> GuildQueue and its controller."""

    def __init__(self, sink: PlaybackSink, policy: PlaybackPolicy | None = None, default_volume: int = 50):
        self.sink = sink
        self.policy = policy or PlaybackPolicy()
        self.default_volume = clamp_volume(default_volume)
        self._queues: dict[int, GuildQueue] = {}
        self._controllers: dict[int, PlaybackController] = {}
        self._locks: defaultdict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    def __contains__(self, guild_id: int) -> bool:
        return guild_id in self._queues

    @property
    def active_count(self) -> int:
        return len(self._queues)

    # =========================================================================
    # Registry
    # =========================================================================

    def get(self, guild_id: int) -> GuildQueue | None:
        return self._queues.get(guild_id)

    async def get_or_create(self, guild_id: int, channel_ref: Any = None) -> GuildQueue:
        """Return the guild's queue, creating an idle one if needed.

        A queue created here starts its idle timer, so it is torn down unless
        a track is enqueued within the idle window.
        """
        async with self._locks[guild_id]:
            if guild_id in self._queues:
                return self._queues[guild_id]
            queue = self._get_or_create_locked(guild_id, channel_ref)
            self._controllers[guild_id].arm_idle_timer()
            return queue

    def _get_or_create_locked(self, guild_id: int, channel_ref: Any) -> GuildQueue:
        queue = self._queues.get(guild_id)
        if queue is not None:
            return queue

        logger.info(f"Creating queue for guild {guild_id}")
        queue = GuildQueue(guild_id=guild_id, channel_ref=channel_ref, volume_percent=self.default_volume)
        self._queues[guild_id] = queue
        self._controllers[guild_id] = PlaybackController(
            queue,
            self.sink,
            self._locks[guild_id],
            teardown=partial(self._destroy_locked, guild_id),
            policy=self.policy,
        )
        return queue

    async def destroy(self, guild_id: int) -> None:
        """Tear down a guild's queue. Destroying an absent guild is a no-op."""
        async with self._locks[guild_id]:
            await self._destroy_locked(guild_id)

    async def _destroy_locked(self, guild_id: int) -> None:
        queue = self._queues.pop(guild_id, None)
        controller = self._controllers.pop(guild_id, None)
        if queue is None:
            return

        queue.state = QueueState.DRAINING
        if controller:
            controller.close()

        handle = queue.connection_handle
        queue.connection_handle = None
        if handle is not None:
            try:
                await self.sink.disconnect(handle)
            except Exception as e:
                logger.error(f"Guild {guild_id}: disconnect failed during cleanup: {e}")

        logger.info(f"Cleaned up queue for guild {guild_id}")

    async def forget(self, guild_id: int) -> None:
        """Destroy a guild's queue and drop its lock (the bot left the guild)."""
        async with self._locks[guild_id]:
            await self._destroy_locked(guild_id)
            self._locks.pop(guild_id, None)

    async def shutdown(self) -> None:
        """Destroy every queue (used on bot shutdown)."""
        for guild_id in list(self._queues):
            await self.destroy(guild_id)

    # =========================================================================
    # Enqueue
    # =========================================================================

    async def enqueue(self, guild_id: int, track: Track, channel_ref: Any) -> int:
        """Append a track, connecting and starting playback when idle.

        Returns the track's 1-based position (1 means it plays now).
        Raises TransportError if a fresh queue cannot join voice.
        """
        async with self._locks[guild_id]:
            queue = self._get_or_create_locked(guild_id, channel_ref)
            controller = self._controllers[guild_id]
            position = queue.append(track)

            if queue.connection_handle is None:
                try:
                    await controller.bind(channel_ref)
                except Exception as e:
                    logger.error(f"Guild {guild_id}: failed to join voice channel: {e}")
                    await self._destroy_locked(guild_id)
                    if isinstance(e, TransportError):
                        raise
                    raise TransportError("Failed to join voice channel") from e

            controller.on_enqueue()
            logger.info(f"Guild {guild_id}: queued '{track.title}' at position {position}")
            return position

    # =========================================================================
    # Control actions
    # =========================================================================

    async def pause(self, guild_id: int) -> ControlOutcome:
        async with self._locks[guild_id]:
            controller = self._controllers.get(guild_id)
            if controller is None:
                return ControlOutcome.NOTHING_PLAYING
            return controller.pause()

    async def resume(self, guild_id: int) -> ControlOutcome:
        async with self._locks[guild_id]:
            controller = self._controllers.get(guild_id)
            if controller is None:
                return ControlOutcome.NOTHING_PLAYING
            return controller.resume()

    async def toggle_pause(self, guild_id: int) -> tuple[ControlOutcome, QueueState | None]:
        """Pause if playing, resume if paused. Returns the outcome and new state."""
        async with self._locks[guild_id]:
            controller = self._controllers.get(guild_id)
            if controller is None:
                return ControlOutcome.NOTHING_PLAYING, None
            if controller.queue.state is QueueState.PAUSED:
                outcome = controller.resume()
            else:
                outcome = controller.pause()
            return outcome, controller.queue.state

    async def skip(self, guild_id: int) -> ControlOutcome:
        # Capture the session before waiting on the lock so a finish signal
        # processed in between is not followed by a second removal.
        controller = self._controllers.get(guild_id)
        expected = controller.session if controller else None

        async with self._locks[guild_id]:
            controller = self._controllers.get(guild_id)
            if controller is None:
                return ControlOutcome.NOTHING_PLAYING
            return controller.skip(expected)

    async def stop(self, guild_id: int) -> ControlOutcome:
        """Clear the queue, stop playback and tear down immediately."""
        async with self._locks[guild_id]:
            queue = self._queues.get(guild_id)
            if queue is None:
                return ControlOutcome.NOTHING_PLAYING
            removed = queue.clear()
            logger.info(f"Guild {guild_id}: stopped, cleared {removed} track(s)")
            await self._destroy_locked(guild_id)
            return ControlOutcome.DONE

    async def set_volume(self, guild_id: int, percent: int) -> tuple[ControlOutcome, int]:
        """Clamp and apply a volume. Returns the outcome and the applied value."""
        async with self._locks[guild_id]:
            controller = self._controllers.get(guild_id)
            if controller is None:
                return ControlOutcome.NOTHING_PLAYING, clamp_volume(percent)
            return ControlOutcome.DONE, controller.set_volume(percent)

    # =========================================================================
    # Transport events
    # =========================================================================

    async def notify_disconnected(self, guild_id: int) -> None:
        """The voice transport for a guild dropped."""
        async with self._locks[guild_id]:
            controller = self._controllers.get(guild_id)
            if controller:
                controller.on_transport_lost()

    async def notify_reconnected(self, guild_id: int) -> bool:
        """The voice transport came back. Returns True if a drain was aborted."""
        async with self._locks[guild_id]:
            controller = self._controllers.get(guild_id)
            if controller is None:
                return False
            return controller.on_transport_restored()

    # =========================================================================
    # Observations
    # =========================================================================

    def snapshot(self, guild_id: int) -> QueueSnapshot | None:
        queue = self._queues.get(guild_id)
        return queue.snapshot() if queue else None

    def snapshots(self) -> list[QueueSnapshot]:
        return [queue.snapshot() for queue in self._queues.values()]
