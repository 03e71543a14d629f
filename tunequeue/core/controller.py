"""
Playback Controller - per-guild playback state machine

Drives one GuildQueue through connect -> play -> (finished | errored) ->
next-or-idle, and owns the retry, idle auto-disconnect and transport grace
policies.

Locking: every public method except the task bodies expects the guild lock to
be held by the caller (QueueManager). Task bodies (stream acquisition, resource
watchers, timers) take the lock themselves before touching the queue, and
check their playback session or timer identity first so superseded work exits
without mutating anything.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from itertools import count
from time import monotonic as _now
from typing import Any, Awaitable, Callable

from tunequeue.core.errors import AcquisitionError, AcquisitionErrorKind
from tunequeue.core.interfaces import OpenedStream, PlaybackSink, ResourceEvent
from tunequeue.core.queue import GuildQueue, QueueState
from tunequeue.core.track import Track

logger = logging.getLogger(__name__)


_SESSION_IDS = count(1)


@dataclass(slots=True)
class PlaybackSession:
    """Token scoping asynchronous work to one play attempt of one track.

    A session is created each time the head track is handed to the sink. Skip,
    stop and teardown cancel it, after which late stream results and terminal
    events carrying it are discarded.
    """

    id: int = field(default_factory=lambda: next(_SESSION_IDS))
    track: Track | None = None
    started_at: float = field(default_factory=_now)
    cancelled: bool = False

    def cancel(self) -> None:
        self.cancelled = True


@dataclass(frozen=True)
class PlaybackPolicy:
    """Timing policy for a controller, in seconds."""
    retry_backoff: float = 3.0
    idle_timeout: float = 300.0
    disconnect_grace: float = 5.0


class ControlOutcome(Enum):
    """Result of a control action."""
    DONE = "done"
    NOOP = "noop"
    NOTHING_PLAYING = "nothing_playing"


def _cancel_task(task: asyncio.Task | None) -> None:
    """Cancel a task unless it is the one currently running."""
    if task and not task.done() and task is not asyncio.current_task():
        task.cancel()


class PlaybackController:
    """State machine for a single guild's queue."""

    def __init__(
        self,
        queue: GuildQueue,
        sink: PlaybackSink,
        lock: asyncio.Lock,
        teardown: Callable[[], Awaitable[None]],
        policy: PlaybackPolicy | None = None,
    ):
        self.queue = queue
        self.sink = sink
        self.policy = policy or PlaybackPolicy()
        self._lock = lock
        self._teardown = teardown

        self._session: PlaybackSession | None = None
        self._acquire_task: asyncio.Task | None = None
        self._watch_task: asyncio.Task | None = None
        self._retry_timer: asyncio.Task | None = None
        self._grace_timer: asyncio.Task | None = None

        # Work held back while the transport is down
        self._parked: tuple[PlaybackSession, OpenedStream] | None = None
        self._deferred: tuple[PlaybackSession, ResourceEvent] | None = None

        self.closed = False

    @property
    def guild_id(self) -> int:
        return self.queue.guild_id

    @property
    def session(self) -> PlaybackSession | None:
        return self._session

    @property
    def transport_down(self) -> bool:
        return self._grace_timer is not None

    def _is_current(self, session: PlaybackSession) -> bool:
        return not self.closed and self._session is session and not session.cancelled

    # =========================================================================
    # Connection & playback
    # =========================================================================

    async def bind(self, channel_ref: Any) -> None:
        """Establish the voice connection for a fresh queue."""
        self.queue.channel_ref = channel_ref
        self.queue.connection_handle = await self.sink.connect(channel_ref)
        logger.info(f"Guild {self.guild_id}: voice connection established")

    def on_enqueue(self) -> None:
        """React to a newly appended track."""
        self.cancel_idle_timer()
        if self.queue.state is QueueState.IDLE and len(self.queue) == 1:
            self.play_head()

    def play_head(self) -> None:
        """Hand the head track to the sink. Acquisition runs in the background."""
        if self.closed or not self.queue.pending:
            return

        track = self.queue.head
        session = PlaybackSession(track=track)
        self._session = session
        self.queue.state = QueueState.CONNECTING
        self._acquire_task = asyncio.create_task(self._acquire(session))

    async def _acquire(self, session: PlaybackSession) -> None:
        track = session.track
        error: AcquisitionError | None = None
        opened: OpenedStream | None = None

        try:
            opened = await self.sink.open_stream(track.source_locator)
        except AcquisitionError as e:
            error = e
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Guild {self.guild_id}: unexpected error opening '{track.title}': {e}")
            error = AcquisitionError(AcquisitionErrorKind.UNKNOWN, str(e))

        try:
            async with self._lock:
                if not self._is_current(session):
                    if opened:
                        self.sink.release(opened.resource)
                    return

                if error is not None:
                    logger.warning(
                        f"Guild {self.guild_id}: could not open '{track.title}' "
                        f"({error.kind.value}), skipping"
                    )
                    self._drop_head()
                    self._retry_or_idle()
                    return

                if self.transport_down:
                    logger.info(f"Guild {self.guild_id}: transport down, holding '{track.title}'")
                    self._parked = (session, opened)
                    return

                self._start(session, opened)
        except asyncio.CancelledError:
            # Cancelled while waiting for the lock; the stream was never started
            if opened:
                self.sink.release(opened.resource)
            raise

    def _start(self, session: PlaybackSession, opened: OpenedStream) -> None:
        """Start a freshly opened stream (lock held)."""
        queue = self.queue
        try:
            self.sink.set_gain(opened.resource, queue.gain)
            self.sink.play(queue.connection_handle, opened.resource)
        except Exception as e:
            logger.error(f"Guild {self.guild_id}: failed to start '{session.track.title}': {e}")
            self.sink.release(opened.resource)
            self._drop_head()
            self._retry_or_idle()
            return

        queue.resource = opened.resource
        queue.state = QueueState.PLAYING
        session.started_at = _now()
        self._watch_task = asyncio.create_task(self._watch(session, opened.events))
        logger.info(f"Guild {self.guild_id}: now playing '{session.track.title}'")

    async def _watch(self, session: PlaybackSession, events: asyncio.Future) -> None:
        event = await events
        async with self._lock:
            if not self._is_current(session):
                return
            if self.transport_down:
                self._deferred = (session, event)
                return
            self._on_terminal_event(event)

    def _on_terminal_event(self, event: ResourceEvent) -> None:
        """Shift out the track that just ended and move on (lock held)."""
        finished = self._drop_head()
        title = finished.title if finished else "?"

        if event is ResourceEvent.FINISHED:
            logger.info(f"Guild {self.guild_id}: finished '{title}'")
            self._advance()
        else:
            logger.warning(f"Guild {self.guild_id}: playback error on '{title}'")
            self._retry_or_idle()

    def _drop_head(self) -> Track | None:
        """Retire the current session and remove the head track."""
        if self._session:
            self._session.cancel()
        self._session = None
        self.queue.resource = None
        return self.queue.shift()

    def _advance(self) -> None:
        if self.queue.pending:
            self.play_head()
        else:
            self._go_idle()

    def _retry_or_idle(self) -> None:
        if self.queue.pending:
            self.queue.state = QueueState.ERROR_RETRY
            _cancel_task(self._retry_timer)
            self._retry_timer = asyncio.create_task(self._retry_after_backoff())
        else:
            self._go_idle()

    def _go_idle(self) -> None:
        self.queue.state = QueueState.IDLE
        self.queue.resource = None
        logger.info(f"Guild {self.guild_id}: queue empty")
        self.arm_idle_timer()

    async def _retry_after_backoff(self) -> None:
        await asyncio.sleep(self.policy.retry_backoff)
        async with self._lock:
            if self.closed or self._retry_timer is not asyncio.current_task():
                return
            self._retry_timer = None
            if self.queue.state is QueueState.ERROR_RETRY and self.queue.pending:
                logger.info(f"Guild {self.guild_id}: trying next track")
                self.play_head()

    # =========================================================================
    # Idle auto-disconnect
    # =========================================================================

    def arm_idle_timer(self) -> None:
        self.cancel_idle_timer()
        self.queue.disconnect_timer = asyncio.create_task(self._idle_disconnect())

    def cancel_idle_timer(self) -> None:
        _cancel_task(self.queue.disconnect_timer)
        self.queue.disconnect_timer = None

    async def _idle_disconnect(self) -> None:
        await asyncio.sleep(self.policy.idle_timeout)
        async with self._lock:
            if self.closed or self.queue.disconnect_timer is not asyncio.current_task():
                return
            self.queue.disconnect_timer = None
            if self.queue.pending or self.queue.state is not QueueState.IDLE:
                return
            logger.info(f"Guild {self.guild_id}: idle for {self.policy.idle_timeout:.0f}s, disconnecting")
            self.queue.state = QueueState.DRAINING
            await self._teardown()

    # =========================================================================
    # Control actions
    # =========================================================================

    def pause(self) -> ControlOutcome:
        state = self.queue.state
        if state is QueueState.PLAYING:
            self.sink.pause(self.queue.connection_handle)
            self.queue.state = QueueState.PAUSED
            return ControlOutcome.DONE
        if state is QueueState.IDLE:
            return ControlOutcome.NOTHING_PLAYING
        return ControlOutcome.NOOP

    def resume(self) -> ControlOutcome:
        state = self.queue.state
        if state is QueueState.PAUSED:
            self.sink.resume(self.queue.connection_handle)
            self.queue.state = QueueState.PLAYING
            return ControlOutcome.DONE
        if state is QueueState.IDLE:
            return ControlOutcome.NOTHING_PLAYING
        return ControlOutcome.NOOP

    def skip(self, expected: PlaybackSession | None = None) -> ControlOutcome:
        """Remove the head track and advance.

        ``expected`` is the session that was current when the skip was
        requested. If it has since ended on its own, the queue already
        advanced past the track the caller meant, so nothing more is removed.
        """
        queue = self.queue
        if queue.state is QueueState.IDLE or not queue.pending:
            return ControlOutcome.NOTHING_PLAYING
        if expected is not None and expected is not self._session:
            logger.debug(f"Guild {self.guild_id}: skip target already finished")
            return ControlOutcome.DONE

        had_resource = queue.resource is not None
        _cancel_task(self._watch_task)
        _cancel_task(self._retry_timer)
        self._retry_timer = None
        self._release_parked()
        self._deferred = None

        skipped = self._drop_head()
        if had_resource:
            self.sink.stop(queue.connection_handle)
        logger.info(f"Guild {self.guild_id}: skipped '{skipped.title}'")
        self._advance()
        return ControlOutcome.DONE

    def set_volume(self, percent: int) -> int:
        """Store a new volume and apply it to the live resource."""
        applied = self.queue.set_volume(percent)
        if self.queue.resource is not None:
            self.sink.set_gain(self.queue.resource, self.queue.gain)
        logger.info(f"Guild {self.guild_id}: volume set to {applied}%")
        return applied

    # =========================================================================
    # Transport faults
    # =========================================================================

    def on_transport_lost(self) -> None:
        """Start the grace delay that ends in draining unless superseded."""
        if self.closed or self._grace_timer is not None:
            return
        logger.warning(
            f"Guild {self.guild_id}: voice connection lost, "
            f"draining in {self.policy.disconnect_grace:.0f}s unless it reconnects"
        )
        self._grace_timer = asyncio.create_task(self._drain_after_grace())

    def on_transport_restored(self) -> bool:
        """Abort a pending drain. Returns True if one was aborted."""
        if self._grace_timer is None:
            return False
        _cancel_task(self._grace_timer)
        self._grace_timer = None
        logger.info(f"Guild {self.guild_id}: voice connection restored, resuming")

        if self._parked:
            session, opened = self._parked
            self._parked = None
            if self._is_current(session):
                self._start(session, opened)
            else:
                self.sink.release(opened.resource)
        if self._deferred:
            session, event = self._deferred
            self._deferred = None
            if self._is_current(session):
                self._on_terminal_event(event)
        return True

    async def _drain_after_grace(self) -> None:
        await asyncio.sleep(self.policy.disconnect_grace)
        async with self._lock:
            if self.closed or self._grace_timer is not asyncio.current_task():
                return
            self._grace_timer = None
            logger.warning(f"Guild {self.guild_id}: voice connection did not recover, draining")
            self.queue.state = QueueState.DRAINING
            await self._teardown()

    # =========================================================================
    # Teardown
    # =========================================================================

    def _release_parked(self) -> None:
        if self._parked:
            self.sink.release(self._parked[1].resource)
            self._parked = None

    def close(self) -> None:
        """Cancel every timer and task and stop the live resource."""
        if self.closed:
            return
        self.closed = True

        if self._session:
            self._session.cancel()
        self._session = None

        for task in (self._acquire_task, self._watch_task, self._retry_timer, self._grace_timer):
            _cancel_task(task)
        self._retry_timer = None
        self._grace_timer = None
        self.cancel_idle_timer()

        self._release_parked()
        self._deferred = None

        if self.queue.resource is not None:
            try:
                self.sink.stop(self.queue.connection_handle)
            except Exception as e:
                logger.error(f"Guild {self.guild_id}: failed to stop playback during teardown: {e}")
            self.queue.resource = None
