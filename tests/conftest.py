"""Shared fixtures: an in-memory playback sink and fast timing policy."""

import asyncio
from dataclasses import dataclass, field
from typing import Any

import pytest
import pytest_asyncio

from tunequeue.core.controller import PlaybackPolicy
from tunequeue.core.errors import AcquisitionError, AcquisitionErrorKind
from tunequeue.core.interfaces import OpenedStream, PlaybackSink, ResourceEvent
from tunequeue.core.manager import QueueManager
from tunequeue.core.queue import QueueState
from tunequeue.core.track import Track

FAST_POLICY = PlaybackPolicy(retry_backoff=0.01, idle_timeout=0.1, disconnect_grace=0.2)


@dataclass
class FakeResource:
    locator: str
    events: asyncio.Future
    gain: float | None = None


@dataclass(eq=False)
class FakeHandle:
    channel_ref: Any
    resource: FakeResource | None = None


@dataclass
class FakeSink(PlaybackSink):
    """Records every call; streams end only when the test says so."""

    failures: dict[str, AcquisitionErrorKind] = field(default_factory=dict)
    connect_error: Exception | None = None
    open_delay: float = 0.0
    handles: list[FakeHandle] = field(default_factory=list)
    disconnected: list[FakeHandle] = field(default_factory=list)
    opened: list[str] = field(default_factory=list)
    played: list[str] = field(default_factory=list)
    released: list[str] = field(default_factory=list)
    stops: int = 0
    paused: bool = False
    current: FakeResource | None = None

    async def connect(self, channel_ref: Any) -> FakeHandle:
        if self.connect_error:
            raise self.connect_error
        handle = FakeHandle(channel_ref)
        self.handles.append(handle)
        return handle

    async def disconnect(self, handle: FakeHandle) -> None:
        self.disconnected.append(handle)

    async def open_stream(self, source_locator: str) -> OpenedStream:
        if self.open_delay:
            await asyncio.sleep(self.open_delay)
        self.opened.append(source_locator)
        if source_locator in self.failures:
            raise AcquisitionError(self.failures[source_locator])
        resource = FakeResource(source_locator, asyncio.get_running_loop().create_future())
        return OpenedStream(resource=resource, events=resource.events)

    def play(self, handle: FakeHandle, resource: FakeResource) -> None:
        handle.resource = resource
        self.current = resource
        self.paused = False
        self.played.append(resource.locator)

    def pause(self, handle: FakeHandle) -> None:
        self.paused = True

    def resume(self, handle: FakeHandle) -> None:
        self.paused = False

    def stop(self, handle: FakeHandle) -> None:
        # A stopped resource reports FINISHED, like a voice client's after callback
        self.stops += 1
        resource, handle.resource = handle.resource, None
        if resource is self.current:
            self.current = None
        _settle(resource, ResourceEvent.FINISHED)

    def set_gain(self, resource: FakeResource, fraction: float) -> None:
        resource.gain = fraction

    def release(self, resource: FakeResource) -> None:
        self.released.append(resource.locator)

    def end(self, event: ResourceEvent = ResourceEvent.FINISHED) -> None:
        """Simulate the current resource ending on its own."""
        resource, self.current = self.current, None
        _settle(resource, event)


def _settle(resource: FakeResource | None, event: ResourceEvent) -> None:
    if resource and not resource.events.done():
        resource.events.set_result(event)


def make_track(name: str, duration: int = 180, requester_id: int | None = 1) -> Track:
    return Track(title=name, source_locator=name, duration_seconds=duration, requester_id=requester_id)


async def wait_until(predicate, timeout: float = 1.0) -> None:
    """Yield to the loop until ``predicate()`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


async def wait_for_state(manager: QueueManager, guild_id: int, state: QueueState) -> None:
    await wait_until(lambda: manager.get(guild_id) is not None and manager.get(guild_id).state is state)


@pytest.fixture
def sink() -> FakeSink:
    return FakeSink()


@pytest_asyncio.fixture
async def manager(sink: FakeSink):
    """Manager over the fake sink; every queue is torn down afterwards."""
    manager = QueueManager(sink, policy=FAST_POLICY)
    yield manager
    await manager.shutdown()


