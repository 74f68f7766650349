# SPDX-License-Identifier: MPL-2.0
"""
Shared fixtures: a scriptable fake transport, a virtual-time scheduler and
a broadcast recorder.

No test touches the network; DNS resolution is blocked for every test.
"""

import asyncio
import socket
from typing import Any, Awaitable, Callable, List, Optional, Tuple

import pytest

from relay_automation.broadcast import BroadcastChannel
from relay_automation.scheduler import ManualScheduler
from relay_automation.supervisor import ConnectionSupervisor
from relay_automation.transport import ConnectionState, Transport, TransportEventKind


class FakeTransport(Transport):
    """Transport whose status, failures and sent messages are set by tests."""

    def __init__(self, fail_initialize: Optional[Exception] = None) -> None:
        super().__init__()
        self.status = ConnectionState.CONNECTING
        self.fail_initialize = fail_initialize
        self.fail_status: Optional[Exception] = None
        self.send_errors: List[BaseException] = []
        self.send_delay = 0.0
        self.sent: List[Tuple[str, str]] = []
        self.initialized = False
        self.destroyed = False

    async def initialize(self) -> None:
        if self.fail_initialize is not None:
            raise self.fail_initialize
        self.initialized = True

    async def get_status(self) -> ConnectionState:
        if self.fail_status is not None:
            raise self.fail_status
        return self.status

    async def send(self, recipient: str, body: str) -> None:
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        if self.send_errors:
            raise self.send_errors.pop(0)
        self.sent.append((recipient, body))

    async def destroy(self) -> None:
        self.destroyed = True


class FakeTransportFactory:
    """Creates FakeTransports and remembers them."""

    def __init__(self) -> None:
        self.created: List[FakeTransport] = []
        self.fail_initialize: Optional[Exception] = None

    def __call__(self) -> FakeTransport:
        transport = FakeTransport(self.fail_initialize)
        self.created.append(transport)
        return transport

    @property
    def latest(self) -> FakeTransport:
        return self.created[-1]


class EventRecorder:
    """Broadcast observer keeping every event."""

    def __init__(self) -> None:
        self.events: List[Tuple[str, Any]] = []

    def __call__(self, event: str, payload: Any) -> None:
        self.events.append((event, payload))

    def names(self) -> List[str]:
        return [name for name, _ in self.events]

    def payloads(self, name: str) -> List[Any]:
        return [payload for event, payload in self.events if event == name]


class SleepRecorder:
    """Stand-in for asyncio.sleep that returns at once."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture(autouse=True)
def block_name_resolution(monkeypatch: pytest.MonkeyPatch) -> None:
    """
    Prevent any real network access.

    Every HTTP call must be mocked; resolving a hostname raises instead.
    """
    def guard(*args: Any, **kwargs: Any) -> Any:
        raise RuntimeError(
            "Network access is blocked in tests! "
            "All HTTP requests must be mocked."
        )

    monkeypatch.setattr(socket, 'getaddrinfo', guard)


@pytest.fixture
def factory() -> FakeTransportFactory:
    return FakeTransportFactory()


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def broadcast(recorder: EventRecorder) -> BroadcastChannel:
    channel = BroadcastChannel()
    channel.subscribe(recorder)
    return channel


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def supervisor(
    factory: FakeTransportFactory,
    scheduler: ManualScheduler,
    broadcast: BroadcastChannel,
) -> ConnectionSupervisor:
    return ConnectionSupervisor(factory, scheduler, broadcast)


@pytest.fixture
def connect(factory: FakeTransportFactory) -> Callable[[ConnectionSupervisor], Awaitable[FakeTransport]]:
    """Return a coroutine function that brings a supervisor to READY."""
    async def bring_ready(supervisor: ConnectionSupervisor) -> FakeTransport:
        if supervisor.state is ConnectionState.UNINITIALIZED:
            await supervisor.start()
        transport = factory.latest
        transport.status = ConnectionState.READY
        transport.emit(TransportEventKind.AUTHENTICATED)
        transport.emit(TransportEventKind.READY)
        assert supervisor.state is ConnectionState.READY
        return transport

    return bring_ready
