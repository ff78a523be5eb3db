"""Shared pytest configuration and fixtures for the respooler link tests."""

import asyncio
import sys
from pathlib import Path

import pytest

# Ensure the project root is in the path for imports
PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from respooler_link.ble_handler import NotConnected, Transport  # noqa: E402
from respooler_link.config import Config  # noqa: E402
from respooler_link.events import Event, EventBus  # noqa: E402
from respooler_link.session import DeviceSession  # noqa: E402
from respooler_link.state import DeviceStateStore  # noqa: E402


# =============================================================================
# Test doubles
# =============================================================================

class ManualClock:
    """Monotonic clock that only moves when told to (or when slept on)."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class FakeLink:
    name = "LTS Respooler"
    address = "AA:BB:CC:DD:EE:FF"


class FakeTransport(Transport):
    """In-memory transport; tests script failures and inject notifications."""

    def __init__(self) -> None:
        super().__init__()
        self.link = FakeLink()
        self.select_error: Exception | None = None
        self.open_errors: list[Exception | None] = []
        self.write_error: Exception | None = None
        self.written: list[bytes] = []
        self.open_calls = 0
        self.close_calls = 0
        self.settle_delays: list[float] = []
        self._open = False

    @property
    def connected(self) -> bool:
        return self._open

    async def acquire_link(self):
        if self.select_error is not None:
            raise self.select_error
        return self.link

    async def open_channel(self, link, settle_delay: float = 0.0) -> None:
        self.open_calls += 1
        self.settle_delays.append(settle_delay)
        if self.open_errors:
            error = self.open_errors.pop(0)
            if error is not None:
                raise error
        self._open = True

    async def write(self, data: bytes) -> None:
        if not self._open:
            raise NotConnected("channel not open")
        if self.write_error is not None:
            raise self.write_error
        self.written.append(data)

    async def close_channel(self) -> None:
        self.close_calls += 1
        self._open = False

    def notify(self, data: bytes | str) -> None:
        if isinstance(data, str):
            data = data.encode("utf-8")
        self._on_notify(data)

    def drop(self) -> None:
        """Simulate the board closing the link."""
        self._open = False
        self._on_disconnect()


class EventRecorder:
    """Collects (event, payload) pairs from every event on a bus."""

    def __init__(self, target) -> None:
        self.events: list[tuple[Event, object]] = []
        for event in Event:
            target.on(event, lambda payload, event=event: self.events.append((event, payload)))

    def names(self) -> list[str]:
        return [event.value for event, _ in self.events]

    def count(self, event: Event) -> int:
        return sum(1 for e, _ in self.events if e is event)

    def payloads(self, event: Event) -> list:
        return [p for e, p in self.events if e is event]


async def drain(rounds: int = 50) -> None:
    """Let scheduled tasks (e.g. silent reconnect) run to completion."""
    for _ in range(rounds):
        await asyncio.sleep(0)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def store(bus, clock) -> DeviceStateStore:
    return DeviceStateStore(bus, Config.default().timing, clock)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def session(transport, clock) -> DeviceSession:
    return DeviceSession(Config.default(), transport, clock=clock, sleep=clock.sleep)


@pytest.fixture
def recorder(session) -> EventRecorder:
    return EventRecorder(session)
