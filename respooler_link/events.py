"""Event fan-out from the device session to its consumers."""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class Event(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    STATUS = "status"
    STATE = "state"
    LOG = "log"
    SSID_LIST = "ssidList"


@dataclass
class ConnectedEvent:
    name: str | None


@dataclass
class DisconnectedEvent:
    pass


@dataclass
class LogEvent:
    """Protocol trace entry.

    direction is one of "in", "out", "err" or "info".
    """

    direction: str
    message: str


@dataclass
class SsidListEvent:
    ssids: list[str] = field(default_factory=list)


Handler = Callable[[Any], None]


class EventBus:
    """Synchronous publish/subscribe keyed by event name.

    Handlers run in subscription order on the emitting call stack. A handler
    that raises is logged and skipped; the remaining handlers still run.
    """

    def __init__(self) -> None:
        self._handlers: dict[Event, list[Handler]] = {}

    def on(self, event: Event | str, handler: Handler) -> Callable[[], None]:
        """Subscribe to an event, returning a callable that unsubscribes."""
        key = Event(event)
        self._handlers.setdefault(key, []).append(handler)
        return lambda: self.off(key, handler)

    def off(self, event: Event | str, handler: Handler) -> None:
        """Remove a handler; unknown handlers are ignored."""
        handlers = self._handlers.get(Event(event), [])
        if handler in handlers:
            handlers.remove(handler)

    def emit(self, event: Event, payload: Any = None) -> None:
        # Copy so handlers may unsubscribe while being notified
        for handler in list(self._handlers.get(event, [])):
            try:
                handler(payload)
            except Exception:
                logger.exception("Error in %s handler %r", event.value, handler)

    def log(self, direction: str, message: str) -> None:
        """Emit a protocol trace entry."""
        self.emit(Event.LOG, LogEvent(direction, message))
