"""
Operator-facing log and status events

The session and orchestrator report through the Logger / StatusReporter
pair. EventChannel implements both on top of a thread-safe queue so that
MQTT callback threads never touch presentation state directly.
"""

import logging
import queue
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Iterator, Optional, Protocol, Union

logger = logging.getLogger(__name__)

LOG_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


class UpgradeState(Enum):
    READY = "ready"
    SENDING = "sending"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class UpgradeStatus:
    state: UpgradeState
    reason: str = ""

    @classmethod
    def ready(cls) -> "UpgradeStatus":
        return cls(UpgradeState.READY)

    @classmethod
    def sending(cls) -> "UpgradeStatus":
        return cls(UpgradeState.SENDING)

    @classmethod
    def success(cls) -> "UpgradeStatus":
        return cls(UpgradeState.SUCCESS)

    @classmethod
    def failed(cls, reason: str) -> "UpgradeStatus":
        return cls(UpgradeState.FAILED, reason)

    @property
    def label(self) -> str:
        if self.state is UpgradeState.SENDING:
            return "Upgrading..."
        if self.state is UpgradeState.SUCCESS:
            return "Command Sent Successfully"
        if self.state is UpgradeState.FAILED:
            return f"Command Failed: {self.reason}" if self.reason else "Command Failed"
        return "Ready"


class Logger(Protocol):
    def log(self, line: str) -> None:
        ...


class StatusReporter(Protocol):
    def connection_status(self, connected: bool) -> None:
        ...

    def upgrade_status(self, status: UpgradeStatus) -> None:
        ...


@dataclass(frozen=True)
class LogEvent:
    line: str


@dataclass(frozen=True)
class ConnectionEvent:
    connected: bool


@dataclass(frozen=True)
class UpgradeEvent:
    status: UpgradeStatus


Event = Union[LogEvent, ConnectionEvent, UpgradeEvent]


def format_log_line(text: str, now: Optional[datetime] = None) -> str:
    timestamp = (now or datetime.now()).strftime(LOG_TIMESTAMP_FORMAT)
    return f"[{timestamp}] {text}"


class EventChannel:
    """Queue-backed Logger and StatusReporter"""

    def __init__(self, clock: Callable[[], datetime] = datetime.now):
        self._queue: "queue.Queue[Event]" = queue.Queue()
        self._clock = clock

    def log(self, line: str) -> None:
        logger.info(line)
        self._queue.put(LogEvent(format_log_line(line, self._clock())))

    def connection_status(self, connected: bool) -> None:
        self._queue.put(ConnectionEvent(connected))

    def upgrade_status(self, status: UpgradeStatus) -> None:
        self._queue.put(UpgradeEvent(status))

    def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        """Next event, or None if nothing arrives within timeout"""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> Iterator[Event]:
        """Yield every event queued so far without blocking"""
        while True:
            try:
                yield self._queue.get_nowait()
            except queue.Empty:
                return
