"""Typed messages passed between the router, its actors and the terminal bridge.

Every producer talks to the router through one inbox (a ``queue.Queue``)
holding the message types below. Actors never touch router state; they only
hold a ``Messenger``, a cheap handle that can enqueue inbox messages.
"""

from __future__ import annotations

import queue
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional, Union

from .channels import Mailbox

if TYPE_CHECKING:
    from .config import DeviceConfig
    from .popups import Reactive
    from .watcher import FlashWatcher


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class Notice:
    severity: Severity
    message: str
    detail: Optional[str] = None

    @property
    def text(self) -> str:
        if self.detail:
            sep = "\n" if "\n" in self.detail else ": "
            return f"{self.message}{sep}{self.detail}"
        return self.message


# ---------------- terminal input ----------------


class KeyKind(str, Enum):
    PRESS = "press"
    RELEASE = "release"
    REPEAT = "repeat"


@dataclass(frozen=True)
class Key:
    """A key event from the terminal.

    ``code`` is either a single printable character or one of the names
    ``enter``, ``esc``, ``backspace``, ``tab``, ``up``, ``down``, ``left``,
    ``right``, ``home``, ``end``, ``pageup``, ``pagedown``, ``delete``.
    Control chords are reported as the lowercase letter with ``ctrl=True``.
    """

    code: str
    ctrl: bool = False
    kind: KeyKind = KeyKind.PRESS

    @property
    def is_char(self) -> bool:
        return len(self.code) == 1 and not self.ctrl


@dataclass(frozen=True)
class Resize:
    columns: int
    lines: int


InputEvent = Union[Key, Resize]


# ---------------- serial actor protocol ----------------


class SerialCommandKind(str, Enum):
    WRITE = "write"
    SET_DTR = "set_dtr"
    SET_FLOW_SIGNAL = "set_flow_signal"
    REQUEST_STATUS = "request_status"
    DISCONNECT = "disconnect"


@dataclass(frozen=True)
class SerialCommand:
    kind: SerialCommandKind
    payload: Union[bytes, bool, None] = None

    @classmethod
    def write(cls, data: bytes) -> "SerialCommand":
        return cls(SerialCommandKind.WRITE, bytes(data))

    @classmethod
    def set_dtr(cls, level: bool) -> "SerialCommand":
        return cls(SerialCommandKind.SET_DTR, bool(level))

    @classmethod
    def set_flow_signal(cls, level: bool) -> "SerialCommand":
        return cls(SerialCommandKind.SET_FLOW_SIGNAL, bool(level))


REQUEST_STATUS = SerialCommand(SerialCommandKind.REQUEST_STATUS)
DISCONNECT = SerialCommand(SerialCommandKind.DISCONNECT)


class SerialEventKind(str, Enum):
    CONNECTED = "connected"
    DATA = "data"
    LINE_STATUS = "line_status"
    GONE = "gone"


@dataclass(frozen=True)
class LineStatus:
    """Control line levels; None means the line could not be read."""

    dtr: Optional[bool]
    cts: Optional[bool]


@dataclass(frozen=True)
class SerialEvent:
    kind: SerialEventKind
    payload: Union[str, bytes, LineStatus, None] = None
    # The command mailbox of the actor that emitted the event.
    source: Optional[Mailbox] = field(default=None, compare=False, repr=False)


# ---------------- auto-flash handshake ----------------


class WatcherRequest(str, Enum):
    DISCONNECT = "disconnect"
    RECONNECT = "reconnect"


class WatcherReply(str, Enum):
    DISCONNECTED = "disconnected"
    NO_DEVICE = "no_device"


# ---------------- application commands ----------------


class CommandKind(str, Enum):
    REQUEST_DEVICE_WIZARD = "request_device_wizard"
    REQUEST_AUTO_FLASH = "request_auto_flash"
    SEND_TO_DEVICE = "send_to_device"
    DEVICE_CONNECTED = "device_connected"
    AUTO_FLASH_ARMED = "auto_flash_armed"
    DISARM_AUTO_FLASH = "disarm_auto_flash"
    WATCHER_REQUEST = "watcher_request"
    DISMISS_TOP = "dismiss_top"
    DISMISS_WIZARD = "dismiss_wizard"
    SHOW_HELP = "show_help"
    QUIT = "quit"


@dataclass(frozen=True)
class DeviceConnected:
    link: Mailbox
    config: "DeviceConfig"


Payload = Union[SerialCommand, DeviceConnected, WatcherRequest, "FlashWatcher", None]


@dataclass(frozen=True)
class AppCommand:
    kind: CommandKind
    payload: Payload = None
    # Where the answer goes, for requests that expect one.
    reply_to: Optional[Mailbox] = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class NewPopup:
    component: "Reactive"


InboxMessage = Union[Key, Resize, AppCommand, NewPopup, SerialEvent, Notice]


class Messenger:
    """Outbound handle onto the router inbox.

    Cloning is free: every holder shares the same queue and nothing else.
    """

    def __init__(self, inbox: "queue.Queue[InboxMessage]") -> None:
        self._inbox = inbox

    def send(self, message: InboxMessage) -> None:
        self._inbox.put(message)

    def send_app(self, kind: CommandKind, payload: Any = None, reply_to: Optional[Mailbox] = None) -> None:
        self._inbox.put(AppCommand(kind, payload, reply_to))

    def new_component(self, component: "Reactive") -> None:
        self._inbox.put(NewPopup(component))

    def log(self, severity: Severity, message: str, detail: Optional[str] = None) -> None:
        self._inbox.put(Notice(severity, message, detail))

    def serial_event(self, kind: SerialEventKind, payload=None, source: Optional[Mailbox] = None) -> None:
        self._inbox.put(SerialEvent(kind, payload, source))
