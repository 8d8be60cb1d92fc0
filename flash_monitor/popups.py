"""Interactive components shown on the popup stack.

Every component implements the ``Reactive`` protocol:

- ``handle(event) -> bool``: react to a terminal key; True means handled and
  stops dispatch to components further down the stack.
- ``render(width, height) -> list of str``: body lines, drawn by ``ui``.
- ``alive() -> bool``: False once the component is finished; the router drops
  dead components once per draw cycle.
- ``close()``: called by the router when it removes the component; pending
  responses are cancelled so the waiting wizard stops quietly.

Components that answer a wizard own a ``Reply`` and become dead as soon as
they produce their response.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, List, Optional, Protocol, Sequence, Tuple

from .channels import Reply
from .config import Baud, DataBits, DeviceConfig, FlowControl, Parity, StopBits
from .messages import Key, Messenger, Severity
from .ports import PortInfo


class Reactive(Protocol):
    title: str

    def handle(self, event: Key) -> bool: ...

    def render(self, width: int, height: int) -> List[str]: ...

    def alive(self) -> bool: ...

    def close(self) -> None: ...


def _window(items: Sequence[str], selected: Optional[int], height: int) -> List[str]:
    """Render a selectable list, scrolled so the selection stays visible."""
    height = max(1, height)
    start = 0
    if selected is not None and selected >= height:
        start = selected - height + 1
    out = []
    for i, text in enumerate(items[start:start + height], start=start):
        marker = "> " if i == selected else "  "
        out.append(marker + text)
    return out


class DeviceFinder:
    """Pick one serial port from a list."""

    title = "Select device"

    def __init__(self, ports: Sequence[PortInfo]) -> None:
        self.ports = list(ports)
        self.selected: Optional[int] = 0 if self.ports else None
        self.reply: "Reply[str]" = Reply()

    def handle(self, event: Key) -> bool:
        if not self.ports:
            return False
        if event.code == "up" and not event.ctrl:
            self.selected = max(0, (self.selected or 0) - 1)
            return True
        if event.code == "down" and not event.ctrl:
            self.selected = min(len(self.ports) - 1, (self.selected or 0) + 1)
            return True
        if event.code == "enter" and self.selected is not None:
            self.reply.set(self.ports[self.selected].device)
            return True
        return False

    def render(self, width: int, height: int) -> List[str]:
        return _window([p.label() for p in self.ports], self.selected, height)

    def alive(self) -> bool:
        return self.reply.pending

    def close(self) -> None:
        self.reply.cancel()


_CONFIG_FIELDS: Tuple[Tuple[str, str, Sequence[Any]], ...] = (
    ("baud", "Baud rate", tuple(Baud)),
    ("data_bits", "Data bits", tuple(DataBits)),
    ("flow_control", "Flow control", tuple(FlowControl)),
    ("parity", "Parity", tuple(Parity)),
    ("stop_bits", "Stop bits", tuple(StopBits)),
    ("dtr", "DTR on open", (True, False)),
)


def _fmt_value(v: Any) -> str:
    if isinstance(v, bool):
        return "on" if v else "off"
    if isinstance(v, int):
        return str(int(v))
    return str(getattr(v, "value", v))


class DeviceConfigurer:
    """Table of serial settings; Left/Right cycles a value, Enter commits."""

    def __init__(self, path: str, defaults: DeviceConfig) -> None:
        self.path = path
        self.title = f"Configure {path}"
        self.values = {name: getattr(defaults, name) for name, _, _ in _CONFIG_FIELDS}
        self.row = 0
        self.reply: "Reply[DeviceConfig]" = Reply()

    def config(self) -> DeviceConfig:
        return DeviceConfig(path=self.path, **self.values)

    def _cycle(self, step: int) -> None:
        name, _, options = _CONFIG_FIELDS[self.row]
        options = list(options)
        i = options.index(self.values[name]) if self.values[name] in options else 0
        self.values[name] = options[(i + step) % len(options)]

    def handle(self, event: Key) -> bool:
        if event.ctrl:
            return False
        code = event.code
        if code == "up":
            self.row = (self.row - 1) % len(_CONFIG_FIELDS)
        elif code in ("down", "tab"):
            self.row = (self.row + 1) % len(_CONFIG_FIELDS)
        elif code == "left":
            self._cycle(-1)
        elif code == "right":
            self._cycle(1)
        elif code == "enter":
            self.reply.set(self.config())
        else:
            return False
        return True

    def render(self, width: int, height: int) -> List[str]:
        rows = [
            f"{label:<14} < {_fmt_value(self.values[name])} >"
            for name, label, _ in _CONFIG_FIELDS
        ]
        out = _window(rows, self.row, max(1, height - 2))
        out += ["", "Enter: connect   Esc: cancel"]
        return out

    def alive(self) -> bool:
        return self.reply.pending

    def close(self) -> None:
        self.reply.cancel()


class CmdInput:
    """Single line free-text input."""

    def __init__(self, default: str = "", title: str = "Command") -> None:
        self.title = title
        self.contents = default
        self.reply: "Reply[str]" = Reply()

    def handle(self, event: Key) -> bool:
        if event.is_char:
            self.contents += event.code
            return True
        if event.ctrl:
            return False
        if event.code == "enter":
            if not self.contents:
                return False
            self.reply.set(self.contents)
            return True
        if event.code == "backspace":
            if not self.contents:
                return False
            self.contents = self.contents[:-1]
            return True
        return False

    def render(self, width: int, height: int) -> List[str]:
        text = self.contents + "█"
        # Keep the cursor end visible.
        return [text[-max(1, width):]]

    def alive(self) -> bool:
        return self.reply.pending

    def close(self) -> None:
        self.reply.cancel()


class FileViewer:
    """Directory browser that answers with the chosen file path."""

    title = "Select file to watch"

    def __init__(self, messenger: Messenger, start: Optional[Path] = None) -> None:
        self.messenger = messenger
        self.reply: "Reply[Path]" = Reply()
        self.cur_dir = Path.cwd()
        self.entries: List[Path] = []
        self.selected: Optional[int] = None
        # Raises OSError when the directory cannot be read.
        self._load(Path(start) if start is not None else Path.cwd())

    def _load(self, path: Path) -> None:
        entries = sorted(path.iterdir(), key=lambda p: (not p.is_dir(), p.name.lower()))
        self.cur_dir = path
        self.entries = entries
        self.selected = 0 if entries else None

    def _go_parent(self) -> None:
        parent = self.cur_dir.parent
        if parent == self.cur_dir:
            raise OSError("Directory has no parent")
        self._load(parent)

    def _open_selected(self) -> None:
        if self.selected is None:
            raise OSError("No item selected")
        target = self.entries[self.selected]
        # Follows symlinks on purpose.
        if target.is_dir():
            self._load(target)
        else:
            self.reply.set(target)

    def handle(self, event: Key) -> bool:
        if event.ctrl:
            return False
        code = event.code
        try:
            if code == "left":
                self._go_parent()
            elif code in ("right", "enter"):
                self._open_selected()
            elif code == "up":
                if self.selected is not None:
                    self.selected = max(0, self.selected - 1)
            elif code == "down":
                if self.selected is not None:
                    self.selected = min(len(self.entries) - 1, self.selected + 1)
            else:
                return False
        except OSError as e:
            self.messenger.log(Severity.ERROR, "Could not select file", str(e))
        return True

    def render(self, width: int, height: int) -> List[str]:
        names = [f"{p.name}{os.sep}" if p.is_dir() else p.name for p in self.entries]
        return [str(self.cur_dir)[-max(1, width):]] + _window(names, self.selected, max(1, height - 1))

    def alive(self) -> bool:
        return self.reply.pending

    def close(self) -> None:
        self.reply.cancel()


class Notification:
    """Static text; it never handles keys, so Esc dismisses it."""

    def __init__(self, title: str, lines: Sequence[str]) -> None:
        self.title = title
        self.lines = list(lines)

    def handle(self, event: Key) -> bool:
        return False

    def render(self, width: int, height: int) -> List[str]:
        return self.lines[:max(0, height)]

    def alive(self) -> bool:
        return True

    def close(self) -> None:
        pass
