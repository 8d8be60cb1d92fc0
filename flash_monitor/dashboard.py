"""Monitor state and the dashboard, the bottom layer of the popup stack."""

from __future__ import annotations

import codecs
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, List, Optional

from .messages import REQUEST_STATUS, CommandKind, Key, LineStatus, Messenger, Notice, SerialCommand
from . import ui

MAX_TERMINAL_LINES = 5000
MAX_LOG_LINES = 500


class LineBuffer:
    """Raw line buffering of received bytes.

    Chunks may split lines (and UTF-8 characters) anywhere; the last line stays
    open until a newline arrives. ``\\r`` is dropped, nothing else is
    interpreted.
    """

    def __init__(self, maxlen: int = MAX_TERMINAL_LINES) -> None:
        self.lines: Deque[str] = deque([""], maxlen=maxlen)
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, data: bytes) -> None:
        text = self._decoder.decode(data).replace("\r", "")
        parts = text.split("\n")
        self.lines[-1] += parts[0]
        for part in parts[1:]:
            self.lines.append(part)

    def __len__(self) -> int:
        return len(self.lines)


@dataclass
class MonitorState:
    terminal: LineBuffer = field(default_factory=LineBuffer)
    log: Deque[Notice] = field(default_factory=lambda: deque(maxlen=MAX_LOG_LINES))
    device: Optional[str] = None
    settings: Optional[str] = None
    dtr: Optional[bool] = None
    cts: Optional[bool] = None
    rts: bool = False
    watching: Optional[str] = None
    input: str = ""
    scroll: int = 0

    def set_line_status(self, status: LineStatus) -> None:
        self.dtr = status.dtr
        self.cts = status.cts

    def disconnected(self) -> None:
        self.device = None
        self.settings = None
        self.dtr = None
        self.cts = None


class Dashboard:
    """Terminal view, input line and status panel.

    Typing goes to the input line; Enter sends it (plus ``\\n``) to the device.
    Ctrl+T / Ctrl+R toggle DTR / RTS, Ctrl+L asks for a line status readback.
    """

    title = "flash-monitor"

    def __init__(self, state: MonitorState, messenger: Messenger) -> None:
        self.state = state
        self.messenger = messenger

    def _send(self, cmd: SerialCommand) -> None:
        self.messenger.send_app(CommandKind.SEND_TO_DEVICE, cmd)

    def handle(self, event: Key) -> bool:
        st = self.state
        if event.is_char:
            st.input += event.code
            return True
        if event.ctrl:
            if event.code == "t":
                self._send(SerialCommand.set_dtr(not st.dtr))
            elif event.code == "r":
                st.rts = not st.rts
                self._send(SerialCommand.set_flow_signal(st.rts))
            elif event.code == "l":
                self._send(REQUEST_STATUS)
            else:
                return False
            return True
        code = event.code
        if code == "enter":
            line, st.input = st.input, ""
            st.scroll = 0
            self._send(SerialCommand.write((line + "\n").encode("utf-8")))
        elif code == "backspace":
            if not st.input:
                return False
            st.input = st.input[:-1]
        elif code == "pageup":
            st.scroll = min(st.scroll + 10, max(0, len(st.terminal) - 1))
        elif code == "pagedown":
            st.scroll = max(0, st.scroll - 10)
        else:
            return False
        return True

    def render(self, width: int, height: int) -> List[str]:
        return ui.render_dashboard(self.state, width, height)

    def alive(self) -> bool:
        return True

    def close(self) -> None:
        pass
