"""Screen layout.

Pure functions from router-owned state to lines of text, plus a small
``Screen`` that owns the terminal while the app runs. Nothing here mutates
application state.
"""

from __future__ import annotations

import shutil
import sys
from typing import TYPE_CHECKING, Iterable, List, Optional, Sequence, TextIO

from .messages import Severity

if TYPE_CHECKING:
    from .dashboard import MonitorState
    from .popups import Reactive

ON = "●"
OFF = "○"
UNKNOWN = "?"

_SEVERITY_TAG = {
    Severity.INFO: "INFO",
    Severity.WARNING: "WARN",
    Severity.ERROR: "ERR ",
}


def _fit(text: str, width: int) -> str:
    width = max(0, width)
    text = text.replace("\t", "    ")
    if len(text) > width:
        return text[:width]
    return text + " " * (width - len(text))


def _led(level: Optional[bool]) -> str:
    if level is None:
        return UNKNOWN
    return ON if level else OFF


def box(title: str, body: Sequence[str], width: int, height: int) -> List[str]:
    """Draw ``body`` inside a bordered box of exactly ``width`` x ``height``."""
    if width < 2 or height < 2:
        return [_fit("", width) for _ in range(max(0, height))]
    inner_w = width - 2
    label = f" {title} "[:inner_w] if title else ""
    lines = ["┌" + label + "─" * (inner_w - len(label)) + "┐"]
    for i in range(height - 2):
        text = body[i] if i < len(body) else ""
        lines.append("│" + _fit(text, inner_w) + "│")
    lines.append("└" + "─" * inner_w + "┘")
    return lines


def _bottom_up(lines: Sequence[str], height: int, skip: int = 0) -> List[str]:
    """Last ``height`` lines (after skipping ``skip`` from the end), oldest first."""
    end = max(0, len(lines) - skip)
    start = max(0, end - height)
    out = list(lines[start:end])
    return [""] * (height - len(out)) + out


def log_lines(state: "MonitorState") -> List[str]:
    out: List[str] = []
    for notice in state.log:
        tag = _SEVERITY_TAG.get(notice.severity, "    ")
        for i, part in enumerate(notice.text.splitlines() or [""]):
            out.append(f"{tag} {part}" if i == 0 else f"     {part}")
    return out


def render_dashboard(state: "MonitorState", width: int, height: int) -> List[str]:
    status_w = max(20, width * 3 // 10)
    left_w = max(10, width - status_w)
    term_h = max(3, height - 3)

    term_body = _bottom_up(list(state.terminal.lines), term_h - 2, state.scroll)
    left = box("Terminal" if not state.scroll else f"Terminal (-{state.scroll})", term_body, left_w, term_h)
    left += box("Send", [state.input[-max(1, left_w - 3):] + "█"], left_w, height - term_h)

    status = [
        f"Connected: {state.device or '-'}",
        f"Settings: {state.settings or '-'}",
        f"DTR: {_led(state.dtr)}  CTS: {_led(state.cts)}  RTS: {_led(state.rts)}",
        f"Watching: {state.watching or '-'}",
    ]
    status_h = min(len(status) + 2, height)
    right = box("Status", status, status_w, status_h)
    log_h = height - status_h
    right += box("Log", _bottom_up(log_lines(state), max(0, log_h - 2)), status_w, log_h)

    return [a + b for a, b in zip(left, right)]


def _overlay(canvas: List[str], block: Sequence[str], x: int, y: int) -> None:
    for i, line in enumerate(block):
        row = y + i
        if row < 0 or row >= len(canvas):
            continue
        base = canvas[row]
        canvas[row] = base[:x] + line + base[x + len(line):]


def compose(stack: Iterable["Reactive"], width: int, height: int) -> List[str]:
    """Draw the first component full screen and the rest as centered popups."""
    components = list(stack)
    if not components:
        return [" " * width for _ in range(height)]
    canvas = [_fit(line, width) for line in components[0].render(width, height)[:height]]
    canvas += [" " * width] * (height - len(canvas))
    x_margin, y_margin = width // 4, height // 4
    pw, ph = width - 2 * x_margin, height - 2 * y_margin
    for popup in components[1:]:
        body = popup.render(pw - 2, ph - 2)
        _overlay(canvas, box(getattr(popup, "title", ""), body, pw, ph), x_margin, y_margin)
    return canvas


class Screen:
    """Alternate-screen terminal writer."""

    def __init__(self, out: TextIO = sys.stdout) -> None:
        self.out = out

    def __enter__(self) -> "Screen":
        self.out.write("\x1b[?1049h\x1b[?25l")
        self.out.flush()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.out.write("\x1b[?25h\x1b[?1049l")
        self.out.flush()

    def size(self):
        return shutil.get_terminal_size()

    def draw(self, lines: Sequence[str]) -> None:
        self.out.write("\x1b[H" + "\n".join(lines))
        self.out.flush()
