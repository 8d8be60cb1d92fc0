"""Global key bindings, applied when no component on the stack handles a key."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from .messages import CommandKind, Key


@dataclass(frozen=True)
class Binding:
    key: str
    ctrl: bool
    command: CommandKind
    help: str

    @property
    def label(self) -> str:
        name = self.key.upper() if len(self.key) == 1 else self.key.capitalize()
        return f"Ctrl+{name}" if self.ctrl else name


GLOBAL_BINDINGS: Tuple[Binding, ...] = (
    Binding("f", True, CommandKind.REQUEST_DEVICE_WIZARD, "find and connect a device"),
    Binding("u", True, CommandKind.REQUEST_AUTO_FLASH, "watch a file and flash it on change"),
    Binding("x", True, CommandKind.DISARM_AUTO_FLASH, "stop watching"),
    Binding("k", True, CommandKind.SHOW_HELP, "show this help"),
    Binding("esc", False, CommandKind.DISMISS_TOP, "close popup (quits on the main screen)"),
    Binding("c", True, CommandKind.QUIT, "quit"),
)

# Handled by the dashboard itself.
DASHBOARD_HELP: Tuple[Tuple[str, str], ...] = (
    ("Enter", "send the input line"),
    ("Ctrl+T", "toggle DTR"),
    ("Ctrl+R", "toggle RTS"),
    ("Ctrl+L", "read line status"),
    ("PgUp/PgDn", "scroll the terminal"),
)

_BY_KEY: Dict[Tuple[str, bool], CommandKind] = {(b.key, b.ctrl): b.command for b in GLOBAL_BINDINGS}


def command_for(key: Key) -> Optional[CommandKind]:
    return _BY_KEY.get((key.code, key.ctrl))


def help_lines() -> List[str]:
    rows = [(b.label, b.help) for b in GLOBAL_BINDINGS] + list(DASHBOARD_HELP)
    return [f"{label:<10} {text}" for label, text in rows]
