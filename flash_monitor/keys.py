"""Terminal input bridge.

``KeyReader`` puts the terminal in cbreak mode and decodes raw bytes into
``Key`` events; ``InputBridge`` runs it on a thread and forwards every key
(and terminal resizes) into the router inbox.
"""

from __future__ import annotations

import logging
import os
import shutil
import sys
import threading
from typing import Dict, Optional

from .messages import Key, Messenger, Resize

log = logging.getLogger(__name__)

# Final part of CSI / SS3 sequences (after ESC [ or ESC O).
_CSI_KEYS: Dict[str, str] = {
    "A": "up",
    "B": "down",
    "C": "right",
    "D": "left",
    "H": "home",
    "F": "end",
    "1~": "home",
    "7~": "home",
    "4~": "end",
    "8~": "end",
    "3~": "delete",
    "5~": "pageup",
    "6~": "pagedown",
}

# msvcrt.getwch() scan codes after a "\x00" / "\xe0" prefix.
_WIN_KEYS: Dict[str, str] = {
    "H": "up",
    "P": "down",
    "K": "left",
    "M": "right",
    "G": "home",
    "O": "end",
    "S": "delete",
    "I": "pageup",
    "Q": "pagedown",
}


def decode_char(ch: str) -> Key:
    """Map one decoded character to a key event."""
    code = ord(ch)
    if ch in ("\r", "\n"):
        return Key("enter")
    if ch == "\t":
        return Key("tab")
    if ch in ("\x7f", "\x08"):
        return Key("backspace")
    if ch == "\x1b":
        return Key("esc")
    if 1 <= code <= 26:
        return Key(chr(ord("a") + code - 1), ctrl=True)
    return Key(ch)


def decode_escape(seq: str) -> Optional[Key]:
    """Decode the part of an escape sequence after ESC, e.g. ``"[A"``.

    Returns None for sequences we do not bind.
    """
    if not seq:
        return Key("esc")
    if seq[0] in ("[", "O"):
        name = _CSI_KEYS.get(seq[1:])
        return Key(name) if name else None
    # ESC followed by a plain character is an Alt chord; not bound.
    return None


class KeyReader:
    """Reads one ``Key`` at a time from the controlling terminal.

    On POSIX the terminal is put in cbreak mode with ISIG and IXON cleared, so
    Ctrl+C, Ctrl+S and Ctrl+Q arrive as keys instead of signals or flow
    control. An ESC byte is followed by a short wait for the rest of a CSI/SS3
    sequence (arrows, PgUp/PgDn, ...); a lone ESC is the Esc key. On Windows
    ``msvcrt`` scan codes are mapped to the same key names.
    """

    def __init__(self, escape_timeout: float = 0.03) -> None:
        self._is_windows = os.name == "nt"
        self._active = bool(sys.stdin.isatty())
        self._old_settings = None
        self._escape_timeout = escape_timeout

    @property
    def active(self) -> bool:
        return self._active

    def __enter__(self) -> "KeyReader":
        if not self._active or self._is_windows:
            return self
        import termios
        import tty
        fd = sys.stdin.fileno()
        self._old_settings = termios.tcgetattr(fd)
        tty.setcbreak(fd)
        # Let Ctrl+C / Ctrl+S / Ctrl+Q reach us as keys.
        attrs = termios.tcgetattr(fd)
        attrs[0] &= ~termios.IXON
        attrs[3] &= ~termios.ISIG
        termios.tcsetattr(fd, termios.TCSADRAIN, attrs)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if not self._active or self._is_windows or self._old_settings is None:
            return
        import termios
        termios.tcsetattr(sys.stdin.fileno(), termios.TCSADRAIN, self._old_settings)

    def read_key(self, timeout: float = 0.1) -> Optional[Key]:
        if not self._active:
            return None
        if self._is_windows:
            return self._read_key_windows(timeout)
        return self._read_key_posix(timeout)

    def _read_key_windows(self, timeout: float) -> Optional[Key]:
        import msvcrt
        import time
        end = time.monotonic() + timeout
        while not msvcrt.kbhit():
            if time.monotonic() >= end:
                return None
            time.sleep(0.01)
        ch = msvcrt.getwch()
        if ch in ("\x00", "\xe0"):
            name = _WIN_KEYS.get(msvcrt.getwch())
            return Key(name) if name else None
        return decode_char(ch)

    def _read_key_posix(self, timeout: float) -> Optional[Key]:
        import select
        fd = sys.stdin.fileno()
        r, _, _ = select.select([fd], [], [], timeout)
        if not r:
            return None
        raw = os.read(fd, 1)
        if not raw:
            return None
        if raw == b"\x1b":
            return decode_escape(self._read_escape_tail(fd))
        # Collect the rest of a multi-byte UTF-8 character.
        while True:
            try:
                return decode_char(raw.decode("utf-8"))
            except UnicodeDecodeError:
                if len(raw) >= 4:
                    return None
                raw += os.read(fd, 1)

    def _read_escape_tail(self, fd: int) -> str:
        import select
        seq = ""
        while True:
            r, _, _ = select.select([fd], [], [], self._escape_timeout)
            if not r:
                return seq
            ch = os.read(fd, 1).decode("latin-1")
            seq += ch
            if len(seq) == 1 and ch not in ("[", "O"):
                return seq
            # CSI/SS3 sequences end with a byte in 0x40..0x7e.
            if len(seq) > 1 and "\x40" <= ch <= "\x7e":
                return seq


class InputBridge:
    """Forward terminal keys and resizes into the router inbox until stopped."""

    def __init__(self, reader: KeyReader, messenger: Messenger, poll_interval: float = 0.1) -> None:
        self.reader = reader
        self.messenger = messenger
        self.poll_interval = poll_interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._size = shutil.get_terminal_size()

    def start(self) -> None:
        self._thread = threading.Thread(target=self._run, name="terminal-input", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=1.0)

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                key = self.reader.read_key(self.poll_interval)
            except OSError as e:
                # stdin went away; no more input will arrive.
                log.debug("terminal input ended: %s", e)
                return
            if key is not None:
                self.messenger.send(key)
            elif not self.reader.active:
                self._stop.wait(self.poll_interval)
            size = shutil.get_terminal_size()
            if size != self._size:
                self._size = size
                self.messenger.send(Resize(size.columns, size.lines))
