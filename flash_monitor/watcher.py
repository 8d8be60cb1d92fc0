"""Auto-flash actor.

Watches one file. Each qualifying change (content modified, or the file
(re)created) runs one handshake with the router:

1. send ``WatcherRequest.DISCONNECT`` and block for the reply;
2. on ``DISCONNECTED`` run the flash command and report its result, then send
   ``WatcherRequest.RECONNECT``;
3. on ``NO_DEVICE`` skip the command and log that flashing needs a device.

Metadata-only changes are filtered as each event arrives: a ``modified``
event whose (size, mtime) matches the previous event's is not queued. Every
event that is queued runs its own cycle; events that arrive while a cycle
runs wait in the mailbox and are handled one by one afterwards.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .channels import Mailbox
from .errors import ChannelClosed, ConfigError, WatchError
from .messages import CommandKind, Messenger, Severity, WatcherReply, WatcherRequest

log = logging.getLogger(__name__)

BIN_TOKEN = "#BIN#"

CREATED = "created"
MODIFIED = "modified"


def validate_flash_command(argv: Sequence[str]) -> List[str]:
    argv = list(argv)
    if not argv:
        raise ConfigError("Flash command is empty")
    if not any(BIN_TOKEN in arg for arg in argv):
        raise ConfigError(f"Flash command must contain {BIN_TOKEN} where the file path goes")
    return argv


def parse_flash_command(text: str) -> List[str]:
    """Split a command line with shell rules and check it mentions ``#BIN#``."""
    try:
        argv = shlex.split(text)
    except ValueError as e:
        raise ConfigError(f"Could not parse flash command: {e}") from e
    return validate_flash_command(argv)


def build_flash_argv(template: Sequence[str], path: str) -> List[str]:
    return [arg.replace(BIN_TOKEN, str(path)) for arg in template]


@dataclass(frozen=True)
class FlashResult:
    argv: Tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def headline(self) -> str:
        verdict = "succeeded" if self.ok else "failed"
        return f"Flash {verdict} (exit code {self.returncode}, {self.duration:.1f}s)"

    def output(self) -> str:
        parts = []
        if self.stdout:
            parts.append("stdout:\n" + self.stdout.rstrip("\n"))
        if self.stderr:
            parts.append("stderr:\n" + self.stderr.rstrip("\n"))
        return "\n".join(parts)


def run_flash_command(argv: Sequence[str]) -> FlashResult:
    """Run the command to completion, capturing its output. Raises OSError if it cannot start."""
    started = time.monotonic()
    proc = subprocess.run(list(argv), capture_output=True, text=True, errors="replace")
    return FlashResult(
        argv=tuple(argv),
        returncode=proc.returncode,
        stdout=proc.stdout or "",
        stderr=proc.stderr or "",
        duration=time.monotonic() - started,
    )


FlashRunner = Callable[[Sequence[str]], FlashResult]


class _TargetHandler(FileSystemEventHandler):
    """Forward created/modified events for one path into a mailbox."""

    def __init__(self, target: str, events: "Mailbox[str]") -> None:
        super().__init__()
        self.target = target
        self.events = events
        self._last_sig = _signature(target)

    def _matches(self, path) -> bool:
        return bool(path) and os.path.abspath(os.fsdecode(path)) == self.target

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        kind = None
        if event.event_type == "moved" and self._matches(getattr(event, "dest_path", "")):
            kind = CREATED
        elif event.event_type in (CREATED, MODIFIED) and self._matches(event.src_path):
            kind = event.event_type
        if kind is None:
            return
        sig = _signature(self.target)
        if kind == MODIFIED and sig is not None and sig == self._last_sig:
            # attributes only
            return
        self._last_sig = sig
        try:
            self.events.send(kind)
        except ChannelClosed:
            pass


def _signature(path: str) -> Optional[Tuple[int, int]]:
    try:
        st = os.stat(path)
    except OSError:
        return None
    return (st.st_size, st.st_mtime_ns)


class FlashWatcher:
    def __init__(
        self,
        path,
        command: Sequence[str],
        messenger: Messenger,
        *,
        runner: FlashRunner = run_flash_command,
        observer_factory: Callable[[], Observer] = Observer,
    ) -> None:
        # Substituted as given; the absolute form is used to match events.
        self.display_path = os.fspath(path)
        self.path = os.path.abspath(self.display_path)
        self.command = validate_flash_command(command)
        self.messenger = messenger
        self.runner = runner
        self.replies: "Mailbox[WatcherReply]" = Mailbox("watcher-replies")
        self.events: "Mailbox[str]" = Mailbox("fs-events")
        self._observer_factory = observer_factory
        self._observer = None
        self._thread: Optional[threading.Thread] = None

    @property
    def argv(self) -> List[str]:
        return build_flash_argv(self.command, self.display_path)

    def start(self) -> "FlashWatcher":
        """Subscribe to filesystem events and start the actor thread.

        Raises ``WatchError`` if the watch cannot be set up; nothing keeps
        running in that case.
        """
        directory = os.path.dirname(self.path)
        observer = self._observer_factory()
        try:
            observer.schedule(_TargetHandler(self.path, self.events), directory, recursive=False)
            observer.start()
        except (OSError, RuntimeError) as e:
            raise WatchError(f"Cannot watch {self.path}: {e}") from e
        self._observer = observer
        self._thread = threading.Thread(target=self.run, name=f"watch:{os.path.basename(self.path)}", daemon=True)
        self._thread.start()
        log.debug("watching %s with %s", self.path, self.command)
        return self

    def stop(self) -> None:
        """Drop the filesystem subscription and end the actor."""
        if self._observer is not None:
            try:
                self._observer.stop()
                self._observer.join(timeout=1.0)
            except Exception as e:
                log.debug("stopping observer failed: %s", e)
            self._observer = None
        self.events.close()
        self.replies.close()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    # ---------------- actor ----------------

    def run(self) -> None:
        while True:
            try:
                kind = self.events.receive()
            except ChannelClosed:
                break
            log.debug("%s event for %s", kind, self.path)
            self.flash_cycle()
        log.debug("watcher for %s stopped", self.path)

    def flash_cycle(self) -> None:
        self.messenger.send_app(CommandKind.WATCHER_REQUEST, WatcherRequest.DISCONNECT, reply_to=self.replies)
        try:
            reply = self.replies.receive()
        except ChannelClosed:
            # Disarmed while waiting.
            return

        if reply == WatcherReply.NO_DEVICE:
            self.messenger.log(Severity.ERROR, "Cannot flash when no device is connected")
            return

        argv = self.argv
        self.messenger.log(Severity.INFO, f"Flashing: {shlex.join(argv)}")
        try:
            result = self.runner(argv)
        except OSError as e:
            self.messenger.log(Severity.ERROR, "Could not run flash command", str(e))
        else:
            severity = Severity.INFO if result.ok else Severity.ERROR
            self.messenger.log(severity, result.headline(), result.output() or None)
        self.messenger.send_app(CommandKind.WATCHER_REQUEST, WatcherRequest.RECONNECT)
