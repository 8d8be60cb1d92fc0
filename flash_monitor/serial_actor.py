"""Serial port actor.

The actor is the only owner of an open ``serial.Serial``. It runs on its own
thread, turning ``SerialCommand``s from its mailbox into port operations and
port activity into ``SerialEvent``s on the router inbox.

Life cycle: ``Connected`` is emitted first, then the actor alternates between
draining pending commands and a short read (bounded by the port timeout), so
neither direction can starve the other. Any I/O error, a ``Disconnect``
command, or a closed mailbox ends the loop; the port is closed, the mailbox is
closed so later sends fail, and ``Gone`` is emitted exactly once.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

import serial

from .channels import Mailbox
from .errors import ChannelClosed
from .messages import LineStatus, Messenger, SerialCommand, SerialCommandKind, SerialEventKind, Severity

log = logging.getLogger(__name__)


class SerialActor:
    def __init__(self, port: serial.Serial, messenger: Messenger, display_name: Optional[str] = None) -> None:
        self.port = port
        self.messenger = messenger
        self.display_name = display_name or str(getattr(port, "port", None) or getattr(port, "name", "serial"))
        self.commands: "Mailbox[SerialCommand]" = Mailbox(self.display_name)
        self._thread: Optional[threading.Thread] = None

    def start(self) -> "Mailbox[SerialCommand]":
        self._thread = threading.Thread(target=self.run, name=f"serial:{self.display_name}", daemon=True)
        self._thread.start()
        return self.commands

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    # ---------------- loop ----------------

    def run(self) -> None:
        log.debug("serial actor for %s started", self.display_name)
        self._emit(SerialEventKind.CONNECTED, self.display_name)
        try:
            while self._step():
                pass
        finally:
            self.commands.close()
            try:
                self.port.close()
            except Exception as e:
                log.debug("closing %s failed: %s", self.display_name, e)
            self._emit(SerialEventKind.GONE)
            log.debug("serial actor for %s gone", self.display_name)

    def _step(self) -> bool:
        """One round: handle a queued command if there is one, else read."""
        try:
            cmd = self.commands.receive_nowait()
        except ChannelClosed:
            return False
        if cmd is not None:
            return self._handle(cmd)

        try:
            data = self.port.read(self.port.in_waiting or 1)
        except (serial.SerialException, OSError) as e:
            self._notice(Severity.ERROR, f"Lost serial port {self.display_name}", e)
            return False
        # An empty read is a timeout; pyserial reports a vanished device as an exception.
        if data:
            self._emit(SerialEventKind.DATA, bytes(data))
        return True

    def _handle(self, cmd: SerialCommand) -> bool:
        kind = cmd.kind
        if kind == SerialCommandKind.DISCONNECT:
            return False

        if kind == SerialCommandKind.REQUEST_STATUS:
            self._emit(SerialEventKind.LINE_STATUS, self.read_line_status())
            return True

        try:
            if kind == SerialCommandKind.WRITE:
                self.port.write(cmd.payload or b"")
                self.port.flush()
                return True
            if kind == SerialCommandKind.SET_DTR:
                self.port.dtr = bool(cmd.payload)
            elif kind == SerialCommandKind.SET_FLOW_SIGNAL:
                self.port.rts = bool(cmd.payload)
            else:
                log.warning("unknown serial command %r", cmd)
                return True
        except (serial.SerialException, OSError) as e:
            self._notice(Severity.ERROR, f"Serial {kind.value} failed on {self.display_name}", e)
            return False

        self._emit(SerialEventKind.LINE_STATUS, self.read_line_status())
        return True

    def read_line_status(self) -> LineStatus:
        """Read DTR and CTS; a line that cannot be read is reported as unknown."""
        return LineStatus(dtr=self._read_line("dtr"), cts=self._read_line("cts"))

    def _read_line(self, name: str) -> Optional[bool]:
        try:
            return bool(getattr(self.port, name))
        except (serial.SerialException, OSError) as e:
            self._notice(Severity.WARNING, f"Could not read {name.upper()} on {self.display_name}", e)
            return None

    # ---------------- outbound ----------------

    def _emit(self, kind: SerialEventKind, payload=None) -> None:
        self.messenger.serial_event(kind, payload, source=self.commands)

    def _notice(self, severity: Severity, message: str, err: Exception) -> None:
        log.debug("%s: %s", message, err)
        self.messenger.log(severity, message, str(err))
