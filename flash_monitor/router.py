"""The application core: one loop that owns all shared state.

Every other task (terminal bridge, serial actor, auto-flash watcher, wizards)
reaches the router only through its inbox. The router is the only place that
touches the popup stack, the current serial link, the remembered device
configuration and the current watcher, and the only place notices become
log lines.

Liveness of the serial actor is never tracked with a flag: the router drops
its link when the actor reports ``Gone`` or when a send to it fails.
"""

from __future__ import annotations

import logging
import queue
from typing import Callable, List, Optional, Sequence, Tuple

from . import keymap, ui
from .channels import Mailbox
from .config import DeviceConfig, open_port
from .dashboard import Dashboard, MonitorState
from .errors import ChannelClosed, PortOpenError
from .messages import (
    DISCONNECT,
    REQUEST_STATUS,
    AppCommand,
    CommandKind,
    DeviceConnected,
    InboxMessage,
    Key,
    KeyKind,
    Messenger,
    NewPopup,
    Notice,
    Resize,
    SerialCommand,
    SerialCommandKind,
    SerialEvent,
    SerialEventKind,
    Severity,
    WatcherReply,
    WatcherRequest,
)
from .popups import DeviceConfigurer, DeviceFinder, Notification, Reactive
from .ports import list_serial_ports
from .serial_actor import SerialActor
from .watcher import FlashWatcher
from .wizards import (
    PortLister,
    PortOpener,
    WatcherFactory,
    arm_watcher,
    auto_flash_wizard,
    connect_device,
    device_wizard,
    spawn,
)

log = logging.getLogger(__name__)

_LOG_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
}


class App:
    def __init__(
        self,
        defaults: Optional[DeviceConfig] = None,
        flash_command: Sequence[str] = (),
        *,
        lister: PortLister = list_serial_ports,
        opener: PortOpener = open_port,
        watcher_factory: WatcherFactory = FlashWatcher,
        spawner: Callable[..., object] = spawn,
    ) -> None:
        self.defaults = defaults or DeviceConfig(path="")
        self.flash_command = list(flash_command)
        self.lister = lister
        self.opener = opener
        self.watcher_factory = watcher_factory
        self.spawner = spawner

        self.inbox: "queue.Queue[InboxMessage]" = queue.Queue()
        self.to_self = Messenger(self.inbox)
        self.running = True
        self.state = MonitorState()
        self.stack: List[Reactive] = [Dashboard(self.state, self.to_self)]
        self.serial: Optional[Mailbox] = None
        self.serial_cfg: Optional[DeviceConfig] = None
        self.watcher: Optional[FlashWatcher] = None
        # (link, reply mailbox): the watcher waiting for this link's Gone before it may flash.
        self._flash_disconnect: Optional[Tuple[Mailbox, Optional[Mailbox]]] = None

    # ---------------- startup ----------------

    def connect_on_start(self, path: str) -> None:
        self.spawner(connect_device, self.to_self, self.defaults.with_path(path), self.opener)

    def arm_on_start(self, path, command: Sequence[str]) -> None:
        arm_watcher(self.to_self, path, list(command), self.watcher_factory)

    # ---------------- main loop ----------------

    def run(self, screen: Optional[ui.Screen] = None) -> None:
        log.debug("starting main loop")
        try:
            while self.running:
                self.draw(screen)
                if not self.handle(self.inbox.get()):
                    return
            self.draw(screen)
        finally:
            self.shutdown()

    def draw(self, screen: Optional[ui.Screen] = None) -> None:
        alive = []
        for component in self.stack:
            if component.alive():
                alive.append(component)
            else:
                component.close()
        self.stack = alive
        if screen is not None:
            size = screen.size()
            screen.draw(ui.compose(self.stack, size.columns, size.lines))

    def shutdown(self) -> None:
        if self.serial is not None:
            try:
                self.serial.send(DISCONNECT)
            except ChannelClosed:
                pass
            self.serial = None
        if self.watcher is not None:
            self.watcher.stop()
            self.watcher = None

    def handle(self, msg: InboxMessage) -> bool:
        """Apply one inbox message. Returns False when the app must end now."""
        if isinstance(msg, Key):
            return self._on_key(msg)
        if isinstance(msg, AppCommand):
            return self._on_command(msg)
        if isinstance(msg, SerialEvent):
            self._on_serial(msg)
        elif isinstance(msg, NewPopup):
            self.stack.append(msg.component)
        elif isinstance(msg, Notice):
            self.notify(msg)
        elif isinstance(msg, Resize):
            pass
        else:
            log.warning("unexpected inbox message %r", msg)
        return True

    def notify(self, notice: Notice) -> None:
        self.state.log.append(notice)
        log.log(_LOG_LEVELS.get(notice.severity, logging.INFO), "%s", notice.text)

    def _notify(self, severity: Severity, message: str, detail: Optional[str] = None) -> None:
        self.notify(Notice(severity, message, detail))

    # ---------------- input ----------------

    def _on_key(self, key: Key) -> bool:
        if key.kind != KeyKind.PRESS:
            return True
        for component in reversed(self.stack):
            if component.handle(key):
                return True
        kind = keymap.command_for(key)
        if kind is None:
            return True
        return self._on_command(AppCommand(kind))

    # ---------------- commands ----------------

    def _on_command(self, cmd: AppCommand) -> bool:
        kind = cmd.kind
        if kind == CommandKind.REQUEST_DEVICE_WIZARD:
            self.spawner(device_wizard, self.to_self, self.defaults, lister=self.lister, opener=self.opener)
        elif kind == CommandKind.REQUEST_AUTO_FLASH:
            self.spawner(auto_flash_wizard, self.to_self, self.flash_command, factory=self.watcher_factory)
        elif kind == CommandKind.SEND_TO_DEVICE:
            self.send_serial(cmd.payload)
        elif kind == CommandKind.DEVICE_CONNECTED:
            self._install_device(cmd.payload)
        elif kind == CommandKind.AUTO_FLASH_ARMED:
            self._install_watcher(cmd.payload)
        elif kind == CommandKind.DISARM_AUTO_FLASH:
            self._disarm()
        elif kind == CommandKind.WATCHER_REQUEST:
            self.handle_watcher(cmd.payload, cmd.reply_to)
        elif kind == CommandKind.DISMISS_TOP:
            if self.stack:
                self.stack.pop().close()
            if not self.stack:
                self.running = False
                return False
        elif kind == CommandKind.DISMISS_WIZARD:
            self._dismiss_wizard()
        elif kind == CommandKind.SHOW_HELP:
            self.stack.append(Notification("Keys", keymap.help_lines()))
        elif kind == CommandKind.QUIT:
            self.running = False
        return True

    def send_serial(self, data: SerialCommand) -> None:
        if self.serial is None:
            if data.kind != SerialCommandKind.DISCONNECT:
                self._notify(Severity.ERROR, "Not currently connected to a device")
            return
        try:
            self.serial.send(data)
        except ChannelClosed:
            self._drop_serial()
            if data.kind != SerialCommandKind.DISCONNECT:
                self._notify(Severity.ERROR, "Serial device is gone", f"could not {data.kind.value}")

    def _drop_serial(self) -> None:
        self.serial = None
        self.state.disconnected()

    def _install_device(self, connected: DeviceConnected) -> None:
        if self.serial is not None and self.serial is not connected.link:
            # One port owner at a time: retire the previous actor.
            try:
                self.serial.send(DISCONNECT)
            except ChannelClosed:
                pass
        self.serial = connected.link
        self.serial_cfg = connected.config

    def _install_watcher(self, watcher: FlashWatcher) -> None:
        if self.watcher is not None and self.watcher is not watcher:
            self.watcher.stop()
        self.watcher = watcher
        self.state.watching = watcher.display_path
        self._notify(Severity.INFO, f"Watching {watcher.display_path}")

    def _disarm(self) -> None:
        if self.watcher is None:
            self._notify(Severity.WARNING, "Auto-flash is not armed")
            return
        self.watcher.stop()
        self._notify(Severity.INFO, f"Stopped watching {self.watcher.display_path}")
        self.watcher = None
        self.state.watching = None

    def _dismiss_wizard(self) -> None:
        keep = []
        for component in self.stack:
            if isinstance(component, (DeviceFinder, DeviceConfigurer)):
                component.close()
            else:
                keep.append(component)
        self.stack = keep

    # ---------------- serial events ----------------

    def _on_serial(self, ev: SerialEvent) -> None:
        if ev.kind == SerialEventKind.GONE:
            if ev.source is self.serial:
                self._drop_serial()
            pending = self._flash_disconnect
            if pending is not None and ev.source is pending[0]:
                self._flash_disconnect = None
                self._reply_watcher(pending[1], WatcherReply.DISCONNECTED)
            return

        if ev.source is not self.serial:
            log.debug("ignoring %s from a retired serial actor", ev.kind.value)
            return

        if ev.kind == SerialEventKind.CONNECTED:
            self.state.device = str(ev.payload)
            self.state.settings = self.serial_cfg.short() if self.serial_cfg else None
            self.state.rts = False
            self._notify(Severity.INFO, f"Connected: {ev.payload}")
            self.send_serial(REQUEST_STATUS)
        elif ev.kind == SerialEventKind.DATA:
            self.state.terminal.feed(ev.payload)
        elif ev.kind == SerialEventKind.LINE_STATUS:
            self.state.set_line_status(ev.payload)

    # ---------------- auto-flash handshake ----------------

    def handle_watcher(self, request: WatcherRequest, reply_to: Optional[Mailbox] = None) -> None:
        if request == WatcherRequest.DISCONNECT:
            if reply_to is None and self.watcher is not None:
                reply_to = self.watcher.replies
            if self.serial is None:
                self._reply_watcher(reply_to, WatcherReply.NO_DEVICE)
                return
            link = self.serial
            # The reply goes out to this requester when the actor reports Gone.
            self._flash_disconnect = (link, reply_to)
            try:
                link.send(DISCONNECT)
            except ChannelClosed:
                self._drop_serial()
        elif request == WatcherRequest.RECONNECT:
            self.reconnect()

    def _reply_watcher(self, replies: Optional[Mailbox], reply: WatcherReply) -> None:
        """Answer the watcher that asked. A requester that went away gets its port back."""
        if replies is not None:
            try:
                replies.send(reply)
                return
            except ChannelClosed:
                pass
        log.debug("watcher stopped before %s", reply.value)
        if reply == WatcherReply.DISCONNECTED:
            self.reconnect()

    def reconnect(self) -> None:
        """Reopen the remembered device; failure leaves the app disconnected."""
        cfg = self.serial_cfg
        if cfg is None:
            self._notify(Severity.ERROR, "No device to reconnect to")
            return
        if self.serial is not None:
            log.debug("reconnect skipped, a device is already connected")
            return
        try:
            port = self.opener(cfg)
        except PortOpenError as e:
            self._notify(Severity.ERROR, "Could not connect to serial", str(e))
            return
        actor = SerialActor(port, self.to_self, cfg.path)
        self.serial = actor.commands
        actor.start()
