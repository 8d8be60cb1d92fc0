"""One-shot background sequences driven through popups.

A wizard runs on its own thread and talks to the router only through a
``Messenger``: it posts a popup, blocks on the popup's ``Reply`` and moves to
the next stage. A dismissed popup ends the wizard quietly; failures end it
with an error notice.
"""

from __future__ import annotations

import logging
import shlex
import threading
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import serial

from .config import DeviceConfig, open_port
from .errors import ConfigError, DeviceDiscoveryError, Dismissed, PortOpenError, WatchError
from .messages import CommandKind, DeviceConnected, Messenger, Severity
from .popups import CmdInput, DeviceConfigurer, DeviceFinder, FileViewer
from .ports import PortInfo, list_serial_ports, selectable_ports
from .serial_actor import SerialActor
from .watcher import BIN_TOKEN, FlashWatcher, parse_flash_command, validate_flash_command

log = logging.getLogger(__name__)

PortOpener = Callable[[DeviceConfig], serial.Serial]
PortLister = Callable[[], List[PortInfo]]


def spawn(target: Callable[..., None], *args, **kwargs) -> threading.Thread:
    t = threading.Thread(target=target, args=args, kwargs=kwargs, name=getattr(target, "__name__", "wizard"), daemon=True)
    t.start()
    return t


def connect_device(app: Messenger, config: DeviceConfig, opener: PortOpener = open_port) -> bool:
    """Open the port and hand a running serial actor to the router."""
    try:
        port = opener(config)
    except PortOpenError as e:
        app.log(Severity.ERROR, "Could not connect to serial port", str(e))
        return False
    actor = SerialActor(port, app, config.path)
    # The router learns about the link before the actor's first event arrives.
    app.send_app(CommandKind.DEVICE_CONNECTED, DeviceConnected(actor.commands, config))
    actor.start()
    return True


def device_wizard(
    app: Messenger,
    defaults: DeviceConfig,
    *,
    lister: PortLister = list_serial_ports,
    opener: PortOpener = open_port,
) -> None:
    """Enumerate -> pick a port -> configure it -> open it."""
    try:
        ports = selectable_ports(lister())
    except DeviceDiscoveryError as e:
        app.log(Severity.ERROR, "Could not list serial ports", str(e))
        return
    if not ports:
        app.log(Severity.ERROR, "No devices found")
        return

    finder = DeviceFinder(ports)
    app.new_component(finder)
    try:
        path = finder.reply.wait()
    except Dismissed:
        log.debug("device finder dismissed")
        return

    configurer = DeviceConfigurer(path, defaults.with_path(path))
    app.new_component(configurer)
    try:
        config = configurer.reply.wait()
    except Dismissed:
        log.debug("device configurer dismissed")
        return

    if connect_device(app, config, opener):
        app.send_app(CommandKind.DISMISS_WIZARD)


WatcherFactory = Callable[..., FlashWatcher]


def arm_watcher(app: Messenger, path, command, factory: WatcherFactory = FlashWatcher) -> Optional[FlashWatcher]:
    """Start watching ``path``; ``command`` is a command line or an argument vector."""
    try:
        if isinstance(command, str):
            argv = parse_flash_command(command)
        else:
            argv = validate_flash_command(command)
        watcher = factory(path, argv, app).start()
    except (ConfigError, WatchError) as e:
        app.log(Severity.ERROR, "Could not arm auto-flash", str(e))
        return None
    app.send_app(CommandKind.AUTO_FLASH_ARMED, watcher)
    return watcher


def auto_flash_wizard(
    app: Messenger,
    default_command: Sequence[str] = (),
    *,
    start_dir: Optional[Path] = None,
    factory: WatcherFactory = FlashWatcher,
) -> None:
    """Pick a file -> edit the flash command -> arm the watcher."""
    try:
        viewer = FileViewer(app, start_dir)
    except OSError as e:
        app.log(Severity.ERROR, "Could not open working directory", str(e))
        return
    app.new_component(viewer)
    try:
        path = viewer.reply.wait()
    except Dismissed:
        return

    cmd_input = CmdInput(shlex.join(default_command), title=f"Flash command ({BIN_TOKEN} = {path.name})")
    app.new_component(cmd_input)
    try:
        text = cmd_input.reply.wait()
    except Dismissed:
        return

    arm_watcher(app, path, text, factory)
