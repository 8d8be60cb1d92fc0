from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import List, Optional

from .config import DeviceConfig, parse_baud
from .errors import ConfigError, DeviceDiscoveryError
from .keys import InputBridge, KeyReader
from .ports import list_linux_by_id_ports, list_serial_ports
from .router import App
from .ui import Screen
from .watcher import BIN_TOKEN, parse_flash_command

LOG_FORMAT = "%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="flash-monitor",
        description=(
            "Serial monitor with auto-flash. Keys: Ctrl+F connect, Ctrl+U watch & flash, "
            "Ctrl+K help, Esc close, Ctrl+C quit."
        ),
    )
    p.add_argument("--list-ports", action="store_true", help="List serial ports and exit.")
    p.add_argument("-d", "--device", default=None, help="Serial port like /dev/ttyUSB0 or COM3 to open at startup.")
    p.add_argument("-b", "--baud", default="115200", help="Default baud rate (4800 ... 115200, short forms like 1152 accepted).")
    p.add_argument("--watch-path", default=None, help="File to watch for auto-flash from startup.")
    p.add_argument(
        "--flash-cmd",
        default=None,
        help=f"Flash command line; {BIN_TOKEN} is replaced by the watched file path.",
    )
    p.add_argument("--log-file", default=None, help="Write a debug trace here (default: $LOG_PATH, if set).")
    return p


def _print_ports() -> int:
    try:
        ports = list_serial_ports()
    except DeviceDiscoveryError as e:
        print(str(e), file=sys.stderr)
        return 1
    if not ports:
        print("No serial ports found.")
        return 1

    by_id = list_linux_by_id_ports()
    if by_id:
        print("Recommended (stable) ports (/dev/serial/by-id):")
        for p in by_id:
            print(f" * {p}")
        print("")

    print("All detected serial ports:")
    for p in ports:
        extra = [p.transport.value]
        if p.vid is not None and p.pid is not None:
            extra.append(f"VID:PID={p.vid:04x}:{p.pid:04x}")
        if p.manufacturer:
            extra.append(p.manufacturer)
        if p.serial_number:
            extra.append(f"SN {p.serial_number}")
        print(f" - {p.device} ({p.description}) | " + ", ".join(extra))
    return 0


def setup_logging(path: Optional[str]) -> None:
    """Trace to a file only; the terminal belongs to the UI."""
    if not path:
        return
    level = os.environ.get("LOG_LEVEL", "DEBUG").upper()
    logging.basicConfig(filename=path, level=getattr(logging, level, logging.DEBUG), format=LOG_FORMAT)


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    if args.list_ports:
        return _print_ports()

    flash_command: List[str] = []
    try:
        defaults = DeviceConfig(path=args.device or "", baud=parse_baud(args.baud))
        if args.flash_cmd:
            flash_command = parse_flash_command(args.flash_cmd)
        if args.watch_path and not flash_command:
            raise ConfigError("--watch-path needs --flash-cmd")
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    if not sys.stdin.isatty():
        print("flash-monitor needs an interactive terminal.", file=sys.stderr)
        return 2

    setup_logging(args.log_file or os.environ.get("LOG_PATH"))

    app = App(defaults, flash_command)
    with KeyReader() as kr, Screen() as screen:
        bridge = InputBridge(kr, app.to_self)
        bridge.start()
        try:
            if args.device:
                app.connect_on_start(args.device)
            if args.watch_path:
                app.arm_on_start(args.watch_path, flash_command)
            app.run(screen)
        finally:
            bridge.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
