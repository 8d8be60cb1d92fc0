from __future__ import annotations

import os
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional

from serial.tools import list_ports

from .errors import DeviceDiscoveryError


class Transport(str, Enum):
    USB = "usb"
    BLUETOOTH = "bluetooth"
    PCI = "pci"
    UNKNOWN = "unknown"


# Only these are offered in the device finder; PCI and unknown ports are
# mostly on-board UARTs nobody means to open.
SELECTABLE_TRANSPORTS = (Transport.USB, Transport.BLUETOOTH)


@dataclass(frozen=True)
class PortInfo:
    device: str
    description: str = ""
    hwid: str = ""
    manufacturer: str = ""
    product: str = ""
    serial_number: str = ""
    vid: Optional[int] = None
    pid: Optional[int] = None
    transport: Transport = Transport.UNKNOWN

    def label(self) -> str:
        extra = []
        if self.product:
            extra.append(self.product)
        elif self.description and self.description not in ("n/a", self.device):
            extra.append(self.description)
        if self.manufacturer:
            extra.append(self.manufacturer)
        if self.serial_number:
            extra.append(f"SN {self.serial_number}")
        extras = f" ({', '.join(extra)})" if extra else ""
        return f"{self.device}{extras}"


_LINUX_TTYS_RE = re.compile(r"^/dev/ttyS\d+$")


def _safe_str(x) -> str:
    return "" if x is None else str(x)


def classify_transport(p) -> Transport:
    """Guess the transport of a pyserial ``ListPortInfo``-like object."""
    dev = _safe_str(getattr(p, "device", "")).lower()
    desc = _safe_str(getattr(p, "description", "")).lower()
    hwid = _safe_str(getattr(p, "hwid", "")).lower()
    subsystem = _safe_str(getattr(p, "subsystem", "")).lower()

    if "bluetooth" in desc or "bluetooth" in hwid or "bluetooth" in dev:
        return Transport.BLUETOOTH
    if hwid.startswith("bthenum") or os.path.basename(dev).startswith("rfcomm"):
        return Transport.BLUETOOTH
    if getattr(p, "vid", None) is not None and getattr(p, "pid", None) is not None:
        return Transport.USB
    if subsystem in ("usb", "usb-serial") or hwid.startswith("usb"):
        return Transport.USB
    if subsystem == "pci" or hwid.startswith("pci"):
        return Transport.PCI
    return Transport.UNKNOWN


def list_serial_ports() -> List[PortInfo]:
    """Every serial port the OS reports, with a transport tag."""
    try:
        found = list_ports.comports()
    except Exception as e:
        raise DeviceDiscoveryError(f"Could not list serial ports: {e}") from e
    result: List[PortInfo] = []
    for p in found:
        result.append(
            PortInfo(
                device=_safe_str(getattr(p, "device", "")),
                description=_safe_str(getattr(p, "description", "")),
                hwid=_safe_str(getattr(p, "hwid", "")),
                manufacturer=_safe_str(getattr(p, "manufacturer", "")),
                product=_safe_str(getattr(p, "product", "")),
                serial_number=_safe_str(getattr(p, "serial_number", "")),
                vid=getattr(p, "vid", None),
                pid=getattr(p, "pid", None),
                transport=classify_transport(p),
            )
        )
    return result


def list_linux_by_id_ports() -> List[str]:
    """Return stable Linux symlinks under /dev/serial/by-id (if present)."""
    if os.name != "posix":
        return []
    base = Path("/dev/serial/by-id")
    if not base.exists():
        return []
    out: List[str] = []
    for p in sorted(base.iterdir()):
        if p.is_symlink():
            out.append(str(p))
    return out


def _score_port(p: PortInfo) -> int:
    dev = (p.device or "").lower()
    desc = (p.description or "").lower()

    score = 0
    if p.transport is Transport.USB:
        score += 120
    # Linux: ttyUSB/ttyACM are almost always what people plug in
    if dev.startswith("/dev/ttyusb") or dev.startswith("/dev/ttyacm"):
        score += 110
    if _LINUX_TTYS_RE.match(dev):
        score -= 300
    if p.transport is Transport.BLUETOOTH:
        score -= 50
    if desc in ("n/a", "", "unknown"):
        score -= 20
    return score


def selectable_ports(ports: Iterable[PortInfo]) -> List[PortInfo]:
    """USB and Bluetooth ports only, most likely targets first."""
    keep = [p for p in ports if p.transport in SELECTABLE_TRANSPORTS]
    return sorted(keep, key=_score_port, reverse=True)
