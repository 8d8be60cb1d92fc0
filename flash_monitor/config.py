"""Serial device configuration.

A ``DeviceConfig`` is built by the device configurer popup (or from CLI
defaults) and is immutable afterwards. The router keeps the config of the
last successful connect so the auto-flash handshake can reopen the port with
exactly the same settings.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum, IntEnum

import serial

from .errors import ConfigError, PortOpenError


class Baud(IntEnum):
    B4800 = 4800
    B9600 = 9600
    B19200 = 19200
    B38400 = 38400
    B57600 = 57600
    B115200 = 115200


class DataBits(IntEnum):
    FIVE = 5
    SIX = 6
    SEVEN = 7
    EIGHT = 8


class FlowControl(str, Enum):
    NONE = "none"
    SOFTWARE = "software"
    HARDWARE = "hardware"


class Parity(str, Enum):
    NONE = "none"
    ODD = "odd"
    EVEN = "even"


class StopBits(IntEnum):
    ONE = 1
    TWO = 2


_PARITY = {
    Parity.NONE: serial.PARITY_NONE,
    Parity.ODD: serial.PARITY_ODD,
    Parity.EVEN: serial.PARITY_EVEN,
}

_STOPBITS = {
    StopBits.ONE: serial.STOPBITS_ONE,
    StopBits.TWO: serial.STOPBITS_TWO,
}

# Read timeout used by the serial actor; bounds how long a pending command
# can wait behind an idle read.
READ_TIMEOUT = 0.05


def parse_baud(text: str) -> Baud:
    """Parse a baud rate, accepting the short form too (``1152`` -> 115200)."""
    try:
        n = int(str(text).strip())
    except ValueError as e:
        raise ConfigError(f"Issue parsing baud rate: {e}") from e
    for b in Baud:
        if n == int(b) or n * 100 == int(b):
            return b
    raise ConfigError(f"Not a valid baud rate: {text} (choose from {', '.join(str(int(b)) for b in Baud)})")


@dataclass(frozen=True)
class DeviceConfig:
    path: str
    baud: Baud = Baud.B115200
    data_bits: DataBits = DataBits.EIGHT
    flow_control: FlowControl = FlowControl.NONE
    parity: Parity = Parity.NONE
    stop_bits: StopBits = StopBits.ONE
    dtr: bool = True

    def with_path(self, path: str) -> "DeviceConfig":
        return replace(self, path=path)

    def short(self) -> str:
        """Compact form like ``115200-8-N-1``."""
        return f"{int(self.baud)}-{int(self.data_bits)}-{self.parity.value[0].upper()}-{int(self.stop_bits)}"

    def to_serial(self) -> serial.Serial:
        """Return an unopened ``serial.Serial`` carrying every setting."""
        port = serial.Serial()
        port.port = self.path
        port.baudrate = int(self.baud)
        port.bytesize = int(self.data_bits)
        port.parity = _PARITY[self.parity]
        port.stopbits = _STOPBITS[self.stop_bits]
        port.xonxoff = self.flow_control is FlowControl.SOFTWARE
        port.rtscts = self.flow_control is FlowControl.HARDWARE
        port.timeout = READ_TIMEOUT
        # Applied by pyserial when the port is opened.
        port.dtr = self.dtr
        return port

    def open(self) -> serial.Serial:
        port = self.to_serial()
        try:
            port.open()
        except (serial.SerialException, OSError, ValueError) as e:
            raise PortOpenError(str(e)) from e
        return port


def open_port(config: DeviceConfig) -> serial.Serial:
    return config.open()
