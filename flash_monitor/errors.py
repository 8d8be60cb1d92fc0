"""Domain-specific errors for flash_monitor."""


class FlashMonitorError(Exception):
    """Base error for flash_monitor."""


class ConfigError(FlashMonitorError):
    """Raised for invalid startup configuration (CLI defaults, flash command template)."""


class PortOpenError(FlashMonitorError):
    """Raised when a serial port cannot be opened with the requested configuration."""


class DeviceDiscoveryError(FlashMonitorError):
    """Raised when serial port enumeration fails or finds nothing usable."""


class WatchError(FlashMonitorError):
    """Raised when a filesystem watch cannot be set up."""


class ChannelClosed(FlashMonitorError):
    """Raised when sending to, or receiving from, a closed mailbox."""


class Dismissed(FlashMonitorError):
    """Raised when a popup is removed before it produced a response."""
