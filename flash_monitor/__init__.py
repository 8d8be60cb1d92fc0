"""Serial monitor that reflashes the device when a watched firmware file changes."""

__version__ = "0.1.0"
