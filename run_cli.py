from __future__ import annotations

from flash_monitor.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
