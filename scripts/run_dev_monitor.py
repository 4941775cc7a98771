#!/usr/bin/env python3
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

print(
    f"[dev-monitor] browser={os.environ.get('DEV_MONITOR_BROWSER_BINARY', 'auto')} | "
    f"headless={os.environ.get('DEV_MONITOR_HEADLESS', '1')} | "
    f"log_dir={os.environ.get('DEV_MONITOR_LOG_DIR', '/var/log/dev-monitor')}",
    file=sys.stderr,
)

from dev_servers.monitor.main import main  # noqa: E402

if __name__ == "__main__":
    main()
