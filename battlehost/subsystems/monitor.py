# battlehost/subsystems/monitor.py
"""Process resource usage, reported at startup and alongside crashes."""

from __future__ import annotations

import logging
import os
import time
from typing import Any, Dict

import psutil

_logger = logging.getLogger("battlehost.subsystems.monitor")


class Monitor:
    def __init__(self, pid: int = None):
        self._process = psutil.Process(pid or os.getpid())
        self.started_at = time.time()

    def usage(self) -> Dict[str, Any]:
        """Return memory, CPU and child-process figures for this process."""
        try:
            with self._process.oneshot():
                mem = self._process.memory_info()
                return {
                    "rss_mb": round(mem.rss / (1024 * 1024), 1),
                    "cpu_percent": self._process.cpu_percent(interval=None),
                    "threads": self._process.num_threads(),
                    "children": len(self._process.children()),
                    "uptime_seconds": round(time.time() - self.started_at, 1),
                }
        except psutil.Error as e:
            _logger.warning("Could not read process usage: %s", e)
            return {}

    def log_usage(self, level: int = logging.INFO) -> None:
        _logger.log(level, "Process usage: %s", self.usage())


def init_monitor(ctx) -> Monitor:
    monitor = Monitor()
    monitor.log_usage(logging.DEBUG)
    return monitor
