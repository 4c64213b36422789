"""
Throughput and ETA reporting for long ingestion runs
"""

import math
import time
from typing import Any, Callable, Dict, Optional


def format_duration(seconds: float) -> str:
    """Render seconds as ``"1h 2m 3s"``, ``"2m 3s"`` or ``"3s"``."""
    if seconds is None or not math.isfinite(seconds) or seconds < 0:
        return "unknown"
    s = int(seconds % 60)
    m = int((seconds // 60) % 60)
    h = int(seconds // 3600)
    if h > 0:
        return f"{h}h {m}m {s}s"
    if m > 0:
        return f"{m}m {s}s"
    return f"{s}s"


class ProgressTracker:
    """
    Events/sec since start and since the previous report, plus an ETA
    against the upstream-reported total.
    """

    def __init__(self, start_count: int, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self.start_count = start_count
        self.started_at = clock()
        self.window_started_at = self.started_at
        self.window_start_count = start_count

    def snapshot(self, ingested_count: int, total: Optional[float] = None) -> Dict[str, Any]:
        """Compute rates for ``ingested_count`` and open a new window."""
        now = self.clock()

        elapsed_total = max(now - self.started_at, 0.001)
        eps_avg = (ingested_count - self.start_count) / elapsed_total

        elapsed_window = max(now - self.window_started_at, 0.001)
        eps_window = (ingested_count - self.window_start_count) / elapsed_window

        eta = "unknown"
        if total:
            eta = format_duration((total - ingested_count) / max(eps_avg, 0.001))

        self.window_started_at = now
        self.window_start_count = ingested_count

        return {
            "ingested": ingested_count,
            "total": total,
            "eps_window": round(eps_window),
            "eps_avg": round(eps_avg),
            "eta": eta,
        }
