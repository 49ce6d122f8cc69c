# backend/slotkeeper/services/runtime_metrics.py
from __future__ import annotations

import threading

# Counter names in use:
#   acquire_success, acquire_conflict, acquire_rejected, acquire_exhausted,
#   scan_unknown, sweep_runs, sweep_corrections, guard_rollbacks


class _Counters:
    """Process-local counters; the sweep report and CLI status read a snapshot."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._values: dict[str, int] = {}

    def inc(self, name: str, n: int = 1) -> None:
        with self._lock:
            self._values[name] = self._values.get(name, 0) + int(n)

    def get(self, name: str) -> int:
        with self._lock:
            return self._values.get(name, 0)

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(sorted(self._values.items()))

    def reset(self) -> None:
        with self._lock:
            self._values.clear()


METRICS = _Counters()
