"""Short-window duplicate filter for relay deliveries.

The relay can hand us the same message through more than one path and the
log carries no message id, so identity is (sender, group, content) within a
time window. Memory is bounded by sweeping stale entries whenever the map
grows past ``max_size``; there is no background timer.
"""

import time


class DedupFilter:
    def __init__(self, window_seconds: float = 30.0, max_size: int = 200,
                 time_func=None):
        self._window = window_seconds
        self._max_size = max_size
        self._time_func = time_func or time.monotonic
        self._seen: dict[tuple[str, str, str], float] = {}

    def is_duplicate(self, sender: str, group: str, content: str) -> bool:
        """Return True if this fingerprint was first seen inside the window."""
        key = (sender, group, content)
        now = self._time_func()

        if len(self._seen) > self._max_size:
            self._sweep(now)

        if key in self._seen:
            return True
        self._seen[key] = now
        return False

    def _sweep(self, now: float) -> None:
        stale = [k for k, ts in self._seen.items() if now - ts > self._window]
        for k in stale:
            del self._seen[k]

    def clear(self) -> None:
        self._seen.clear()

    def __len__(self) -> int:
        return len(self._seen)
