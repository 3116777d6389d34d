from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Protocol


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    remaining: int
    retry_after_seconds: float = 0.0


class RateCounter(Protocol):
    def hit(self, key: str) -> RateDecision: ...


class InMemoryRateCounter:
    """Fixed-window counter per key, local to this process."""

    def __init__(
        self,
        *,
        max_requests: int = 20,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: dict[str, tuple[float, int]] = {}
        self._last_sweep = clock()

    def __len__(self) -> int:
        return len(self._windows)

    def _sweep(self, now: float) -> None:
        # Expired windows are dropped at most once per window length.
        if now - self._last_sweep < self.window_seconds:
            return
        self._last_sweep = now
        expired = [key for key, (started, _) in self._windows.items() if now - started >= self.window_seconds]
        for key in expired:
            del self._windows[key]

    def hit(self, key: str) -> RateDecision:
        now = self._clock()
        with self._lock:
            self._sweep(now)
            started, count = self._windows.get(key, (now, 0))
            if now - started >= self.window_seconds:
                started, count = now, 0
            if count >= self.max_requests:
                return RateDecision(
                    allowed=False,
                    remaining=0,
                    retry_after_seconds=max(0.0, self.window_seconds - (now - started)),
                )
            count += 1
            self._windows[key] = (started, count)
            return RateDecision(allowed=True, remaining=self.max_requests - count)
