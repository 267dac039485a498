from __future__ import annotations

from collections import deque
from dataclasses import dataclass
import time
from typing import Callable, Protocol


class AdmissionController(Protocol):
    # Minimal limiter shape the dispatcher depends on; a shared-storage version can slot in here.
    def admit(self, destination_key: str, count: int) -> bool: ...


@dataclass(frozen=True)
class WindowConfig:
    window_seconds: float = 60.0
    limit: int = 100


class SlidingWindowRateLimiter:
    """Per-destination sliding window admission control.

    Process-local and not persisted: state resets on restart and is not shared
    between dispatcher instances.
    """

    def __init__(
        self,
        config: WindowConfig | None = None,
        *,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        # Allow injecting time for deterministic tests.
        self._config = config or WindowConfig()
        self._time_provider = time_provider or time.monotonic
        self._admissions: dict[str, deque[float]] = {}

    @property
    def config(self) -> WindowConfig:
        return self._config

    def _prune(self, destination_key: str, now: float) -> deque[float]:
        # Destinations whose window has emptied are dropped so the map tracks only active URLs.
        window = self._admissions.get(destination_key)
        if window is None:
            return deque()
        horizon = now - self._config.window_seconds
        while window and window[0] <= horizon:
            window.popleft()
        if not window:
            del self._admissions[destination_key]
        return window

    def _sweep(self, now: float) -> None:
        for destination_key in list(self._admissions):
            self._prune(destination_key, now)

    def in_window(self, destination_key: str) -> int:
        return len(self._prune(destination_key, self._time_provider()))

    def tracked_destinations(self) -> int:
        return len(self._admissions)

    def admit(self, destination_key: str, count: int) -> bool:
        # All-or-nothing: either every unit fits in the remaining budget or none is recorded.
        if count <= 0:
            return True
        now = self._time_provider()
        self._sweep(now)
        window = self._prune(destination_key, now)
        if len(window) + count > self._config.limit:
            return False
        window.extend([now] * count)
        self._admissions[destination_key] = window
        return True

    def reset(self) -> None:
        self._admissions.clear()
