"""
Per-run platform health.

A platform is degraded for the rest of a run once it blocks us outright, or
after `failure_threshold` consecutive failed items. Work still queued for a
degraded platform is skipped.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict


@dataclass
class PlatformState:
    successes: int = 0
    failures: int = 0
    consecutive_failures: int = 0
    degraded_reason: str | None = None


@dataclass
class PlatformHealth:
    failure_threshold: int = 5
    _states: Dict[str, PlatformState] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def _state(self, platform: str) -> PlatformState:
        return self._states.setdefault(platform, PlatformState())

    def record_success(self, platform: str) -> None:
        with self._lock:
            state = self._state(platform)
            state.successes += 1
            state.consecutive_failures = 0

    def record_failure(self, platform: str, reason: str) -> bool:
        """Count a failed item; True when this failure tipped the platform into degraded."""
        with self._lock:
            state = self._state(platform)
            state.failures += 1
            state.consecutive_failures += 1
            if state.degraded_reason is None and state.consecutive_failures >= self.failure_threshold:
                state.degraded_reason = f"{state.consecutive_failures} consecutive failures (last: {reason})"
                return True
            return False

    def mark_degraded(self, platform: str, reason: str) -> bool:
        with self._lock:
            state = self._state(platform)
            if state.degraded_reason is not None:
                return False
            state.degraded_reason = reason
            return True

    def is_degraded(self, platform: str) -> bool:
        with self._lock:
            state = self._states.get(platform)
            return state is not None and state.degraded_reason is not None

    def degraded(self) -> Dict[str, str]:
        with self._lock:
            return {name: s.degraded_reason for name, s in self._states.items() if s.degraded_reason}


__all__ = ["PlatformHealth", "PlatformState"]
