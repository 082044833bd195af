"""In-memory sliding window rate limiting with per-path overrides."""
from __future__ import annotations

import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from threading import Lock
from typing import Deque, Dict, Mapping, Optional

from trafficguard.utils import path_prefix

LOGGER = logging.getLogger(__name__)

DEFAULT_RETENTION_SECONDS = 300
DEFAULT_SWEEP_INTERVAL_SECONDS = 60


class RateLimitConfigError(ValueError):
    """Raised when a rate limit policy is misconfigured."""


@dataclass(frozen=True)
class RateLimitRule:
    """Maximum ``limit`` requests per ``window_seconds``."""

    limit: int
    window_seconds: int

    def __post_init__(self) -> None:
        for name in ("limit", "window_seconds"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise RateLimitConfigError(f"{name} must be a positive integer, got {value!r}")


class RateLimitWindow:
    """Timestamps recorded under one key, guarded by their own lock."""

    __slots__ = ("timestamps", "lock", "retired")

    def __init__(self) -> None:
        self.timestamps: Deque[float] = deque()
        self.lock = Lock()
        self.retired = False


class RateLimitStore:
    """Thread-safe keyed collection of sliding windows.

    Idle keys are removed by :meth:`sweep`, which a background reaper thread
    runs every ``sweep_interval_seconds`` once :meth:`start` is called.
    """

    def __init__(
        self,
        retention_seconds: int = DEFAULT_RETENTION_SECONDS,
        sweep_interval_seconds: int = DEFAULT_SWEEP_INTERVAL_SECONDS,
    ) -> None:
        if retention_seconds <= 0 or sweep_interval_seconds <= 0:
            raise RateLimitConfigError("retention and sweep interval must be positive")
        self.retention_seconds = retention_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._windows: Dict[str, RateLimitWindow] = {}
        self._lock = Lock()
        self._stop = threading.Event()
        self._reaper: Optional[threading.Thread] = None

    def __len__(self) -> int:
        return len(self._windows)

    def __contains__(self, key: object) -> bool:
        return key in self._windows

    def get_or_create(self, key: str) -> RateLimitWindow:
        with self._lock:
            window = self._windows.get(key)
            if window is None:
                window = self._windows[key] = RateLimitWindow()
            return window

    @staticmethod
    def prune(window: RateLimitWindow, now: float, retention_seconds: float) -> None:
        """Drop timestamps at least ``retention_seconds`` old. Caller holds ``window.lock``."""

        if any(now - ts >= retention_seconds for ts in window.timestamps):
            window.timestamps = deque(
                ts for ts in window.timestamps if now - ts < retention_seconds
            )

    def sweep(self, now: Optional[float] = None) -> int:
        """Prune every key against the retention ceiling and drop empty ones."""

        now = time.monotonic() if now is None else now
        removed = 0
        with self._lock:
            snapshot = list(self._windows.items())
        for key, window in snapshot:
            with window.lock:
                self.prune(window, now, self.retention_seconds)
                if window.timestamps:
                    continue
                with self._lock:
                    if self._windows.get(key) is window:
                        del self._windows[key]
                window.retired = True
                removed += 1
        if removed:
            LOGGER.debug("rate limit sweep", extra={"removed": removed})
        return removed

    def start(self) -> None:
        """Start the background reaper if it is not already running."""

        if self._reaper is not None and self._reaper.is_alive():
            return
        self._stop.clear()
        self._reaper = threading.Thread(
            target=self._run_reaper, name="rate-limit-reaper", daemon=True
        )
        self._reaper.start()

    def close(self) -> None:
        """Stop the background reaper and wait for it to exit."""

        self._stop.set()
        reaper, self._reaper = self._reaper, None
        if reaper is not None:
            reaper.join(timeout=5)

    def _run_reaper(self) -> None:
        while not self._stop.wait(self.sweep_interval_seconds):
            try:
                self.sweep()
            except Exception:  # noqa: BLE001
                LOGGER.exception("rate limit sweep failed")


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of a single admission check."""

    admitted: bool
    limit: int
    remaining: int
    reset_after_seconds: int

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_after_seconds),
        }
        if not self.admitted:
            headers["Retry-After"] = str(self.reset_after_seconds)
        return headers


class RateLimitPolicy:
    """Resolves the rule for a path and admits or denies against a store.

    ``endpoints`` maps path prefixes to rules; the longest matching prefix
    wins, otherwise ``default`` applies.
    """

    key_segments = 3

    def __init__(
        self,
        store: RateLimitStore,
        default: RateLimitRule,
        endpoints: Optional[Mapping[str, RateLimitRule]] = None,
    ) -> None:
        if not isinstance(default, RateLimitRule):
            raise RateLimitConfigError("a default RateLimitRule is required")
        self.store = store
        self.default = default
        self.endpoints: Dict[str, RateLimitRule] = dict(endpoints or {})
        for prefix, rule in [("<default>", default), *self.endpoints.items()]:
            if not isinstance(rule, RateLimitRule):
                raise RateLimitConfigError(f"rule for {prefix} must be a RateLimitRule")
            if rule.window_seconds > store.retention_seconds:
                raise RateLimitConfigError(
                    f"window for {prefix} ({rule.window_seconds}s) exceeds store retention "
                    f"({store.retention_seconds}s)"
                )
        # Longest prefix first; ties broken alphabetically so resolution is stable.
        self._prefixes = sorted(self.endpoints, key=lambda prefix: (-len(prefix), prefix))

    @classmethod
    def from_limits(
        cls,
        store: RateLimitStore,
        limit: int,
        window_seconds: int,
        endpoints: Optional[Mapping[str, tuple]] = None,
    ) -> "RateLimitPolicy":
        """Build a policy from plain ``(limit, window)`` pairs."""

        rules = {
            prefix: RateLimitRule(*pair) for prefix, pair in (endpoints or {}).items()
        }
        return cls(store, RateLimitRule(limit, window_seconds), rules)

    def rule_for_path(self, path: str) -> RateLimitRule:
        for prefix in self._prefixes:
            if path.startswith(prefix):
                return self.endpoints[prefix]
        return self.default

    def default_key(self, client_ip: str, path: str) -> str:
        return f"{client_ip}:{path_prefix(path, self.key_segments)}"

    def evaluate(self, key: str, path: str, now: Optional[float] = None) -> RateLimitDecision:
        """Admit or deny one request for ``key``; admitted requests are recorded."""

        rule = self.rule_for_path(path)
        now = time.monotonic() if now is None else now
        while True:
            window = self.store.get_or_create(key)
            with window.lock:
                if window.retired:
                    continue
                self.store.prune(window, now, rule.window_seconds)
                timestamps = window.timestamps
                if len(timestamps) >= rule.limit:
                    return RateLimitDecision(
                        admitted=False,
                        limit=rule.limit,
                        remaining=0,
                        reset_after_seconds=self._reset_after(
                            min(timestamps), now, rule.window_seconds
                        ),
                    )
                timestamps.append(now)
                return RateLimitDecision(
                    admitted=True,
                    limit=rule.limit,
                    remaining=rule.limit - len(timestamps),
                    reset_after_seconds=self._reset_after(
                        min(timestamps), now, rule.window_seconds
                    ),
                )

    @staticmethod
    def _reset_after(oldest: float, now: float, window_seconds: int) -> int:
        return max(1, math.ceil(oldest + window_seconds - now))


class RateLimiter:
    """Single-rule limiter keyed by an arbitrary string such as a client IP."""

    def __init__(
        self,
        limit: int,
        window_seconds: int,
        store: Optional[RateLimitStore] = None,
    ) -> None:
        self.store = store or RateLimitStore(
            retention_seconds=max(DEFAULT_RETENTION_SECONDS, window_seconds)
        )
        self.policy = RateLimitPolicy(self.store, RateLimitRule(limit, window_seconds))
        self.limit = limit
        self.window = window_seconds

    def check(self, key: str, now: Optional[float] = None) -> RateLimitDecision:
        return self.policy.evaluate(key, "", now)

    def allow(self, key: str, now: Optional[float] = None) -> bool:
        return self.check(key, now).admitted
