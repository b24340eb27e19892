"""In-memory fixed-window rate limiting keyed by client and route.

The limiter keeps one :class:`RateWindow` per ``(client, route)`` pair.  A
window admits up to ``max_requests`` calls; once ``window_seconds`` have
elapsed since it opened, the next call starts a fresh window with a count of
one.

Known limitation
----------------
Counters live in process memory.  They are not shared between worker
processes or hosts and are lost on restart, so the limit is advisory abuse
protection rather than a guarantee.  A multi-instance deployment needs an
external counter store.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass

logger = logging.getLogger(__name__)

UNKNOWN_CLIENT = "unknown"


@dataclass(frozen=True)
class RateLimit:
    """A route's limit: at most ``max_requests`` per ``window_seconds``."""

    max_requests: int
    window_seconds: int


@dataclass
class RateWindow:
    """Counter state for one ``(client, route)`` key."""

    count: int
    window_start: float
    window_seconds: int


class RateLimiter:
    """Fixed-window limiter with per-route limits.

    Instances are independent, so the application builds one at startup and
    injects it; tests construct their own with a fake clock.

    Args:
        limits: Route prefix to :class:`RateLimit`.  The longest matching
            prefix wins.
        default: Limit applied to routes with no configured prefix.
        clock: Monotonic time source in seconds.
    """

    def __init__(
        self,
        limits: Mapping[str, RateLimit],
        default: RateLimit,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._limits = dict(limits)
        self._default = default
        self._clock = clock
        self._windows: dict[str, RateWindow] = {}
        self._lock = threading.Lock()

    def limit_for(self, route: str) -> RateLimit:
        """Resolve the limit for *route* by longest prefix match."""
        best = None
        for prefix in self._limits:
            if route.startswith(prefix) and (best is None or len(prefix) > len(best)):
                best = prefix
        return self._limits[best] if best is not None else self._default

    def admit(self, client_key: str | None, route: str) -> bool:
        """Count a request and decide whether it may proceed.

        Never raises: a missing client key shares the ``"unknown"`` bucket and
        unexpected internal errors are logged and the request admitted.

        Args:
            client_key: Client identity, usually the remote IP.
            route: Request path.

        Returns:
            ``True`` if the request is within the limit.
        """
        try:
            client = (client_key or "").strip() or UNKNOWN_CLIENT
            limit = self.limit_for(route)
            key = f"{client}:{route}"
            now = self._clock()

            with self._lock:
                window = self._windows.get(key)
                if window is None or now - window.window_start > limit.window_seconds:
                    self._windows[key] = RateWindow(
                        count=1, window_start=now, window_seconds=limit.window_seconds
                    )
                    return True

                window.count += 1
                admitted = window.count <= limit.max_requests

            if not admitted:
                logger.info("Rate limit exceeded for client %s on %s", client, route)
            return admitted
        except Exception:
            logger.exception("Rate limiter failure; admitting request")
            return True

    def purge(self, now: float | None = None) -> int:
        """Drop windows older than twice their window size.

        Args:
            now: Reference time (defaults to the limiter's clock).

        Returns:
            Number of windows removed.
        """
        now = self._clock() if now is None else now
        with self._lock:
            stale = [
                key
                for key, window in self._windows.items()
                if now - window.window_start > window.window_seconds * 2
            ]
            for key in stale:
                del self._windows[key]
        if stale:
            logger.debug("Purged %d stale rate-limit window(s)", len(stale))
        return len(stale)

    def window(self, client_key: str, route: str) -> RateWindow | None:
        """Return the current window for a key, if any."""
        with self._lock:
            return self._windows.get(f"{client_key}:{route}")

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)
