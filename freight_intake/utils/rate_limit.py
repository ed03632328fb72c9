#!/usr/bin/env python3
"""Per-minute call caps for OCR and AI invocations.

Built on the ``limits`` library (the engine behind slowapi) using a moving
window, so the cap applies to any rolling 60 seconds rather than to
calendar minutes.  Components get their limiter from :func:`get_rate_limiter`,
which hands out one limiter per scope for the life of the process and keeps
its window in ``rate_limit_storage_uri`` (Redis by default), so the cap holds
across tasks and across workers.  Exceeding the cap raises
:class:`~freight_intake.exceptions.RateLimitExceeded` instead of blocking.
"""

import logging
import time
from typing import Dict, Optional, Tuple

import redis
from limits import RateLimitItemPerMinute
from limits.storage import storage_from_string
from limits.strategies import MovingWindowRateLimiter

from freight_intake.config import settings
from freight_intake.exceptions import RateLimitExceeded

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:
    """Allow at most *per_minute* acquisitions in any rolling minute for *scope*.

    Args:
        scope: Identifier for the limited resource, e.g. ``"ocr"``.
        per_minute: Maximum calls per window. ``0`` or less disables limiting.
        storage_uri: ``limits`` storage URI. ``memory://`` keeps the window in
            this instance; a ``redis://`` URI shares it across workers.
    """

    def __init__(self, scope: str, per_minute: int, storage_uri: Optional[str] = None) -> None:
        self.scope = scope
        self.per_minute = per_minute
        self.storage_uri = storage_uri or "memory://"
        self._item = RateLimitItemPerMinute(max(per_minute, 1))
        self._storage = storage_from_string(self.storage_uri)
        self._strategy = MovingWindowRateLimiter(self._storage)

    @property
    def enabled(self) -> bool:
        return self.per_minute > 0

    def acquire(self) -> None:
        """Record one call, raising :class:`RateLimitExceeded` when the window is full.

        An unreachable Redis lets the call through.
        """
        if not self.enabled:
            return
        try:
            allowed = self._strategy.hit(self._item, self.scope)
        except redis.RedisError as exc:
            logger.warning(f"Rate limit storage unavailable for {self.scope}, allowing call: {exc}")
            return
        if allowed:
            return
        retry_after = self._retry_after()
        logger.warning(f"Rate limit reached for {self.scope}: {self.per_minute}/minute, retry in {retry_after:.1f}s")
        raise RateLimitExceeded(self.scope, self.per_minute, retry_after=retry_after)

    def remaining(self) -> int:
        if not self.enabled:
            return -1
        return self._strategy.get_window_stats(self._item, self.scope).remaining

    def reset(self) -> None:
        self._strategy.clear(self._item, self.scope)

    def _retry_after(self) -> float:
        stats = self._strategy.get_window_stats(self._item, self.scope)
        return max(stats.reset_time - time.time(), 0.0)


_limiters: Dict[Tuple[str, str], SlidingWindowRateLimiter] = {}


def get_rate_limiter(scope: str, per_minute: int, storage_uri: Optional[str] = None) -> SlidingWindowRateLimiter:
    """Return the process-wide limiter for *scope*, creating it on first use.

    A changed *per_minute* replaces the limiter; with a shared storage the
    recorded calls carry over.
    """
    uri = storage_uri or settings.rate_limit_storage_uri or settings.redis_url
    limiter = _limiters.get((scope, uri))
    if limiter is None or limiter.per_minute != per_minute:
        limiter = SlidingWindowRateLimiter(scope, per_minute, uri)
        _limiters[(scope, uri)] = limiter
    return limiter


def clear_rate_limiters() -> None:
    """Forget every registered limiter."""
    _limiters.clear()
