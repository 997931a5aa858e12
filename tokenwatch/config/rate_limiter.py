"""
Rate Limiter keyed by (subject, resource)

Two uses share one component:
- the orchestrator caps how often a token's category may be refreshed live
  (``try_acquire``, never waits)
- providers pace their outbound calls and back off after HTTP 429
  (``acquire``, waits)
"""
import asyncio
import logging
import time
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, Optional, Tuple

from tokenwatch.config.config_manager import RateLimitConfig, RateLimitPolicy

logger = logging.getLogger(__name__)

Key = Tuple[str, str]


class RateLimiter:
    """
    Sliding-window and min-interval limiter

    Features:
    - Per (subject, resource) sliding window with per-resource policies
    - Per subject minimum interval for outbound pacing
    - Adaptive exponential backoff on 429 errors
    """

    def __init__(self, config: Optional[RateLimitConfig] = None,
                 clock: Callable[[], float] = time.monotonic,
                 sweep_interval: float = 60.0):
        self.config = config or RateLimitConfig()
        self._clock = clock

        self._windows: Dict[Key, Deque[float]] = {}
        self._last_request: Dict[Key, float] = {}
        self._locks: Dict[Key, asyncio.Lock] = {}
        self.sweep_interval = sweep_interval
        self._last_sweep = clock()

        # Adaptive backoff for 429 errors, per subject
        self._consecutive_429s: Dict[str, int] = defaultdict(int)
        self._backoff_until: Dict[str, float] = {}

        self.stats = {
            'allowed': 0,
            'denied': 0,
            'throttled': 0,
        }

    def policy_for(self, resource: str) -> RateLimitPolicy:
        return self.config.policies.get(resource, self.config.default_policy)

    def try_acquire(self, subject: str, resource: str) -> bool:
        """
        Take a slot in the window without waiting

        Args:
            subject: Who is being limited (token id, provider name)
            resource: What is being limited ("refresh:market", ...)

        Returns:
            True if the call may proceed
        """
        policy = self.policy_for(resource)
        now = self._clock()
        if now - self._last_sweep >= self.sweep_interval:
            self.sweep()

        key = (subject, resource)
        window = self._windows.get(key)
        if window is None:
            window = self._windows[key] = deque()

        while window and now - window[0] >= policy.period_seconds:
            window.popleft()

        if len(window) >= policy.max_calls:
            self.stats['denied'] += 1
            logger.debug(f"Rate limited {subject} on {resource}")
            return False

        window.append(now)
        self.stats['allowed'] += 1
        return True

    def release(self, subject: str, resource: str) -> None:
        """Give back the most recent slot (used when the call produced nothing)"""
        window = self._windows.get((subject, resource))
        if window:
            window.pop()
            if not window:
                del self._windows[(subject, resource)]

    def sweep(self) -> int:
        """
        Drop windows whose slots have all expired and idle pacing entries

        Returns:
            Number of keys removed
        """
        now = self._clock()
        self._last_sweep = now
        removed = 0

        for (subject, resource), window in list(self._windows.items()):
            period = self.policy_for(resource).period_seconds
            if not window or now - window[-1] >= period:
                del self._windows[(subject, resource)]
                removed += 1

        for key, last in list(self._last_request.items()):
            min_interval = self.config.provider_min_interval.get(key[0], 0.0)
            lock = self._locks.get(key)
            if now - last >= min_interval and (lock is None or not lock.locked()):
                del self._last_request[key]
                self._locks.pop(key, None)
                removed += 1

        if removed:
            logger.debug(f"Rate limiter sweep removed {removed} idle keys")
        return removed

    async def acquire(self, subject: str, resource: str = 'api') -> None:
        """
        Wait until a call to subject/resource is allowed

        Honors any active 429 backoff, then the subject's minimum interval.
        """
        key = (subject, resource)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()

        async with lock:
            backoff = self.get_current_backoff(subject)
            if backoff > 0:
                logger.warning(f"[{subject}] rate limit backoff: waiting {backoff:.1f}s")
                await asyncio.sleep(backoff)
                self._backoff_until.pop(subject, None)

            min_interval = self.config.provider_min_interval.get(subject, 0.0)
            last = self._last_request.get(key)
            if last is not None and min_interval > 0:
                elapsed = self._clock() - last
                if elapsed < min_interval:
                    await asyncio.sleep(min_interval - elapsed)

            self._last_request[key] = self._clock()

    def record_429(self, subject: str) -> float:
        """
        Record a 429 error and calculate backoff time

        Returns:
            Backoff time in seconds
        """
        self._consecutive_429s[subject] += 1
        self.stats['throttled'] += 1

        attempts = self._consecutive_429s[subject]
        # 2s, 4s, 8s, 16s, 32s, 60s (max)
        backoff = min(self.config.base_backoff_seconds * (2 ** (attempts - 1)),
                      self.config.max_backoff_seconds)
        self._backoff_until[subject] = self._clock() + backoff

        logger.warning(f"[{subject}] rate limit #{attempts}, backing off {backoff:.1f}s")
        return backoff

    def record_success(self, subject: str) -> None:
        """Reset backoff after a successful call"""
        if self._consecutive_429s.get(subject):
            logger.info(f"[{subject}] rate limit recovered after {self._consecutive_429s[subject]} 429s")
        self._consecutive_429s.pop(subject, None)

    def get_current_backoff(self, subject: str) -> float:
        until = self._backoff_until.get(subject)
        if until is None:
            return 0.0
        return max(0.0, until - self._clock())
