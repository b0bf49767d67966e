import time
from typing import Callable, Dict, Optional
import threading
from collections import defaultdict, deque
from quicknote_auth.core.config import RATE_LIMITS, DEFAULT_RATE_LIMIT


class MemoryRateLimiter:
    """In-memory failed-attempt limiter """

    def __init__(self, limits: Optional[Dict[str, tuple]] = None, time_func: Callable[[], float] = time.time):
        self.storage = defaultdict(deque)
        self.lock = threading.Lock()
        self.time_func = time_func

        # Rate limiting rules from config
        self.limits = limits or RATE_LIMITS

    def _prune(self, key: str, window: int, now: float) -> None:
        while self.storage[key] and now - self.storage[key][0] > window:
            self.storage[key].popleft()

    def is_rate_limited(self, identifier: str, action: str) -> bool:
        """Check if the identifier has used up its attempts for the given action"""
        max_attempts, window = self.limits.get(action, DEFAULT_RATE_LIMIT)

        with self.lock:
            key = f"{action}:{identifier}"
            self._prune(key, window, self.time_func())
            return len(self.storage[key]) >= max_attempts

    def record_attempt(self, identifier: str, action: str) -> None:
        """Count one attempt (for TOTP: one wrong code)"""
        with self.lock:
            self.storage[f"{action}:{identifier}"].append(self.time_func())

    def reset_user_limits(self, identifier: str, action: str) -> bool:
        """Forget recorded attempts, e.g. after a successful verification"""
        with self.lock:
            return bool(self.storage.pop(f"{action}:{identifier}", None))
