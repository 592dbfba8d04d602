"""
In-memory rate limiter: per-caller sliding window.
"""
import math
import threading
import time
from collections import defaultdict, namedtuple
from functools import wraps

from flask import g, request

from config import Config
from core.errors import rate_limited

RateLimitDecision = namedtuple('RateLimitDecision', ['allowed', 'remaining', 'retry_after'])


class RateLimiter:
    """Sliding-window limiter keyed by caller identifier."""

    def __init__(self, max_requests: int = 60, window_seconds: int = 60, clock=time.monotonic):
        self.max_requests = max_requests
        self.window = window_seconds
        self._clock = clock
        self._requests = defaultdict(list)  # key -> list of timestamps
        self._lock = threading.Lock()

    def _cleanup(self, key: str, now: float):
        """Remove expired timestamps; drop the key once its window is empty."""
        cutoff = now - self.window
        hits = [t for t in self._requests.get(key, ()) if t > cutoff]
        if hits:
            self._requests[key] = hits
        else:
            self._requests.pop(key, None)

    def check(self, key: str) -> RateLimitDecision:
        """Record a hit if allowed and report the outcome."""
        now = self._clock()
        with self._lock:
            self._cleanup(key, now)
            hits = self._requests.get(key, [])
            current = len(hits)
            if current >= self.max_requests:
                retry_after = max(1, math.ceil(hits[0] + self.window - now))
                return RateLimitDecision(False, 0, retry_after)
            self._requests[key].append(now)
            return RateLimitDecision(True, self.max_requests - current - 1, 0)

    def hit(self, key: str) -> RateLimitDecision:
        """Like check(), but raises a rate_limited PaymentError when over the limit."""
        decision = self.check(key)
        if not decision.allowed:
            raise rate_limited(decision.retry_after)
        return decision

    def purge(self) -> int:
        """Drop every key whose window is empty. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            before = len(self._requests)
            for key in list(self._requests):
                self._cleanup(key, now)
            return before - len(self._requests)

    def reset(self):
        with self._lock:
            self._requests.clear()

    def __len__(self):
        with self._lock:
            return len(self._requests)


# Process-wide limiter instances
_payment_limiter = RateLimiter(max_requests=Config.PAYMENT_RATE_LIMIT,
                               window_seconds=Config.PAYMENT_RATE_WINDOW_SECONDS)
_confirm_limiter = RateLimiter(max_requests=Config.CONFIRM_RATE_LIMIT,
                               window_seconds=Config.CONFIRM_RATE_WINDOW_SECONDS)
_cleanup_limiter = RateLimiter(max_requests=3, window_seconds=60)


def all_limiters() -> tuple:
    return _payment_limiter, _confirm_limiter, _cleanup_limiter


def caller_key() -> str:
    """Authenticated user id if known, else the remote address."""
    user_id = getattr(g, 'current_user_id', None)
    if user_id is not None:
        return f"user:{user_id}"
    return f"ip:{request.remote_addr or 'unknown'}"


def rate_limit(limiter=None):
    """Decorator: rate limit based on the authenticated user or IP.

    Apply below require_auth so the user id is available as the key.
    """
    if limiter is None:
        limiter = _payment_limiter

    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            decision = limiter.hit(caller_key())
            response = f(*args, **kwargs)
            if isinstance(response, tuple):
                body = response[0]
            else:
                body = response
            if hasattr(body, 'headers'):
                body.headers['X-RateLimit-Remaining'] = str(decision.remaining)
            return response
        return decorated
    return decorator


def get_payment_limiter():
    return _payment_limiter


def get_confirm_limiter():
    return _confirm_limiter


def get_cleanup_limiter():
    return _cleanup_limiter
