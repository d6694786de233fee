"""
In-memory rate limiter for endpoints that call out to an adapter.

Per-process only: every worker keeps its own counters. A multi-instance
deployment needs a shared store (e.g. Redis) behind the same allow() contract.
"""
import functools
import logging
import threading
import time

from django.conf import settings
from django.http import JsonResponse

from .exceptions import RateLimited

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 60
DEFAULT_MAX_REQUESTS = 5


class RateLimiter:
    """Fixed window counter per key, reset on the first request after expiry"""

    # Past this many tracked keys, expired entries are swept on every request
    MAX_ENTRIES = 10000

    def __init__(self, max_requests: int = DEFAULT_MAX_REQUESTS,
                 window_seconds: float = DEFAULT_WINDOW_SECONDS,
                 clock=time.monotonic):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        # key -> [count, reset_at]
        self._entries = {}
        self._next_sweep = clock() + window_seconds

    def __len__(self) -> int:
        return len(self._entries)

    def _sweep(self, now: float) -> None:
        expired = [key for key, (_, reset_at) in self._entries.items() if now >= reset_at]
        for key in expired:
            del self._entries[key]
        self._next_sweep = now + self.window_seconds
        if expired:
            logger.debug(f"Rate limiter dropped {len(expired)} expired keys")

    def allow(self, key: str) -> bool:
        """Count a request for key. Returns False once the window quota is used up."""
        now = self._clock()
        with self._lock:
            if now >= self._next_sweep or len(self._entries) >= self.MAX_ENTRIES:
                self._sweep(now)

            entry = self._entries.get(key)
            if entry is None or now >= entry[1]:
                self._entries[key] = [1, now + self.window_seconds]
                return True

            entry[0] += 1
            return entry[0] <= self.max_requests

    def reset(self) -> None:
        with self._lock:
            self._entries.clear()


def get_client_ip(request) -> str:
    """First forwarded address, else X-Real-IP, else a shared 'unknown' bucket"""
    forwarded = request.headers.get('X-Forwarded-For')
    if forwarded:
        return forwarded.split(',')[0].strip() or 'unknown'
    real_ip = request.headers.get('X-Real-IP')
    if real_ip:
        return real_ip.strip()
    return 'unknown'


limiter = RateLimiter(
    max_requests=getattr(settings, 'TRACKER_RATE_LIMIT_MAX_REQUESTS', DEFAULT_MAX_REQUESTS),
    window_seconds=getattr(settings, 'TRACKER_RATE_LIMIT_WINDOW_SECONDS', DEFAULT_WINDOW_SECONDS),
)


def check_rate_limit(request, key_prefix: str) -> bool:
    return limiter.allow(f"{key_prefix}:{get_client_ip(request)}")


def rate_limit(key_prefix: str):
    """View decorator: answer 429 without running the view when over the limit"""
    def decorator(view_func):
        @functools.wraps(view_func)
        def wrapped(request, *args, **kwargs):
            if not check_rate_limit(request, key_prefix):
                logger.warning(f"Rate limit hit for {key_prefix} from {get_client_ip(request)}")
                return JsonResponse({'error': 'Too many requests'}, status=RateLimited.status_code)
            return view_func(request, *args, **kwargs)
        return wrapped
    return decorator
