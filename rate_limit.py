import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Request, Response


@dataclass(frozen=True)
class RateLimitPreset:
    limit: int
    window_secs: int


PRESETS: dict[str, RateLimitPreset] = {
    "public": RateLimitPreset(20, 60),
    "auth": RateLimitPreset(5, 60),
    "contact": RateLimitPreset(3, 600),
    "webhook": RateLimitPreset(100, 60),
    "admin": RateLimitPreset(30, 60),
    "api": RateLimitPreset(60, 60),
}


class RateLimitExceeded(Exception):
    def __init__(self, limit: int, reset_at: float, now: float) -> None:
        super().__init__("Too many requests")
        self.limit = limit
        self.reset_at = reset_at
        self.retry_after = max(1, math.ceil(reset_at - now))

    def headers(self) -> dict[str, str]:
        return {
            "Retry-After": str(self.retry_after),
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(int(self.reset_at)),
        }


class RateLimiter:
    """Fixed-window counters kept in process memory.

    Counts are per process, so several workers or replicas each enforce
    their own limit.
    """

    def __init__(self) -> None:
        self._entries: dict[str, tuple[int, float]] = {}
        self._lock = threading.Lock()

    def check(
        self, key: str, limit: int, window_secs: int, now: Optional[float] = None
    ) -> tuple[bool, int, float]:
        now = time.time() if now is None else now
        with self._lock:
            self._prune(now)
            count, reset_at = self._entries.get(key, (0, now + window_secs))
            if count >= limit:
                return False, 0, reset_at
            count += 1
            self._entries[key] = (count, reset_at)
            return True, limit - count, reset_at

    def reset(self) -> None:
        with self._lock:
            self._entries.clear()

    def _prune(self, now: float) -> None:
        expired = [key for key, (_, reset_at) in self._entries.items() if reset_at <= now]
        for key in expired:
            del self._entries[key]


limiter = RateLimiter()


def client_identifier(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return "unknown"


def rate_limit(preset_name: str) -> Callable[[Request, Response], None]:
    preset = PRESETS[preset_name]

    def dependency(request: Request, response: Response) -> None:
        now = time.time()
        key = f"{preset_name}:{client_identifier(request)}"
        allowed, remaining, reset_at = limiter.check(
            key, preset.limit, preset.window_secs, now
        )
        if not allowed:
            raise RateLimitExceeded(preset.limit, reset_at, now)
        response.headers["X-RateLimit-Limit"] = str(preset.limit)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        response.headers["X-RateLimit-Reset"] = str(int(reset_at))

    return dependency
