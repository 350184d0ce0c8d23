"""
Rate limiting.

Two layers:

- RateLimitMiddleware: coarse per-user (or per-IP) request budget per
  endpoint, fixed window counters in Redis. Fails open.
- ActionRateLimiter: throttles one specific action per key, e.g. invitation
  resends per (invitation, actor). At most N actions while the previous
  attempt is younger than the window; the window restarts on every
  accepted attempt.
"""
import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from core.cache import get_redis_client
from core.config import settings
from core.security import decode_access_token

logger = logging.getLogger(__name__)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Per-user, per-endpoint request budget backed by Redis counters."""

    def __init__(self, app, default_limit: int = 60, window: int = 60):
        super().__init__(app)
        self.default_limit = default_limit
        self.window = window  # Time window in seconds

        # Per-endpoint limits (requests per window)
        self.endpoint_limits = {
            "/v1/invitations": 30,
            "/v1/onboarding": 20,
            "/v1/admin": 50,
        }

    async def dispatch(self, request: Request, call_next):
        if not settings.RATE_LIMIT_ENABLED:
            return await call_next(request)

        if request.url.path in ["/health", "/ping", "/docs", "/openapi.json", "/redoc"]:
            return await call_next(request)

        user_id = self._get_user_id(request)
        limit = self._get_endpoint_limit(request.url.path)

        allowed, remaining, reset_time = self._check_rate_limit(
            user_id=user_id,
            endpoint=request.url.path,
            limit=limit,
            window=self.window
        )

        if not allowed:
            retry_after = max(1, int(reset_time - time.time()))
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={
                    "error": "Rate limit exceeded",
                    "code": "rate_limited",
                    "retryAfter": retry_after,
                },
                headers={
                    "X-RateLimit-Limit": str(limit),
                    "X-RateLimit-Remaining": str(remaining),
                    "X-RateLimit-Reset": str(reset_time),
                    "Retry-After": str(retry_after)
                }
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        response.headers["X-RateLimit-Reset"] = str(reset_time)

        return response

    def _get_user_id(self, request: Request) -> str:
        """Get user identifier from request (token subject or IP address)."""
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            payload = decode_access_token(auth_header.split(" ", 1)[1])
            if payload and payload.get("sub"):
                return f"user:{payload.get('sub')}"

        client_ip = request.client.host if request.client else "unknown"
        return f"ip:{client_ip}"

    def _get_endpoint_limit(self, path: str) -> int:
        if path in self.endpoint_limits:
            return self.endpoint_limits[path]

        for endpoint, limit in self.endpoint_limits.items():
            if path.startswith(endpoint):
                return limit

        return self.default_limit

    def _check_rate_limit(
        self,
        user_id: str,
        endpoint: str,
        limit: int,
        window: int
    ) -> Tuple[bool, int, int]:
        """
        Fixed window counter.

        Returns:
            (allowed, remaining, reset_time)
        """
        redis_client = get_redis_client()

        if not redis_client:
            # If Redis unavailable, allow request (graceful degradation)
            return True, limit, int(time.time()) + window

        key = f"rate_limit:{user_id}:{endpoint}"

        try:
            current = redis_client.get(key)

            if current is None:
                redis_client.setex(key, window, 1)
                return True, limit - 1, int(time.time()) + window

            if int(current) >= limit:
                ttl = redis_client.ttl(key)
                reset_time = int(time.time()) + (ttl if ttl > 0 else window)
                return False, 0, reset_time

            new_count = redis_client.incr(key)
            if new_count == 1:
                redis_client.expire(key, window)

            remaining = max(0, limit - new_count)
            ttl = redis_client.ttl(key)
            reset_time = int(time.time()) + (ttl if ttl > 0 else window)

            return True, remaining, reset_time

        except Exception as e:
            # On error, allow request (fail open)
            logger.error(f"Rate limit check error: {e}")
            return True, limit, int(time.time()) + window


# ---------------------------------------------------------------------------
# Per-action limiter
# ---------------------------------------------------------------------------

@dataclass
class RateLimitDecision:
    allowed: bool
    attempts: int
    retry_after: int = 0


def _retry_after_seconds(window_ms: int, elapsed_ms: int) -> int:
    return max(1, math.ceil((window_ms - elapsed_ms) / 1000))


class InMemoryWindowBackend:
    """
    Process-local attempt map.

    Only correct for a single API process; entries idle for longer than
    `sweep_after_s` are dropped on the next sweep.
    """

    def __init__(self, sweep_after_s: int = 300):
        self.sweep_after_ms = sweep_after_s * 1000
        self._entries: Dict[str, Tuple[int, int]] = {}  # key -> (count, last attempt ms)
        self._lock = threading.Lock()
        self._last_sweep_ms = 0

    def hit(self, key: str, now_ms: int, window_ms: int, max_actions: int) -> RateLimitDecision:
        with self._lock:
            self._sweep(now_ms)
            entry = self._entries.get(key)
            if entry is not None and now_ms - entry[1] < window_ms:
                count, last_ms = entry
                if count >= max_actions:
                    return RateLimitDecision(
                        allowed=False,
                        attempts=count,
                        retry_after=_retry_after_seconds(window_ms, now_ms - last_ms),
                    )
                count += 1
            else:
                count = 1
            self._entries[key] = (count, now_ms)
            return RateLimitDecision(allowed=True, attempts=count)

    def _sweep(self, now_ms: int) -> None:
        if now_ms - self._last_sweep_ms < self.sweep_after_ms:
            return
        self._last_sweep_ms = now_ms
        stale = [k for k, (_, last_ms) in self._entries.items() if now_ms - last_ms > self.sweep_after_ms]
        for key in stale:
            del self._entries[key]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._last_sweep_ms = 0


# KEYS[1] = attempt hash; ARGV = now_ms, window_ms, max_actions, ttl_s
_WINDOW_SCRIPT = """
local entry = redis.call('HMGET', KEYS[1], 'count', 'last')
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local max_actions = tonumber(ARGV[3])
local count = tonumber(entry[1])
local last = tonumber(entry[2])
if count and last and (now - last) < window then
  if count >= max_actions then
    return {0, count, now - last}
  end
  count = count + 1
else
  count = 1
end
redis.call('HSET', KEYS[1], 'count', count, 'last', now)
redis.call('EXPIRE', KEYS[1], tonumber(ARGV[4]))
return {1, count, 0}
"""


class RedisWindowBackend:
    """
    Shared attempt map in Redis, one TTL-bound hash per key.

    The check-and-record step runs as a single Lua script so concurrent API
    instances see one consistent count. Falls back to the local map while
    Redis is unreachable.
    """

    def __init__(
        self,
        prefix: str,
        ttl_s: int = 300,
        client_factory: Callable = get_redis_client,
        fallback: Optional[InMemoryWindowBackend] = None,
    ):
        self.prefix = prefix
        self.ttl_s = ttl_s
        self.client_factory = client_factory
        self.fallback = fallback or InMemoryWindowBackend(sweep_after_s=ttl_s)

    def hit(self, key: str, now_ms: int, window_ms: int, max_actions: int) -> RateLimitDecision:
        client = self.client_factory()
        if client is None:
            return self.fallback.hit(key, now_ms, window_ms, max_actions)
        try:
            allowed, count, elapsed_ms = client.eval(
                _WINDOW_SCRIPT, 1, f"{self.prefix}:{key}", now_ms, window_ms, max_actions, self.ttl_s
            )
        except Exception as e:
            logger.error(f"Action rate limit check error: {e}")
            return self.fallback.hit(key, now_ms, window_ms, max_actions)
        if int(allowed):
            return RateLimitDecision(allowed=True, attempts=int(count))
        return RateLimitDecision(
            allowed=False,
            attempts=int(count),
            retry_after=_retry_after_seconds(window_ms, int(elapsed_ms)),
        )


class ActionRateLimiter:
    """At most `max_actions` per key while the last attempt is younger than `window_s`."""

    def __init__(self, name: str, max_actions: int, window_s: int, backend, clock: Callable[[], float] = time.time):
        self.name = name
        self.max_actions = max_actions
        self.window_ms = window_s * 1000
        self.backend = backend
        self.clock = clock

    def hit(self, key: str) -> RateLimitDecision:
        now_ms = int(self.clock() * 1000)
        return self.backend.hit(key, now_ms, self.window_ms, self.max_actions)


def build_resend_limiter() -> ActionRateLimiter:
    sweep_s = settings.RATE_LIMIT_SWEEP_SECONDS
    if settings.RESEND_RATE_LIMIT_BACKEND == "memory":
        backend = InMemoryWindowBackend(sweep_after_s=sweep_s)
    else:
        backend = RedisWindowBackend(prefix="resend_attempts", ttl_s=sweep_s)
    return ActionRateLimiter(
        name="invitation_resend",
        max_actions=settings.RESEND_MAX_PER_WINDOW,
        window_s=settings.RESEND_WINDOW_SECONDS,
        backend=backend,
    )


_resend_limiter: Optional[ActionRateLimiter] = None


def get_resend_limiter() -> ActionRateLimiter:
    """FastAPI dependency: the process-wide resend limiter."""
    global _resend_limiter
    if _resend_limiter is None:
        _resend_limiter = build_resend_limiter()
    return _resend_limiter
