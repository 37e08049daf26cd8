from starlette.middleware.base import BaseHTTPMiddleware
from fastapi import Request
import redis.asyncio as aioredis
import time
import logging
from typing import Optional
from pharmalink import config
from pharmalink.middleware.error_handler import error_response

logger = logging.getLogger(__name__)


class RateLimiterMiddleware(BaseHTTPMiddleware):
    """Fixed-window rate limit per client IP.

    With ``REDIS_URL`` set the counters live in Redis so every API worker
    shares them. Without it, or once Redis has failed, each process keeps its
    own in-memory window.
    """

    def __init__(
        self,
        app,
        limit: int = None,
        window_seconds: int = None,
        redis_url: Optional[str] = None,
        enabled: Optional[bool] = None,
    ):
        super().__init__(app)
        self.limit = limit or config.RATE_LIMIT
        self.window_seconds = window_seconds or config.RATE_LIMIT_WINDOW
        self.enabled = (not config.DISABLE_RATE_LIMIT) if enabled is None else enabled
        url = redis_url if redis_url is not None else config.REDIS_URL
        self._redis = aioredis.from_url(url) if url else None
        self._windows: dict[str, list[float]] = {}

    async def dispatch(self, request: Request, call_next):
        # CORS pre-flight requests are never counted
        if not self.enabled or request.method == "OPTIONS":
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"

        allowed = None
        if self._redis is not None:
            try:
                allowed = await self._hit_redis(client_ip)
            except Exception as exc:
                logger.warning("Redis unavailable for rate limiting, using in-memory windows (%s)", exc)
                self._redis = None
        if allowed is None:
            allowed = self._hit_local(client_ip)

        if not allowed:
            response = error_response(429, "RATE_LIMITED", "Too many requests, slow down")
            response.headers["Retry-After"] = str(self.window_seconds)
            return response
        return await call_next(request)

    async def _hit_redis(self, client_ip: str) -> bool:
        key = f"rate:{client_ip}"
        async with self._redis.pipeline(transaction=True) as tx:
            tx.incr(key)
            tx.expire(key, self.window_seconds)
            count, _ = await tx.execute()
        return int(count) <= self.limit

    def _hit_local(self, client_ip: str) -> bool:
        now = time.time()
        window_start = now - self.window_seconds
        hits = [ts for ts in self._windows.get(client_ip, []) if ts > window_start]
        if len(hits) >= self.limit:
            self._windows[client_ip] = hits
            return False
        hits.append(now)
        self._windows[client_ip] = hits
        return True
