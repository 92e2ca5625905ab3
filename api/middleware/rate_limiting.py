"""Rate limiting middleware using Redis."""

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware

from shared.config import get_settings

logger = logging.getLogger(__name__)

# Paths never rate limited (health probes, payment provider retries)
EXEMPT_PATHS = frozenset({"/health", "/stripe-webhook"})


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Middleware to enforce fixed-window rate limiting using Redis.

    Limits requests to RATE_LIMIT_MAX_REQUESTS per RATE_LIMIT_WINDOW_SECONDS
    per source IP address. Returns 429 Too Many Requests if exceeded.

    The Redis client is read from `request.app.state.redis`; if it is missing
    or Redis fails, the request proceeds without limiting.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """
        Process request with rate limiting.

        Args:
            request: Incoming HTTP request
            call_next: Next middleware/route handler

        Returns:
            Response with rate limit headers
            429 if rate limit exceeded
        """
        if request.url.path in EXEMPT_PATHS:
            return await call_next(request)

        redis_client = getattr(request.app.state, "redis", None)
        if redis_client is None:
            return await call_next(request)

        # Extract client IP (consider X-Forwarded-For for proxied requests)
        client_ip = request.client.host if request.client else "unknown"
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            # Take first IP in chain (original client)
            client_ip = forwarded_for.split(",")[0].strip()

        settings = get_settings()
        current_window = int(datetime.now(UTC).timestamp()) // settings.RATE_LIMIT_WINDOW_SECONDS
        redis_key = f"rate_limit:{client_ip}:{current_window}"

        try:
            # Increment request count for this IP in current window
            request_count = await redis_client.incr(redis_key)

            # Set TTL on first request (key creation)
            if request_count == 1:
                await redis_client.expire(redis_key, settings.RATE_LIMIT_WINDOW_SECONDS)

        except (RedisError, OSError) as e:
            # Don't block requests while Redis is unavailable
            logger.error(f"Rate limit check failed for IP {client_ip}: {e}")
            return await call_next(request)

        remaining = max(0, settings.RATE_LIMIT_MAX_REQUESTS - request_count)

        if request_count > settings.RATE_LIMIT_MAX_REQUESTS:
            logger.warning(
                f"Rate limit exceeded for IP {client_ip}: {request_count} requests",
                extra={"request_path": request.url.path},
            )
            return JSONResponse(
                status_code=429,
                content={"error": "Rate limit exceeded", "error_code": "RATE_LIMITED"},
                headers={
                    "X-RateLimit-Remaining": "0",
                    "Retry-After": str(settings.RATE_LIMIT_WINDOW_SECONDS),
                },
            )

        response: Response = await call_next(request)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        return response
