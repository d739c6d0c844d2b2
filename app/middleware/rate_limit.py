"""Redis-backed sliding window rate limiter for the public admissions endpoints.

Guards the unauthenticated surface (application submission, status lookup,
invitation validation and acceptance) against scripted abuse. Requests are
bucketed per route and client IP; the bucket name never contains the path
itself, so invitation tokens stay out of Redis keys.
"""
from __future__ import annotations

import logging
import re
import time
from collections import deque
from dataclasses import dataclass
from threading import Lock

from cachetools import TTLCache
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from app.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitRule:
    name: str
    method: str
    pattern: re.Pattern[str]
    max_requests: int
    window_seconds: int


_SEGMENT = r"[^/]+"

RATE_LIMIT_RULES: tuple[RateLimitRule, ...] = (
    RateLimitRule(
        "application_submit",
        "POST",
        re.compile(rf"^/public/tenants/{_SEGMENT}/applications/?$"),
        5,
        300,
    ),
    RateLimitRule(
        "application_status",
        "GET",
        re.compile(rf"^/public/tenants/{_SEGMENT}/applications/status/?$"),
        20,
        60,
    ),
    RateLimitRule(
        "invitation_validate",
        "GET",
        re.compile(rf"^/public/invitations/{_SEGMENT}/?$"),
        20,
        60,
    ),
    RateLimitRule(
        "invitation_accept",
        "POST",
        re.compile(r"^/invitations/accept/?$"),
        10,
        60,
    ),
)
_FALLBACK_CACHE_SIZE = 10_000
_FALLBACK_TTL_SECONDS = max(rule.window_seconds for rule in RATE_LIMIT_RULES)


def match_rule(method: str, path: str) -> RateLimitRule | None:
    # Also match /api/v1 prefixed versions
    clean_path = path.replace("/api/v1", "", 1) if path.startswith("/api/v1") else path
    for rule in RATE_LIMIT_RULES:
        if rule.method == method and rule.pattern.match(clean_path):
            return rule
    return None


def _get_client_ip(request: Request) -> str:
    """Extract client IP, respecting X-Forwarded-For behind a proxy."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    client = request.client
    return client.host if client else "unknown"


def _get_redis() -> object | None:
    """Lazy-connect to Redis. Returns None if unavailable."""
    try:
        import redis as redis_lib

        return redis_lib.Redis.from_url(
            settings.redis_url, decode_responses=True, socket_timeout=1
        )
    except Exception:
        logger.debug("Rate limiter: Redis unavailable, skipping")
        return None


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Sliding window rate limiter for public endpoints."""

    def __init__(self, app: object) -> None:
        super().__init__(app)  # type: ignore[arg-type]
        self._redis: object | None = None
        self._redis_checked = False
        self._fallback_cache: TTLCache[str, deque[float]] = TTLCache(
            maxsize=_FALLBACK_CACHE_SIZE,
            ttl=_FALLBACK_TTL_SECONDS,
        )
        self._fallback_lock = Lock()

    def _ensure_redis(self) -> object | None:
        if not self._redis_checked:
            self._redis = _get_redis()
            self._redis_checked = True
        return self._redis

    def _too_many_requests_response(self, retry_after: int) -> JSONResponse:
        return JSONResponse(
            status_code=429,
            content={
                "code": "rate_limit_exceeded",
                "message": "Too many requests. Please try again later.",
                "details": None,
            },
            headers={"Retry-After": str(retry_after)},
        )

    def _check_fallback_limit(
        self, rule: RateLimitRule, client_ip: str, now: float
    ) -> tuple[bool, int, int]:
        """In-memory sliding window: (allowed, remaining, reset_or_retry)."""
        key = f"rate_limit:fallback:{rule.name}:{client_ip}"

        with self._fallback_lock:
            window = self._fallback_cache.get(key)
            if window is None:
                window = deque()

            cutoff = now - rule.window_seconds
            while window and window[0] <= cutoff:
                window.popleft()

            if len(window) >= rule.max_requests:
                retry_after = max(1, int(window[0] + rule.window_seconds - now))
                self._fallback_cache[key] = window
                return False, 0, retry_after

            window.append(now)
            self._fallback_cache[key] = window
            remaining = max(0, rule.max_requests - len(window))
            reset_at = int(window[0] + rule.window_seconds)
            return True, remaining, reset_at

    def _check_redis_limit(
        self, redis_client: object, rule: RateLimitRule, client_ip: str, now: float
    ) -> tuple[bool, int, int]:
        key = f"rate_limit:{rule.name}:{client_ip}"
        pipe = redis_client.pipeline()  # type: ignore[attr-defined]
        pipe.zremrangebyscore(key, 0, now - rule.window_seconds)
        pipe.zcard(key)
        pipe.zadd(key, {str(now): now})
        pipe.expire(key, rule.window_seconds)
        current_count = pipe.execute()[1]
        if current_count >= rule.max_requests:
            return False, 0, rule.window_seconds
        remaining = max(0, rule.max_requests - current_count - 1)
        return True, remaining, int(now + rule.window_seconds)

    async def dispatch(self, request: Request, call_next: object) -> Response:
        rule = match_rule(request.method, request.url.path)
        if rule is None:
            return await call_next(request)  # type: ignore[call-arg]

        client_ip = _get_client_ip(request)
        now = time.time()
        redis_client = self._ensure_redis()
        source = "redis"
        if redis_client is None:
            source = "fallback"
            allowed, remaining, reset_or_retry = self._check_fallback_limit(
                rule, client_ip, now
            )
        else:
            try:
                allowed, remaining, reset_or_retry = self._check_redis_limit(
                    redis_client, rule, client_ip, now
                )
            except Exception as exc:
                logger.warning(
                    "Rate limiter: Redis error (%s), using fallback",
                    exc.__class__.__name__,
                )
                source = "fallback"
                allowed, remaining, reset_or_retry = self._check_fallback_limit(
                    rule, client_ip, now
                )

        if not allowed:
            logger.warning(
                "Rate limit exceeded (%s): %s on %s (limit %d per %ds)",
                source,
                client_ip,
                rule.name,
                rule.max_requests,
                rule.window_seconds,
            )
            return self._too_many_requests_response(reset_or_retry)

        response: Response = await call_next(request)  # type: ignore[call-arg]
        response.headers["X-RateLimit-Limit"] = str(rule.max_requests)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        response.headers["X-RateLimit-Reset"] = str(reset_or_retry)
        return response
