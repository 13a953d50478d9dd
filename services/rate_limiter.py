"""Redis-backed fixed-window rate limiter for auth, OTP, and chat."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

import redis

from core.env import env_int, env_str
from core.logging import get_logger

logger = get_logger(__name__)

_REDIS_URL = env_str("RATE_LIMIT_REDIS_URL")
_KEY_PREFIX = env_str("RATE_LIMIT_PREFIX") or "zynx"
_CLIENT: Optional[redis.Redis] = None
_CLIENT_ERROR_LOGGED = False

AUTH_LIMIT = env_int("AUTH_RATE_LIMIT_MAX", 5, minimum=1)
AUTH_WINDOW_SECONDS = env_int("AUTH_RATE_LIMIT_WINDOW_SECONDS", 15 * 60, minimum=1)
OTP_LIMIT = env_int("OTP_RATE_LIMIT_MAX", 3, minimum=1)
OTP_WINDOW_SECONDS = env_int("OTP_RATE_LIMIT_WINDOW_SECONDS", 60 * 60, minimum=1)
CHAT_LIMIT = env_int("CHAT_RATE_LIMIT_MAX", 20, minimum=1)
CHAT_WINDOW_SECONDS = env_int("CHAT_RATE_LIMIT_WINDOW_SECONDS", 60 * 60, minimum=1)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: Optional[int]
    reset_at: Optional[datetime]
    backend_error: bool = False
    limit: Optional[int] = None

    def retry_after_seconds(self, *, now: Optional[datetime] = None) -> int:
        if self.reset_at is None:
            return 60
        current = now or datetime.now(timezone.utc)
        return max(int((self.reset_at - current).total_seconds()), 1)

    def headers(self) -> Dict[str, str]:
        """``X-RateLimit-*`` headers; empty when the backend was unavailable."""
        if self.limit is None or self.remaining is None:
            return {}
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
        }
        if self.reset_at is not None:
            headers["X-RateLimit-Reset"] = self.reset_at.isoformat()
        return headers


def _get_client() -> Optional[redis.Redis]:
    global _CLIENT, _CLIENT_ERROR_LOGGED  # pylint: disable=global-statement
    if _CLIENT is not None:
        return _CLIENT
    if not _REDIS_URL:
        logger.debug("Rate limiter redis_url missing; requests are not limited.")
        return None
    try:
        _CLIENT = redis.Redis.from_url(_REDIS_URL, decode_responses=False)
    except (redis.RedisError, ValueError) as exc:
        if not _CLIENT_ERROR_LOGGED:
            logger.warning("Rate limiter Redis init failed: %s", exc)
            _CLIENT_ERROR_LOGGED = True
        _CLIENT = None
    return _CLIENT


def set_client_for_tests(client: Optional[redis.Redis]) -> None:  # pragma: no cover - testing helper
    global _CLIENT  # pylint: disable=global-statement
    _CLIENT = client


def check_limit(
    scope: str,
    identifier: Optional[str],
    *,
    limit: int,
    window_seconds: int = 60,
    weight: int = 1,
) -> RateLimitResult:
    """Count ``weight`` against ``scope:identifier``; fails open when Redis is unavailable."""
    if limit <= 0 or window_seconds <= 0 or weight <= 0:
        return RateLimitResult(allowed=True, remaining=None, reset_at=None)

    client = _get_client()
    if client is None:
        return RateLimitResult(allowed=True, remaining=None, reset_at=None, backend_error=True)

    key = f"{_KEY_PREFIX}:{scope}:{identifier or 'global'}"
    try:
        pipeline = client.pipeline()
        pipeline.incrby(key, weight)
        pipeline.ttl(key)
        count, ttl = pipeline.execute()
        if ttl is None or ttl < 0:
            client.expire(key, window_seconds)
            ttl = window_seconds
        allowed = int(count) <= limit
        remaining = max(limit - int(count), 0)
        reset_at = datetime.now(timezone.utc) + timedelta(seconds=max(int(ttl), 0))
        return RateLimitResult(allowed=allowed, remaining=remaining, reset_at=reset_at, limit=limit)
    except redis.RedisError as exc:
        logger.warning("Rate limiter failed for %s:%s - %s", scope, identifier, exc, exc_info=True)
        return RateLimitResult(allowed=True, remaining=None, reset_at=None, backend_error=True)


__all__ = [
    "AUTH_LIMIT",
    "AUTH_WINDOW_SECONDS",
    "CHAT_LIMIT",
    "CHAT_WINDOW_SECONDS",
    "OTP_LIMIT",
    "OTP_WINDOW_SECONDS",
    "RateLimitResult",
    "check_limit",
]
