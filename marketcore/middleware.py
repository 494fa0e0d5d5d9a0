"""
Request dependencies: API-key auth, admin auth, per-key rate limiting.
"""

import math
import time
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Request, Response

from marketcore import config
from marketcore.api_errors import APIError
from marketcore.auth import ApiKeyHolder


@dataclass
class _Bucket:
    tokens: float
    updated: float

    def refill(self, now: float, per_minute: int) -> None:
        self.tokens = min(float(per_minute),
                          self.tokens + (now - self.updated) * per_minute / 60.0)
        self.updated = now


class RateLimiter:
    """Token buckets keyed by API key hash, refilled continuously."""

    def __init__(self, rate: int = 60):
        self.rate = rate
        self.buckets: dict[str, _Bucket] = {}

    def check(self, key_hash: str) -> tuple[bool, dict]:
        """Take one token. Returns (allowed, headers for the response)."""
        now = time.monotonic()
        bucket = self.buckets.setdefault(key_hash, _Bucket(float(self.rate), now))
        bucket.refill(now, self.rate)

        allowed = bucket.tokens >= 1.0
        if allowed:
            bucket.tokens -= 1.0
        headers = {
            "X-RateLimit-Limit": str(self.rate),
            "X-RateLimit-Remaining": str(int(bucket.tokens)),
        }
        if not allowed:
            wait = (1.0 - bucket.tokens) * 60.0 / self.rate
            headers["Retry-After"] = str(max(1, math.ceil(wait)))
        return allowed, headers


rate_limiter = RateLimiter(config.RATE_LIMIT_PER_MIN)


def _bearer(request: Request) -> str | None:
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme != "Bearer" or not token:
        return None
    return token


async def require_auth(request: Request, response: Response) -> ApiKeyHolder:
    token = _bearer(request)
    if token is None:
        raise APIError(401, "auth_required", "Send 'Authorization: Bearer <key>'")
    if config.ADMIN_KEY and token == config.ADMIN_KEY:
        raise APIError(401, "invalid_api_key",
                       "The admin key only works on /v1/admin endpoints; "
                       "register a user key at /v1/auth/register")

    holder = request.app.state.auth_store.authenticate(token)
    if holder is None:
        raise APIError(401, "invalid_api_key", "Unknown or rotated API key")

    allowed, headers = rate_limiter.check(holder.api_key_hash)
    response.headers.update(headers)
    if not allowed:
        raise APIError(429, "rate_limited",
                       f"More than {rate_limiter.rate} requests per minute",
                       {"retryAfter": int(headers["Retry-After"])})
    return holder


async def require_admin(request: Request) -> None:
    if not config.ADMIN_KEY:
        raise APIError(500, "admin_required", "MARKET_ADMIN_KEY is not set")
    token = _bearer(request)
    if token is None:
        raise APIError(401, "auth_required", "Send 'Authorization: Bearer <key>'")
    if token != config.ADMIN_KEY:
        raise APIError(403, "admin_required", "This endpoint needs the admin key")


AuthUser = Annotated[ApiKeyHolder, Depends(require_auth)]
AdminDep = Annotated[None, Depends(require_admin)]
