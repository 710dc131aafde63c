from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from ipaddress import ip_address
from typing import Callable, Dict, Optional, Tuple

from fastapi import Request, Response

from otpauth.logging import get_logger

logger = get_logger(__name__)

DEFAULT_WINDOW_SECONDS = 60


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(self.reset_seconds),
        }


def _valid_ip(value: str) -> Optional[str]:
    candidate = value.strip()
    if not candidate:
        return None
    try:
        return str(ip_address(candidate))
    except ValueError:
        return None


def client_identity(request: Request, allow_forwarded: bool = False) -> str:
    """Resolve the caller's address for rate limiting.

    Forwarding headers are spoofable, so they are only honoured when the
    route group is configured to sit behind a trusted proxy.
    """
    if allow_forwarded:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            for part in forwarded.split(","):
                ip = _valid_ip(part)
                if ip:
                    return ip
        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            ip = _valid_ip(real_ip)
            if ip:
                return ip
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


class RateLimiter:
    """Request counter per ``(group, identity)`` with an activity-extended window.

    Every hit re-arms the window expiry, so the counter only clears after a
    full window with no requests. A client that keeps retrying while denied
    stays denied.
    """

    def __init__(self, cache=None, *, clock: Optional[Callable[[], float]] = None):
        self.cache = cache
        self._clock = clock or time.monotonic
        self._local: Dict[str, Tuple[int, float]] = {}
        self._local_lock = asyncio.Lock()

    async def _local_hit(self, key: str, window: int) -> int:
        async with self._local_lock:
            now = self._clock()
            count, expires_at = self._local.get(key, (0, now))
            if expires_at <= now:
                count = 0
            count += 1
            # expiry re-armed on every hit, matching INCR + EXPIRE
            self._local[key] = (count, now + window)
            return count

    async def check(
        self, group: str, identity: str, max_requests: int, window_seconds: int
    ) -> RateLimitResult:
        if max_requests <= 0:
            return RateLimitResult(True, max_requests, 0, 0)
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window", group=group, window_seconds=window_seconds
            )
            window_seconds = DEFAULT_WINDOW_SECONDS

        if self.cache:
            count = await self.cache.incr_rate_limit(group, identity, window_seconds)
        else:
            count = await self._local_hit(f"rate_limit:{group}:{identity}", window_seconds)

        allowed = count <= max_requests
        if not allowed:
            logger.warning("rate_limited", group=group, identity=identity, count=count)
        return RateLimitResult(
            allowed=allowed,
            limit=max_requests,
            remaining=max(0, max_requests - count),
            reset_seconds=window_seconds,
        )


__all__ = ["RateLimitResult", "RateLimiter", "client_identity"]
