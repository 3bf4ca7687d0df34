"""Sliding-window rate limiting for the webhook routes.

Redis sorted sets (score = request time) are used when ``redis_url`` is set so
the limit holds across worker processes; otherwise each process keeps its own
window in memory.
"""
from __future__ import annotations

import math
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Any, Protocol

from fastapi import HTTPException, Request, status
from redis import Redis

from outbound_events.config import settings
from outbound_events.observability import incr_metric, log_event


@dataclass
class RateLimitDecision:
    allowed: bool
    current_count: int
    limit: int
    retry_after_seconds: int = 0


class RateLimitBackend(Protocol):
    def hit(self, key: str, *, limit: int, window_seconds: int) -> RateLimitDecision: ...


class InMemoryRateLimitBackend:
    def __init__(self):
        self._lock = threading.Lock()
        self._hits: dict[str, deque[float]] = {}
        self._last_prune = time.monotonic()

    def _prune_idle(self, cutoff: float) -> None:
        for key in [key for key, hits in self._hits.items() if not hits or hits[-1] <= cutoff]:
            del self._hits[key]

    def hit(self, key: str, *, limit: int, window_seconds: int) -> RateLimitDecision:
        now = time.monotonic()
        cutoff = now - window_seconds
        with self._lock:
            # Keys with no hit inside the window are dropped once per window.
            if now - self._last_prune >= window_seconds:
                self._prune_idle(cutoff)
                self._last_prune = now
            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if len(hits) >= limit:
                retry_after = max(1, math.ceil(hits[0] + window_seconds - now))
                return RateLimitDecision(
                    allowed=False,
                    current_count=len(hits),
                    limit=limit,
                    retry_after_seconds=retry_after,
                )
            hits.append(now)
            return RateLimitDecision(allowed=True, current_count=len(hits), limit=limit)

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()


class RedisRateLimitBackend:
    def __init__(self, client: Redis, *, key_prefix: str = "webhook_rate"):
        self.redis = client
        self.key_prefix = key_prefix

    def hit(self, key: str, *, limit: int, window_seconds: int) -> RateLimitDecision:
        redis_key = f"{self.key_prefix}:{key}"
        now = time.time()
        member = f"{now}:{uuid.uuid4().hex}"
        pipe = self.redis.pipeline(transaction=True)
        pipe.zremrangebyscore(redis_key, "-inf", now - window_seconds)
        pipe.zadd(redis_key, {member: now})
        pipe.zcard(redis_key)
        pipe.expire(redis_key, window_seconds * 2)
        _, _, count, _ = pipe.execute()
        if count <= limit:
            return RateLimitDecision(allowed=True, current_count=count, limit=limit)

        # Rejected requests do not occupy a slot.
        self.redis.zrem(redis_key, member)
        oldest = self.redis.zrange(redis_key, 0, 0, withscores=True)
        retry_after = 1
        if oldest:
            retry_after = max(1, math.ceil(oldest[0][1] + window_seconds - now))
        return RateLimitDecision(
            allowed=False,
            current_count=count - 1,
            limit=limit,
            retry_after_seconds=retry_after,
        )


_backend: RateLimitBackend | None = None
_backend_lock = threading.Lock()


def get_rate_limit_backend() -> RateLimitBackend:
    global _backend
    with _backend_lock:
        if _backend is None:
            if settings.redis_url:
                _backend = RedisRateLimitBackend(Redis.from_url(settings.redis_url))
            else:
                _backend = InMemoryRateLimitBackend()
        return _backend


def set_rate_limit_backend(backend: RateLimitBackend | None) -> None:
    global _backend
    with _backend_lock:
        _backend = backend


def _client_key(request: Request) -> str:
    """Peer address, or the X-Forwarded-For entry added by the trusted proxy chain.

    Entries left of the last ``webhook_trusted_proxy_hops`` are client supplied
    and never used.
    """
    hops = settings.webhook_trusted_proxy_hops
    forwarded = request.headers.get("x-forwarded-for") if hops > 0 else None
    if forwarded:
        entries = [entry.strip() for entry in forwarded.split(",") if entry.strip()]
        if entries:
            return entries[-min(hops, len(entries))]
    client: Any = request.client
    return client.host if client else "unknown"


async def enforce_webhook_rate_limit(provider: str, request: Request) -> None:
    """FastAPI dependency; raises 429 with ``Retry-After`` once the window is full."""
    limit = max(1, settings.webhook_rate_limit_requests)
    window_seconds = max(1, settings.webhook_rate_limit_window_seconds)
    slug = provider.strip().lower()
    decision = get_rate_limit_backend().hit(
        f"{slug}:{_client_key(request)}",
        limit=limit,
        window_seconds=window_seconds,
    )
    if decision.allowed:
        return
    incr_metric("webhook.rate_limited", provider_slug=slug)
    log_event(
        "webhook_rate_limited",
        request_id=getattr(request.state, "request_id", None),
        provider_slug=slug,
        current_count=decision.current_count,
        limit=decision.limit,
        retry_after_seconds=decision.retry_after_seconds,
    )
    raise HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail={
            "type": "rate_limited",
            "provider": slug,
            "message": f"Too many webhook requests; retry in {decision.retry_after_seconds}s",
        },
        headers={"Retry-After": str(decision.retry_after_seconds)},
    )
