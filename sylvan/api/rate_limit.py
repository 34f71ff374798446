"""
sylvan.api.rate_limit — Sliding-window request throttling
===========================================================

Two limits share one DB-backed limiter keyed by an arbitrary string:

* admin mutations — 30 per minute per admin (``admin:<sub>``)
* task completions — 10 per minute per user (``completion:<sub>``)

Exceeding either returns HTTP 429 with a ``Retry-After`` header.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import Engine, delete, func, select
from sqlalchemy.orm import Session

from sylvan.api.deps import get_current_admin, get_current_user
from sylvan.constants import ADMIN_MUTATION_LIMIT, COMPLETION_LIMIT, RATE_LIMIT_WINDOW_SECONDS
from sylvan.database.models import RateLimitEvent
from sylvan.engine.expiration import ensure_utc

logger = logging.getLogger(__name__)

_MUTATION_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


class RateLimiter:
    """Sliding-window counter stored in ``rate_limit_events`` so state
    survives restarts and is shared between API processes.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: int = RATE_LIMIT_WINDOW_SECONDS,
        *,
        engine: Engine,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.engine = engine

    def _prune(self, session: Session, key: str, now: datetime) -> None:
        cutoff = now - timedelta(seconds=self.window_seconds)
        session.execute(
            delete(RateLimitEvent).where(
                RateLimitEvent.key == key,
                RateLimitEvent.timestamp < cutoff,
            )
        )

    def check(self, key: str, now: datetime | None = None) -> tuple[bool, dict[str, Any]]:
        """Return ``(allowed, info)``; info has remaining/reset/limit."""
        now = now or datetime.now(UTC)
        with Session(self.engine) as session:
            self._prune(session, key, now)
            timestamps = session.scalars(
                select(RateLimitEvent.timestamp)
                .where(RateLimitEvent.key == key)
                .order_by(RateLimitEvent.timestamp.asc())
            ).all()
            session.commit()

        count = len(timestamps)
        if count >= self.max_requests:
            oldest = ensure_utc(timestamps[0])
            reset = (oldest + timedelta(seconds=self.window_seconds) - now).total_seconds()
            return False, {
                "remaining": 0,
                "reset": max(1, int(reset) + 1),
                "limit": self.max_requests,
            }
        return True, {
            "remaining": self.max_requests - count,
            "reset": self.window_seconds,
            "limit": self.max_requests,
        }

    def record(self, key: str, now: datetime | None = None) -> dict[str, Any]:
        now = now or datetime.now(UTC)
        with Session(self.engine) as session:
            self._prune(session, key, now)
            session.add(RateLimitEvent(key=key, timestamp=now))
            session.flush()
            count = session.scalar(
                select(func.count()).select_from(RateLimitEvent).where(RateLimitEvent.key == key)
            ) or 0
            session.commit()
        return {
            "remaining": max(0, self.max_requests - count),
            "reset": self.window_seconds,
            "limit": self.max_requests,
        }

    def reset(self, key: str | None = None) -> None:
        """Clear limiter state for *key*, or everything."""
        with Session(self.engine) as session:
            stmt = delete(RateLimitEvent)
            if key is not None:
                stmt = stmt.where(RateLimitEvent.key == key)
            session.execute(stmt)
            session.commit()


# ---------------------------------------------------------------------------
# Module-level singletons
# ---------------------------------------------------------------------------
_admin_limiter: RateLimiter | None = None
_completion_limiter: RateLimiter | None = None


def configure_rate_limiter(*, engine: Engine) -> None:
    global _admin_limiter, _completion_limiter
    _admin_limiter = RateLimiter(ADMIN_MUTATION_LIMIT, engine=engine)
    _completion_limiter = RateLimiter(COMPLETION_LIMIT, engine=engine)


def get_admin_limiter() -> RateLimiter:
    if _admin_limiter is None:
        raise RuntimeError("Rate limiter not configured; call configure_rate_limiter() first")
    return _admin_limiter


def get_completion_limiter() -> RateLimiter:
    if _completion_limiter is None:
        raise RuntimeError("Rate limiter not configured; call configure_rate_limiter() first")
    return _completion_limiter


async def _enforce(limiter: RateLimiter, key: str, what: str) -> None:
    allowed, info = await asyncio.to_thread(limiter.check, key)
    if not allowed:
        logger.warning("Rate limit exceeded for %s (%d per %ds)", key, limiter.max_requests, limiter.window_seconds)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "error": "rate_limit_exceeded",
                "message": f"Rate limit exceeded: {limiter.max_requests} {what} per minute.",
                "retry_after": info["reset"],
            },
            headers={"Retry-After": str(info["reset"])},
        )
    await asyncio.to_thread(limiter.record, key)


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------
async def rate_limited_admin(
    request: Request,
    admin: dict = Depends(get_current_admin),
) -> dict:
    """Admin JWT check plus the mutation throttle.

    GET/HEAD/OPTIONS pass through uncounted.
    """
    if request.method in _MUTATION_METHODS:
        await _enforce(get_admin_limiter(), f"admin:{admin['sub']}", "mutations")
    return admin


async def rate_limited_completion(user: dict = Depends(get_current_user)) -> dict:
    await _enforce(get_completion_limiter(), f"completion:{user['sub']}", "completions")
    return user
