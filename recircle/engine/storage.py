"""
Shared redis plumbing for the durable stores.

Every store takes an optional ``redis.Redis`` client (tests pass a fakeredis
instance); when omitted, one client per process is built from REDIS_URL.
"""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

import redis

from engine.errors import StorageFailure

logger = logging.getLogger("recircle.storage")

# ── Configuration ──────────────────────────────────────────────────────────────
REDIS_URL  = os.getenv("REDIS_URL", "redis://localhost:6379/0")
KEY_PREFIX = os.getenv("RECIRCLE_KEY_PREFIX", "recircle")

_client: Optional[redis.Redis] = None


def get_redis() -> redis.Redis:
    global _client
    if _client is None:
        _client = redis.Redis.from_url(REDIS_URL, decode_responses=True)
        logger.info(f"[STORE] Redis client created for {REDIS_URL}")
    return _client


def key(*parts) -> str:
    return ":".join([KEY_PREFIX, *[str(p) for p in parts]])


@contextmanager
def storage_errors(action: str):
    """Re-raise any redis error as StorageFailure, keeping the cause."""
    try:
        yield
    except redis.RedisError as exc:
        logger.error(f"[STORE] {action} failed: {exc}")
        raise StorageFailure(f"{action} failed: {exc}") from exc


# ── Timestamps ─────────────────────────────────────────────────────────────────
def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_epoch(dt: datetime) -> float:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def from_epoch(value) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(float(value), tz=timezone.utc)
