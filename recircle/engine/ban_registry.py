"""
ReCircle Rewards :: Ban Registry

Hard bans refuse rewards outright; soft bans route the claim to a human
reviewer without telling the identity. Records are never hard-deleted:
unbanning flips ``is_active`` and stamps ``unbanned_at``.

Redis layout (prefix omitted):
    ban:seq                   counter
    ban:<id>                  hash   one BanRecord
    ban:active:<identity>     string id of the single active ban
    ban:history:<identity>    list   every ban id ever issued, oldest first
    ban:all                   zset   id scored by banned_at

The in-process cache only short-circuits reads for BAN_CACHE_TTL_SEC and is
dropped on every local add/remove; redis stays the source of truth.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

import redis

from engine.errors import ValidationError
from engine.storage import from_epoch, get_redis, key, storage_errors, to_epoch, utcnow

logger = logging.getLogger("recircle.bans")

# ── Configuration ──────────────────────────────────────────────────────────────
BAN_CACHE_TTL_SEC = float(os.getenv("BAN_CACHE_TTL_SEC", "30"))

SEQ_KEY = key("ban", "seq")
ALL_KEY = key("ban", "all")

RESTRICTED_MESSAGE = "This wallet has been restricted from receiving rewards."


class BanClass(str, Enum):
    HARD = "hard"
    SOFT = "soft"


@dataclass
class BanRecord:
    id:          int
    identity:    str
    ban_class:   BanClass
    reason:      str
    banned_by:   str
    banned_at:   datetime
    is_active:   bool               = True
    unbanned_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        d = asdict(self)
        d["ban_class"]   = self.ban_class.value
        d["banned_at"]   = self.banned_at.isoformat()
        d["unbanned_at"] = self.unbanned_at.isoformat() if self.unbanned_at else None
        return d


@dataclass
class BanStatus:
    banned:    bool
    ban_class: Optional[BanClass] = None
    reason:    Optional[str]      = None
    banned_at: Optional[datetime] = None


@dataclass
class RewardGate:
    blocked:                bool
    reason:                 Optional[str] = None
    requires_manual_review: bool          = False


def normalize_identity(identity: str) -> str:
    if not identity or not isinstance(identity, str) or not identity.strip():
        raise ValidationError("identity (wallet address) is required")
    return identity.strip().lower()


def _record_from_hash(raw: dict) -> BanRecord:
    return BanRecord(
        id          = int(raw["id"]),
        identity    = raw["identity"],
        ban_class   = BanClass(raw["ban_class"]),
        reason      = raw.get("reason", ""),
        banned_by   = raw.get("banned_by", ""),
        banned_at   = from_epoch(raw["banned_at"]),
        is_active   = raw.get("is_active") == "1",
        unbanned_at = from_epoch(raw.get("unbanned_at")),
    )


class BanRegistry:

    def __init__(self, client: Optional[redis.Redis] = None, cache_ttl: float = BAN_CACHE_TTL_SEC):
        self.redis     = client if client is not None else get_redis()
        self.cache_ttl = cache_ttl
        self._cache: dict[str, tuple[float, BanStatus]] = {}

    @staticmethod
    def record_key(ban_id) -> str:
        return key("ban", ban_id)

    @staticmethod
    def active_key(identity: str) -> str:
        return key("ban", "active", identity)

    @staticmethod
    def history_key(identity: str) -> str:
        return key("ban", "history", identity)

    # ── Reads ──────────────────────────────────────────────────────────────────
    def _active_record(self, identity: str) -> Optional[BanRecord]:
        with storage_errors(f"read ban for {identity}"):
            ban_id = self.redis.get(self.active_key(identity))
            raw    = self.redis.hgetall(self.record_key(ban_id)) if ban_id else {}
        if not raw or raw.get("is_active") != "1":
            return None
        return _record_from_hash(raw)

    def check_status(self, identity: str) -> BanStatus:
        """Active ban for ``identity``; absence is the normal case, not an error."""
        identity = normalize_identity(identity)

        cached = self._cache.get(identity)
        if cached and self.cache_ttl > 0 and time.monotonic() - cached[0] < self.cache_ttl:
            return cached[1]

        record = self._active_record(identity)
        if record is None:
            status = BanStatus(banned=False)
        else:
            status = BanStatus(
                banned    = True,
                ban_class = record.ban_class,
                reason    = record.reason,
                banned_at = record.banned_at,
            )
        if self.cache_ttl > 0:
            self._cache[identity] = (time.monotonic(), status)
        return status

    def should_block_reward(self, identity: str) -> RewardGate:
        status = self.check_status(identity)
        if not status.banned:
            return RewardGate(blocked=False)

        if status.ban_class is BanClass.HARD:
            return RewardGate(blocked=True, reason=f"{RESTRICTED_MESSAGE} Reason: {status.reason}")

        return RewardGate(blocked=False, requires_manual_review=True)

    # ── Admin actions ──────────────────────────────────────────────────────────
    def add(self, identity: str, ban_class, reason: str, actor: str, now: Optional[datetime] = None) -> BanRecord:
        """
        Ban ``identity``. An existing active ban is updated in place, so the
        identity never has two active records.
        """
        identity = normalize_identity(identity)
        try:
            ban_class = BanClass(ban_class)
        except ValueError:
            raise ValidationError(f"ban class must be 'hard' or 'soft', got {ban_class!r}")
        if not actor:
            raise ValidationError("actor is required")

        banned_at  = now or utcnow()
        active_key = self.active_key(identity)
        fields = {
            "ban_class": ban_class.value,
            "reason":    reason or "",
            "banned_by": actor.strip().lower(),
            "banned_at": to_epoch(banned_at),
        }
        saved: dict = {}

        def _upsert(pipe):
            ban_id = pipe.get(active_key)
            if ban_id and pipe.hget(self.record_key(ban_id), "is_active") == "1":
                saved.update(id=int(ban_id), updated=True)
                pipe.multi()
                pipe.hset(self.record_key(ban_id), mapping=fields)
                pipe.zadd(ALL_KEY, {ban_id: fields["banned_at"]})
                return
            new_id = pipe.incr(SEQ_KEY)
            saved.update(id=int(new_id), updated=False)
            pipe.multi()
            pipe.hset(self.record_key(new_id), mapping={
                **fields,
                "id":          new_id,
                "identity":    identity,
                "is_active":   1,
                "unbanned_at": "",
            })
            pipe.set(active_key, new_id)
            pipe.rpush(self.history_key(identity), new_id)
            pipe.zadd(ALL_KEY, {new_id: fields["banned_at"]})

        with storage_errors(f"ban {identity}"):
            self.redis.transaction(_upsert, active_key)
        self._cache.pop(identity, None)

        verb = "Updated existing" if saved["updated"] else "Added new"
        logger.warning(f"[BAN] {verb} ban for {identity}: {ban_class.value} - {reason}")

        return BanRecord(
            id        = saved["id"],
            identity  = identity,
            ban_class = ban_class,
            reason    = fields["reason"],
            banned_by = fields["banned_by"],
            banned_at = banned_at,
        )

    def remove(self, identity: str, now: Optional[datetime] = None) -> bool:
        """Deactivate the current ban. Returns whether anything was deactivated."""
        identity   = normalize_identity(identity)
        active_key = self.active_key(identity)
        unbanned   = now or utcnow()
        removed    = {"ok": False}

        def _deactivate(pipe):
            ban_id = pipe.get(active_key)
            pipe.multi()
            if not ban_id:
                removed["ok"] = False
                return
            pipe.hset(self.record_key(ban_id), mapping={
                "is_active":   0,
                "unbanned_at": to_epoch(unbanned),
            })
            pipe.delete(active_key)
            removed["ok"] = True

        with storage_errors(f"unban {identity}"):
            self.redis.transaction(_deactivate, active_key)
        self._cache.pop(identity, None)

        if removed["ok"]:
            logger.info(f"[BAN] Removed ban for {identity}")
        return removed["ok"]

    # ── Listing ────────────────────────────────────────────────────────────────
    def _load(self, ban_ids) -> list[BanRecord]:
        if not ban_ids:
            return []
        pipe = self.redis.pipeline(transaction=False)
        for ban_id in ban_ids:
            pipe.hgetall(self.record_key(ban_id))
        return [_record_from_hash(raw) for raw in pipe.execute() if raw]

    def list_bans(self, include_inactive: bool = False) -> list[BanRecord]:
        with storage_errors("list bans"):
            records = self._load(self.redis.zrange(ALL_KEY, 0, -1))
        if not include_inactive:
            records = [r for r in records if r.is_active]
        return records

    def history(self, identity: str) -> list[BanRecord]:
        identity = normalize_identity(identity)
        with storage_errors(f"ban history for {identity}"):
            records = self._load(self.redis.lrange(self.history_key(identity), 0, -1))
        return sorted(records, key=lambda r: r.banned_at)
