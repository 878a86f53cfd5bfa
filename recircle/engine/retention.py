"""
ReCircle Rewards :: Evidence Retention Sweeper

Deletes evidence older than the retention window regardless of review
state. Each record is removed in its own WATCH/MULTI transaction together
with its hash-index entry and queue memberships, so readers see the record
either whole or gone and a concurrent duplicate upload retries cleanly.

Subject markers (``subject:<id>``) are left in place: "this claim had
evidence" stays true after the image itself has expired.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import redis

from engine.evidence_store import UNREVIEWED_KEY, UPLOADED_KEY, EvidenceStore
from engine.storage import from_epoch, get_redis, storage_errors, to_epoch, utcnow

logger = logging.getLogger("recircle.retention")

# ── Configuration ──────────────────────────────────────────────────────────────
RETENTION_DAYS = int(os.getenv("EVIDENCE_RETENTION_DAYS", "30"))
SWEEP_BATCH    = int(os.getenv("RETENTION_SWEEP_BATCH", "500"))


@dataclass
class SweepResult:
    deleted_count:   int
    oldest_retained: Optional[datetime] = None
    newest_retained: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "deleted_count":   self.deleted_count,
            "oldest_retained": self.oldest_retained.isoformat() if self.oldest_retained else None,
            "newest_retained": self.newest_retained.isoformat() if self.newest_retained else None,
        }


class RetentionSweeper:

    def __init__(
        self,
        client:         Optional[redis.Redis] = None,
        retention_days: int = RETENTION_DAYS,
        batch_size:     int = SWEEP_BATCH,
    ):
        self.redis  = client if client is not None else get_redis()
        self.window = timedelta(days=retention_days)
        self.batch  = max(1, batch_size)

    def cutoff(self, now: Optional[datetime] = None) -> datetime:
        return (now or utcnow()) - self.window

    def _delete_one(self, evidence_id: str) -> bool:
        rec_key = EvidenceStore.record_key(evidence_id)
        deleted = {"ok": False}

        def _txn(pipe):
            content_hash = pipe.hget(rec_key, "content_hash")
            pipe.multi()
            pipe.zrem(UPLOADED_KEY, evidence_id)
            pipe.srem(UNREVIEWED_KEY, evidence_id)
            if content_hash is None:
                # orphaned index entry, the record itself is already gone
                return
            pipe.delete(rec_key)
            pipe.delete(EvidenceStore.hash_key(content_hash))
            deleted["ok"] = True

        self.redis.transaction(_txn, rec_key)
        return deleted["ok"]

    def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        """
        Delete every record uploaded before ``now - retention``. Never raises
        for an empty sweep; storage errors surface as StorageFailure.
        """
        cutoff       = self.cutoff(now)
        cutoff_epoch = to_epoch(cutoff)
        deleted      = 0

        logger.info(f"[SWEEP] Deleting evidence uploaded before {cutoff.isoformat()}")

        with storage_errors("retention sweep"):
            while True:
                # exclusive upper bound: exactly-at-cutoff records are kept
                expired = self.redis.zrangebyscore(
                    UPLOADED_KEY, "-inf", f"({cutoff_epoch}", start=0, num=self.batch,
                )
                if not expired:
                    break
                for evidence_id in expired:
                    if self._delete_one(evidence_id):
                        deleted += 1
                        logger.info(f"[SWEEP] Deleted evidence {evidence_id}")

            oldest = self.redis.zrange(UPLOADED_KEY, 0, 0, withscores=True)
            newest = self.redis.zrange(UPLOADED_KEY, -1, -1, withscores=True)

        result = SweepResult(
            deleted_count   = deleted,
            oldest_retained = from_epoch(oldest[0][1]) if oldest else None,
            newest_retained = from_epoch(newest[0][1]) if newest else None,
        )
        if deleted:
            logger.info(f"[SWEEP] Complete: {deleted} expired evidence records deleted")
        else:
            logger.info(f"[SWEEP] Complete: nothing older than {self.window.days} days")
        return result

    def storage_stats(self, now: Optional[datetime] = None) -> dict:
        cutoff_epoch = to_epoch(self.cutoff(now))
        with storage_errors("storage stats"):
            total   = self.redis.zcard(UPLOADED_KEY)
            expired = self.redis.zcount(UPLOADED_KEY, "-inf", f"({cutoff_epoch}")
            oldest  = self.redis.zrange(UPLOADED_KEY, 0, 0, withscores=True)
            newest  = self.redis.zrange(UPLOADED_KEY, -1, -1, withscores=True)
            ids     = self.redis.zrange(UPLOADED_KEY, 0, -1)
            pipe    = self.redis.pipeline(transaction=False)
            for evidence_id in ids:
                pipe.hget(EvidenceStore.record_key(evidence_id), "byte_size")
            sizes = pipe.execute() if ids else []

        return {
            "total_records":         total,
            "records_past_retention": expired,
            "retention_days":        self.window.days,
            "oldest_uploaded_at":    from_epoch(oldest[0][1]).isoformat() if oldest else None,
            "newest_uploaded_at":    from_epoch(newest[0][1]).isoformat() if newest else None,
            "total_bytes":           sum(int(s) for s in sizes if s),
        }
