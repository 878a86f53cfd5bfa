"""
ReCircle Rewards :: Distribution Ledger

Append-only audit log of every distribution leg attempt. Each call to
``record`` appends a new entry; nothing is ever rewritten. The current state
of a leg is its latest entry.

Redis layout (prefix omitted):
    ledger:log                  list  every entry, in write order
    ledger:corr:<correlation>   list  entries of one reward event

Both lists are appended in one MULTI/EXEC. ``record`` only returns after
redis acknowledged the write, so the distributor never submits a leg whose
``pending`` entry was not stored.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

import redis

from engine.storage import get_redis, key, storage_errors, utcnow

logger = logging.getLogger("recircle.ledger")

LOG_KEY = key("ledger", "log")


class Leg(str, Enum):
    PARTICIPANT  = "participant"
    CREATOR_FUND = "creatorFund"
    APP_FUND     = "appFund"


LEG_ORDER = (Leg.PARTICIPANT, Leg.CREATOR_FUND, Leg.APP_FUND)


class AttemptStatus(str, Enum):
    PENDING   = "pending"
    SUCCEEDED = "succeeded"
    FAILED    = "failed"


@dataclass
class DistributionAttempt:
    correlation_id: str
    leg:            Leg
    recipient:      str
    amount:         int                       # smallest token unit
    status:         AttemptStatus     = AttemptStatus.PENDING
    tx_ref:         Optional[str]     = None
    error:          Optional[str]     = None
    attempted_at:   datetime          = field(default_factory=utcnow)

    def settle(self, status: AttemptStatus, tx_ref: Optional[str] = None, error: Optional[str] = None):
        return replace(self, status=status, tx_ref=tx_ref, error=error)

    def to_dict(self) -> dict:
        return {
            "correlation_id": self.correlation_id,
            "leg":            self.leg.value,
            "recipient":      self.recipient,
            "amount":         str(self.amount),
            "status":         self.status.value,
            "tx_ref":         self.tx_ref,
            "error":          self.error,
            "attempted_at":   self.attempted_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "DistributionAttempt":
        return cls(
            correlation_id = d["correlation_id"],
            leg            = Leg(d["leg"]),
            recipient      = d["recipient"],
            amount         = int(Decimal(d["amount"])),
            status         = AttemptStatus(d["status"]),
            tx_ref         = d.get("tx_ref"),
            error          = d.get("error"),
            attempted_at   = datetime.fromisoformat(d["attempted_at"]),
        )


def _latest_per_leg(entries: list[DistributionAttempt]) -> dict:
    latest: dict = {}
    for entry in entries:
        latest[(entry.correlation_id, entry.leg)] = entry
    return latest


class DistributionLedger:

    def __init__(self, client: Optional[redis.Redis] = None):
        self.redis = client if client is not None else get_redis()

    @staticmethod
    def correlation_key(correlation_id: str) -> str:
        return key("ledger", "corr", correlation_id)

    def record(self, attempt: DistributionAttempt) -> None:
        entry = json.dumps({**attempt.to_dict(), "recorded_at": utcnow().isoformat()})
        with storage_errors(f"ledger write {attempt.correlation_id}/{attempt.leg.value}"):
            pipe = self.redis.pipeline(transaction=True)
            pipe.rpush(LOG_KEY, entry)
            pipe.rpush(self.correlation_key(attempt.correlation_id), entry)
            pipe.execute()
        logger.info(
            f"[LEDGER] {attempt.correlation_id} {attempt.leg.value} → {attempt.status.value}"
            + (f" tx={attempt.tx_ref}" if attempt.tx_ref else "")
        )

    def history(self, correlation_id: str) -> list[DistributionAttempt]:
        """Every entry for one reward event, in write order."""
        with storage_errors(f"ledger read {correlation_id}"):
            rows = self.redis.lrange(self.correlation_key(correlation_id), 0, -1)
        return [DistributionAttempt.from_dict(json.loads(r)) for r in rows]

    def list_by_correlation(self, correlation_id: str) -> list[DistributionAttempt]:
        """Current state of each leg of one reward event, participant first."""
        latest = _latest_per_leg(self.history(correlation_id))
        return [latest[(correlation_id, leg)] for leg in LEG_ORDER if (correlation_id, leg) in latest]

    def list_unsettled(self, limit: int = 1000) -> list[DistributionAttempt]:
        """
        Legs whose latest entry (within the last ``limit`` log entries) is
        still pending or failed, for the reconciliation job to replay.
        """
        with storage_errors("ledger scan"):
            rows = self.redis.lrange(LOG_KEY, -max(1, limit), -1)
        latest = _latest_per_leg([DistributionAttempt.from_dict(json.loads(r)) for r in rows])
        return [a for a in latest.values() if a.status is not AttemptStatus.SUCCEEDED]
