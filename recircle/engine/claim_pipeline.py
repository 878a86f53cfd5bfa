"""
ReCircle Rewards :: Claim Pipeline

One receipt claim end to end:

    ban gate → evidence store → routing → (reward distribution)

Routing:
  hard ban                                  → rejected, nothing stored
  soft ban                                  → manual_review (silent)
  duplicate image / risk above threshold    → manual_review
  otherwise                                 → distributed | distribution_failed

A soft-banned identity gets exactly the same public answer as any other
claim waiting for review. The real reason only reaches the logs.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from engine.ban_registry import BanRegistry
from engine.distribution_ledger import AttemptStatus, Leg
from engine.errors import StorageFailure, ValidationError
from engine.evidence_store import EvidenceStore, StoreResult
from engine.reward_distributor import DistributionResult, RewardDistributor, receipt_proof

logger = logging.getLogger("recircle.pipeline")

# ── Configuration ──────────────────────────────────────────────────────────────
AUTO_APPROVE_MAX_RISK = int(os.getenv("AUTO_APPROVE_MAX_RISK", "0"))

REVIEW_MESSAGE      = "Your receipt has been submitted and is awaiting review."
DISTRIBUTED_MESSAGE = "Reward sent."
FAILED_MESSAGE      = "Reward could not be sent right now. Please try again later."


class ClaimOutcome(str, Enum):
    REJECTED            = "rejected"
    MANUAL_REVIEW       = "manual_review"
    DISTRIBUTED         = "distributed"
    DISTRIBUTION_FAILED = "distribution_failed"


@dataclass
class ClaimResult:
    claim_id:     str
    outcome:      ClaimOutcome
    message:      str
    evidence:     Optional[StoreResult]        = None
    distribution: Optional[DistributionResult] = None
    # internal routing reason; never part of the public view
    review_reason: Optional[str]               = None

    def to_dict(self) -> dict:
        return {
            "claim_id":     self.claim_id,
            "outcome":      self.outcome.value,
            "message":      self.message,
            "evidence_id":  self.evidence.id if self.evidence else None,
            "view_token":   self.evidence.view_token if self.evidence else None,
            "distribution": self.distribution.to_dict() if self.distribution else None,
        }


class ClaimPipeline:

    def __init__(
        self,
        evidence:              EvidenceStore,
        bans:                  BanRegistry,
        distributor:           RewardDistributor,
        auto_approve_max_risk: int = AUTO_APPROVE_MAX_RISK,
    ):
        self.evidence              = evidence
        self.bans                  = bans
        self.distributor           = distributor
        self.auto_approve_max_risk = auto_approve_max_risk

    def _already_rewarded(self, claim_id: str) -> bool:
        # a pending participant leg may have been paid; reconciliation decides
        return any(
            a.leg is Leg.PARTICIPANT and a.status is not AttemptStatus.FAILED
            for a in self.distributor.ledger.list_by_correlation(claim_id)
        )

    def _review(self, claim_id: str, stored: StoreResult, reason: str) -> ClaimResult:
        logger.info(f"[CLAIM] {claim_id} → manual review ({reason})")
        return ClaimResult(
            claim_id      = claim_id,
            outcome       = ClaimOutcome.MANUAL_REVIEW,
            message       = REVIEW_MESSAGE,
            evidence      = stored,
            review_reason = reason,
        )

    def process_claim(
        self,
        claim_id,
        recipient:    str,
        data:         bytes,
        mime_type:    str,
        amount,
        encoded_size: Optional[int] = None,
        now:          Optional[datetime] = None,
    ) -> ClaimResult:
        """
        Gate, store and route one claim. StorageFailure from any step
        propagates; in particular a failed store leaves the subject without
        a "has evidence" marker.
        """
        if claim_id in (None, ""):
            raise ValidationError("claim_id is required")
        claim_id = str(claim_id)

        # fail closed: a StorageFailure here stops the claim before any reward
        gate = self.bans.should_block_reward(recipient)
        if gate.blocked:
            logger.warning(f"[CLAIM] {claim_id} rejected: {recipient} is hard-banned")
            return ClaimResult(claim_id=claim_id, outcome=ClaimOutcome.REJECTED, message=gate.reason)

        if self._already_rewarded(claim_id):
            raise ValidationError(f"claim {claim_id} has already been rewarded or awaits reconciliation")

        # a retry after a failed payout brings the same bytes back: reuse, do not flag
        stored = self.evidence.find_for_subject(claim_id, data)
        if stored is not None:
            logger.info(f"[CLAIM] {claim_id} retried, reusing evidence {stored.id}")
        else:
            stored = self.evidence.store(claim_id, data, mime_type, encoded_size=encoded_size, now=now)

        if gate.requires_manual_review:
            return self._review(claim_id, stored, "soft ban")
        if stored.is_duplicate:
            return self._review(claim_id, stored, f"duplicate of {stored.id}")
        if stored.risk_score > self.auto_approve_max_risk:
            return self._review(claim_id, stored, f"risk {stored.risk_score} flags={stored.flags}")

        result = self.distributor.distribute(
            recipient,
            amount,
            receipt_proof(claim_id, stored.id),
            correlation_id=claim_id,
        )
        if not result.success:
            logger.error(f"[CLAIM] {claim_id} distribution failed: {result.error}")
            return ClaimResult(
                claim_id     = claim_id,
                outcome      = ClaimOutcome.DISTRIBUTION_FAILED,
                message      = FAILED_MESSAGE,
                evidence     = stored,
                distribution = result,
            )

        # the human review fields stay empty; only the auto-approval is noted
        try:
            self.evidence.mark_auto_approved(stored.id, now=now)
        except StorageFailure as e:
            logger.error(f"[CLAIM] {claim_id} paid but auto-approval not recorded on {stored.id}: {e}")
        logger.info(f"[CLAIM] {claim_id} distributed → {result.participant_tx_ref}")
        return ClaimResult(
            claim_id     = claim_id,
            outcome      = ClaimOutcome.DISTRIBUTED,
            message      = DISTRIBUTED_MESSAGE,
            evidence     = stored,
            distribution = result,
        )
