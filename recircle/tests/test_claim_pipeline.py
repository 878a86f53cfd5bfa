"""
ReCircle Rewards — ClaimPipeline tests

Coverage:
  - end-to-end scenario: upload, duplicate, distribute, hard ban
  - hard ban rejects before storage and before any chain call
  - soft ban deferral is indistinguishable from ordinary review
  - risky / duplicate evidence goes to manual review
  - participant failure surfaces as distribution_failed
  - already-rewarded claims are refused
  - retrying a failed payout reuses the stored evidence
  - auto-approval never fills the human review fields
"""

import io
import os
import random
import sys
from decimal import Decimal
from unittest.mock import patch

import fakeredis
import pytest
import redis

# ── Path setup ────────────────────────────────────────────────────────────────
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from engine.ban_registry import BanRegistry
from engine.chain_client import SimulatedRewardsClient
from engine.claim_pipeline import REVIEW_MESSAGE, ClaimOutcome, ClaimPipeline
from engine.distribution_ledger import AttemptStatus, DistributionLedger, Leg
from engine.errors import LegSubmissionError, StorageFailure, ValidationError
from engine.evidence_store import UPLOADED_KEY, EvidenceStore
from engine.reward_distributor import RewardDistributor

RECIPIENT    = "0x" + "11" * 20
CREATOR_FUND = "0x" + "22" * 20
APP_FUND     = "0x" + "33" * 20


def _make_png(width: int = 80, height: int = 80, seed: int = 1) -> bytes:
    from PIL import Image
    pixels = random.Random(seed).randbytes(width * height * 3)
    img = Image.frombytes("RGB", (width, height), pixels)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


class TestClaimPipeline:

    def setup_method(self):
        client           = fakeredis.FakeRedis(decode_responses=True)
        self.chain       = SimulatedRewardsClient()
        self.evidence    = EvidenceStore(client)
        self.bans        = BanRegistry(client, cache_ttl=0)
        self.ledger      = DistributionLedger(client)
        self.distributor = RewardDistributor(
            self.ledger,
            client              = self.chain,
            creator_fund_wallet = CREATOR_FUND,
            app_fund_wallet     = APP_FUND,
        )
        self.pipeline = ClaimPipeline(self.evidence, self.bans, self.distributor, auto_approve_max_risk=0)

    def test_clean_claim_is_distributed(self):
        result = self.pipeline.process_claim("c1", RECIPIENT, _make_png(), "image/png", Decimal("10"))
        assert result.outcome is ClaimOutcome.DISTRIBUTED
        assert result.distribution.success is True
        assert len(self.chain.submitted) == 3
        legs = self.ledger.list_by_correlation("c1")
        assert all(a.status is AttemptStatus.SUCCEEDED for a in legs)
        assert sum(a.amount for a in legs) <= 10 * 10**18
        # auto-approval never fills the human review fields
        record = self.evidence.get(result.evidence.id)
        assert record.reviewed_by is None and record.reviewed_at is None
        assert record.auto_approved_at is not None
        assert [r.id for r in self.evidence.list_unreviewed()] == [record.id]
        assert self.evidence.mark_reviewed(record.id, "mod-1").reviewed_by == "mod-1"

    def test_proof_references_claim_and_evidence(self):
        result = self.pipeline.process_claim("c1", RECIPIENT, _make_png(), "image/png", 10)
        proof  = dict(self.chain.submitted[0]["proof"])
        assert proof["receipt_id"] == "c1"
        assert proof["image"] == result.evidence.id

    def test_scenario(self):
        small = _make_png(26, 26)
        first = self.evidence.store(501, small, "image/png")
        assert first.flags == ["file_too_small"] and first.is_duplicate is False

        second = self.evidence.store(502, small, "image/png")
        assert second.id == first.id and second.is_duplicate is True
        assert "duplicate_image" in second.flags

        paid = self.pipeline.process_claim("503", RECIPIENT, _make_png(), "image/png", 10)
        assert paid.outcome is ClaimOutcome.DISTRIBUTED

        self.bans.add(RECIPIENT, "hard", "fraud ring", "admin")
        assert self.bans.should_block_reward(RECIPIENT).blocked is True

    def test_hard_ban_rejected_before_storage(self):
        self.bans.add(RECIPIENT, "hard", "fraud ring", "admin")
        result = self.pipeline.process_claim("c1", RECIPIENT, _make_png(), "image/png", 10)
        assert result.outcome is ClaimOutcome.REJECTED
        assert "restricted" in result.message and "fraud ring" in result.message
        assert self.evidence.has_evidence("c1") is False
        assert self.chain.submitted == []

    def test_soft_ban_is_silent_manual_review(self):
        risky = self.pipeline.process_claim("c0", "0x" + "44" * 20, _make_png(26, 26), "image/png", 10)

        self.bans.add(RECIPIENT, "soft", "velocity", "admin")
        soft = self.pipeline.process_claim("c1", RECIPIENT, _make_png(seed=2), "image/png", 10)

        assert soft.outcome is ClaimOutcome.MANUAL_REVIEW
        assert soft.message == REVIEW_MESSAGE
        assert soft.to_dict().keys() == risky.to_dict().keys()
        assert "velocity" not in str(soft.to_dict())
        assert soft.review_reason == "soft ban"
        assert self.chain.submitted == []
        assert self.evidence.has_evidence("c1") is True

    def test_risky_evidence_goes_to_review(self):
        result = self.pipeline.process_claim("c1", RECIPIENT, _make_png(26, 26), "image/png", 10)
        assert result.outcome is ClaimOutcome.MANUAL_REVIEW
        assert [r.id for r in self.evidence.list_unreviewed()] == [result.evidence.id]
        assert self.chain.submitted == []

    def test_risk_threshold_configurable(self):
        lenient = ClaimPipeline(self.evidence, self.bans, self.distributor, auto_approve_max_risk=25)
        result  = lenient.process_claim("c1", RECIPIENT, _make_png(26, 26), "image/png", 10)
        assert result.outcome is ClaimOutcome.DISTRIBUTED

    def test_duplicate_goes_to_review(self):
        data = _make_png()
        self.evidence.store("other", data, "image/png")
        result = self.pipeline.process_claim("c1", RECIPIENT, data, "image/png", 10)
        assert result.outcome is ClaimOutcome.MANUAL_REVIEW
        assert result.evidence.is_duplicate is True

    def test_participant_failure(self):
        with patch.object(self.chain, "submit_reward", side_effect=LegSubmissionError("reverted")):
            result = self.pipeline.process_claim("c1", RECIPIENT, _make_png(), "image/png", 10)
        assert result.outcome is ClaimOutcome.DISTRIBUTION_FAILED
        assert result.distribution.success is False
        # still awaiting a decision
        assert [r.id for r in self.evidence.list_unreviewed()] == [result.evidence.id]

    def test_retry_after_participant_failure_reuses_evidence(self):
        data = _make_png()
        with patch.object(self.chain, "submit_reward", side_effect=LegSubmissionError("reverted")):
            failed = self.pipeline.process_claim("c1", RECIPIENT, data, "image/png", 10)
        assert failed.outcome is ClaimOutcome.DISTRIBUTION_FAILED

        retried = self.pipeline.process_claim("c1", RECIPIENT, data, "image/png", 10)
        assert retried.outcome is ClaimOutcome.DISTRIBUTED
        assert retried.evidence.id == failed.evidence.id
        assert retried.evidence.is_duplicate is False
        assert "duplicate_image" not in self.evidence.get(failed.evidence.id).fraud_flags
        assert self.evidence.redis.zcard(UPLOADED_KEY) == 1
        assert len(self.chain.submitted) == 3

    def test_retry_with_different_image_refused(self):
        with patch.object(self.chain, "submit_reward", side_effect=LegSubmissionError("reverted")):
            self.pipeline.process_claim("c1", RECIPIENT, _make_png(seed=1), "image/png", 10)
        with pytest.raises(ValidationError):
            self.pipeline.process_claim("c1", RECIPIENT, _make_png(seed=2), "image/png", 10)
        assert self.chain.submitted == []

    def test_unsettled_payout_blocks_retry(self):
        real_record = self.ledger.record

        def flaky_record(attempt):
            if attempt.leg is Leg.PARTICIPANT and attempt.status is AttemptStatus.SUCCEEDED:
                raise StorageFailure("down")
            return real_record(attempt)

        data = _make_png()
        with patch.object(self.ledger, "record", side_effect=flaky_record):
            paid = self.pipeline.process_claim("c1", RECIPIENT, data, "image/png", 10)
        assert paid.outcome is ClaimOutcome.DISTRIBUTED

        with pytest.raises(ValidationError):
            self.pipeline.process_claim("c1", RECIPIENT, data, "image/png", 10)
        assert len(self.chain.submitted) == 3

    def test_auto_approval_write_failure_keeps_payout(self):
        with patch.object(self.evidence, "mark_auto_approved", side_effect=StorageFailure("down")):
            result = self.pipeline.process_claim("c1", RECIPIENT, _make_png(), "image/png", 10)
        assert result.outcome is ClaimOutcome.DISTRIBUTED
        assert result.distribution.participant_tx_ref is not None

    def test_already_rewarded_claim_refused(self):
        self.pipeline.process_claim("c1", RECIPIENT, _make_png(seed=1), "image/png", 10)
        with pytest.raises(ValidationError):
            self.pipeline.process_claim("c1", RECIPIENT, _make_png(seed=2), "image/png", 10)
        assert len(self.chain.submitted) == 3

    def test_ban_storage_failure_fails_closed(self):
        with patch.object(self.bans.redis, "get", side_effect=redis.ConnectionError("down")):
            with pytest.raises(StorageFailure):
                self.pipeline.process_claim("c1", RECIPIENT, _make_png(), "image/png", 10)
        assert self.chain.submitted == []

    def test_evidence_storage_failure_leaves_subject_unmarked(self):
        with patch.object(self.evidence, "store", side_effect=StorageFailure("down")):
            with pytest.raises(StorageFailure):
                self.pipeline.process_claim("c1", RECIPIENT, _make_png(), "image/png", 10)
        assert self.evidence.has_evidence("c1") is False
        assert self.chain.submitted == []

    def test_claim_id_required(self):
        with pytest.raises(ValidationError):
            self.pipeline.process_claim("", RECIPIENT, _make_png(), "image/png", 10)
