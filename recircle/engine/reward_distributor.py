"""
ReCircle Rewards :: Reward Distributor
======================================

Splits one reward 70/15/15 (participant / creator fund / app fund) and pays
each part as an independent on-chain transfer.

Ordering and failure rules:
  1. participant leg first, waited on. Failure ends the distribution and
     no fund leg is attempted.
  2. creator-fund leg. Failure is recorded and skipped.
  3. app-fund leg, attempted even when the creator leg failed.
Fund-leg failures are left in the ledger for reconciliation; nothing is
retried inline.

Every leg is written to the ledger as ``pending`` before submission and
again with its terminal status afterwards. A failed terminal write never
changes the leg's outcome: a confirmed transfer is still reported with its
tx_ref, and the row is left ``pending`` for reconciliation.

Amounts are integers in the smallest token unit. Creator and app legs are
``total * 15 // 100``; the participant receives the remainder, so the legs
always sum to the total.

Ban gating is the caller's job: this module never consults the ban registry.
"""

from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Optional, Sequence, Union

from web3 import Web3

from engine.chain_client import RewardsClient, build_rewards_client
from engine.distribution_ledger import (
    AttemptStatus,
    DistributionAttempt,
    DistributionLedger,
    Leg,
)
from engine.errors import ConfigurationError, LegSubmissionError, StorageFailure, ValidationError

logger = logging.getLogger("recircle.distributor")

# ── Configuration ──────────────────────────────────────────────────────────────
CREATOR_FUND_WALLET = os.getenv("CREATOR_FUND_WALLET", "")
APP_FUND_WALLET     = os.getenv("APP_FUND_WALLET", "")
TOKEN_DECIMALS      = int(os.getenv("TOKEN_DECIMALS", "18"))
LEG_TIMEOUT_SEC     = float(os.getenv("LEG_TIMEOUT_SEC", "60"))
MAX_REWARD_TOKENS   = Decimal(os.getenv("MAX_REWARD_TOKENS", "1000"))
PLATFORM_NAME       = os.getenv("RECIRCLE_PLATFORM_NAME", "recircle_rewards")

PARTICIPANT_PERCENT = 70
CREATOR_PERCENT     = 15
APP_PERCENT         = 15


# ---------------------------------------------------------------------------
# Amounts
# ---------------------------------------------------------------------------
def to_units(amount, decimals: int = TOKEN_DECIMALS) -> int:
    """Token amount → smallest units, truncating sub-unit dust."""
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"amount {amount!r} is not a number")
    if not value.is_finite():
        raise ValidationError(f"amount {amount!r} is not finite")
    return int((value * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_DOWN))


def from_units(units: int, decimals: int = TOKEN_DECIMALS) -> Decimal:
    return Decimal(units) / (Decimal(10) ** decimals)


@dataclass(frozen=True)
class RewardSplit:
    total:        int
    participant:  int
    creator_fund: int
    app_fund:     int

    def to_dict(self, decimals: int = TOKEN_DECIMALS) -> dict:
        return {
            "total":        str(from_units(self.total, decimals)),
            "participant":  str(from_units(self.participant, decimals)),
            "creator_fund": str(from_units(self.creator_fund, decimals)),
            "app_fund":     str(from_units(self.app_fund, decimals)),
        }


def split_reward(total_units: int) -> RewardSplit:
    creator = total_units * CREATOR_PERCENT // 100
    app     = total_units * APP_PERCENT // 100
    return RewardSplit(
        total        = total_units,
        participant  = total_units - creator - app,
        creator_fund = creator,
        app_fund     = app,
    )


# ---------------------------------------------------------------------------
# Leg outcomes
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class LegSucceeded:
    tx_ref: str
    ok = True


@dataclass(frozen=True)
class LegFailed:
    error:  str
    tx_ref: Optional[str] = None
    ok = False


LegOutcome = Union[LegSucceeded, LegFailed]


def _tx_ref(outcome: Optional[LegOutcome]) -> Optional[str]:
    return outcome.tx_ref if isinstance(outcome, LegSucceeded) else None


@dataclass
class DistributionResult:
    success:        bool
    correlation_id: str
    recipient:      str
    split:          RewardSplit
    participant:    LegOutcome
    creator_fund:   Optional[LegOutcome] = None
    app_fund:       Optional[LegOutcome] = None

    @property
    def participant_tx_ref(self) -> Optional[str]:
        return _tx_ref(self.participant)

    @property
    def creator_tx_ref(self) -> Optional[str]:
        return _tx_ref(self.creator_fund)

    @property
    def app_tx_ref(self) -> Optional[str]:
        return _tx_ref(self.app_fund)

    @property
    def error(self) -> Optional[str]:
        return self.participant.error if isinstance(self.participant, LegFailed) else None

    def to_dict(self) -> dict:
        return {
            "success":            self.success,
            "correlation_id":     self.correlation_id,
            "recipient":          self.recipient,
            "participant_tx_ref": self.participant_tx_ref,
            "creator_tx_ref":     self.creator_tx_ref,
            "app_tx_ref":         self.app_tx_ref,
            "split":              self.split.to_dict(),
            "error":              self.error,
        }


# ---------------------------------------------------------------------------
# Proof helpers
# ---------------------------------------------------------------------------
def receipt_proof(claim_id, evidence_ref: str = "") -> list[tuple[str, str]]:
    """Standard proof pairs attached to a receipt reward."""
    proof = [("receipt_id", str(claim_id))]
    if evidence_ref:
        proof.append(("image", evidence_ref))
    proof.append(("platform", PLATFORM_NAME))
    return proof


def _normalize_proof(proof) -> list[tuple[str, str]]:
    if proof is None:
        return []
    pairs = []
    for item in proof:
        if not isinstance(item, (tuple, list)) or len(item) != 2:
            raise ValidationError(f"proof entries must be (type, value) pairs, got {item!r}")
        proof_type, value = item
        if not proof_type:
            raise ValidationError("proof type must be non-empty")
        pairs.append((str(proof_type), str(value)))
    return pairs


# ---------------------------------------------------------------------------
# Distributor
# ---------------------------------------------------------------------------
class RewardDistributor:

    def __init__(
        self,
        ledger:              DistributionLedger,
        client:              Optional[RewardsClient] = None,
        creator_fund_wallet: str   = CREATOR_FUND_WALLET,
        app_fund_wallet:     str   = APP_FUND_WALLET,
        leg_timeout:         float = LEG_TIMEOUT_SEC,
        max_reward:          Decimal = MAX_REWARD_TOKENS,
    ):
        self.ledger              = ledger
        self.client              = client
        self.creator_fund_wallet = creator_fund_wallet
        self.app_fund_wallet     = app_fund_wallet
        self.leg_timeout         = leg_timeout
        self.max_reward          = Decimal(str(max_reward))

    @classmethod
    def from_env(cls, ledger: DistributionLedger) -> "RewardDistributor":
        return cls(ledger=ledger, client=build_rewards_client())

    # ── Pre-flight ─────────────────────────────────────────────────────────────
    def _check_configuration(self) -> None:
        if self.client is None:
            raise ConfigurationError("No rewards client configured (signer / contract missing)")
        problems = []
        for name, wallet in (("CREATOR_FUND_WALLET", self.creator_fund_wallet),
                             ("APP_FUND_WALLET", self.app_fund_wallet)):
            if not wallet or not Web3.is_address(wallet):
                problems.append(f"{name} missing or invalid")
            elif wallet.lower() == self.client.sender_address.lower():
                problems.append(f"{name} is the distributor wallet")
        if problems:
            raise ConfigurationError("; ".join(problems))

    def _validate(self, recipient: str, total_amount) -> int:
        if not recipient or not isinstance(recipient, str) or not Web3.is_address(recipient):
            raise ValidationError(f"recipient {recipient!r} is not a valid address")
        if recipient.lower() == self.client.sender_address.lower():
            raise ValidationError("the distributor wallet cannot receive rewards")
        units = to_units(total_amount)
        if units <= 0:
            raise ValidationError(f"reward amount must be positive, got {total_amount}")
        if units > to_units(self.max_reward):
            raise ValidationError(f"reward amount {total_amount} exceeds cap {self.max_reward}")
        return units

    # ── Legs ───────────────────────────────────────────────────────────────────
    def _submit_leg(
        self,
        correlation_id: str,
        leg:            Leg,
        recipient:      str,
        amount:         int,
        proof:          list,
    ) -> LegOutcome:
        attempt = DistributionAttempt(
            correlation_id = correlation_id,
            leg            = leg,
            recipient      = recipient,
            amount         = amount,
        )
        # StorageFailure here propagates: no pending row, no submission
        self.ledger.record(attempt)

        try:
            tx_ref  = self.client.submit_reward(recipient, amount, proof, self.leg_timeout)
            outcome = LegSucceeded(tx_ref=tx_ref)
            logger.info(f"[LEG] {correlation_id} {leg.value}: {amount} → {recipient} tx={tx_ref}")
        except LegSubmissionError as e:
            outcome = LegFailed(error=str(e), tx_ref=e.tx_ref)
            logger.error(f"[LEG] {correlation_id} {leg.value} failed: {e}")
        except Exception as e:
            outcome = LegFailed(error=f"{type(e).__name__}: {e}")
            logger.error(f"[LEG] {correlation_id} {leg.value} failed unexpectedly: {e}")

        if isinstance(outcome, LegSucceeded):
            settled = attempt.settle(AttemptStatus.SUCCEEDED, tx_ref=outcome.tx_ref)
        else:
            settled = attempt.settle(AttemptStatus.FAILED, tx_ref=outcome.tx_ref, error=outcome.error)
        try:
            self.ledger.record(settled)
        except StorageFailure as e:
            # the chain result stands; the row stays pending for reconciliation
            logger.error(
                f"[LEDGER] {correlation_id} {leg.value} settled {settled.status.value} "
                f"tx={settled.tx_ref} but the ledger write failed: {e}"
            )
        return outcome

    def _fund_leg(self, correlation_id, leg, wallet, amount, proof, marker) -> LegOutcome:
        try:
            return self._submit_leg(correlation_id, leg, wallet, amount, proof + [("fund", marker)])
        except Exception as e:
            # pending write failed, nothing was submitted: skip the leg
            logger.error(f"[LEG] {correlation_id} {leg.value} skipped: {e}")
            return LegFailed(error=f"{type(e).__name__}: {e}")

    # ── distribute ─────────────────────────────────────────────────────────────
    def distribute(
        self,
        recipient:      str,
        total_amount,
        proof:          Optional[Sequence] = None,
        correlation_id: Optional[str] = None,
    ) -> DistributionResult:
        """
        Pay ``total_amount`` (token units, e.g. Decimal("10")) to
        ``recipient`` and the two funds. Not idempotent: calling twice
        issues two sets of transfers.
        """
        self._check_configuration()
        units       = self._validate(recipient, total_amount)
        proof_pairs = _normalize_proof(proof)
        split       = split_reward(units)
        cid         = correlation_id or uuid.uuid4().hex

        logger.info(
            f"[DISTRIBUTE] {cid}: {total_amount} → participant {split.participant}, "
            f"creator {split.creator_fund}, app {split.app_fund} (units)"
        )

        participant = self._submit_leg(cid, Leg.PARTICIPANT, recipient, split.participant, proof_pairs)
        if isinstance(participant, LegFailed):
            logger.error(f"[DISTRIBUTE] {cid}: participant leg failed, fund legs not attempted")
            return DistributionResult(
                success=False, correlation_id=cid, recipient=recipient,
                split=split, participant=participant,
            )

        creator = self._fund_leg(cid, Leg.CREATOR_FUND, self.creator_fund_wallet,
                                 split.creator_fund, proof_pairs, "creator_fund")
        app     = self._fund_leg(cid, Leg.APP_FUND, self.app_fund_wallet,
                                 split.app_fund, proof_pairs, "app_fund")

        logger.info(
            f"[DISTRIBUTE] {cid} complete: participant ok, "
            f"creator {'ok' if creator.ok else 'FAILED'}, app {'ok' if app.ok else 'FAILED'}"
        )
        return DistributionResult(
            success=True, correlation_id=cid, recipient=recipient, split=split,
            participant=participant, creator_fund=creator, app_fund=app,
        )
