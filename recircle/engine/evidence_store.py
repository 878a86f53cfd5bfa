"""
ReCircle Rewards :: Evidence Store
==================================

Persists receipt images with their fingerprint and fraud annotations.

Redis layout (prefix omitted):
    evidence:<id>             hash   record fields + base64 payload
    evidence:hash:<sha256>    string evidence id (unique index)
    evidence:uploaded         zset   id scored by upload epoch (retention clock)
    evidence:unreviewed       set    ids awaiting a human reviewer
    subject:<subject_id>      hash   evidence_id, has_evidence

Each subject points at one record. A second, different image for a subject
whose record is still live is refused rather than repointing the subject.

The hash index and the record are written in one optimistic transaction
watching the index and subject keys, so two concurrent uploads of the same
bytes cannot both insert: the loser's EXEC fails, it retries and takes the duplicate path.
"""

from __future__ import annotations

import base64
import hmac
import json
import logging
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

import redis

from engine import fraud_heuristics
from engine.errors import ValidationError
from engine.fingerprint import fingerprint
from engine.storage import from_epoch, get_redis, key, storage_errors, to_epoch, utcnow

logger = logging.getLogger("recircle.evidence")

VIEW_TOKEN_BYTES = 32

UPLOADED_KEY   = key("evidence", "uploaded")
UNREVIEWED_KEY = key("evidence", "unreviewed")


@dataclass
class EvidenceRecord:
    id:           str
    subject_id:   str
    content_hash: str
    mime_type:    str
    byte_size:    int
    fraud_flags:  list
    risk_score:   int
    view_token:   str = field(repr=False)
    uploaded_at:  datetime
    reviewed_at:  Optional[datetime] = None
    reviewed_by:  Optional[str]      = None
    # set when the pipeline paid the claim without a human; not a review
    auto_approved_at: Optional[datetime] = None

    @property
    def high_risk(self) -> bool:
        return fraud_heuristics.is_high_risk(self.risk_score)

    def to_dict(self, include_token: bool = False) -> dict:
        d = {
            "id":           self.id,
            "subject_id":   self.subject_id,
            "content_hash": self.content_hash,
            "mime_type":    self.mime_type,
            "byte_size":    self.byte_size,
            "fraud_flags":  list(self.fraud_flags),
            "risk_score":   self.risk_score,
            "high_risk":    self.high_risk,
            "uploaded_at":  self.uploaded_at.isoformat(),
            "reviewed_at":  self.reviewed_at.isoformat() if self.reviewed_at else None,
            "reviewed_by":  self.reviewed_by,
            "auto_approved_at": self.auto_approved_at.isoformat() if self.auto_approved_at else None,
        }
        if include_token:
            d["view_token"] = self.view_token
        return d


@dataclass
class StoreResult:
    id:           str
    content_hash: str
    flags:        list
    risk_score:   int
    is_duplicate: bool
    view_token:   str = field(repr=False)

    @property
    def high_risk(self) -> bool:
        return fraud_heuristics.is_high_risk(self.risk_score)


def _record_from_hash(raw: dict) -> EvidenceRecord:
    return EvidenceRecord(
        id           = raw["id"],
        subject_id   = raw["subject_id"],
        content_hash = raw["content_hash"],
        mime_type    = raw["mime_type"],
        byte_size    = int(raw["byte_size"]),
        fraud_flags  = json.loads(raw.get("fraud_flags") or "[]"),
        risk_score   = int(raw.get("risk_score") or 0),
        view_token   = raw["view_token"],
        uploaded_at  = from_epoch(raw["uploaded_at"]),
        reviewed_at  = from_epoch(raw.get("reviewed_at")),
        reviewed_by  = raw.get("reviewed_by") or None,
        auto_approved_at = from_epoch(raw.get("auto_approved_at")),
    )


def _merge_flags(existing: Iterable[str], extra: Iterable[str]) -> list:
    merged = list(existing)
    for flag in extra:
        if flag not in merged:
            merged.append(flag)
    return merged


class EvidenceStore:

    def __init__(self, client: Optional[redis.Redis] = None):
        self.redis = client if client is not None else get_redis()

    # ── Keys ───────────────────────────────────────────────────────────────────
    @staticmethod
    def record_key(evidence_id: str) -> str:
        return key("evidence", evidence_id)

    @staticmethod
    def hash_key(content_hash: str) -> str:
        return key("evidence", "hash", content_hash)

    @staticmethod
    def subject_key(subject_id) -> str:
        return key("subject", subject_id)

    def _check_subject(self, pipe, subject_id, current_id, target_id) -> None:
        """A subject keeps its first live image; a different one is refused."""
        if not current_id or current_id == target_id:
            return
        if pipe.exists(self.record_key(current_id)):
            raise ValidationError(f"subject {subject_id} already has evidence {current_id}")

    # ── store ──────────────────────────────────────────────────────────────────
    def store(
        self,
        subject_id,
        data:         bytes,
        mime_type:    str,
        encoded_size: Optional[int] = None,
        now:          Optional[datetime] = None,
    ) -> StoreResult:
        """
        Fingerprint, score and persist one image for ``subject_id``.

        Byte-identical re-submissions never create a second record: the
        existing record gains ``duplicate_image`` and its id/token are
        returned with ``is_duplicate=True``.

        A subject holds one image. Storing different bytes for a subject
        whose record is still live raises ValidationError; once the sweeper
        has removed that record the subject may be given a new one.
        """
        if subject_id in (None, ""):
            raise ValidationError("subject_id is required")
        if not isinstance(data, (bytes, bytearray)) or not data:
            raise ValidationError("image payload must be non-empty bytes")
        if not mime_type or not isinstance(mime_type, str):
            raise ValidationError("mime_type is required")

        data         = bytes(data)
        subject_id   = str(subject_id)
        content_hash = fingerprint(data)
        uploaded_at  = now or utcnow()
        hash_key     = self.hash_key(content_hash)
        subject_key  = self.subject_key(subject_id)
        outcome: dict = {}

        def _compare_and_insert(pipe):
            existing_id = pipe.get(hash_key)
            current_id  = pipe.hget(subject_key, "evidence_id")
            if existing_id:
                rec_key = self.record_key(existing_id)
                pipe.watch(rec_key)
                raw = pipe.hgetall(rec_key)
                if raw:
                    record = _record_from_hash(raw)
                    self._check_subject(pipe, subject_id, current_id, record.id)
                    flags  = _merge_flags(record.fraud_flags, [fraud_heuristics.FLAG_DUPLICATE])
                    risk   = record.risk_score
                    if fraud_heuristics.FLAG_DUPLICATE not in record.fraud_flags:
                        risk = fraud_heuristics.cap_risk(
                            risk + fraud_heuristics.RULE_WEIGHTS[fraud_heuristics.FLAG_DUPLICATE]
                        )
                    pipe.multi()
                    pipe.hset(rec_key, mapping={"fraud_flags": json.dumps(flags), "risk_score": risk})
                    pipe.hset(subject_key, mapping={
                        "evidence_id": record.id, "has_evidence": 1,
                    })
                    outcome.update(
                        id=record.id, flags=flags, risk=risk,
                        token=record.view_token, duplicate=True,
                    )
                    return
                # index points at a record the sweeper is deleting; take it over
                logger.warning(f"[EVIDENCE] Stale hash index {content_hash[:12]}… → {existing_id}")

            self._check_subject(pipe, subject_id, current_id, None)
            assessment  = fraud_heuristics.score(data, mime_type, encoded_size)
            evidence_id = uuid.uuid4().hex
            token       = secrets.token_urlsafe(VIEW_TOKEN_BYTES)
            epoch       = to_epoch(uploaded_at)

            pipe.multi()
            pipe.set(hash_key, evidence_id)
            pipe.hset(self.record_key(evidence_id), mapping={
                "id":           evidence_id,
                "subject_id":   subject_id,
                "content_hash": content_hash,
                "mime_type":    mime_type.lower(),
                "byte_size":    len(data),
                "fraud_flags":  json.dumps(assessment.flags),
                "risk_score":   assessment.risk_score,
                "view_token":   token,
                "uploaded_at":  epoch,
                "reviewed_at":  "",
                "reviewed_by":  "",
                "auto_approved_at": "",
                "payload":      base64.b64encode(data).decode("ascii"),
            })
            pipe.zadd(UPLOADED_KEY, {evidence_id: epoch})
            pipe.sadd(UNREVIEWED_KEY, evidence_id)
            pipe.hset(subject_key, mapping={
                "evidence_id": evidence_id, "has_evidence": 1,
            })
            outcome.update(
                id=evidence_id, flags=list(assessment.flags), risk=assessment.risk_score,
                token=token, duplicate=False,
            )

        with storage_errors(f"store evidence for subject {subject_id}"):
            self.redis.transaction(_compare_and_insert, hash_key, subject_key)

        if outcome["duplicate"]:
            logger.warning(
                f"[EVIDENCE] Duplicate image for subject {subject_id} → existing {outcome['id']} "
                f"(hash={content_hash[:12]}…)"
            )
        else:
            logger.info(
                f"[EVIDENCE] Stored {outcome['id']} for subject {subject_id}: "
                f"{len(data)}B {mime_type}, flags={outcome['flags'] or 'none'}"
            )

        return StoreResult(
            id           = outcome["id"],
            content_hash = content_hash,
            flags        = outcome["flags"],
            risk_score   = outcome["risk"],
            is_duplicate = outcome["duplicate"],
            view_token   = outcome["token"],
        )

    # ── Reads ──────────────────────────────────────────────────────────────────
    def get(self, evidence_id: str) -> Optional[EvidenceRecord]:
        with storage_errors(f"read evidence {evidence_id}"):
            raw = self.redis.hgetall(self.record_key(evidence_id))
        return _record_from_hash(raw) if raw else None

    def has_evidence(self, subject_id) -> bool:
        with storage_errors(f"read subject {subject_id}"):
            return self.redis.hget(self.subject_key(subject_id), "has_evidence") == "1"

    def find_for_subject(self, subject_id, data: bytes) -> Optional[StoreResult]:
        """
        The subject's own record when it holds exactly these bytes, else None.
        Lets a retried claim reuse its evidence instead of colliding with it.
        """
        if subject_id in (None, "") or not isinstance(data, (bytes, bytearray)) or not data:
            return None
        content_hash = fingerprint(bytes(data))
        with storage_errors(f"read subject {subject_id}"):
            evidence_id = self.redis.hget(self.subject_key(subject_id), "evidence_id")
            raw = self.redis.hgetall(self.record_key(evidence_id)) if evidence_id else {}
        if not raw or raw.get("content_hash") != content_hash:
            return None
        record = _record_from_hash(raw)
        return StoreResult(
            id           = record.id,
            content_hash = record.content_hash,
            flags        = list(record.fraud_flags),
            risk_score   = record.risk_score,
            is_duplicate = False,
            view_token   = record.view_token,
        )

    def _resolve(self, subject_id, token: str) -> Optional[dict]:
        if not token or not isinstance(token, str):
            return None
        with storage_errors(f"read evidence for subject {subject_id}"):
            evidence_id = self.redis.hget(self.subject_key(subject_id), "evidence_id")
            raw = self.redis.hgetall(self.record_key(evidence_id)) if evidence_id else {}
        stored_token = raw.get("view_token", "")
        # compare even when nothing was found so both misses cost the same
        matches = hmac.compare_digest(stored_token.encode(), token.encode())
        if not raw or not matches:
            return None
        return raw

    def read_by_token(self, subject_id, token: str) -> Optional[EvidenceRecord]:
        """
        Record for ``subject_id`` if ``token`` is its view token, else None.
        A wrong token and an unknown subject are indistinguishable.
        """
        raw = self._resolve(subject_id, token)
        return _record_from_hash(raw) if raw else None

    def read_payload(self, subject_id, token: str) -> Optional[bytes]:
        raw = self._resolve(subject_id, token)
        if not raw:
            return None
        return base64.b64decode(raw.get("payload", ""))

    def list_unreviewed(self) -> list[EvidenceRecord]:
        with storage_errors("list unreviewed evidence"):
            ids = self.redis.smembers(UNREVIEWED_KEY)
            pipe = self.redis.pipeline(transaction=False)
            for evidence_id in ids:
                pipe.hgetall(self.record_key(evidence_id))
            rows = pipe.execute() if ids else []
        records = [_record_from_hash(raw) for raw in rows if raw and not raw.get("reviewed_at")]
        return sorted(records, key=lambda r: r.uploaded_at)

    # ── Review ─────────────────────────────────────────────────────────────────
    def mark_auto_approved(self, evidence_id: str, now: Optional[datetime] = None) -> None:
        """Note an automatic payout. reviewed_at/reviewed_by stay untouched."""
        rec_key = self.record_key(evidence_id)
        stamp   = to_epoch(now or utcnow())

        def _approve(pipe):
            # the sweeper may have removed it; never recreate a partial hash
            if not pipe.exists(rec_key):
                return
            pipe.multi()
            pipe.hset(rec_key, "auto_approved_at", stamp)

        with storage_errors(f"auto-approve evidence {evidence_id}"):
            self.redis.transaction(_approve, rec_key)
        logger.info(f"[EVIDENCE] {evidence_id} auto-approved")

    def mark_reviewed(
        self,
        evidence_id: str,
        reviewer_id: str,
        flags:       Iterable[str] = (),
        now:         Optional[datetime] = None,
    ) -> Optional[EvidenceRecord]:
        """
        Set reviewed_at/reviewed_by once. ``flags`` augment the accumulated
        set. Returns None for an unknown id; a second review raises.
        """
        if not reviewer_id:
            raise ValidationError("reviewer_id is required")
        extra    = [str(f) for f in flags if f]
        rec_key  = self.record_key(evidence_id)
        reviewed = now or utcnow()
        result: dict = {}

        def _review(pipe):
            raw = pipe.hgetall(rec_key)
            if not raw:
                return
            if raw.get("reviewed_at"):
                raise ValidationError(f"evidence {evidence_id} was already reviewed")
            merged = _merge_flags(json.loads(raw.get("fraud_flags") or "[]"), extra)
            pipe.multi()
            pipe.hset(rec_key, mapping={
                "reviewed_at": to_epoch(reviewed),
                "reviewed_by": str(reviewer_id),
                "fraud_flags": json.dumps(merged),
            })
            pipe.srem(UNREVIEWED_KEY, evidence_id)
            raw.update(reviewed_at=to_epoch(reviewed), reviewed_by=str(reviewer_id),
                       fraud_flags=json.dumps(merged))
            result["raw"] = raw

        with storage_errors(f"review evidence {evidence_id}"):
            self.redis.transaction(_review, rec_key)

        if "raw" not in result:
            return None
        logger.info(f"[EVIDENCE] {evidence_id} reviewed by {reviewer_id} (added flags: {extra or 'none'})")
        return _record_from_hash(result["raw"])
