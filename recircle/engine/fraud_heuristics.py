"""
ReCircle Rewards :: Receipt Fraud Heuristics
=============================================

Advisory scoring of an uploaded receipt image. Nothing here blocks storage:
the flags and risk score only annotate the evidence record for a reviewer
or for the auto-approval threshold.

Rules (independent, additive, capped at 100):
  1. file_too_small              < FRAUD_MIN_BYTES            +25
  2. file_too_large              > FRAUD_MAX_BYTES            +15
  3. unusual_format              MIME not jpeg/jpg/png        +30
  4. editing_software_detected   editor signature in payload  +40
  5. unusual_compression         transport/raw ratio outside [0.1, 2.0]  +20

duplicate_image (+30) is added later by the evidence store, never here.
"""

from __future__ import annotations

import io
import logging
import os
from dataclasses import asdict, dataclass, field
from typing import Optional

logger = logging.getLogger("recircle.fraud")

# ── Configuration ──────────────────────────────────────────────────────────────
MIN_BYTES        = int(os.getenv("FRAUD_MIN_BYTES", "10000"))
MAX_BYTES        = int(os.getenv("FRAUD_MAX_BYTES", "5000000"))
HIGH_RISK_SCORE  = int(os.getenv("FRAUD_HIGH_RISK_SCORE", "50"))
MAX_RISK_SCORE   = 100

ALLOWED_MIME_TYPES = ("image/jpeg", "image/jpg", "image/png")
COMPRESSION_RANGE  = (0.1, 2.0)

# Lowercase; matched case-insensitively against raw bytes and EXIF Software.
EDITING_SIGNATURES = (
    b"photoshop",
    b"gimp",
    b"adobe imageready",
    b"paint.net",
    b"pixelmator",
    b"affinity photo",
)

FLAG_TOO_SMALL   = "file_too_small"
FLAG_TOO_LARGE   = "file_too_large"
FLAG_FORMAT      = "unusual_format"
FLAG_EDITED      = "editing_software_detected"
FLAG_COMPRESSION = "unusual_compression"
FLAG_DUPLICATE   = "duplicate_image"

RULE_WEIGHTS = {
    FLAG_TOO_SMALL:   25,
    FLAG_TOO_LARGE:   15,
    FLAG_FORMAT:      30,
    FLAG_EDITED:      40,
    FLAG_COMPRESSION: 20,
    FLAG_DUPLICATE:   30,
}

EXIF_SOFTWARE_TAG = 0x0131


@dataclass
class FraudAssessment:
    flags:      list = field(default_factory=list)
    risk_score: int  = 0
    high_risk:  bool = False

    def to_dict(self) -> dict:
        return asdict(self)


def cap_risk(score: int) -> int:
    return min(max(score, 0), MAX_RISK_SCORE)


def is_high_risk(score: int) -> bool:
    return score >= HIGH_RISK_SCORE


# ══════════════════════════════════════════════════════════════════════════════
#  SIGNATURE UTILITIES
# ══════════════════════════════════════════════════════════════════════════════

def _exif_software(data: bytes) -> str:
    """EXIF Software tag (lowercased), or "" when absent or unreadable."""
    try:
        from PIL import Image

        img  = Image.open(io.BytesIO(data))
        exif = img.getexif()
        return str(exif.get(EXIF_SOFTWARE_TAG, "") or "").lower()
    except Exception as e:
        logger.debug(f"[FRAUD] EXIF read skipped: {e}")
        return ""


def has_editing_signature(data: bytes) -> bool:
    lowered = data.lower()
    if any(sig in lowered for sig in EDITING_SIGNATURES):
        return True
    software = _exif_software(data)
    return bool(software) and any(sig.decode() in software for sig in EDITING_SIGNATURES)


def compression_ratio(data: bytes, encoded_size: Optional[int] = None) -> float:
    """
    Transport size over raw size. Raw uploads are 1.0, base64 transport is
    about 1.33; an empty payload has no meaningful ratio and returns 0.0.
    """
    if not data:
        return 0.0
    encoded = len(data) if encoded_size is None else encoded_size
    return encoded / len(data)


# ══════════════════════════════════════════════════════════════════════════════
#  SCORING
# ══════════════════════════════════════════════════════════════════════════════

def score(
    data:               bytes,
    declared_mime_type: str,
    encoded_size:       Optional[int] = None,
) -> FraudAssessment:
    """
    Score a payload. Pure and deterministic; never raises for any input.
    """
    flags: list[str] = []
    data = data or b""
    mime = (declared_mime_type or "").strip().lower()

    size = len(data)
    if size < MIN_BYTES:
        flags.append(FLAG_TOO_SMALL)
    if size > MAX_BYTES:
        flags.append(FLAG_TOO_LARGE)

    if mime not in ALLOWED_MIME_TYPES:
        flags.append(FLAG_FORMAT)

    if has_editing_signature(data):
        flags.append(FLAG_EDITED)

    low, high = COMPRESSION_RANGE
    ratio = compression_ratio(data, encoded_size)
    if ratio < low or ratio > high:
        flags.append(FLAG_COMPRESSION)

    risk = cap_risk(sum(RULE_WEIGHTS[f] for f in flags))
    if flags:
        logger.info(f"[FRAUD] size={size} mime={mime or '?'} ratio={ratio:.2f} → {flags} risk={risk}")

    return FraudAssessment(flags=flags, risk_score=risk, high_risk=is_high_risk(risk))
