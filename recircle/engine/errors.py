"""
ReCircle Rewards :: pipeline error taxonomy.

Duplicate uploads are not errors (see StoreResult.is_duplicate) and a token
mismatch on read is reported as "not found", so neither has a class here.
"""

from __future__ import annotations

from typing import Optional


class PipelineError(RuntimeError):
    """Base class for every error raised by the receipt/reward pipeline."""


class ValidationError(PipelineError):
    """Malformed input. Raised before any storage or ledger I/O."""


class StorageFailure(PipelineError):
    """The durable store (redis) could not be read or written."""


class ConfigurationError(PipelineError):
    """Signer, contract or fund-wallet configuration is missing or unsafe."""


class LegSubmissionError(PipelineError):
    def __init__(self, message: str, leg: str = "", tx_ref: Optional[str] = None):
        super().__init__(message)
        self.leg    = leg
        self.tx_ref = tx_ref
