"""
ReCircle Rewards — Receipt Pipeline API Gateway
FastAPI server exposing the receipt/reward pipeline to the intake app and
the admin/review console.

Intake:
  - POST /api/v1/evidence              — store a receipt image
  - GET  /api/v1/evidence/{subject}    — read it back with its view token
  - POST /api/v1/claims                — gate, store, route and reward a claim

Admin / review:
  - GET  /api/v1/review/queue, POST /api/v1/review/{evidence_id}
  - GET|POST /api/v1/bans, GET|DELETE /api/v1/bans/{identity}
  - GET  /api/v1/ledger/unsettled, GET /api/v1/ledger/{correlation_id}
  - GET  /api/v1/storage/stats
"""

import base64
import binascii
import logging
import os
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Security, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security.api_key import APIKeyHeader
from pydantic import BaseModel, Field
from dotenv import load_dotenv
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from engine.ban_registry import BanClass, BanRegistry
from engine.chain_client import build_rewards_client
from engine.claim_pipeline import ClaimOutcome, ClaimPipeline
from engine.distribution_ledger import DistributionLedger
from engine.errors import ConfigurationError, StorageFailure, ValidationError
from engine.evidence_store import EvidenceStore
from engine.retention import RetentionSweeper
from engine.reward_distributor import RewardDistributor
from engine.storage import get_redis

load_dotenv()

# ─── Setup ────────────────────────────────────────────────────────────────────
logging.basicConfig(level=logging.INFO)
log = logging.getLogger("recircle.api")

DEFAULT_API_KEY  = "recircle-dev-key-change-in-prod"
RECIRCLE_API_KEY = os.getenv("RECIRCLE_API_KEY", DEFAULT_API_KEY)
API_KEY_HEADER   = APIKeyHeader(name="X-ReCircle-API-Key", auto_error=True)
API_VERSION      = "1.0.0"

# ─── Rate Limiter ─────────────────────────────────────────────────────────────
# e.g. RATE_LIMIT_UPLOAD="10/minute"; applies to evidence uploads and claims
RATE_LIMIT_UPLOAD = os.getenv("RATE_LIMIT_UPLOAD", "10/minute")
limiter = Limiter(key_func=get_remote_address)

app = FastAPI(
    title="ReCircle Rewards — Receipt Pipeline API",
    description="Receipt integrity checks, ban gating and 70/15/15 reward distribution",
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


# ─── Startup Validation ───────────────────────────────────────────────────────
@app.on_event("startup")
async def _startup_validation():
    """Check critical env vars at boot, not silently at the first claim."""
    warnings_found = []

    if RECIRCLE_API_KEY == DEFAULT_API_KEY:
        warnings_found.append(
            f"DEFAULT API KEY IN USE ('{DEFAULT_API_KEY}'). "
            "Anyone who knows this default can upload evidence and trigger rewards. "
            "Set a strong RECIRCLE_API_KEY before going to production."
        )

    dry_run = os.getenv("REWARDS_DRY_RUN", "false").lower() == "true"
    if not dry_run and not os.getenv("DISTRIBUTOR_PRIVATE_KEY"):
        warnings_found.append(
            "NO DISTRIBUTOR_PRIVATE_KEY SET — every reward distribution will fail "
            "with a configuration error. Set it, or REWARDS_DRY_RUN=true for development."
        )

    for name in ("CREATOR_FUND_WALLET", "APP_FUND_WALLET"):
        if not dry_run and not os.getenv(name):
            warnings_found.append(f"{name} is not set — distributions will be refused.")

    for w in warnings_found:
        log.critical(f"\n{'='*70}\n⚠️  CONFIGURATION WARNING: {w}\n{'='*70}")

    if not warnings_found:
        log.info("✅ Startup validation passed. API key and distributor are configured.")

# ─── CORS ─────────────────────────────────────────────────────────────────────
# In production, set: ALLOWED_ORIGINS=https://recircle.app,https://admin.recircle.app
_raw_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000")
ALLOWED_ORIGINS: List[str] = [o.strip() for o in _raw_origins.split(",") if o.strip()]
log.info(f"CORS allowed origins: {ALLOWED_ORIGINS}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["*"],
)


# ─── Error mapping ────────────────────────────────────────────────────────────
@app.exception_handler(ValidationError)
async def _validation_error(request: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(StorageFailure)
async def _storage_failure(request: Request, exc: StorageFailure):
    log.error(f"[API] Storage unavailable on {request.url.path}: {exc}")
    return JSONResponse(status_code=503, content={"detail": "Storage temporarily unavailable."})


@app.exception_handler(ConfigurationError)
async def _configuration_error(request: Request, exc: ConfigurationError):
    log.critical(f"[API] Distributor misconfigured: {exc}")
    return JSONResponse(status_code=503, content={"detail": "Reward distribution is not configured."})


# ─── Auth ─────────────────────────────────────────────────────────────────────
async def verify_api_key(api_key: str = Security(API_KEY_HEADER)) -> str:
    if api_key != RECIRCLE_API_KEY:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid ReCircle API key",
        )
    return api_key


# ─── Services ─────────────────────────────────────────────────────────────────
@dataclass
class Services:
    evidence:    EvidenceStore
    bans:        BanRegistry
    ledger:      DistributionLedger
    distributor: RewardDistributor
    sweeper:     RetentionSweeper
    pipeline:    ClaimPipeline


def build_services(client=None, rewards_client=None) -> Services:
    """Wire every component onto one redis client (tests pass fakeredis)."""
    client      = client if client is not None else get_redis()
    evidence    = EvidenceStore(client)
    bans        = BanRegistry(client)
    ledger      = DistributionLedger(client)
    distributor = RewardDistributor(
        ledger,
        client=rewards_client if rewards_client is not None else build_rewards_client(),
    )
    return Services(
        evidence    = evidence,
        bans        = bans,
        ledger      = ledger,
        distributor = distributor,
        sweeper     = RetentionSweeper(client),
        pipeline    = ClaimPipeline(evidence, bans, distributor),
    )


_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services()
    return _services


# ─── Request Models ───────────────────────────────────────────────────────────
class EvidenceUploadRequest(BaseModel):
    subject_id:   str = Field(..., min_length=1)
    mime_type:    str = Field(..., min_length=1)
    image_base64: str = Field(..., min_length=1, description="Base64-encoded receipt image.")


class ReviewRequest(BaseModel):
    reviewer_id: str       = Field(..., min_length=1)
    flags:       List[str] = Field(default_factory=list)


class BanRequest(BaseModel):
    identity:  str      = Field(..., min_length=1)
    ban_class: BanClass
    reason:    str      = ""
    actor:     str      = Field(..., min_length=1)


class ClaimRequest(BaseModel):
    claim_id:     str     = Field(..., min_length=1)
    recipient:    str     = Field(..., min_length=1)
    amount:       Decimal = Field(..., gt=0, description="Reward in whole tokens, e.g. 10")
    mime_type:    str     = Field(..., min_length=1)
    image_base64: str     = Field(..., min_length=1)


def _decode_image(image_base64: str) -> bytes:
    try:
        data = base64.b64decode(image_base64, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=422, detail="image_base64 is not valid base64.")
    if not data:
        raise HTTPException(status_code=422, detail="image_base64 decodes to an empty payload.")
    return data


# ─── Routes ───────────────────────────────────────────────────────────────────

@app.get("/health")
async def health():
    return {
        "status":    "operational",
        "version":   API_VERSION,
        "timestamp": int(time.time()),
    }


@app.post("/api/v1/evidence", summary="Store Receipt Evidence")
@limiter.limit(RATE_LIMIT_UPLOAD)
def upload_evidence(
    request:  Request,                          # required by slowapi
    body:     EvidenceUploadRequest,
    api_key:  str      = Security(verify_api_key),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    image_bytes = _decode_image(body.image_base64)
    log.info(f"[UPLOAD] Subject {body.subject_id}: {len(image_bytes):,} bytes {body.mime_type}")

    result = services.evidence.store(
        body.subject_id,
        image_bytes,
        body.mime_type,
        encoded_size=len(body.image_base64),
    )
    return {
        "id":           result.id,
        "content_hash": result.content_hash,
        "flags":        result.flags,
        "risk_score":   result.risk_score,
        "high_risk":    result.high_risk,
        "is_duplicate": result.is_duplicate,
        "view_token":   result.view_token,
    }


@app.get("/api/v1/evidence/{subject_id}", summary="Read Evidence With View Token")
def read_evidence(
    subject_id:      str,
    token:           str  = "",
    include_payload: bool = False,
    api_key:  str      = Security(verify_api_key),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    record = services.evidence.read_by_token(subject_id, token)
    if record is None:
        # wrong token and unknown subject look the same
        raise HTTPException(status_code=404, detail="Evidence not found.")
    body = record.to_dict()
    if include_payload:
        payload = services.evidence.read_payload(subject_id, token)
        body["image_base64"] = base64.b64encode(payload).decode("ascii") if payload else None
    return body


@app.get("/api/v1/review/queue", summary="Unreviewed Evidence Queue")
def review_queue(
    api_key:  str      = Security(verify_api_key),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    items = [r.to_dict() for r in services.evidence.list_unreviewed()]
    return {"count": len(items), "items": items}


@app.post("/api/v1/review/{evidence_id}", summary="Mark Evidence Reviewed")
def review_evidence(
    evidence_id: str,
    body:        ReviewRequest,
    api_key:  str      = Security(verify_api_key),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    record = services.evidence.mark_reviewed(evidence_id, body.reviewer_id, body.flags)
    if record is None:
        raise HTTPException(status_code=404, detail="Evidence not found.")
    return record.to_dict()


@app.get("/api/v1/bans", summary="List Bans")
def list_bans(
    include_inactive: bool = False,
    api_key:  str      = Security(verify_api_key),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    bans = [b.to_dict() for b in services.bans.list_bans(include_inactive=include_inactive)]
    return {"count": len(bans), "bans": bans}


@app.post("/api/v1/bans", summary="Ban an Identity")
def add_ban(
    body:     BanRequest,
    api_key:  str      = Security(verify_api_key),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    record = services.bans.add(body.identity, body.ban_class, body.reason, body.actor)
    return record.to_dict()


@app.get("/api/v1/bans/{identity}", summary="Ban Status and History")
def ban_status(
    identity: str,
    api_key:  str      = Security(verify_api_key),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    ban  = services.bans.check_status(identity)
    gate = services.bans.should_block_reward(identity)
    return {
        "identity":               identity.lower(),
        "banned":                 ban.banned,
        "ban_class":              ban.ban_class.value if ban.ban_class else None,
        "reason":                 ban.reason,
        "banned_at":              ban.banned_at.isoformat() if ban.banned_at else None,
        "blocked":                gate.blocked,
        "requires_manual_review": gate.requires_manual_review,
        "history":                [b.to_dict() for b in services.bans.history(identity)],
    }


@app.delete("/api/v1/bans/{identity}", summary="Lift an Active Ban")
def remove_ban(
    identity: str,
    api_key:  str      = Security(verify_api_key),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    if not services.bans.remove(identity):
        raise HTTPException(status_code=404, detail="No active ban for this identity.")
    return {"identity": identity.lower(), "removed": True}


@app.post("/api/v1/claims", summary="Submit a Receipt Claim")
@limiter.limit(RATE_LIMIT_UPLOAD)
def submit_claim(
    request:  Request,                          # required by slowapi
    body:     ClaimRequest,
    api_key:  str      = Security(verify_api_key),
    services: Services = Depends(get_services),
):
    image_bytes = _decode_image(body.image_base64)
    result = services.pipeline.process_claim(
        body.claim_id,
        body.recipient,
        image_bytes,
        body.mime_type,
        body.amount,
        encoded_size=len(body.image_base64),
    )
    if result.outcome is ClaimOutcome.REJECTED:
        return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content=result.to_dict())
    return result.to_dict()


# declared before /ledger/{correlation_id} so "unsettled" is not taken as an id
@app.get("/api/v1/ledger/unsettled", summary="Legs Awaiting Reconciliation")
def unsettled_legs(
    limit:    int      = 1000,
    api_key:  str      = Security(verify_api_key),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    legs = [a.to_dict() for a in services.ledger.list_unsettled(limit=limit)]
    return {"count": len(legs), "attempts": legs}


@app.get("/api/v1/ledger/{correlation_id}", summary="Distribution Attempts for One Reward")
def ledger_entries(
    correlation_id: str,
    api_key:  str      = Security(verify_api_key),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    current = services.ledger.list_by_correlation(correlation_id)
    if not current:
        raise HTTPException(status_code=404, detail="No distribution recorded for this id.")
    return {
        "correlation_id": correlation_id,
        "legs":           [a.to_dict() for a in current],
        "history":        [a.to_dict() for a in services.ledger.history(correlation_id)],
    }


@app.get("/api/v1/storage/stats", summary="Evidence Storage Statistics")
def storage_stats(
    api_key:  str      = Security(verify_api_key),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return services.sweeper.storage_stats()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")), reload=False)
