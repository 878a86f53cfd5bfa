"""
ReCircle Rewards — API Gateway tests (FastAPI TestClient, fakeredis-backed services)
"""

import base64
import io
import os
import random
import sys
from unittest.mock import patch

import fakeredis
import pytest
from fastapi.testclient import TestClient

# ── Path setup ────────────────────────────────────────────────────────────────
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from api import main
from engine.chain_client import SimulatedRewardsClient
from engine.errors import StorageFailure

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


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


class TestAPI:

    def setup_method(self):
        self.services = main.build_services(
            client=fakeredis.FakeRedis(decode_responses=True),
            rewards_client=SimulatedRewardsClient(),
        )
        self.services.distributor.creator_fund_wallet = CREATOR_FUND
        self.services.distributor.app_fund_wallet     = APP_FUND
        main.app.dependency_overrides[main.get_services] = lambda: self.services
        main.limiter.enabled = False
        self.client  = TestClient(main.app)
        self.headers = {"X-ReCircle-API-Key": main.RECIRCLE_API_KEY}

    def teardown_method(self):
        main.app.dependency_overrides.clear()
        main.limiter.enabled = True

    def _upload(self, subject_id, data, mime="image/png"):
        return self.client.post(
            "/api/v1/evidence",
            json={"subject_id": subject_id, "mime_type": mime, "image_base64": _b64(data)},
            headers=self.headers,
        )

    def _claim(self, claim_id, data, amount="10", recipient=RECIPIENT):
        return self.client.post(
            "/api/v1/claims",
            json={"claim_id": claim_id, "recipient": recipient, "amount": amount,
                  "mime_type": "image/png", "image_base64": _b64(data)},
            headers=self.headers,
        )

    # ── Auth ─────────────────────────────────────────────────────────────────
    def test_health_is_public(self):
        resp = self.client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "operational"

    def test_missing_api_key(self):
        resp = self.client.get("/api/v1/review/queue")
        assert resp.status_code in (401, 403)

    def test_wrong_api_key(self):
        resp = self.client.get("/api/v1/review/queue", headers={"X-ReCircle-API-Key": "nope"})
        assert resp.status_code == 403

    # ── Evidence ─────────────────────────────────────────────────────────────
    def test_upload_and_duplicate(self):
        small = _make_png(26, 26)
        first = self._upload("501", small)
        assert first.status_code == 200
        assert first.json()["flags"] == ["file_too_small"]
        assert first.json()["is_duplicate"] is False

        second = self._upload("502", small).json()
        assert second["id"] == first.json()["id"]
        assert second["is_duplicate"] is True
        assert "duplicate_image" in second["flags"]

    def test_base64_transport_is_not_unusual_compression(self):
        assert self._upload("s1", _make_png()).json()["flags"] == []

    def test_invalid_base64(self):
        resp = self.client.post(
            "/api/v1/evidence",
            json={"subject_id": "s1", "mime_type": "image/png", "image_base64": "***"},
            headers=self.headers,
        )
        assert resp.status_code == 422

    def test_read_with_token(self):
        data   = _make_png()
        stored = self._upload("s1", data).json()
        resp   = self.client.get(
            "/api/v1/evidence/s1",
            params={"token": stored["view_token"], "include_payload": True},
            headers=self.headers,
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["id"] == stored["id"]
        assert "view_token" not in body
        assert base64.b64decode(body["image_base64"]) == data

    def test_wrong_token_and_unknown_subject_identical(self):
        stored  = self._upload("s1", _make_png()).json()
        wrong   = self.client.get("/api/v1/evidence/s1", params={"token": "x"}, headers=self.headers)
        unknown = self.client.get("/api/v1/evidence/zz", params={"token": stored["view_token"]}, headers=self.headers)
        assert wrong.status_code == unknown.status_code == 404
        assert wrong.json() == unknown.json()

    # ── Review ───────────────────────────────────────────────────────────────
    def test_review_flow(self):
        stored = self._upload("s1", _make_png(26, 26)).json()
        queue  = self.client.get("/api/v1/review/queue", headers=self.headers).json()
        assert queue["count"] == 1 and queue["items"][0]["id"] == stored["id"]

        resp = self.client.post(
            f"/api/v1/review/{stored['id']}",
            json={"reviewer_id": "mod-1", "flags": ["blurry"]},
            headers=self.headers,
        )
        assert resp.status_code == 200
        assert resp.json()["fraud_flags"] == ["file_too_small", "blurry"]
        assert self.client.get("/api/v1/review/queue", headers=self.headers).json()["count"] == 0

        again = self.client.post(
            f"/api/v1/review/{stored['id']}", json={"reviewer_id": "mod-2"}, headers=self.headers,
        )
        assert again.status_code == 422

    def test_review_unknown(self):
        resp = self.client.post("/api/v1/review/missing", json={"reviewer_id": "mod-1"}, headers=self.headers)
        assert resp.status_code == 404

    # ── Bans ─────────────────────────────────────────────────────────────────
    def test_ban_lifecycle(self):
        resp = self.client.post(
            "/api/v1/bans",
            json={"identity": RECIPIENT.upper().replace("0X", "0x"), "ban_class": "soft",
                  "reason": "velocity", "actor": "Admin"},
            headers=self.headers,
        )
        assert resp.status_code == 200
        assert resp.json()["banned_by"] == "admin"

        status = self.client.get(f"/api/v1/bans/{RECIPIENT}", headers=self.headers).json()
        assert status["banned"] is True
        assert status["requires_manual_review"] is True
        assert status["blocked"] is False

        assert self.client.get("/api/v1/bans", headers=self.headers).json()["count"] == 1
        assert self.client.delete(f"/api/v1/bans/{RECIPIENT}", headers=self.headers).status_code == 200
        assert self.client.delete(f"/api/v1/bans/{RECIPIENT}", headers=self.headers).status_code == 404
        assert self.client.get("/api/v1/bans", headers=self.headers).json()["count"] == 0
        listed = self.client.get("/api/v1/bans", params={"include_inactive": True}, headers=self.headers)
        assert listed.json()["count"] == 1

    def test_invalid_ban_class(self):
        resp = self.client.post(
            "/api/v1/bans",
            json={"identity": RECIPIENT, "ban_class": "forever", "actor": "admin"},
            headers=self.headers,
        )
        assert resp.status_code == 422

    # ── Claims & ledger ──────────────────────────────────────────────────────
    def test_claim_distributed_and_ledger(self):
        resp = self._claim("c1", _make_png())
        assert resp.status_code == 200
        body = resp.json()
        assert body["outcome"] == "distributed"
        assert body["distribution"]["split"] == {
            "total": "10", "participant": "7", "creator_fund": "1.5", "app_fund": "1.5",
        }
        assert body["distribution"]["participant_tx_ref"].startswith("dryrun-")

        ledger = self.client.get("/api/v1/ledger/c1", headers=self.headers).json()
        assert [leg["status"] for leg in ledger["legs"]] == ["succeeded"] * 3
        assert len(ledger["history"]) == 6

        unsettled = self.client.get("/api/v1/ledger/unsettled", headers=self.headers).json()
        assert unsettled["count"] == 0

    def test_hard_banned_claim(self):
        self.services.bans.add(RECIPIENT, "hard", "fraud ring", "admin")
        resp = self._claim("c1", _make_png())
        assert resp.status_code == 403
        assert resp.json()["outcome"] == "rejected"
        assert "restricted" in resp.json()["message"]

    def test_claim_amount_validation(self):
        assert self._claim("c1", _make_png(), amount="0").status_code == 422
        assert self._claim("c2", _make_png(), amount="5000").status_code == 422

    def test_unknown_ledger_id(self):
        assert self.client.get("/api/v1/ledger/none", headers=self.headers).status_code == 404

    def test_storage_stats(self):
        self._upload("s1", _make_png())
        stats = self.client.get("/api/v1/storage/stats", headers=self.headers).json()
        assert stats["total_records"] == 1
        assert stats["retention_days"] == 30

    # ── Error mapping ────────────────────────────────────────────────────────
    def test_storage_failure_is_503(self):
        with patch.object(self.services.evidence, "store", side_effect=StorageFailure("down")):
            resp = self._upload("s1", _make_png())
        assert resp.status_code == 503

    def test_missing_distributor_config_is_503(self):
        self.services.distributor.client = None
        resp = self._claim("c1", _make_png())
        assert resp.status_code == 503
