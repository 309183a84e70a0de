"""
API endpoint tests using httpx ASGITransport.
"""
from unittest.mock import patch

import pytest

from conftest import OPERATOR_KEY
from verdict.infrastructure.config import Settings
from verdict.services.leaderboard import LeaderboardService

AUTH = {"X-Resolution-Key": OPERATOR_KEY}


class TestHealth:

    async def test_root(self, client):
        response = await client.get("/")
        assert response.status_code == 200
        assert response.json()["service"] == "Verdict API"

    async def test_live(self, client):
        response = await client.get("/health/live")
        assert response.json() == {"alive": True}

    async def test_ready_with_database(self, client):
        response = await client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["checks"]["database"] == "ok"


class TestOperatorAuth:

    async def test_missing_credential(self, client):
        response = await client.post("/api/resolve/run")
        assert response.status_code == 401
        assert response.json()["error"]["type"] == "HTTPException"

    async def test_wrong_credential(self, client):
        response = await client.post("/api/resolve/run", headers={"X-Resolution-Key": "nope"})
        assert response.status_code == 401

    async def test_header_credential(self, client):
        response = await client.post("/api/resolve/run", headers=AUTH)
        assert response.status_code == 200

    async def test_bearer_credential(self, client):
        response = await client.post(
            "/api/resolve/run", headers={"Authorization": f"Bearer {OPERATOR_KEY}"},
        )
        assert response.status_code == 200

    async def test_unconfigured_key_is_503(self, client, tmp_path):
        bare = Settings(database_url=f"sqlite:///{tmp_path / 'verdict.db'}", resolution_key=None)
        with patch("verdict.infrastructure.auth.get_settings", return_value=bare):
            response = await client.post("/api/resolve/run", headers=AUTH)
        assert response.status_code == 503
        assert response.json()["error"]["type"] == "NotConfiguredError"


class TestResolutionEndpoints:

    async def test_run_returns_summary(self, client, add_insight):
        await add_insight("p1")
        await add_insight("u1", resolver_kind="URL", canonical="Launch announced")

        response = await client.post("/api/resolve/run", headers=AUTH)

        assert response.status_code == 200
        body = response.json()
        assert body["resolved"] == 1
        assert body["skipped"] == 1
        assert body["outcomes"]["YES"] == 1

    async def test_budget_must_be_positive(self, client):
        response = await client.post("/api/resolve/run?budget_seconds=0", headers=AUTH)
        assert response.status_code == 422

    async def test_disabled_engine_is_503(self, client):
        client.engine.enabled = False
        response = await client.post("/api/resolve/run", headers=AUTH)
        assert response.status_code == 503
        assert response.json()["error"]["type"] == "ResolutionDisabledError"

    async def test_status_never_exposes_key(self, client, add_insight):
        await add_insight("p1")
        await client.post("/api/resolve/run", headers=AUTH)

        response = await client.get("/api/resolve/status")

        assert response.status_code == 200
        body = response.json()
        assert body["configured"] is True
        assert body["enabled"] is True
        assert body["sources"] == ["coingecko"]
        assert body["last_run"]["resolved"] == 1
        assert OPERATOR_KEY not in response.text

    async def test_confirm_unknown_insight(self, client):
        response = await client.post(
            "/api/resolve/confirm", headers=AUTH, json={"insight_id": "missing", "result": "YES"},
        )
        assert response.status_code == 404

    async def test_confirm_price_insight_rejected(self, client, add_insight):
        await add_insight("p1")
        response = await client.post(
            "/api/resolve/confirm", headers=AUTH, json={"insight_id": "p1", "result": "YES"},
        )
        assert response.status_code == 400

    async def test_confirm_url_insight(self, client, add_insight):
        await add_insight("u1", resolver_kind="URL", canonical="Launch announced")
        payload = {
            "insight_id": "u1",
            "result": "NO",
            "evidence_url": "https://example.com/postponed",
            "reasoning": "launch postponed",
        }

        response = await client.post("/api/resolve/confirm", headers=AUTH, json=payload)

        assert response.status_code == 200
        outcome = response.json()["outcome"]
        assert outcome["result"] == "NO"
        assert outcome["decided_by"] == "USER"

        again = await client.post("/api/resolve/confirm", headers=AUTH, json=payload)
        assert again.status_code == 409

    async def test_confirm_reasoning_length_limited(self, client):
        response = await client.post(
            "/api/resolve/confirm",
            headers=AUTH,
            json={"insight_id": "u1", "result": "YES", "reasoning": "x" * 501},
        )
        assert response.status_code == 422

    async def test_repair(self, client, add_insight, add_outcome):
        await add_insight("half")
        await add_outcome("half", "NO")

        response = await client.post("/api/resolve/repair", headers=AUTH)
        assert response.json()["status_flipped"] == ["half"]


class TestScoreEndpoints:

    async def test_invalid_window_is_400(self, client):
        response = await client.get("/api/leaderboard?window=7d")
        assert response.status_code == 400

    async def test_leaderboard(self, client, add_resolved, score_service):
        await add_resolved("a1", "alice", 0.9, "YES")
        await add_resolved("b1", "bob", 0.3, "YES")
        await score_service.recompute_all()

        with patch(
            "verdict.services.leaderboard.get_leaderboard_service",
            return_value=LeaderboardService(score_service),
        ):
            response = await client.get("/api/leaderboard?window=all&limit=1")

        assert response.status_code == 200
        body = response.json()
        assert body["window"] == "ALL"
        assert body["total_creators"] == 2
        assert [e["creator_id"] for e in body["entries"]] == ["alice"]
        assert body["entries"][0]["badges"] == ["top1"]

    async def test_creator_score(self, client, add_resolved, score_service):
        await add_resolved("a1", "alice", 0.9, "YES")
        await score_service.recompute_all()

        response = await client.get("/api/creators/alice/score")

        assert response.status_code == 200
        body = response.json()
        assert body["all_time"]["sample_count"] == 1
        assert body["all_time"]["score"] == pytest.approx(0.99)

    async def test_unknown_creator_has_null_windows(self, client):
        response = await client.get("/api/creators/nobody/score")
        assert response.status_code == 200
        assert response.json() == {"creator_id": "nobody", "all_time": None, "last_90d": None}

    async def test_recompute_requires_operator(self, client):
        assert (await client.post("/api/scores/recompute")).status_code == 401

        response = await client.post("/api/scores/recompute", headers=AUTH)
        assert response.status_code == 200
        assert response.json()["creators"] == 0
