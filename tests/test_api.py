"""End-to-end tests for the HTTP API."""

import httpx
import pytest

from consensus_api import dependencies
from consensus_api.app import app
from consensus_api.captcha import BotChallengeGate
from consensus_api.config import Settings
from consensus_api.dependencies import get_challenge_gate, get_rate_limiters
from consensus_api.rate_limiter import (
    CHALLENGE_FALLBACK_SCOPE, MemoryRateLimitStore, RateLimiterRegistry
)
from consensus_api.routes import maintenance as maintenance_routes
from tests.conftest import GENERALIST, PLAN_A, PLAN_B, PSYCHIATRIST


def submit(client, origin="10.0.0.1", **overrides):
    body = {"subject_id": PSYCHIATRIST, "claim_id": PLAN_A, "accepts": True}
    body.update(overrides)
    return client.post("/api/verifications", json=body, headers={"x-test-origin": origin})


def vote(client, submission_id, direction, origin="voter-1"):
    return client.post(
        f"/api/verifications/{submission_id}/vote",
        json={"direction": direction},
        headers={"x-test-origin": origin},
    )


@pytest.fixture
def use_limits(client):
    """Swap in a registry with custom limits for the current test."""

    def _use(**limits):
        registry = RateLimiterRegistry(
            MemoryRateLimitStore(), settings=Settings(environment="test", **limits)
        )
        app.dependency_overrides[get_rate_limiters] = lambda: registry
        return registry

    return _use


@pytest.fixture
def use_challenge(client):
    """Enable the bot challenge against a mock adjudication service."""

    def _use(handler, fail_mode="open"):
        settings = Settings(
            environment="production",
            challenge_secret="s3cret",
            challenge_fail_mode=fail_mode,
        )
        registry = RateLimiterRegistry(MemoryRateLimitStore(), settings=settings)
        gate = BotChallengeGate(
            registry.get(CHALLENGE_FALLBACK_SCOPE),
            settings=settings,
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        app.dependency_overrides[get_challenge_gate] = lambda: gate
        return gate

    return _use


class TestSubmit:

    def test_submit_returns_submission_and_aggregate(self, client):
        response = submit(client, note="Called the front desk", submitted_by="pat@example.com")

        assert response.status_code == 201
        data = response.json()
        assert data["message"] == "Verification submitted successfully"
        assert data["submission"]["accepts"] is True
        assert data["submission"]["data_source"] == "CROWDSOURCE"
        assert data["aggregate"]["status"] == "PENDING"
        assert data["aggregate"]["verification_count"] == 1
        assert data["aggregate"]["metadata"]["freshness_category"] == "MENTAL_HEALTH"

    def test_identifying_fields_are_never_returned(self, client):
        response = submit(client, submitted_by="pat@example.com")

        submission = response.json()["submission"]
        assert "origin_fingerprint" not in submission
        assert "submitted_by" not in submission
        assert "pat@example.com" not in response.text

    def test_rate_limit_headers_on_success(self, client):
        response = submit(client)

        assert response.headers["X-RateLimit-Limit"] == "10"
        assert response.headers["X-RateLimit-Remaining"] == "9"
        assert "X-RateLimit-Reset" in response.headers

    def test_validation_errors_return_400(self, client):
        response = client.post("/api/verifications", json={"subject_id": PSYCHIATRIST})

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        fields = {detail["field"] for detail in error["details"]}
        assert {"claim_id", "accepts"} <= fields

    def test_bad_email_and_url_are_rejected(self, client):
        assert submit(client, submitted_by="not-an-email").status_code == 400
        assert submit(client, evidence_url="ftp://example.com/x").status_code == 400

    def test_invalid_input_does_not_charge_the_limiter(self, client, use_limits):
        use_limits(submit_rate_limit=1)

        invalid = client.post("/api/verifications", json={}, headers={"x-test-origin": "10.0.0.1"})
        assert invalid.status_code == 400
        assert submit(client).status_code == 201
        assert submit(client, claim_id=PLAN_B).status_code == 429

    def test_submit_rate_limit(self, client, use_limits):
        use_limits(submit_rate_limit=2)

        submit(client, claim_id=PLAN_A)
        submit(client, claim_id=PLAN_B)
        response = submit(client, subject_id=GENERALIST)

        assert response.status_code == 429
        error = response.json()["error"]
        assert error["code"] == "RATE_LIMITED"
        assert error["retry_after"] > 0
        assert int(response.headers["Retry-After"]) > 0
        assert response.headers["X-RateLimit-Remaining"] == "0"

    def test_rate_limit_is_per_origin(self, client, use_limits):
        use_limits(submit_rate_limit=1)

        assert submit(client, origin="a").status_code == 201
        assert submit(client, origin="b").status_code == 201

    def test_honeypot_pretends_success(self, client):
        response = submit(client, website="http://spam.example")

        assert response.status_code == 201
        assert response.json() == {"message": "Verification submitted successfully"}

        pair = client.get(f"/api/verifications/{PSYCHIATRIST}/{PLAN_A}").json()
        assert pair["submissions"] == []
        assert pair["aggregate"] is None

    def test_unknown_provider_or_plan(self, client):
        response = submit(client, subject_id="9999999999")
        assert response.status_code == 404
        assert response.json()["error"]["message"] == "Provider 9999999999 not found"

        response = submit(client, claim_id="NOPE")
        assert response.status_code == 404
        assert response.json()["error"]["message"] == "Plan NOPE not found"

    def test_duplicate_submission_conflicts(self, client):
        assert submit(client).status_code == 201

        response = submit(client, accepts=False)

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "DUPLICATE_SUBMISSION"
        assert response.headers["X-RateLimit-Limit"] == "10"
        assert response.headers["X-RateLimit-Remaining"] == "8"

    def test_submitter_email_match_ignores_case(self, client):
        assert submit(client, origin="a", submitted_by="Pat@Example.com").status_code == 201

        response = submit(client, origin="b", submitted_by="pat@example.com")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "DUPLICATE_SUBMISSION"

    def test_three_agreeing_origins_reach_consensus(self, client):
        statuses = [
            submit(client, origin=origin).json()["aggregate"]["status"]
            for origin in ("a", "b", "c")
        ]

        assert statuses == ["PENDING", "PENDING", "ACCEPTED"]

        pair = client.get(f"/api/verifications/{PSYCHIATRIST}/{PLAN_A}").json()
        assert pair["aggregate"]["confidence_score"] == 70
        assert pair["aggregate"]["factors"] == {
            "data_source_score": 15,
            "recency_score": 30,
            "verification_score": 25,
            "agreement_score": 0,
        }
        assert pair["summary"]["total_submissions"] == 3

    def test_narrow_majority_stays_pending(self, client):
        for origin, accepts in (("a", True), ("b", True), ("c", False), ("d", False)):
            response = submit(client, origin=origin, accepts=accepts)

        assert response.json()["aggregate"]["status"] == "PENDING"


class TestChallenge:

    def test_missing_token_is_rejected(self, client, use_challenge):
        use_challenge(lambda request: httpx.Response(200, json={"success": True, "score": 0.9}))

        response = submit(client)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "CHALLENGE_REQUIRED"
        assert response.headers["X-RateLimit-Remaining"] == "9"

    def test_token_in_body_or_header(self, client, use_challenge):
        use_challenge(lambda request: httpx.Response(200, json={"success": True, "score": 0.9}))

        assert submit(client, origin="a", challenge_token="tok").status_code == 201
        response = client.post(
            "/api/verifications",
            json={"subject_id": PSYCHIATRIST, "claim_id": PLAN_A, "accepts": True},
            headers={"x-test-origin": "b", "X-Challenge-Token": "tok"},
        )
        assert response.status_code == 201

    def test_low_score_is_forbidden(self, client, use_challenge):
        use_challenge(lambda request: httpx.Response(200, json={"success": True, "score": 0.1}))

        response = submit(client, challenge_token="tok")

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "CHALLENGE_SUSPICIOUS"

    def test_outage_fail_open_marks_response_degraded(self, client, use_challenge):
        def refuse(request):
            raise httpx.ConnectError("down", request=request)

        use_challenge(refuse, fail_mode="open")

        response = submit(client, challenge_token="tok")

        assert response.status_code == 201
        assert response.headers["X-Security-Degraded"] == "challenge-unavailable"
        assert response.headers["X-Fallback-RateLimit-Remaining"] == "2"
        assert response.headers["X-RateLimit-Remaining"] == "9"

    def test_outage_fail_closed_is_503(self, client, use_challenge):
        def refuse(request):
            raise httpx.ConnectError("down", request=request)

        use_challenge(refuse, fail_mode="closed")

        response = submit(client, challenge_token="tok")

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "CHALLENGE_UNAVAILABLE"


class TestVotes:

    def test_vote_lifecycle(self, client):
        submission_id = submit(client).json()["submission"]["id"]

        first = vote(client, submission_id, "up")
        assert first.status_code == 200
        assert first.json()["message"] == "Vote recorded: up"
        assert first.json()["vote"]["upvotes"] == 1
        assert first.headers["X-RateLimit-Limit"] == "10"

        repeat = vote(client, submission_id, "up")
        assert repeat.status_code == 409
        assert repeat.json()["error"]["code"] == "DUPLICATE_VOTE"

        flipped = vote(client, submission_id, "down")
        assert flipped.status_code == 200
        assert flipped.json()["message"] == "Vote changed to: down"
        assert flipped.json()["vote"]["upvotes"] == 0
        assert flipped.json()["vote"]["downvotes"] == 1

    def test_vote_on_missing_submission(self, client):
        response = vote(client, 424242, "up")

        assert response.status_code == 404
        assert response.json()["error"]["message"] == "Verification not found"

    def test_invalid_direction(self, client):
        submission_id = submit(client).json()["submission"]["id"]

        assert vote(client, submission_id, "sideways").status_code == 400

    def test_vote_rate_limit(self, client, use_limits):
        use_limits(vote_rate_limit=1)
        submission_id = submit(client).json()["submission"]["id"]

        assert vote(client, submission_id, "up").status_code == 200
        assert vote(client, submission_id, "down").status_code == 429


class TestReads:

    def test_pair_not_found(self, client):
        response = client.get(f"/api/verifications/{PSYCHIATRIST}/NOPE")

        assert response.status_code == 404
        assert response.json()["error"]["message"] == "Provider or plan not found"

    def test_pair_without_submissions(self, client):
        response = client.get(f"/api/verifications/{GENERALIST}/{PLAN_B}")

        assert response.status_code == 200
        assert response.json()["aggregate"] is None
        assert response.json()["submissions"] == []

    def test_recent_newest_first_with_filters(self, client):
        first = submit(client, origin="a").json()["submission"]["id"]
        second = submit(client, origin="b", claim_id=PLAN_B).json()["submission"]["id"]

        recent = client.get("/api/verifications/recent").json()
        assert [s["id"] for s in recent["submissions"]] == [second, first]

        filtered = client.get("/api/verifications/recent", params={"claim_id": PLAN_A}).json()
        assert filtered["count"] == 1
        assert filtered["submissions"][0]["id"] == first

        assert client.get("/api/verifications/recent", params={"limit": 0}).status_code == 400
        assert client.get("/api/verifications/recent", params={"limit": 101}).status_code == 400

    def test_search_rate_limit_scope(self, client, use_limits):
        use_limits(search_rate_limit=1)

        assert client.get("/api/verifications/recent").status_code == 200
        assert client.get("/api/verifications/recent").status_code == 429
        # Other scopes are unaffected
        assert client.get("/api/verifications/stats").status_code == 200

    def test_stats(self, client):
        submit(client, origin="a")
        submit(client, origin="b", claim_id=PLAN_B)

        stats = client.get("/api/verifications/stats").json()

        assert stats["total"] == 2
        assert stats["pending_review"] == 2
        assert stats["recent_count"] == 2
        assert stats["by_source"]["CROWDSOURCE"] == 2
        assert stats["by_status"]["PENDING"] == 2


class TestMaintenance:

    def test_sweep_dry_run(self, client):
        submit(client)

        response = client.post("/api/maintenance/sweep", json={"dry_run": True})

        assert response.status_code == 200
        assert response.json()["dry_run"] is True
        assert response.json()["expired_submissions"] == 0

    def test_sweep_without_body(self, client):
        assert client.post("/api/maintenance/sweep").status_code == 200

    def test_recalculate(self, client):
        submit(client)

        response = client.post("/api/maintenance/recalculate", json={})

        assert response.status_code == 200
        assert response.json()["processed"] == 1

    def test_recalculate_in_background(self, client, session_factory, monkeypatch):
        monkeypatch.setattr(maintenance_routes, "SessionLocal", session_factory)
        submit(client)

        response = client.post("/api/maintenance/recalculate-async")

        assert response.status_code == 200
        assert response.json()["status"] == "running"
        runs = client.get("/api/maintenance/status").json()["recent_runs"]
        assert runs[0]["job"] == "recalculate"
        assert runs[0]["processed"] == 1

    def test_status_lists_runs(self, client):
        client.post("/api/maintenance/sweep")

        status = client.get("/api/maintenance/status").json()

        assert status["recent_runs"][0]["job"] == "sweep"
        assert status["scheduler"]["running"] is False

    def test_expiration_stats(self, client):
        submit(client)

        stats = client.get("/api/maintenance/expiration-stats").json()

        assert stats["submissions"]["total"] == 1
        assert stats["submissions"]["expired"] == 0

    def test_abuse_report(self, client):
        submit(client, origin="a")

        report = client.get("/api/maintenance/abuse-report", params={"threshold": 1}).json()

        assert report["flagged_count"] == 1
        assert len(report["origins"][0]["origin_digest"]) == 16

    def test_api_key_required_when_configured(self, client, monkeypatch):
        monkeypatch.setattr(
            dependencies, "get_settings", lambda: Settings(environment="test", api_key="secret")
        )

        denied = client.post("/api/maintenance/sweep")
        assert denied.status_code == 403
        assert denied.json()["error"]["code"] == "FORBIDDEN"

        allowed = client.post("/api/maintenance/sweep", headers={"X-API-Key": "secret"})
        assert allowed.status_code == 200

    def test_health(self, client):
        submit(client)

        health = client.get("/api/maintenance/health").json()

        assert health["status"] == "healthy"
        assert health["database_connected"] is True
        assert health["submissions_count"] == 1
        assert health["aggregates_count"] == 1


def test_root_endpoints(client):
    assert client.get("/health").json()["status"] == "ok"
    assert client.get("/").json()["endpoints"]["verifications"] == "/api/verifications"
