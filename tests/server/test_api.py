"""Tests for FastAPI server endpoints."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import httpx
import pytest
from fastapi.testclient import TestClient

from guardsync.core.errors import (
    ConflictError,
    InvalidCategory,
    InvalidRuleConfig,
    JobNotRetryable,
    PolicyNotFound,
    RuleNotResolved,
)
from guardsync.engine.engine import Engine
from guardsync.rules.categories import CATALOG_VERSION, RuleCategory
from guardsync.server.api.deps import http_error
from guardsync.server.app import create_app
from guardsync.server.models import Child, Policy

C = RuleCategory


@pytest.fixture
def client(engine: Engine) -> TestClient:
    """Create a test client; the engine fixture is already started."""
    app = create_app(engine, run_scheduler=False)
    return TestClient(app)


@pytest.fixture
def active_policy(child: Child, make_policy: Callable[..., Policy]) -> Policy:
    return make_policy(
        child.id,
        "Base",
        1,
        {C.TIME_DAILY_LIMIT: {"daily_minutes": 90}, C.CONTENT_RATING: {"max_ratings": {"mpaa": "PG"}}},
    )


def create_policy(client: TestClient, child_id: str, **body: Any) -> dict:
    response = client.post(f"/api/children/{child_id}/policies", json={"name": "P", **body})
    assert response.status_code == 201
    return response.json()


def register_device(client: TestClient, child_id: str) -> dict:
    response = client.post(
        f"/api/children/{child_id}/devices",
        json={"platform_id": "platform_a", "device_name": "Tablet"},
    )
    assert response.status_code == 201
    return response.json()


class TestHealthEndpoint:
    """Tests for /health endpoint."""

    def test_health_check(self, client: TestClient, engine: Engine) -> None:
        """Should return ok with dispatch pool load."""
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["dispatch_workers"] == engine.config.dispatch_workers
        assert data["active_calls"] == 0


class TestFamilyEndpoints:
    """Tests for families and children."""

    def test_create_family_and_child(self, client: TestClient) -> None:
        family = client.post("/api/families", json={"name": "Smith"}).json()

        response = client.post(
            f"/api/families/{family['id']}/children",
            json={"name": "Alex", "birth_date": "2015-04-02"},
        )

        assert response.status_code == 201
        child = response.json()
        assert child["family_id"] == family["id"]
        assert child["birth_date"] == "2015-04-02"
        listed = client.get(f"/api/families/{family['id']}/children").json()
        assert [c["id"] for c in listed] == [child["id"]]

    def test_unknown_family(self, client: TestClient) -> None:
        assert client.get("/api/families/missing").status_code == 404
        assert client.post("/api/families/missing/children", json={"name": "A"}).status_code == 404

    def test_unknown_child(self, client: TestClient) -> None:
        assert client.get("/api/children/missing").status_code == 404

    def test_empty_name_rejected(self, client: TestClient) -> None:
        assert client.post("/api/families", json={"name": ""}).status_code == 422


class TestPolicyEndpoints:
    """Tests for policy and rule routes."""

    def test_create_and_get(self, client: TestClient, child: Child) -> None:
        policy = create_policy(client, child.id, priority=4)
        assert policy["version"] == 1
        assert policy["status"] == "draft"

        response = client.get(f"/api/policies/{policy['id']}")
        assert response.status_code == 200
        assert response.json()["priority"] == 4

    def test_update_with_stale_version(self, client: TestClient, child: Child) -> None:
        """Should return 409 when expected_version is out of date."""
        policy = create_policy(client, child.id)
        first = client.patch(
            f"/api/policies/{policy['id']}", json={"expected_version": 1, "name": "A"}
        )
        assert first.status_code == 200
        assert first.json()["version"] == 2

        stale = client.patch(f"/api/policies/{policy['id']}", json={"expected_version": 1, "name": "B"})
        assert stale.status_code == 409

    def test_writes_require_a_version(self, client: TestClient, child: Child) -> None:
        """Should reject policy writes that do not name the version they were based on."""
        policy = create_policy(client, child.id)
        url = f"/api/policies/{policy['id']}"

        assert client.patch(url, json={"name": "A"}).status_code == 422
        assert client.post(f"{url}/pause").status_code == 422
        assert client.delete(url).status_code == 422
        assert client.post(f"{url}/rules", json={"category": "web_safesearch"}).status_code == 422
        assert client.get(url).json()["version"] == 1

    def test_activate_and_pause(self, client: TestClient, child: Child) -> None:
        policy = create_policy(client, child.id)
        activated = client.post(f"/api/policies/{policy['id']}/activate", json={"expected_version": 1})
        assert activated.json()["status"] == "active"

        paused = client.post(f"/api/policies/{policy['id']}/pause", json={"expected_version": 2})
        assert paused.json()["status"] == "paused"

    def test_soft_delete(self, client: TestClient, child: Child) -> None:
        policy = create_policy(client, child.id)
        stale = client.delete(f"/api/policies/{policy['id']}", params={"expected_version": 7})
        assert stale.status_code == 409

        response = client.delete(f"/api/policies/{policy['id']}", params={"expected_version": 1})
        assert response.status_code == 200
        assert response.json()["deleted_at"] is not None
        assert client.get(f"/api/policies/{policy['id']}").status_code == 404
        assert client.get(f"/api/children/{child.id}/policies").json() == []

    def test_rule_lifecycle(self, client: TestClient, child: Child) -> None:
        policy = create_policy(client, child.id)
        base = f"/api/policies/{policy['id']}/rules"

        created = client.post(
            base,
            json={"expected_version": 1, "category": "time_daily_limit", "config": {"daily_minutes": 60}},
        )
        assert created.status_code == 201
        assert created.json()["config"] == {"daily_minutes": 60}

        updated = client.patch(
            f"{base}/time_daily_limit", json={"expected_version": 2, "enabled": False}
        )
        assert updated.json()["enabled"] is False

        deleted = client.delete(f"{base}/time_daily_limit", params={"expected_version": 3})
        assert deleted.status_code == 204
        assert client.get(f"{base}/time_daily_limit").status_code == 404

    def test_invalid_rule_config(self, client: TestClient, child: Child) -> None:
        policy = create_policy(client, child.id)
        response = client.post(
            f"/api/policies/{policy['id']}/rules",
            json={
                "expected_version": 1,
                "category": "time_daily_limit",
                "config": {"daily_minutes": -1},
            },
        )
        assert response.status_code == 422

    def test_unknown_category(self, client: TestClient, child: Child) -> None:
        policy = create_policy(client, child.id)
        response = client.post(
            f"/api/policies/{policy['id']}/rules", json={"expected_version": 1, "category": "nope"}
        )
        assert response.status_code == 422

    def test_duplicate_rule(self, client: TestClient, child: Child) -> None:
        policy = create_policy(client, child.id)
        url = f"/api/policies/{policy['id']}/rules"
        body = {"category": "web_safesearch", "config": {"enabled": True}}
        assert client.post(url, json={**body, "expected_version": 1}).status_code == 201
        assert client.post(url, json={**body, "expected_version": 2}).status_code == 409

    def test_bulk_upsert(self, client: TestClient, child: Child) -> None:
        policy = create_policy(client, child.id)
        response = client.put(
            f"/api/policies/{policy['id']}/rules",
            json={
                "expected_version": 1,
                "rules": [
                    {"category": "web_safesearch", "config": {"enabled": True}},
                    {"category": "time_daily_limit", "config": {"daily_minutes": 30}},
                ],
            },
        )
        assert response.status_code == 200
        assert {r["category"] for r in response.json()} == {"web_safesearch", "time_daily_limit"}

    def test_defaults_need_an_age(self, client: TestClient, child: Child) -> None:
        """Should reject defaults for a child without birth date unless age is given."""
        policy = create_policy(client, child.id)
        url = f"/api/policies/{policy['id']}/defaults"

        assert client.post(url, json={"expected_version": 1}).status_code == 422

        response = client.post(url, json={"expected_version": 1, "age": 8})
        assert response.status_code == 200
        by_category = {r["category"]: r for r in response.json()}
        assert by_category["time_daily_limit"]["config"] == {"daily_minutes": 90}

    def test_resolved_without_active_policy(self, client: TestClient, child: Child) -> None:
        create_policy(client, child.id)
        response = client.get(f"/api/children/{child.id}/resolved")
        assert response.status_code == 409
        assert response.json()["detail"] == "no active policy"

    def test_resolved(self, client: TestClient, child: Child, active_policy: Policy) -> None:
        response = client.get(f"/api/children/{child.id}/resolved")
        assert response.status_code == 200
        data = response.json()
        assert data["primary_policy_id"] == active_policy.id
        assert {r["category"] for r in data["rules"]} == {"time_daily_limit", "content_rating"}


class TestCatalogEndpoints:
    """Tests for the category and capability catalog."""

    def test_categories(self, client: TestClient) -> None:
        data = client.get("/api/categories").json()
        assert data["version"] == CATALOG_VERSION
        names = {c["category"] for c in data["categories"]}
        assert names == {c.value for c in RuleCategory}

    def test_platforms(self, client: TestClient) -> None:
        platforms = client.get("/api/platforms").json()
        assert [p["platform_id"] for p in platforms] == ["platform_a", "platform_b"]
        assert client.get("/api/platforms/missing").status_code == 404

    def test_source_types_and_guide(self, client: TestClient) -> None:
        (source_type,) = client.get("/api/source-types").json()
        assert source_type["slug"] == "tracker"
        assert set(source_type["tiers"]) == {"managed", "guided"}

        steps = client.get("/api/source-types/tracker/guide/time_daily_limit").json()
        assert [s["step_number"] for s in steps] == [1, 2]


class TestLinkEndpoints:
    """Tests for compliance links."""

    def test_create_and_verify(self, client: TestClient, child: Child) -> None:
        url = f"/api/families/{child.family_id}/links"
        created = client.post(url, json={"platform_id": "platform_a"})
        assert created.status_code == 201
        assert created.json()["status"] == "unverified"

        verified = client.patch(f"/api/links/{created.json()['id']}", json={"status": "verified"})
        assert verified.json()["verified_at"] is not None

    def test_duplicate_link(self, client: TestClient, child: Child) -> None:
        url = f"/api/families/{child.family_id}/links"
        client.post(url, json={"platform_id": "platform_a"})
        assert client.post(url, json={"platform_id": "platform_a"}).status_code == 409

    def test_unknown_platform(self, client: TestClient, child: Child) -> None:
        response = client.post(f"/api/families/{child.family_id}/links", json={"platform_id": "nope"})
        assert response.status_code == 404


class TestEnforcementEndpoints:
    """Tests for enforcement jobs."""

    def test_trigger_and_poll(
        self,
        client: TestClient,
        engine: Engine,
        child: Child,
        active_policy: Policy,
        verified_links: None,
    ) -> None:
        """Should accept the job immediately and settle it in the background."""
        response = client.post(f"/api/children/{child.id}/enforce")
        assert response.status_code == 202
        job = response.json()
        assert job["policy_id"] == active_policy.id
        assert {r["platform_id"] for r in job["results"]} == {"platform_a", "platform_b"}

        assert engine.enforcement.wait(job["id"], timeout=10)

        settled = client.get(f"/api/jobs/{job['id']}").json()
        assert settled["status"] == "completed"
        by_platform = {r["platform_id"]: r for r in settled["results"]}
        assert by_platform["platform_a"]["rules_applied"] == 2
        assert by_platform["platform_b"]["rules_applied"] == 1
        assert [j["id"] for j in client.get(f"/api/children/{child.id}/jobs").json()] == [job["id"]]

    def test_without_active_policy(self, client: TestClient, child: Child) -> None:
        response = client.post(f"/api/children/{child.id}/enforce")
        assert response.status_code == 409
        assert response.json()["detail"] == "no active policy"

    def test_unlinked_platform(
        self, client: TestClient, child: Child, active_policy: Policy
    ) -> None:
        response = client.post(
            f"/api/children/{child.id}/enforce", json={"platform_ids": ["platform_a"]}
        )
        assert response.status_code == 409

    def test_unknown_job(self, client: TestClient) -> None:
        assert client.get("/api/jobs/missing").status_code == 404
        assert client.post("/api/jobs/missing/retry").status_code == 404


class TestSourceEndpoints:
    """Tests for sources and sync jobs."""

    def test_connect_and_sync(
        self, client: TestClient, engine: Engine, child: Child, active_policy: Policy
    ) -> None:
        connected = client.post(f"/api/children/{child.id}/sources", json={"slug": "tracker"})
        assert connected.status_code == 201
        source = connected.json()
        assert source["api_tier"] == "managed"

        response = client.post(f"/api/sources/{source['id']}/sync")
        assert response.status_code == 202
        job = response.json()
        assert engine.sync.wait(job["id"], timeout=10)

        settled = client.get(f"/api/sync-jobs/{job['id']}").json()
        assert settled["status"] == "completed"
        assert settled["rules_pushed"] == 2
        assert client.get(f"/api/sources/{source['id']}").json()["sync_version"] == 1

    def test_unknown_source_type(self, client: TestClient, child: Child) -> None:
        response = client.post(f"/api/children/{child.id}/sources", json={"slug": "nope"})
        assert response.status_code == 404

    def test_connect_twice(self, client: TestClient, child: Child) -> None:
        url = f"/api/children/{child.id}/sources"
        client.post(url, json={"slug": "tracker"})
        assert client.post(url, json={"slug": "tracker", "tier": "guided"}).status_code == 409

    def test_single_rule_needs_category(
        self, client: TestClient, child: Child, active_policy: Policy
    ) -> None:
        source = client.post(f"/api/children/{child.id}/sources", json={"slug": "tracker"}).json()
        response = client.post(f"/api/sources/{source['id']}/sync", json={"mode": "single_rule"})
        assert response.status_code == 422

    def test_disconnect(self, client: TestClient, child: Child) -> None:
        source = client.post(f"/api/children/{child.id}/sources", json={"slug": "tracker"}).json()
        response = client.delete(f"/api/sources/{source['id']}")
        assert response.json()["status"] == "disconnected"


class TestDeviceEndpoints:
    """Tests for device registration and device-authenticated routes."""

    def test_register_returns_key_once(self, client: TestClient, child: Child) -> None:
        registered = register_device(client, child.id)
        assert registered["api_key"].startswith("gsd_")
        device = client.get(f"/api/devices/{registered['device']['id']}").json()
        assert "api_key" not in device

    def test_poll_policy(self, client: TestClient, child: Child, active_policy: Policy) -> None:
        """Should return the snapshot, then report up to date at that version."""
        key = register_device(client, child.id)["api_key"]
        headers = {"Authorization": f"Bearer {key}"}

        first = client.get("/api/device/policy", headers=headers)
        assert first.status_code == 200
        data = first.json()
        assert data["up_to_date"] is False
        assert data["version"] == 1
        assert {r["category"] for r in data["policy"]["rules"]} == {"time_daily_limit", "content_rating"}

        again = client.get("/api/device/policy", params={"since": 1}, headers=headers).json()
        assert again["up_to_date"] is True
        assert again["policy"] is None

    def test_ack_report(self, client: TestClient, child: Child, active_policy: Policy) -> None:
        registered = register_device(client, child.id)
        headers = {"Authorization": f"Bearer {registered['api_key']}"}
        client.get("/api/device/policy", headers=headers)

        response = client.post(
            "/api/device/reports",
            json={"report_type": "policy_ack", "payload": {"policy_version": 1}},
            headers=headers,
        )

        assert response.status_code == 201
        device = client.get(f"/api/devices/{registered['device']['id']}").json()
        assert device["last_policy_version"] == 1
        assert device["status"] == "up_to_date"

    def test_missing_or_bad_key(self, client: TestClient) -> None:
        assert client.get("/api/device/policy").status_code == 401
        response = client.get("/api/device/policy", headers={"Authorization": "Bearer gsd_wrong"})
        assert response.status_code == 401

    def test_revoked_device(self, client: TestClient, child: Child) -> None:
        registered = register_device(client, child.id)
        client.delete(f"/api/devices/{registered['device']['id']}")

        response = client.get(
            "/api/device/policy", headers={"Authorization": f"Bearer {registered['api_key']}"}
        )
        assert response.status_code == 403


class TestWebhookEndpoints:
    """Tests for webhook subscriptions."""

    def test_create_returns_secret(self, client: TestClient, child: Child) -> None:
        response = client.post(
            f"/api/families/{child.family_id}/webhooks",
            json={"url": "https://hooks.example/a", "events": ["enforcement.failed"]},
        )
        assert response.status_code == 201
        data = response.json()
        assert len(data["secret"]) == 64
        assert data["webhook"]["events"] == ["enforcement.failed"]

        webhook = client.get(f"/api/webhooks/{data['webhook']['id']}").json()
        assert "secret" not in webhook

    def test_send_test(
        self, client: TestClient, engine: Engine, child: Child, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Should record a single test delivery even if the endpoint is down."""
        down = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(503)))
        monkeypatch.setattr(engine.webhooks, "_client", down)
        created = client.post(
            f"/api/families/{child.family_id}/webhooks", json={"url": "https://hooks.example/a"}
        ).json()
        webhook_id = created["webhook"]["id"]

        response = client.post(f"/api/webhooks/{webhook_id}/test")

        assert response.status_code == 200
        delivery = response.json()
        assert delivery["event"] == "test"
        assert delivery["attempts"] == 1
        assert delivery["response_code"] == 503
        assert delivery["next_retry_at"] is None
        assert [d["id"] for d in client.get(f"/api/webhooks/{webhook_id}/deliveries").json()] == [
            delivery["id"]
        ]

    def test_delete(self, client: TestClient, child: Child) -> None:
        created = client.post(
            f"/api/families/{child.family_id}/webhooks", json={"url": "https://hooks.example/a"}
        ).json()
        webhook_id = created["webhook"]["id"]
        assert client.delete(f"/api/webhooks/{webhook_id}").status_code == 204
        assert client.get(f"/api/webhooks/{webhook_id}").status_code == 404


class TestAuth:
    """Tests for the guardian API token."""

    @pytest.fixture
    def token(self, engine: Engine) -> str:
        engine.config.api_token = "s3cret"
        return "s3cret"

    def test_requires_token(self, client: TestClient, token: str) -> None:
        """Should reject guardian routes without a valid token."""
        assert client.post("/api/families", json={"name": "Smith"}).status_code == 401
        response = client.post(
            "/api/families", json={"name": "Smith"}, headers={"Authorization": "Bearer nope"}
        )
        assert response.status_code == 401

    def test_accepts_token(self, client: TestClient, token: str) -> None:
        response = client.post(
            "/api/families", json={"name": "Smith"}, headers={"Authorization": f"Bearer {token}"}
        )
        assert response.status_code == 201

    def test_health_is_open(self, client: TestClient, token: str) -> None:
        assert client.get("/health").status_code == 200


class TestHttpError:
    """Tests for mapping domain errors to HTTP status codes."""

    @pytest.mark.parametrize(
        ("error", "code"),
        [
            (PolicyNotFound("gone"), 404),
            (InvalidCategory("nope"), 422),
            (InvalidRuleConfig("time_daily_limit", "bad"), 422),
            (RuleNotResolved("unresolved"), 422),
            (ValueError("no birth date"), 422),
            (ConflictError("stale"), 409),
            (JobNotRetryable("running"), 409),
            (RuntimeError("boom"), 500),
        ],
    )
    def test_status_codes(self, error: Exception, code: int) -> None:
        assert http_error(error).status_code == code
