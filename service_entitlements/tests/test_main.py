"""
Unit tests for Entitlements main service.
"""

from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import httpx
import pytest
from fastapi.testclient import TestClient

from shared.config import get_config
from service_entitlements.app.main import EntitlementsService
from service_entitlements.app.providers.memory import InMemoryRoleProvider, InMemorySubscriptionProvider
from service_entitlements.app.providers.supabase import SupabaseClient
from service_entitlements.app.rules.models import AuthenticatedUser, Role

from .conftest import NOW, make_subscription

USERS = {
    "student-token": AuthenticatedUser(user_id="student-1", email="ada@jss.example"),
    "premium-token": AuthenticatedUser(user_id="student-2", email="bola@jss.example"),
    "teacher-token": AuthenticatedUser(user_id="teacher-1", email="tunde@jss.example"),
    "admin-token": AuthenticatedUser(user_id="admin-1", email="amaka@jss.example"),
}


def auth(token):
    return {"Authorization": f"Bearer {token}"}


class TestEntitlementsService:
    """Test cases for EntitlementsService."""

    @pytest.fixture
    def role_provider(self):
        return InMemoryRoleProvider({
            "student-1": [Role.STUDENT],
            "student-2": [Role.STUDENT],
            "teacher-1": [Role.TEACHER],
            "admin-1": [Role.ADMIN],
        })

    @pytest.fixture
    def subscription_provider(self):
        return InMemorySubscriptionProvider([
            make_subscription(user_id="student-2", subject_id="BST"),
            make_subscription(user_id="student-2", subject_id="PVS", expires_at=NOW - timedelta(days=1)),
        ])

    @pytest.fixture
    def backend(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/auth/v1/health":
                return httpx.Response(200, json={"name": "GoTrue"})
            return httpx.Response(404, json={})
        return SupabaseClient("http://supabase.test", "anon-key", transport=httpx.MockTransport(handler))

    @pytest.fixture
    def entitlements_service(self, backend, role_provider, subscription_provider, clock):
        """Create EntitlementsService with in-memory providers."""
        async def authenticator(token):
            return USERS.get(token)

        return EntitlementsService(
            config=get_config("entitlements", 8011),
            backend=backend,
            role_provider=role_provider,
            subscription_provider=subscription_provider,
            authenticator=authenticator,
            clock=clock
        )

    @pytest.fixture
    def client(self, entitlements_service):
        """Create test client."""
        return TestClient(entitlements_service.app)

    def test_root_endpoint(self, client):
        """Test root endpoint."""
        response = client.get("/")
        assert response.status_code == 200

        data = response.json()
        assert data["service"] == "entitlements"
        assert "route_guard" in data["capabilities"]

    def test_health_endpoint(self, client):
        """Test health endpoint."""
        response = client.get("/health")
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "ok"
        assert data["dependencies"] == {"supabase": "ok"}

    def test_request_id_echoed(self, client):
        """Request ids are propagated back to the caller."""
        response = client.get("/", headers={"x-request-id": "req-42"})

        assert response.headers["x-request-id"] == "req-42"

    def test_feature_table(self, client):
        """The feature table is exposed for audit."""
        response = client.get("/entitlements/features")
        assert response.status_code == 200

        data = response.json()
        tiers = {entry["feature"]: entry["tier"] for entry in data["features"]}
        assert tiers["solution-bank"] == "premium"
        assert data["free_features"] == ["forum", "subjects"]

    def test_check_free_feature_anonymous(self, client):
        """Anonymous callers can use free features."""
        response = client.post("/entitlements/check", json={"feature": "subjects"})
        assert response.status_code == 200

        data = response.json()
        assert data["allowed"] is True
        assert data["reason"] == "free_feature"

    def test_check_premium_feature_anonymous(self, client):
        """Anonymous callers are asked to sign in for premium features."""
        response = client.post("/entitlements/check", json={"feature": "quizzes"})

        data = response.json()
        assert data["allowed"] is False
        assert data["outcome"] == "unauthenticated"

    def test_check_premium_feature_without_subscription(self, client):
        """Students without premium are denied."""
        response = client.post("/entitlements/check", json={"feature": "quizzes"}, headers=auth("student-token"))

        data = response.json()
        assert data["outcome"] == "denied"
        assert data["reason"] == "no_premium_subscription"

    def test_check_premium_feature_with_subscription(self, client):
        """Premium students are allowed."""
        response = client.post("/entitlements/check", json={"feature": "flashcards"}, headers=auth("premium-token"))

        data = response.json()
        assert data["allowed"] is True
        assert data["bypass"] is False

    def test_check_teacher_bypass(self, client):
        """Teachers bypass subscription checks."""
        response = client.post("/entitlements/check", json={"feature": "student-dashboard"}, headers=auth("teacher-token"))

        data = response.json()
        assert data["allowed"] is True
        assert data["bypass"] is True

    def test_invalid_token_is_anonymous(self, client):
        """Unknown tokens are treated as signed out."""
        response = client.post("/entitlements/check", json={"feature": "quizzes"}, headers=auth("forged"))

        assert response.json()["outcome"] == "unauthenticated"

    def test_guard_redirects(self, client):
        """Guard results carry the redirect target."""
        anonymous = client.get("/guard/quizzes").json()
        student = client.get("/guard/quizzes", headers=auth("student-token")).json()
        premium = client.get("/guard/quizzes", headers=auth("premium-token")).json()

        assert anonymous["action"] == "redirect"
        assert anonymous["location"] == "/auth"
        assert student["location"] == "/subscriptions"
        assert premium["action"] == "render"

    def test_list_subscriptions(self, client):
        """All records are listed, valid or not."""
        response = client.get("/subscriptions", headers=auth("premium-token"))
        assert response.status_code == 200

        assert response.json()["total"] == 2

    def test_list_subscriptions_requires_sign_in(self, client):
        """Subscription endpoints need a user."""
        response = client.get("/subscriptions")
        assert response.status_code == 401

        data = response.json()
        assert data["code"] == "AUTHENTICATION_ERROR"
        assert data["request_id"]

    def test_active_subscriptions(self, client):
        """Only currently valid records are active."""
        response = client.get("/subscriptions/active", headers=auth("premium-token"))

        data = response.json()
        assert [s["subject_id"] for s in data["subscriptions"]] == ["BST"]

    def test_active_subscription_for_subject(self, client):
        """Per-subject lookup returns the active record or 404."""
        found = client.get("/subscriptions/BST/active", headers=auth("premium-token"))
        missing = client.get("/subscriptions/PVS/active", headers=auth("premium-token"))

        assert found.status_code == 200
        assert found.json()["tier"] == "premium"
        assert missing.status_code == 404
        assert missing.json()["code"] == "NOT_FOUND"

    def test_create_premium_subscription(self, client):
        """Subscribing unlocks premium features for the next request."""
        response = client.post(
            "/subscriptions",
            json={"subject_id": "NVE", "tier": "premium"},
            headers=auth("student-token")
        )
        assert response.status_code == 201

        data = response.json()
        assert data["status"] == "active"
        started_at = datetime.fromisoformat(data["started_at"].replace("Z", "+00:00"))
        expires_at = datetime.fromisoformat(data["expires_at"].replace("Z", "+00:00"))
        assert started_at == NOW
        assert expires_at - started_at == timedelta(days=365)

        check = client.post("/entitlements/check", json={"feature": "quizzes"}, headers=auth("student-token"))
        assert check.json()["allowed"] is True

    def test_create_free_subscription_defaults(self, client):
        """Tier defaults to free, which never expires."""
        response = client.post("/subscriptions", json={"subject_id": "PVS"}, headers=auth("student-token"))

        data = response.json()
        assert data["tier"] == "free"
        assert data["expires_at"] is None

    def test_create_subscription_requires_sign_in(self, client):
        """Anonymous callers cannot subscribe."""
        response = client.post("/subscriptions", json={"subject_id": "BST", "tier": "premium"})

        assert response.status_code == 401

    def test_admin_assigns_role(self, client, role_provider):
        """Admins can grant roles."""
        response = client.post(
            "/admin/roles",
            json={"user_id": "student-1", "role": "teacher", "reason": "Joined the teaching staff"},
            headers=auth("admin-token")
        )
        assert response.status_code == 200
        assert response.json()["success"] is True

        check = client.post("/entitlements/check", json={"feature": "quizzes"}, headers=auth("student-token"))
        assert check.json()["bypass"] is True

    def test_admin_revokes_role(self, client):
        """Admins can withdraw roles."""
        response = client.post(
            "/admin/roles",
            json={"user_id": "teacher-1", "role": "teacher", "action": "revoke", "reason": "Left the teaching staff"},
            headers=auth("admin-token")
        )
        assert response.status_code == 200

        check = client.post("/entitlements/check", json={"feature": "quizzes"}, headers=auth("teacher-token"))
        assert check.json()["outcome"] == "denied"

    def test_role_change_needs_reason(self, client):
        """Short reasons are rejected."""
        response = client.post(
            "/admin/roles",
            json={"user_id": "student-1", "role": "admin", "reason": "because"},
            headers=auth("admin-token")
        )

        assert response.status_code == 422
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_role_change_admin_only(self, client):
        """Teachers cannot change roles."""
        response = client.post(
            "/admin/roles",
            json={"user_id": "student-1", "role": "admin", "reason": "Trying to escalate privileges"},
            headers=auth("teacher-token")
        )

        assert response.status_code == 403

    def test_role_change_drops_cached_roles(self, backend, role_provider, subscription_provider, clock):
        """A role change evicts only the target's cached roles."""
        cache = AsyncMock()
        cache.get_roles.return_value = None
        cache.get_subscriptions.return_value = None

        async def authenticator(token):
            return USERS.get(token)

        service = EntitlementsService(
            config=get_config("entitlements", 8011),
            backend=backend,
            role_provider=role_provider,
            subscription_provider=subscription_provider,
            authenticator=authenticator,
            cache=cache,
            clock=clock
        )

        response = TestClient(service.app).post(
            "/admin/roles",
            json={"user_id": "student-1", "role": "teacher", "reason": "Joined the teaching staff"},
            headers=auth("admin-token")
        )

        assert response.status_code == 200
        cache.invalidate_roles.assert_awaited_once_with("student-1")
        cache.invalidate_user.assert_not_awaited()

    def test_metrics_endpoint(self, client):
        """Decisions show up in the metrics output."""
        client.post("/entitlements/check", json={"feature": "forum"})

        response = client.get("/metrics")
        assert response.status_code == 200
        assert "entitlement_decisions_total" in response.text

    def test_provider_outage_fails_closed(self, client, subscription_provider):
        """A failing subscription backend denies premium without erroring."""
        subscription_provider.fail_with = ConnectionError("backend down")

        response = client.post("/entitlements/check", json={"feature": "quizzes"}, headers=auth("premium-token"))

        assert response.status_code == 200
        assert response.json()["outcome"] == "denied"
