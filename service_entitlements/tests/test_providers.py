"""
Unit tests for the in-memory providers and the shared provider helpers.
"""

import pytest
from datetime import timedelta

from shared.errors import AuthenticationError, NotFoundError, ValidationError
from service_entitlements.app.providers.memory import InMemoryRoleProvider, InMemorySubscriptionProvider
from service_entitlements.app.rules.engine import select_active_subscription
from service_entitlements.app.rules.models import Role, SubscriptionStatus, SubscriptionTier

from .conftest import NOW, make_subscription


class TestInMemoryRoleProvider:
    """Test cases for InMemoryRoleProvider."""

    @pytest.fixture
    def provider(self):
        return InMemoryRoleProvider({"teacher-1": ["teacher"], "student-1": [Role.STUDENT]})

    @pytest.mark.asyncio
    async def test_get_roles(self, provider):
        """Roles are returned per user."""
        assert await provider.get_roles("teacher-1") == {Role.TEACHER}
        assert await provider.get_roles("nobody") == set()
        assert await provider.get_roles(None) == set()

    @pytest.mark.asyncio
    async def test_assign_and_revoke(self, provider):
        """Assigned roles show up and revoked ones disappear."""
        await provider.assign_role("student-1", Role.ADMIN, "Promoted to site administrator")
        assert await provider.get_roles("student-1") == {Role.STUDENT, Role.ADMIN}

        await provider.revoke_role("student-1", Role.STUDENT, "No longer enrolled as a student")
        assert await provider.get_roles("student-1") == {Role.ADMIN}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reason", ["", "too short", "         x"])
    async def test_short_reason_rejected(self, provider, reason):
        """Role changes need a reason of at least ten characters."""
        with pytest.raises(ValidationError):
            await provider.assign_role("student-1", Role.TEACHER, reason)

        assert await provider.get_roles("student-1") == {Role.STUDENT}

    @pytest.mark.asyncio
    async def test_failure_injection(self, provider):
        """fail_with makes reads raise."""
        provider.fail_with = ConnectionError("backend down")

        with pytest.raises(ConnectionError):
            await provider.get_roles("teacher-1")


class TestInMemorySubscriptionProvider:
    """Test cases for InMemorySubscriptionProvider."""

    @pytest.fixture
    def provider(self):
        return InMemorySubscriptionProvider()

    @pytest.mark.asyncio
    async def test_create_premium_subscription(self, provider):
        """Premium records are active and expire exactly one year after creation."""
        subscription = await provider.create_subscription("student-1", "BST", SubscriptionTier.PREMIUM, now=NOW)

        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.tier == SubscriptionTier.PREMIUM
        assert subscription.started_at == NOW
        assert subscription.expires_at == NOW + timedelta(days=365)
        assert subscription.user_id == "student-1"
        assert await provider.list_subscriptions("student-1") == [subscription]

    @pytest.mark.asyncio
    async def test_create_free_subscription_has_no_expiry(self, provider):
        """Free records never expire."""
        subscription = await provider.create_subscription("student-1", "PVS", now=NOW)

        assert subscription.tier == SubscriptionTier.FREE
        assert subscription.expires_at is None
        assert subscription.is_valid_at(NOW + timedelta(days=5000)) is True

    @pytest.mark.asyncio
    async def test_custom_premium_duration(self):
        """Premium term comes from configuration."""
        provider = InMemorySubscriptionProvider(premium_duration_days=30)

        subscription = await provider.create_subscription("student-1", "BST", "premium", now=NOW)

        assert subscription.expires_at == NOW + timedelta(days=30)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("user_id", [None, ""])
    async def test_create_requires_user(self, provider, user_id):
        """Anonymous callers cannot subscribe."""
        with pytest.raises(AuthenticationError):
            await provider.create_subscription(user_id, "BST", SubscriptionTier.PREMIUM)

    @pytest.mark.asyncio
    async def test_resubscribe_supersedes_previous_record(self, provider):
        """Upgrading keeps history but leaves one active record per subject."""
        free = await provider.create_subscription("student-1", "BST", now=NOW - timedelta(days=3))
        premium = await provider.create_subscription("student-1", "BST", SubscriptionTier.PREMIUM, now=NOW)

        records = await provider.list_subscriptions("student-1")

        assert len(records) == 2
        statuses = {s.subscription_id: s.status for s in records}
        assert statuses[free.subscription_id] == SubscriptionStatus.INACTIVE
        assert statuses[premium.subscription_id] == SubscriptionStatus.ACTIVE
        assert select_active_subscription(records, "BST", NOW) == premium

    @pytest.mark.asyncio
    async def test_other_subjects_untouched(self, provider):
        """Subscribing to one subject leaves others alone."""
        pvs = await provider.create_subscription("student-1", "PVS", now=NOW)
        await provider.create_subscription("student-1", "BST", SubscriptionTier.PREMIUM, now=NOW)

        records = await provider.list_subscriptions("student-1")

        assert pvs in records

    @pytest.mark.asyncio
    async def test_users_are_isolated(self, provider):
        """Listing never returns another user's records."""
        await provider.create_subscription("student-1", "BST", now=NOW)

        assert await provider.list_subscriptions("student-2") == []
        assert await provider.list_subscriptions(None) == []

    @pytest.mark.asyncio
    async def test_update_subscription_status(self, provider):
        """Status changes apply to the latest record for the subject."""
        await provider.create_subscription("student-1", "BST", SubscriptionTier.PREMIUM, now=NOW)

        updated = await provider.update_subscription("student-1", "BST", status=SubscriptionStatus.EXPIRED)

        assert updated.status == SubscriptionStatus.EXPIRED
        assert select_active_subscription(await provider.list_subscriptions("student-1"), "BST", NOW) is None

    @pytest.mark.asyncio
    async def test_update_missing_subscription(self, provider):
        """Updating a subject without records is an error."""
        with pytest.raises(NotFoundError):
            await provider.update_subscription("student-1", "BST", tier=SubscriptionTier.PREMIUM)

    @pytest.mark.asyncio
    async def test_seeded_records(self):
        """Records passed at construction are listed by owner."""
        seeded = make_subscription(user_id="student-9", subject_id="NVE")
        provider = InMemorySubscriptionProvider([seeded])

        assert await provider.list_subscriptions("student-9") == [seeded]


class TestProviderHelpers:
    """Test cases for shared provider helpers."""

    def test_supersede_only_touches_active_records_for_subject(self):
        """Inactive history and other subjects are left as they are."""
        bst = make_subscription(subject_id="BST")
        old = make_subscription(subject_id="BST", status=SubscriptionStatus.EXPIRED)
        pvs = make_subscription(subject_id="PVS")

        result = InMemorySubscriptionProvider.supersede([bst, old, pvs], "BST")

        assert result[0].status == SubscriptionStatus.INACTIVE
        assert result[1] == old
        assert result[2] == pvs

    def test_current_for_subject_ignores_validity(self):
        """The latest record is returned even when it has lapsed."""
        older = make_subscription(subject_id="BST", started_at=NOW - timedelta(days=9))
        lapsed = make_subscription(subject_id="BST", started_at=NOW - timedelta(days=2), expires_at=NOW)

        assert InMemorySubscriptionProvider.current_for_subject([older, lapsed], "BST") == lapsed
        assert InMemorySubscriptionProvider.current_for_subject([older], "PVS") is None
