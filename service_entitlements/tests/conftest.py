"""
Shared fixtures for Entitlements service tests.
"""

import itertools
from datetime import datetime, timedelta, timezone

import pytest

from service_entitlements.app.rules.models import (
    Subscription, SubscriptionStatus, SubscriptionTier
)

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

_ids = itertools.count(1)


def make_subscription(subject_id="BST",
                      tier=SubscriptionTier.PREMIUM,
                      status=SubscriptionStatus.ACTIVE,
                      user_id="student-1",
                      started_at=None,
                      expires_at="default",
                      subscription_id=None):
    """Subscription record; premium records expire 30 days after NOW unless told otherwise."""
    if expires_at == "default":
        expires_at = NOW + timedelta(days=30) if tier == SubscriptionTier.PREMIUM else None
    return Subscription(
        subscription_id=subscription_id or f"sub-{next(_ids)}",
        user_id=user_id,
        subject_id=subject_id,
        tier=tier,
        status=status,
        started_at=started_at or NOW - timedelta(days=1),
        expires_at=expires_at
    )


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def clock():
    return lambda: NOW
