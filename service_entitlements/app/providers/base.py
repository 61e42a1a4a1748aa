"""
Provider contracts consumed by the access session.

Both providers are owned by the hosted backend. Implementations raise
``ProviderError`` on transport failure; turning that into an empty result
is the caller's job.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import List, Optional, Set

from shared.errors import AuthenticationError, ValidationError
from ..rules.models import (
    Role, Subscription, SubscriptionStatus, SubscriptionTier, utcnow
)

MIN_ROLE_CHANGE_REASON = 10


class RoleProvider(ABC):
    """Resolves and manages the roles held by a user."""

    @abstractmethod
    async def get_roles(self, user_id: Optional[str]) -> Set[Role]:
        """Roles held by the user; empty for anonymous users."""

    @abstractmethod
    async def assign_role(self, target_user_id: str, role: Role, reason: str) -> None:
        """Grant a role to a user."""

    @abstractmethod
    async def revoke_role(self, target_user_id: str, role: Role, reason: str) -> None:
        """Withdraw a role from a user."""

    @staticmethod
    def validate_reason(reason: str) -> str:
        reason = (reason or "").strip()
        if len(reason) < MIN_ROLE_CHANGE_REASON:
            raise ValidationError(
                f"Please provide a reason (minimum {MIN_ROLE_CHANGE_REASON} characters)",
                details={"field": "reason"}
            )
        return reason


class SubscriptionProvider(ABC):
    """Reads and writes a user's subject subscriptions."""

    def __init__(self, premium_duration_days: int = 365):
        self.premium_duration = timedelta(days=premium_duration_days)

    @abstractmethod
    async def list_subscriptions(self, user_id: Optional[str]) -> List[Subscription]:
        """All subscription records for the user, valid or not."""

    @abstractmethod
    async def create_subscription(self,
                                  user_id: Optional[str],
                                  subject_id: str,
                                  tier: SubscriptionTier = SubscriptionTier.FREE,
                                  now: Optional[datetime] = None) -> Subscription:
        """Subscribe the user to a subject."""

    @abstractmethod
    async def update_subscription(self,
                                  user_id: Optional[str],
                                  subject_id: str,
                                  status: Optional[SubscriptionStatus] = None,
                                  tier: Optional[SubscriptionTier] = None) -> Subscription:
        """Change the status or tier of the user's current record for a subject."""

    def build_subscription(self,
                           subscription_id: str,
                           user_id: Optional[str],
                           subject_id: str,
                           tier: SubscriptionTier,
                           now: Optional[datetime]) -> Subscription:
        """New active record; premium expires exactly one term after ``now``."""
        if not user_id:
            raise AuthenticationError("Please sign in to subscribe to subjects")

        tier = SubscriptionTier(tier)
        started_at = now or utcnow()
        expires_at = started_at + self.premium_duration if tier is SubscriptionTier.PREMIUM else None

        return Subscription(
            subscription_id=subscription_id,
            user_id=user_id,
            subject_id=subject_id,
            tier=tier,
            status=SubscriptionStatus.ACTIVE,
            started_at=started_at,
            expires_at=expires_at
        )

    @staticmethod
    def supersede(subscriptions: List[Subscription], subject_id: str) -> List[Subscription]:
        """Mark the active records for a subject inactive; history is kept."""
        return [
            s.with_changes(status=SubscriptionStatus.INACTIVE)
            if s.subject_id == subject_id and s.status is SubscriptionStatus.ACTIVE
            else s
            for s in subscriptions
        ]

    @staticmethod
    def current_for_subject(subscriptions: List[Subscription], subject_id: str) -> Optional[Subscription]:
        """Latest record for a subject regardless of validity."""
        matching = [s for s in subscriptions if s.subject_id == subject_id]
        if not matching:
            return None
        return max(matching, key=lambda s: (s.started_at, s.subscription_id))
