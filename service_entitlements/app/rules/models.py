"""
Entitlement data models for Entitlements Service.
"""

from typing import Any, Dict, Optional, List
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


class Role(str, Enum):
    """Roles a portal user can hold."""
    STUDENT = "student"
    TEACHER = "teacher"
    ADMIN = "admin"


# Roles that skip subscription checks entirely
BYPASS_ROLES = frozenset({Role.TEACHER, Role.ADMIN})


class SubscriptionTier(str, Enum):
    """Subscription level."""
    FREE = "free"
    PREMIUM = "premium"


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle status."""
    ACTIVE = "active"
    INACTIVE = "inactive"
    EXPIRED = "expired"


class Feature(str, Enum):
    """Protected capabilities of the portal."""
    SUBJECTS = "subjects"
    QUIZZES = "quizzes"
    FLASHCARDS = "flashcards"
    RESOURCES = "resources"
    SOLUTION_BANK = "solution-bank"
    FORUM = "forum"
    HOMEWORK_HELP = "homework-help"
    QUICK_HELP = "quick-help"
    STUDENT_DASHBOARD = "student-dashboard"


class FeatureTier(str, Enum):
    """Static classification of a feature."""
    FREE = "free"
    PREMIUM = "premium"


class AccessOutcome(str, Enum):
    """Tagged result of an entitlement decision."""
    ALLOWED = "allowed"
    DENIED = "denied"
    UNAUTHENTICATED = "unauthenticated"


class AccessReason(str, Enum):
    """Why a decision came out the way it did."""
    ROLE_BYPASS = "role_bypass"
    FREE_FEATURE = "free_feature"
    PREMIUM_SUBSCRIPTION = "premium_subscription"
    NOT_AUTHENTICATED = "not_authenticated"
    NO_PREMIUM_SUBSCRIPTION = "no_premium_subscription"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes from the backend as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class Subscription:
    """A user's entitlement to one subject at one tier."""
    subscription_id: str
    user_id: str
    subject_id: str
    started_at: datetime
    tier: SubscriptionTier = SubscriptionTier.FREE
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    expires_at: Optional[datetime] = None

    def __post_init__(self):
        # Frozen dataclass: normalise through object.__setattr__
        object.__setattr__(self, "tier", SubscriptionTier(self.tier))
        object.__setattr__(self, "status", SubscriptionStatus(self.status))
        if self.started_at is None:
            raise TypeError("Subscription.started_at is required")
        object.__setattr__(self, "started_at", ensure_aware(self.started_at))
        if self.expires_at is not None:
            object.__setattr__(self, "expires_at", ensure_aware(self.expires_at))

    def is_valid_at(self, now: datetime) -> bool:
        """Active and not yet expired; expiry must be strictly after ``now``."""
        if self.status is not SubscriptionStatus.ACTIVE:
            return False
        return self.expires_at is None or self.expires_at > ensure_aware(now)

    def with_changes(self, **changes) -> "Subscription":
        return replace(self, **changes)


@dataclass(frozen=True)
class AuthenticatedUser:
    """The signed-in user as reported by the auth provider."""
    user_id: str
    email: Optional[str] = None


@dataclass(frozen=True)
class EntitlementDecision:
    """Result of evaluating one feature for one user. Never persisted."""
    feature: str
    outcome: AccessOutcome
    reason: AccessReason
    bypass: bool = False

    @property
    def allowed(self) -> bool:
        return self.outcome is AccessOutcome.ALLOWED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feature": self.feature,
            "outcome": self.outcome.value,
            "allowed": self.allowed,
            "bypass": self.bypass,
            "reason": self.reason.value,
        }


class EntitlementCheckRequest(BaseModel):
    """Request model for entitlement check."""
    feature: str = Field(..., description="Feature identifier")


class EntitlementCheckResponse(BaseModel):
    """Response model for entitlement check."""
    feature: str
    outcome: AccessOutcome
    allowed: bool
    bypass: bool
    reason: AccessReason


class SubscriptionCreateRequest(BaseModel):
    """Request model for creating a subscription."""
    subject_id: str = Field(..., min_length=1, description="Subject ID")
    tier: SubscriptionTier = Field(SubscriptionTier.FREE, description="Subscription tier")


class SubscriptionResponse(BaseModel):
    """Response model for a subscription record."""
    subscription_id: str
    user_id: str
    subject_id: str
    tier: SubscriptionTier
    status: SubscriptionStatus
    started_at: datetime
    expires_at: Optional[datetime] = None

    @classmethod
    def from_subscription(cls, subscription: Subscription) -> "SubscriptionResponse":
        return cls(
            subscription_id=subscription.subscription_id,
            user_id=subscription.user_id,
            subject_id=subscription.subject_id,
            tier=subscription.tier,
            status=subscription.status,
            started_at=subscription.started_at,
            expires_at=subscription.expires_at,
        )


class SubscriptionListResponse(BaseModel):
    """Response model for subscription lists."""
    subscriptions: List[SubscriptionResponse]
    total: int


class RoleChangeAction(str, Enum):
    ASSIGN = "assign"
    REVOKE = "revoke"


class RoleChangeRequest(BaseModel):
    """Request model for an administrative role change."""
    user_id: str = Field(..., min_length=1)
    role: Role
    action: RoleChangeAction = RoleChangeAction.ASSIGN
    reason: str = Field(..., description="Audit reason, at least 10 characters")


class FeatureTableEntry(BaseModel):
    feature: Feature
    tier: FeatureTier


class FeatureTableResponse(BaseModel):
    features: List[FeatureTableEntry]
    free_features: List[Feature]
