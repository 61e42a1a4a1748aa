"""
Entitlement resolver for Entitlements Service.
"""

from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Union

from shared.logging import get_logger
from .features import FeatureCatalog
from .models import (
    BYPASS_ROLES, AccessOutcome, AccessReason, EntitlementDecision, Feature,
    Role, Subscription, SubscriptionTier, ensure_aware, utcnow
)


def _latest_first(subscription: Subscription):
    return (subscription.started_at, subscription.subscription_id)


def select_active_subscription(
    subscriptions: Iterable[Subscription],
    subject_id: str,
    now: datetime
) -> Optional[Subscription]:
    """Currently valid subscription for a subject.

    When several records are valid the most recently started one wins,
    ties broken by the greater subscription id.
    """
    candidates = [
        s for s in subscriptions
        if s.subject_id == subject_id and s.is_valid_at(now)
    ]
    if not candidates:
        return None
    return max(candidates, key=_latest_first)


def active_subscriptions(subscriptions: Iterable[Subscription], now: datetime) -> List[Subscription]:
    """One valid subscription per subject, ordered by subject id."""
    by_subject: Dict[str, Subscription] = {}
    for subscription in subscriptions:
        if not subscription.is_valid_at(now):
            continue
        current = by_subject.get(subscription.subject_id)
        if current is None or _latest_first(subscription) > _latest_first(current):
            by_subject[subscription.subject_id] = subscription
    return [by_subject[key] for key in sorted(by_subject)]


def subscription_status(subscriptions: Iterable[Subscription], subject_id: str, now: datetime) -> str:
    """Active tier for a subject, or "none"."""
    active = select_active_subscription(subscriptions, subject_id, now)
    return active.tier.value if active else "none"


def has_valid_premium(subscriptions: Iterable[Subscription], now: datetime) -> bool:
    # Any subject counts; premium access is not scoped to the subject on screen.
    return any(
        s.tier is SubscriptionTier.PREMIUM and s.is_valid_at(now)
        for s in subscriptions
    )


class EntitlementResolver:
    """Decides whether a user may use a feature.

    Precedence is fixed: role bypass, then the free allowlist, then an
    active premium subscription. Evaluation is pure for given inputs; the
    clock is only read when ``now`` is not supplied.
    """

    def __init__(self,
                 catalog: Optional[FeatureCatalog] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.logger = get_logger("entitlements.resolver")
        self.catalog = catalog or FeatureCatalog()
        self.clock = clock or utcnow

    def _now(self, now: Optional[datetime]) -> datetime:
        return ensure_aware(now) if now is not None else self.clock()

    def is_premium_feature(self, feature: Union[str, Feature]) -> bool:
        return self.catalog.is_premium(feature)

    def has_access(self,
                   user_id: Optional[str],
                   roles: Iterable[Role],
                   subscriptions: Iterable[Subscription],
                   feature: Union[str, Feature],
                   now: Optional[datetime] = None) -> bool:
        """Boolean access check."""
        return self.decide(user_id, roles, subscriptions, feature, now).allowed

    def decide(self,
               user_id: Optional[str],
               roles: Iterable[Role],
               subscriptions: Iterable[Subscription],
               feature: Union[str, Feature],
               now: Optional[datetime] = None) -> EntitlementDecision:
        """Tagged access decision."""
        at = self._now(now)
        feature_name = feature.value if isinstance(feature, Feature) else str(feature)
        role_set = frozenset(roles)

        if role_set & BYPASS_ROLES:
            decision = EntitlementDecision(
                feature=feature_name,
                outcome=AccessOutcome.ALLOWED,
                reason=AccessReason.ROLE_BYPASS,
                bypass=True
            )
        elif self.catalog.is_free(feature):
            decision = EntitlementDecision(
                feature=feature_name,
                outcome=AccessOutcome.ALLOWED,
                reason=AccessReason.FREE_FEATURE
            )
        elif has_valid_premium(subscriptions, at):
            decision = EntitlementDecision(
                feature=feature_name,
                outcome=AccessOutcome.ALLOWED,
                reason=AccessReason.PREMIUM_SUBSCRIPTION
            )
        elif not user_id:
            decision = EntitlementDecision(
                feature=feature_name,
                outcome=AccessOutcome.UNAUTHENTICATED,
                reason=AccessReason.NOT_AUTHENTICATED
            )
        else:
            decision = EntitlementDecision(
                feature=feature_name,
                outcome=AccessOutcome.DENIED,
                reason=AccessReason.NO_PREMIUM_SUBSCRIPTION
            )

        self.logger.debug(
            "Entitlement evaluated",
            feature=feature_name,
            outcome=decision.outcome.value,
            reason=decision.reason.value
        )
        return decision
