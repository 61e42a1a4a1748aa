"""
Entitlement rules package.

Holds the closed enumerations (roles, tiers, statuses, features), the
static feature table and the resolver that turns a user's roles and
subscriptions into a tagged access decision.

Modules of interest:
- models: Enums, Subscription record and EntitlementDecision.
- features: Feature-to-tier table and the overridable free allowlist.
- engine: Resolver plus subscription validity and selection helpers.
"""

from .engine import (
    EntitlementResolver, active_subscriptions, has_valid_premium,
    select_active_subscription, subscription_status
)
from .features import FEATURE_TIERS, FeatureCatalog, parse_feature

__all__ = [
    "EntitlementResolver",
    "FEATURE_TIERS",
    "FeatureCatalog",
    "active_subscriptions",
    "has_valid_premium",
    "parse_feature",
    "select_active_subscription",
    "subscription_status",
]
