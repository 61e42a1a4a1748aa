"""
Role and subscription providers.

The resolver never talks to the backend directly; it is fed by a role
provider and a subscription provider. ``supabase`` holds the production
adapters, ``memory`` the in-process ones used for local runs and tests.
"""

from .base import RoleProvider, SubscriptionProvider
from .memory import InMemoryRoleProvider, InMemorySubscriptionProvider
from .supabase import SupabaseClient, SupabaseRoleProvider, SupabaseSubscriptionProvider

__all__ = [
    "InMemoryRoleProvider",
    "InMemorySubscriptionProvider",
    "RoleProvider",
    "SubscriptionProvider",
    "SupabaseClient",
    "SupabaseRoleProvider",
    "SupabaseSubscriptionProvider",
]
