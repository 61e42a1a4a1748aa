"""
In-memory providers for local development and tests.

State lives on the instance only. Set ``fail_with`` to an exception to
simulate a backend outage on the next reads, and ``delay`` to simulate a
slow backend.
"""

import asyncio
import uuid
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

from shared.errors import NotFoundError
from shared.logging import get_logger
from ..rules.models import Role, Subscription, SubscriptionStatus, SubscriptionTier
from .base import RoleProvider, SubscriptionProvider


class InMemoryRoleProvider(RoleProvider):
    def __init__(self, roles: Optional[Dict[str, Iterable[Role]]] = None):
        self.logger = get_logger("entitlements.providers.memory.roles")
        self._roles: Dict[str, Set[Role]] = {
            user_id: {Role(r) for r in user_roles}
            for user_id, user_roles in (roles or {}).items()
        }
        self.fail_with: Optional[Exception] = None
        self.delay: float = 0.0
        self.calls = 0

    async def get_roles(self, user_id: Optional[str]) -> Set[Role]:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        if not user_id:
            return set()
        return set(self._roles.get(user_id, set()))

    async def assign_role(self, target_user_id: str, role: Role, reason: str) -> None:
        reason = self.validate_reason(reason)
        self._roles.setdefault(target_user_id, set()).add(Role(role))
        self.logger.info("Role assigned", target_user_id=target_user_id, role=Role(role).value, reason=reason)

    async def revoke_role(self, target_user_id: str, role: Role, reason: str) -> None:
        reason = self.validate_reason(reason)
        self._roles.get(target_user_id, set()).discard(Role(role))
        self.logger.info("Role revoked", target_user_id=target_user_id, role=Role(role).value, reason=reason)


class InMemorySubscriptionProvider(SubscriptionProvider):
    def __init__(self,
                 subscriptions: Optional[Iterable[Subscription]] = None,
                 premium_duration_days: int = 365):
        super().__init__(premium_duration_days)
        self.logger = get_logger("entitlements.providers.memory.subscriptions")
        self._by_user: Dict[str, List[Subscription]] = {}
        for subscription in subscriptions or []:
            self._by_user.setdefault(subscription.user_id, []).append(subscription)
        self.fail_with: Optional[Exception] = None
        self.delay: float = 0.0
        self.calls = 0

    async def list_subscriptions(self, user_id: Optional[str]) -> List[Subscription]:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        if not user_id:
            return []
        return list(self._by_user.get(user_id, []))

    async def create_subscription(self,
                                  user_id: Optional[str],
                                  subject_id: str,
                                  tier: SubscriptionTier = SubscriptionTier.FREE,
                                  now: Optional[datetime] = None) -> Subscription:
        subscription = self.build_subscription(str(uuid.uuid4()), user_id, subject_id, tier, now)
        existing = self.supersede(self._by_user.get(user_id, []), subject_id)
        self._by_user[user_id] = existing + [subscription]

        self.logger.info(
            "Subscription created",
            user_id=user_id,
            subject_id=subject_id,
            tier=subscription.tier.value
        )
        return subscription

    async def update_subscription(self,
                                  user_id: Optional[str],
                                  subject_id: str,
                                  status: Optional[SubscriptionStatus] = None,
                                  tier: Optional[SubscriptionTier] = None) -> Subscription:
        records = self._by_user.get(user_id or "", [])
        current = self.current_for_subject(records, subject_id)
        if current is None:
            raise NotFoundError("Subscription not found", details={"subject_id": subject_id})

        changes = {}
        if status is not None:
            changes["status"] = SubscriptionStatus(status)
        if tier is not None:
            changes["tier"] = SubscriptionTier(tier)
        updated = current.with_changes(**changes)

        self._by_user[user_id] = [updated if s is current else s for s in records]
        return updated
