"""
Per-session access state.

An ``AccessSession`` belongs to one signed-in (or anonymous) visitor and
one request or UI session. It loads roles and subscriptions once, exposes
a pending/resolved state to the route guard and evaluates features against
the loaded snapshot. There is no process-wide instance.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import FrozenSet, List, Optional, Set, Tuple, Union

from shared.errors import AuthenticationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from .cache.redis_cache import RedisCache
from .providers.base import RoleProvider, SubscriptionProvider
from .rules.engine import (
    EntitlementResolver, active_subscriptions, select_active_subscription, subscription_status
)
from .rules.models import (
    AuthenticatedUser, EntitlementDecision, Feature, Role, Subscription,
    SubscriptionStatus, SubscriptionTier
)


class SessionState(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class AccessSnapshot:
    """Roles and subscriptions as loaded for one evaluation round."""
    user: Optional[AuthenticatedUser]
    roles: FrozenSet[Role]
    subscriptions: Tuple[Subscription, ...]
    loaded_at: datetime
    # Providers whose read failed and was replaced by an empty result
    degraded: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def user_id(self) -> Optional[str]:
        return self.user.user_id if self.user else None


class AccessSession:
    """Loads provider data concurrently and answers entitlement questions."""

    def __init__(self,
                 user: Optional[AuthenticatedUser],
                 role_provider: RoleProvider,
                 subscription_provider: SubscriptionProvider,
                 resolver: Optional[EntitlementResolver] = None,
                 cache: Optional[RedisCache] = None,
                 timeout_seconds: float = 5.0,
                 metrics: Optional[MetricsCollector] = None,
                 session_id: Optional[str] = None):
        self.user = user
        self.role_provider = role_provider
        self.subscription_provider = subscription_provider
        self.resolver = resolver or EntitlementResolver()
        self.cache = cache
        self.timeout_seconds = timeout_seconds
        self.metrics = metrics
        self.session_id = session_id or str(uuid.uuid4())
        self.logger = get_logger("entitlements.session")

        self._state = SessionState.PENDING
        self._snapshot: Optional[AccessSnapshot] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def user_id(self) -> Optional[str]:
        return self.user.user_id if self.user else None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_pending(self) -> bool:
        return self._state is SessionState.PENDING

    @property
    def snapshot(self) -> Optional[AccessSnapshot]:
        return self._snapshot

    async def load(self) -> Optional[AccessSnapshot]:
        """Fetch roles and subscriptions; returns None if the session was cancelled."""
        if self._state is SessionState.CANCELLED:
            return None
        if self._state is SessionState.RESOLVED:
            return self._snapshot

        if self._task is None:
            self._task = asyncio.ensure_future(self._fetch())

        try:
            snapshot = await self._task
        except asyncio.CancelledError:
            if self._state is SessionState.CANCELLED:
                return None
            raise

        # cancel() may have landed between completion and resumption
        if self._state is SessionState.CANCELLED:
            return None

        self._snapshot = snapshot
        self._state = SessionState.RESOLVED
        return snapshot

    def cancel(self) -> None:
        """Abandon in-flight reads; the session will not change state afterwards."""
        self._state = SessionState.CANCELLED
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self.logger.debug("Access session cancelled", session_id=self.session_id)

    def reset(self) -> None:
        """Drop the loaded snapshot so the next load reads fresh data."""
        if self._state is SessionState.CANCELLED:
            return
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        self._snapshot = None
        self._state = SessionState.PENDING

    async def refresh(self) -> Optional[AccessSnapshot]:
        if self.cache is not None and self.user_id:
            await self.cache.invalidate_user(self.user_id)
        self.reset()
        return await self.load()

    async def _fetch(self) -> AccessSnapshot:
        user_id = self.user_id
        degraded: Set[str] = set()

        if user_id is None:
            roles: Set[Role] = set()
            subscriptions: List[Subscription] = []
        else:
            if self.metrics is not None:
                with self.metrics.time_operation("entitlement_load_duration_seconds"):
                    (roles, roles_ok), (subscriptions, subs_ok) = await asyncio.gather(
                        self._read_roles(user_id),
                        self._read_subscriptions(user_id)
                    )
            else:
                (roles, roles_ok), (subscriptions, subs_ok) = await asyncio.gather(
                    self._read_roles(user_id),
                    self._read_subscriptions(user_id)
                )
            if not roles_ok:
                degraded.add("roles")
            if not subs_ok:
                degraded.add("subscriptions")

        return AccessSnapshot(
            user=self.user,
            roles=frozenset(roles),
            subscriptions=tuple(subscriptions),
            loaded_at=self.resolver.clock(),
            degraded=frozenset(degraded)
        )

    async def _read_roles(self, user_id: str) -> Tuple[Set[Role], bool]:
        if self.cache is not None:
            cached = await self.cache.get_roles(user_id)
            self._record_cache("roles", cached is not None)
            if cached is not None:
                return cached, True

        try:
            roles = await asyncio.wait_for(self.role_provider.get_roles(user_id), self.timeout_seconds)
        except Exception as e:
            self._record_failure("roles", user_id, e)
            return set(), False

        if self.cache is not None:
            await self.cache.set_roles(user_id, roles)
        return set(roles), True

    async def _read_subscriptions(self, user_id: str) -> Tuple[List[Subscription], bool]:
        if self.cache is not None:
            cached = await self.cache.get_subscriptions(user_id)
            self._record_cache("subscriptions", cached is not None)
            if cached is not None:
                return cached, True

        try:
            subscriptions = await asyncio.wait_for(
                self.subscription_provider.list_subscriptions(user_id),
                self.timeout_seconds
            )
        except Exception as e:
            self._record_failure("subscriptions", user_id, e)
            return [], False

        if self.cache is not None:
            await self.cache.set_subscriptions(user_id, subscriptions)
        return list(subscriptions), True

    def _record_cache(self, kind: str, hit: bool):
        if self.metrics is not None:
            self.metrics.record_cache_lookup(kind, hit)

    def _record_failure(self, provider: str, user_id: str, error: Exception):
        error_text = "timed out" if isinstance(error, asyncio.TimeoutError) else str(error)
        self.logger.warning(
            "Provider read failed, treating as empty",
            provider=provider,
            user_id=user_id,
            error=error_text
        )
        if self.metrics is not None:
            self.metrics.record_provider_failure(provider)

    def _require_snapshot(self) -> AccessSnapshot:
        if self._state is not SessionState.RESOLVED or self._snapshot is None:
            raise RuntimeError("Access session is not resolved")
        return self._snapshot

    def evaluate(self, feature: Union[str, Feature]) -> EntitlementDecision:
        """Decide a feature against the loaded snapshot."""
        snapshot = self._require_snapshot()
        decision = self.resolver.decide(
            snapshot.user_id,
            snapshot.roles,
            snapshot.subscriptions,
            feature
        )

        self.logger.info(
            "entitlement_decision",
            session_id=self.session_id,
            user_id=snapshot.user_id,
            feature=decision.feature,
            outcome=decision.outcome.value,
            reason=decision.reason.value,
            bypass=decision.bypass,
            degraded=sorted(snapshot.degraded)
        )
        if self.metrics is not None:
            self.metrics.record_decision(decision.feature, decision.outcome.value, decision.reason.value)
        return decision

    async def check(self, feature: Union[str, Feature]) -> Optional[EntitlementDecision]:
        """Load if needed, then evaluate. None when the session was cancelled."""
        if await self.load() is None:
            return None
        return self.evaluate(feature)

    def has_access(self, feature: Union[str, Feature]) -> bool:
        return self.evaluate(feature).allowed

    def get_active_subscription(self, subject_id: str) -> Optional[Subscription]:
        snapshot = self._require_snapshot()
        return select_active_subscription(snapshot.subscriptions, subject_id, self.resolver.clock())

    def active_subscriptions(self) -> List[Subscription]:
        snapshot = self._require_snapshot()
        return active_subscriptions(snapshot.subscriptions, self.resolver.clock())

    def subscription_status(self, subject_id: str) -> str:
        snapshot = self._require_snapshot()
        return subscription_status(snapshot.subscriptions, subject_id, self.resolver.clock())

    async def create_subscription(self,
                                  subject_id: str,
                                  tier: SubscriptionTier = SubscriptionTier.FREE) -> Subscription:
        """Subscribe the session's user; invalidates cached subscriptions."""
        if not self.user_id:
            raise AuthenticationError("Please sign in to subscribe to subjects")

        subscription = await self.subscription_provider.create_subscription(
            self.user_id,
            subject_id,
            tier,
            now=self.resolver.clock()
        )
        await self._after_subscription_change()
        if self.metrics is not None:
            self.metrics.increment_counter("subscriptions_created_total", tier=subscription.tier.value)
        return subscription

    async def update_subscription(self,
                                  subject_id: str,
                                  status: Optional[SubscriptionStatus] = None,
                                  tier: Optional[SubscriptionTier] = None) -> Subscription:
        if not self.user_id:
            raise AuthenticationError()

        subscription = await self.subscription_provider.update_subscription(
            self.user_id, subject_id, status=status, tier=tier
        )
        await self._after_subscription_change()
        return subscription

    async def _after_subscription_change(self):
        if self.cache is not None:
            await self.cache.invalidate_subscriptions(self.user_id)
        self.reset()
