"""
Entitlements service for the learning portal access layer.
"""

from typing import Awaitable, Callable, Optional, Tuple
from datetime import datetime

from fastapi import Depends, Header

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.errors import AuthenticationError, AuthorizationError, NotFoundError, ProviderError
from shared.logging import set_user_context

from .cache.redis_cache import RedisCache
from .guard import RouteGuard
from .providers.base import RoleProvider, SubscriptionProvider
from .providers.supabase import SupabaseClient, SupabaseRoleProvider, SupabaseSubscriptionProvider
from .rules.engine import EntitlementResolver
from .rules.features import FeatureCatalog
from .rules.models import (
    AuthenticatedUser, EntitlementCheckRequest, EntitlementCheckResponse,
    FeatureTableEntry, FeatureTableResponse, Role, RoleChangeAction,
    RoleChangeRequest, SubscriptionCreateRequest, SubscriptionListResponse,
    SubscriptionResponse
)
from .session import AccessSession

Authenticator = Callable[[Optional[str]], Awaitable[Optional[AuthenticatedUser]]]


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class EntitlementsService(BaseService):
    """Entitlements service implementation.

    Providers default to the Supabase adapters, built per request with the
    caller's access token. Passing ``role_provider``/``subscription_provider``
    uses those instances for every request instead.
    """

    def __init__(self,
                 config: Optional[ServiceConfig] = None,
                 backend: Optional[SupabaseClient] = None,
                 role_provider: Optional[RoleProvider] = None,
                 subscription_provider: Optional[SubscriptionProvider] = None,
                 authenticator: Optional[Authenticator] = None,
                 cache: Optional[RedisCache] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        super().__init__("entitlements", 8011, config or get_config("entitlements", 8011))

        self.backend = backend or SupabaseClient(
            self.config.supabase_url,
            self.config.supabase_anon_key,
            jwt_secret=self.config.supabase_jwt_secret,
            timeout=self.config.provider_timeout_seconds,
            retry_attempts=self.config.provider_retry_attempts
        )
        self.role_provider = role_provider
        self.subscription_provider = subscription_provider
        self.authenticator: Authenticator = authenticator or self.backend.get_user

        if cache is None and self.config.cache_enabled:
            cache = RedisCache(self.config.redis_url, self.config.cache_ttl_seconds)
        self.cache = cache

        self.catalog = FeatureCatalog(free_features=self.config.free_features)
        self.resolver = EntitlementResolver(self.catalog, clock=clock)
        self.guard = RouteGuard(self.config.sign_in_path, self.config.upgrade_path)

        self._setup_entitlements_routes()

    def _role_provider_for(self, access_token: Optional[str]) -> RoleProvider:
        if self.role_provider is not None:
            return self.role_provider
        return SupabaseRoleProvider(self.backend, access_token)

    def _subscription_provider_for(self, access_token: Optional[str]) -> SubscriptionProvider:
        if self.subscription_provider is not None:
            return self.subscription_provider
        return SupabaseSubscriptionProvider(
            self.backend,
            access_token,
            premium_duration_days=self.config.premium_duration_days
        )

    async def authenticate(self, authorization: Optional[str]) -> Tuple[Optional[AuthenticatedUser], Optional[str]]:
        """Resolve the caller; invalid tokens and auth outages mean anonymous."""
        token = _bearer_token(authorization)
        if token is None:
            return None, None

        try:
            user = await self.authenticator(token)
        except ProviderError as e:
            self.logger.warning("User lookup failed, continuing as anonymous", error=str(e))
            return None, None

        if user is not None:
            set_user_context(user_id=user.user_id)
        return user, token

    def create_session(self, user: Optional[AuthenticatedUser], access_token: Optional[str]) -> AccessSession:
        """New access session scoped to one request."""
        return AccessSession(
            user,
            self._role_provider_for(access_token),
            self._subscription_provider_for(access_token),
            resolver=self.resolver,
            cache=self.cache,
            timeout_seconds=self.config.provider_timeout_seconds,
            metrics=self.metrics
        )

    def _setup_entitlements_routes(self):
        """Set up entitlements-specific routes."""

        async def session_dependency(authorization: Optional[str] = Header(None)) -> AccessSession:
            user, token = await self.authenticate(authorization)
            session = self.create_session(user, token)
            set_user_context(session_id=session.session_id)
            return session

        def require_user(session: AccessSession) -> str:
            if not session.user_id:
                raise AuthenticationError("Please sign in to manage subscriptions")
            return session.user_id

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "entitlements",
                "message": "Learning Portal Access Layer - Entitlements Service",
                "version": "1.0.0",
                "capabilities": ["entitlements", "route_guard", "subscriptions", "role_management"]
            }

        @self.app.get("/entitlements/features", response_model=FeatureTableResponse)
        async def get_features():
            """Feature-to-tier table."""
            table = self.catalog.as_table()
            return FeatureTableResponse(
                features=[FeatureTableEntry(feature=f, tier=t) for f, t in table.items()],
                free_features=sorted(self.catalog.free_features(), key=lambda f: f.value)
            )

        @self.app.post("/entitlements/check", response_model=EntitlementCheckResponse)
        async def check_entitlements(
            request: EntitlementCheckRequest,
            session: AccessSession = Depends(session_dependency)
        ):
            """Check whether the caller may use a feature."""
            decision = await session.check(request.feature)
            return EntitlementCheckResponse(**decision.to_dict())

        @self.app.get("/guard/{feature}")
        async def guard_feature(feature: str, session: AccessSession = Depends(session_dependency)):
            """Route guard result for a feature page."""
            result = await self.guard.check(session, feature)
            return result.to_dict()

        @self.app.get("/subscriptions", response_model=SubscriptionListResponse)
        async def list_subscriptions(session: AccessSession = Depends(session_dependency)):
            """All of the caller's subscriptions."""
            user_id = require_user(session)
            subscriptions = await session.subscription_provider.list_subscriptions(user_id)
            return SubscriptionListResponse(
                subscriptions=[SubscriptionResponse.from_subscription(s) for s in subscriptions],
                total=len(subscriptions)
            )

        @self.app.get("/subscriptions/active", response_model=SubscriptionListResponse)
        async def list_active_subscriptions(session: AccessSession = Depends(session_dependency)):
            """Currently valid subscription per subject."""
            require_user(session)
            await session.load()
            active = session.active_subscriptions()
            return SubscriptionListResponse(
                subscriptions=[SubscriptionResponse.from_subscription(s) for s in active],
                total=len(active)
            )

        @self.app.get("/subscriptions/{subject_id}/active", response_model=SubscriptionResponse)
        async def get_active_subscription(subject_id: str, session: AccessSession = Depends(session_dependency)):
            """Currently valid subscription for a subject."""
            require_user(session)
            await session.load()
            subscription = session.get_active_subscription(subject_id)
            if subscription is None:
                raise NotFoundError("No active subscription", details={"subject_id": subject_id})
            return SubscriptionResponse.from_subscription(subscription)

        @self.app.post("/subscriptions", response_model=SubscriptionResponse, status_code=201)
        async def create_subscription(
            request: SubscriptionCreateRequest,
            session: AccessSession = Depends(session_dependency)
        ):
            """Subscribe the caller to a subject."""
            require_user(session)
            subscription = await session.create_subscription(request.subject_id, request.tier)
            self.logger.info(
                "Subscription created",
                subject_id=subscription.subject_id,
                tier=subscription.tier.value
            )
            return SubscriptionResponse.from_subscription(subscription)

        @self.app.post("/admin/roles")
        async def change_role(request: RoleChangeRequest, session: AccessSession = Depends(session_dependency)):
            """Assign or revoke a role; admins only."""
            require_user(session)
            snapshot = await session.load()
            if snapshot is None or Role.ADMIN not in snapshot.roles:
                raise AuthorizationError("Only admins can change roles")

            if request.action is RoleChangeAction.ASSIGN:
                await session.role_provider.assign_role(request.user_id, request.role, request.reason)
            else:
                await session.role_provider.revoke_role(request.user_id, request.role, request.reason)

            if self.cache is not None:
                await self.cache.invalidate_roles(request.user_id)

            self.logger.info(
                "Role changed",
                target_user_id=request.user_id,
                role=request.role.value,
                action=request.action.value
            )
            return {"success": True, "user_id": request.user_id, "role": request.role.value, "action": request.action.value}

    async def _check_dependencies(self):
        """Check entitlements service dependencies."""
        dependencies = {"supabase": "ok" if await self.backend.health_check() else "error"}

        if self.cache is not None:
            dependencies["redis"] = "ok" if await self.cache.health_check() else "error"

        return dependencies

    async def start(self):
        """Start entitlements service components."""
        await self.backend.start()
        if self.cache is not None:
            await self.cache.start()
        self.logger.info(
            "Entitlements service started",
            free_features=sorted(f.value for f in self.catalog.free_features()),
            cache_enabled=self.cache is not None
        )

    async def stop(self):
        """Stop entitlements service components."""
        await self.backend.stop()
        if self.cache is not None:
            await self.cache.stop()
        self.logger.info("Entitlements service stopped")


def create_app():
    """Create entitlements service application."""
    service = EntitlementsService()
    return service.app


if __name__ == "__main__":
    service = EntitlementsService()
    service.run()
