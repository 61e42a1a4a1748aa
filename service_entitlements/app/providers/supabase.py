"""
Supabase-backed providers.

Talks to the hosted backend over HTTP: GoTrue for the current user,
PostgREST for the ``user_roles``, ``subscriptions`` and ``profiles`` tables
and RPC for the role-management procedures. Requests carry the caller's
access token so row-level security applies; the anon key is the fallback.

The ``subscriptions`` table holds one row per user with a JSON array of
per-subject records::

    {"id": "sub-1", "subject_id": "BST", "subscription_type": "premium",
     "status": "active", "started_at": "...", "expires_at": "..."}
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

import httpx
import jwt

from shared.errors import NotFoundError, ProviderError
from shared.logging import get_logger
from shared.retry import RetryConfig, RetryError, retry_on_exception
from ..rules.models import (
    AuthenticatedUser, Role, Subscription, SubscriptionStatus, SubscriptionTier
)
from .base import RoleProvider, SubscriptionProvider

# Stand-in start for legacy entries stored without one; never written back
LEGACY_STARTED_AT = datetime(1970, 1, 1, tzinfo=timezone.utc)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class SupabaseClient:
    """Thin async client for the hosted backend."""

    def __init__(self,
                 base_url: str,
                 anon_key: str,
                 jwt_secret: Optional[str] = None,
                 timeout: float = 5.0,
                 retry_attempts: int = 2,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip('/')
        self.anon_key = anon_key
        self.jwt_secret = jwt_secret
        self.timeout = timeout
        self.read_retry = RetryConfig(max_attempts=retry_attempts, base_delay=0.2)
        self.logger = get_logger("entitlements.providers.supabase")
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        # Only reads are idempotent; writes go out once
        self._send_idempotent = retry_on_exception(
            (httpx.TransportError,), config=self.read_retry
        )(self._send)

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport
            )
        return self._client

    async def start(self):
        """Open the connection pool."""
        _ = self.client
        self.logger.info("Supabase client started", base_url=self.base_url)

    async def stop(self):
        """Close the connection pool."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            self.logger.info("Supabase client stopped")

    def _headers(self, access_token: Optional[str]) -> Dict[str, str]:
        return {
            "apikey": self.anon_key,
            "Authorization": f"Bearer {access_token or self.anon_key}",
        }

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        return await self.client.request(method, path, **kwargs)

    async def _request(self,
                       method: str,
                       path: str,
                       access_token: Optional[str] = None,
                       **kwargs) -> httpx.Response:
        headers = self._headers(access_token)
        headers.update(kwargs.pop("headers", {}))

        try:
            if method == "GET":
                response = await self._send_idempotent(method, path, headers=headers, **kwargs)
            else:
                response = await self.client.request(method, path, headers=headers, **kwargs)
        except RetryError as e:
            raise ProviderError("supabase", str(e.last_exception), details={"path": path}) from e
        except httpx.HTTPError as e:
            raise ProviderError("supabase", str(e), details={"path": path}) from e

        if response.status_code >= 400:
            self.logger.error(
                "Supabase request failed",
                method=method,
                path=path,
                status_code=response.status_code,
                body=response.text[:500]
            )
            raise ProviderError(
                "supabase",
                f"{method} {path} returned {response.status_code}",
                details={"status_code": response.status_code}
            )

        return response

    async def get_user(self, access_token: Optional[str]) -> Optional[AuthenticatedUser]:
        """Current user for an access token, or None for anonymous/invalid tokens."""
        if not access_token:
            return None

        if self.jwt_secret:
            try:
                claims = jwt.decode(
                    access_token,
                    self.jwt_secret,
                    algorithms=["HS256"],
                    audience="authenticated"
                )
            except jwt.InvalidTokenError as e:
                self.logger.warning("Access token rejected", error=str(e))
                return None
            if not claims.get("sub"):
                return None
            return AuthenticatedUser(user_id=claims["sub"], email=claims.get("email"))

        try:
            response = await self.client.get("/auth/v1/user", headers=self._headers(access_token))
        except httpx.HTTPError as e:
            raise ProviderError("supabase-auth", str(e)) from e

        if response.status_code in (401, 403):
            return None
        if response.status_code != 200:
            raise ProviderError(
                "supabase-auth",
                f"user lookup returned {response.status_code}",
                details={"status_code": response.status_code}
            )

        data = response.json()
        if not data.get("id"):
            return None
        return AuthenticatedUser(user_id=data["id"], email=data.get("email"))

    async def select(self,
                     table: str,
                     filters: Dict[str, str],
                     columns: str = "*",
                     access_token: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {"select": columns}
        params.update({key: f"eq.{value}" for key, value in filters.items()})
        response = await self._request("GET", f"/rest/v1/{table}", access_token, params=params)
        return response.json()

    async def insert(self,
                     table: str,
                     row: Dict[str, Any],
                     access_token: Optional[str] = None) -> Dict[str, Any]:
        response = await self._request(
            "POST",
            f"/rest/v1/{table}",
            access_token,
            json=row,
            headers={"Prefer": "return=representation"}
        )
        rows = response.json()
        return rows[0] if rows else row

    async def update(self,
                     table: str,
                     filters: Dict[str, str],
                     values: Dict[str, Any],
                     access_token: Optional[str] = None) -> Dict[str, Any]:
        params = {key: f"eq.{value}" for key, value in filters.items()}
        response = await self._request(
            "PATCH",
            f"/rest/v1/{table}",
            access_token,
            params=params,
            json=values,
            headers={"Prefer": "return=representation"}
        )
        rows = response.json()
        return rows[0] if rows else values

    async def rpc(self,
                  name: str,
                  params: Dict[str, Any],
                  access_token: Optional[str] = None) -> Any:
        response = await self._request("POST", f"/rest/v1/rpc/{name}", access_token, json=params)
        return response.json() if response.content else None

    async def health_check(self) -> bool:
        try:
            response = await self.client.get("/auth/v1/health", headers=self._headers(None))
            return response.status_code == 200
        except httpx.HTTPError:
            return False


class SupabaseRoleProvider(RoleProvider):
    """Roles from the ``user_roles`` table."""

    def __init__(self, client: SupabaseClient, access_token: Optional[str] = None):
        self.client = client
        self.access_token = access_token
        self.logger = get_logger("entitlements.providers.supabase.roles")

    async def get_roles(self, user_id: Optional[str]) -> Set[Role]:
        if not user_id:
            return set()

        rows = await self.client.select("user_roles", {"user_id": user_id}, "role", self.access_token)

        roles: Set[Role] = set()
        for row in rows:
            try:
                roles.add(Role(row.get("role")))
            except ValueError:
                self.logger.warning("Ignoring unknown role", user_id=user_id, role=row.get("role"))
        return roles

    async def assign_role(self, target_user_id: str, role: Role, reason: str) -> None:
        reason = self.validate_reason(reason)
        await self.client.rpc(
            "assign_user_role",
            {
                "target_user_id": target_user_id,
                "new_role": Role(role).value,
                "assignment_reason": reason,
            },
            self.access_token
        )
        self.logger.info("Role assigned", target_user_id=target_user_id, role=Role(role).value)

    async def revoke_role(self, target_user_id: str, role: Role, reason: str) -> None:
        reason = self.validate_reason(reason)
        await self.client.rpc(
            "revoke_user_role",
            {
                "target_user_id": target_user_id,
                "role_to_revoke": Role(role).value,
                "revocation_reason": reason,
            },
            self.access_token
        )
        self.logger.info("Role revoked", target_user_id=target_user_id, role=Role(role).value)


class SupabaseSubscriptionProvider(SubscriptionProvider):
    """Subscriptions from the per-user ``subscriptions`` row."""

    def __init__(self,
                 client: SupabaseClient,
                 access_token: Optional[str] = None,
                 premium_duration_days: int = 365):
        super().__init__(premium_duration_days)
        self.client = client
        self.access_token = access_token
        self.logger = get_logger("entitlements.providers.supabase.subscriptions")

    async def _fetch_row(self, user_id: str) -> Optional[Dict[str, Any]]:
        rows = await self.client.select("subscriptions", {"user_id": user_id}, "*", self.access_token)
        return rows[0] if rows else None

    def _parse_entries(self, user_id: str, row: Optional[Dict[str, Any]]) -> List[Tuple[int, Subscription]]:
        """Parsed records paired with their position in the row's JSON array.

        Entries that cannot be parsed are left out here but stay in the row;
        writes go through ``_rewrite`` so they are carried over untouched.
        """
        if not row:
            return []

        result = []
        for index, entry in enumerate(row.get("subscriptions") or []):
            try:
                started_at = parse_timestamp(entry.get("started_at")) or LEGACY_STARTED_AT
                result.append((index, Subscription(
                    subscription_id=entry.get("id") or f"{row.get('id', user_id)}:{index}",
                    user_id=user_id,
                    subject_id=entry["subject_id"],
                    started_at=started_at,
                    tier=SubscriptionTier(entry.get("subscription_type", "free")),
                    status=SubscriptionStatus(entry.get("status", "inactive")),
                    expires_at=parse_timestamp(entry.get("expires_at"))
                )))
            except (AttributeError, KeyError, ValueError, TypeError) as e:
                self.logger.warning("Skipping malformed subscription entry", user_id=user_id, index=index, error=str(e))
        return result

    @staticmethod
    def _to_entry(subscription: Subscription) -> Dict[str, Any]:
        return {
            "id": subscription.subscription_id,
            "subject_id": subscription.subject_id,
            "subscription_type": subscription.tier.value,
            "status": subscription.status.value,
            "started_at": format_timestamp(subscription.started_at),
            "expires_at": format_timestamp(subscription.expires_at),
        }

    @staticmethod
    def _rewrite(row: Dict[str, Any], changes: Dict[int, Subscription]) -> List[Dict[str, Any]]:
        """The row's raw entries with only status and tier updated at the changed positions."""
        entries = []
        for index, raw in enumerate(row.get("subscriptions") or []):
            if index in changes:
                raw = dict(
                    raw,
                    status=changes[index].status.value,
                    subscription_type=changes[index].tier.value
                )
            entries.append(raw)
        return entries

    async def _profile_name(self, user_id: str) -> str:
        rows = await self.client.select("profiles", {"user_id": user_id}, "full_name", self.access_token)
        if rows and rows[0].get("full_name"):
            return rows[0]["full_name"]
        return "User"

    async def _write_entries(self, user_id: str, entries: List[Dict[str, Any]]):
        await self.client.update(
            "subscriptions",
            {"user_id": user_id},
            {"subscriptions": entries},
            self.access_token
        )

    async def list_subscriptions(self, user_id: Optional[str]) -> List[Subscription]:
        if not user_id:
            return []
        return [s for _, s in self._parse_entries(user_id, await self._fetch_row(user_id))]

    async def create_subscription(self,
                                  user_id: Optional[str],
                                  subject_id: str,
                                  tier: SubscriptionTier = SubscriptionTier.FREE,
                                  now: Optional[datetime] = None) -> Subscription:
        subscription = self.build_subscription(str(uuid.uuid4()), user_id, subject_id, tier, now)

        row = await self._fetch_row(user_id)
        if row is not None:
            parsed = self._parse_entries(user_id, row)
            superseded = self.supersede([s for _, s in parsed], subject_id)
            changes = {
                index: new
                for (index, old), new in zip(parsed, superseded)
                if new is not old
            }
            await self._write_entries(user_id, self._rewrite(row, changes) + [self._to_entry(subscription)])
        else:
            await self.client.insert(
                "subscriptions",
                {
                    "user_id": user_id,
                    "user_name": await self._profile_name(user_id),
                    "subscriptions": [self._to_entry(subscription)],
                },
                self.access_token
            )

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
        row = await self._fetch_row(user_id) if user_id else None
        parsed = self._parse_entries(user_id, row)
        current = self.current_for_subject([s for _, s in parsed], subject_id)
        if current is None:
            raise NotFoundError("Subscription not found", details={"subject_id": subject_id})

        changes = {}
        if status is not None:
            changes["status"] = SubscriptionStatus(status)
        if tier is not None:
            changes["tier"] = SubscriptionTier(tier)
        updated = current.with_changes(**changes)

        position = next(index for index, s in parsed if s is current)
        await self._write_entries(user_id, self._rewrite(row, {position: updated}))
        return updated
