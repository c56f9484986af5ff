from __future__ import annotations

import math
import time
from datetime import timedelta
from typing import List, Optional, Protocol

from orgidp.logging import get_logger
from orgidp.service.audit import AuditDispatcher
from orgidp.service.context import RequestContext
from orgidp.service.errors import InvalidRequestError, InvalidTokenError
from orgidp.service.signer import Signer
from orgidp.storage.models import Membership

logger = get_logger(__name__)

# Denylist lifetime for tokens without an exp claim
FALLBACK_TOKEN_TTL = timedelta(hours=24)


class RevocationStore(Protocol):
    """Shared TTL key/value store; every operation is a single atomic key op."""

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def exists(self, key: str) -> bool: ...

    async def delete(self, key: str) -> None: ...


class SessionStore(Protocol):
    def delete_session(self, session_id: str) -> bool: ...

    def delete_user_sessions(
        self, user_id: str, organization_id: Optional[str] = None
    ) -> int: ...

    def list_organization_memberships(self, organization_id: str) -> List[Membership]: ...

    def revoke_refresh_tokens_for(
        self, *, user_id: Optional[str] = None, organization_id: Optional[str] = None
    ) -> int: ...


def token_key(token_id: str) -> str:
    return f"revoked:token:{token_id}"


def user_key(user_id: str) -> str:
    return f"revoked:user:{user_id}"


def org_key(organization_id: str) -> str:
    return f"revoked:org:{organization_id}"


def user_org_key(user_id: str, organization_id: str) -> str:
    return f"revoked:user_org:{user_id}:{organization_id}"


class RevocationService:
    """Denylist for access tokens plus user, org and user-in-org cutoffs.

    Cutoff markers hold the revocation time; any token whose ``iat`` is not
    later than the marker is rejected. All expiry is left to the TTL store.
    """

    def __init__(
        self,
        cache: RevocationStore,
        store: SessionStore,
        signer: Signer,
        *,
        marker_ttl: timedelta = timedelta(hours=24),
        audit: Optional[AuditDispatcher] = None,
    ) -> None:
        self.cache = cache
        self.store = store
        self.signer = signer
        self.marker_ttl = marker_ttl
        self.audit = audit
        self.logger = logger

    def _audit(self, action: str, resource: str, actor_id: Optional[str], **details) -> None:
        if self.audit:
            self.audit.record(
                action, success=True, actor_id=actor_id, resource=resource, details=details
            )

    async def revoke_token(self, token: str, *, actor_id: Optional[str] = None) -> bool:
        """Denylist ``token`` until the signer would stop accepting it.

        Returns False when the token is past ``exp`` plus the signer's leeway
        and needs no marker.
        """
        claims = self.signer.decode(token, verify_exp=False)
        if claims is None or not claims.get("jti"):
            raise InvalidTokenError("token cannot be parsed")
        token_id = str(claims["jti"])
        exp = claims.get("exp")
        if exp is None:
            ttl = int(FALLBACK_TOKEN_TTL.total_seconds())
        else:
            try:
                ttl = math.ceil(float(exp) + self.signer.leeway_seconds - time.time())
            except (TypeError, ValueError, OverflowError) as exc:
                raise InvalidTokenError("token expiry cannot be parsed") from exc
            if ttl <= 0:
                self.logger.info("token_revocation_skipped_expired", token_id=token_id)
                return False
        await self.cache.set_with_ttl(token_key(token_id), "1", ttl)
        self.logger.info("token_revoked", token_id=token_id, ttl_seconds=ttl)
        self._audit(
            "revocation.token", f"token:{token_id}", actor_id, subject=claims.get("sub")
        )
        return True

    async def is_token_revoked(self, token: str) -> bool:
        """Fail closed: anything that does not parse counts as revoked."""
        claims = self.signer.decode(token, verify_exp=False)
        if claims is None or not claims.get("jti"):
            return True
        return await self.is_token_id_revoked(str(claims["jti"]))

    async def is_token_id_revoked(self, token_id: str) -> bool:
        return await self.cache.exists(token_key(token_id))

    async def _set_marker(self, key: str) -> None:
        await self.cache.set_with_ttl(
            key, repr(time.time()), int(self.marker_ttl.total_seconds())
        )

    async def revoke_user_sessions(
        self, user_id: str, *, actor_id: Optional[str] = None
    ) -> int:
        if not user_id:
            raise InvalidRequestError("user_id is required")
        sessions = self.store.delete_user_sessions(user_id)
        refresh = self.store.revoke_refresh_tokens_for(user_id=user_id)
        await self._set_marker(user_key(user_id))
        self.logger.warning(
            "user_sessions_revoked",
            user_id=user_id,
            sessions=sessions,
            refresh_tokens=refresh,
        )
        self._audit("revocation.user", f"user:{user_id}", actor_id, sessions=sessions)
        return sessions

    async def revoke_org_sessions(
        self, organization_id: str, *, actor_id: Optional[str] = None
    ) -> int:
        if not organization_id:
            raise InvalidRequestError("organization_id is required")
        sessions = 0
        for membership in self.store.list_organization_memberships(organization_id):
            sessions += self.store.delete_user_sessions(
                membership.user_id, organization_id=organization_id
            )
        refresh = self.store.revoke_refresh_tokens_for(organization_id=organization_id)
        await self._set_marker(org_key(organization_id))
        self.logger.warning(
            "org_sessions_revoked",
            organization_id=organization_id,
            sessions=sessions,
            refresh_tokens=refresh,
        )
        self._audit(
            "revocation.org", f"org:{organization_id}", actor_id, sessions=sessions
        )
        return sessions

    async def revoke_user_in_org(
        self, user_id: str, organization_id: str, *, actor_id: Optional[str] = None
    ) -> int:
        if not user_id or not organization_id:
            raise InvalidRequestError("user_id and organization_id are required")
        sessions = self.store.delete_user_sessions(user_id, organization_id=organization_id)
        refresh = self.store.revoke_refresh_tokens_for(
            user_id=user_id, organization_id=organization_id
        )
        await self._set_marker(user_org_key(user_id, organization_id))
        self.logger.warning(
            "user_org_sessions_revoked",
            user_id=user_id,
            organization_id=organization_id,
            sessions=sessions,
            refresh_tokens=refresh,
        )
        self._audit(
            "revocation.user_org",
            f"user:{user_id}/org:{organization_id}",
            actor_id,
            sessions=sessions,
        )
        return sessions

    async def revoke_session(self, session_id: str) -> bool:
        removed = self.store.delete_session(session_id)
        if removed:
            self.logger.info("session_revoked", session_id=session_id)
        return removed

    async def _issued_before_marker(self, key: str, issued_at: int) -> bool:
        marker = await self.cache.get(key)
        if marker is None:
            return False
        try:
            revoked_at = float(marker)
        except ValueError:
            # Unreadable marker: treat as a blanket revocation
            self.logger.error("revocation_marker_corrupt", key=key)
            return True
        return issued_at <= revoked_at

    async def is_user_revoked(self, user_id: str, issued_at: int) -> bool:
        return await self._issued_before_marker(user_key(user_id), issued_at)

    async def is_org_revoked(self, organization_id: str, issued_at: int) -> bool:
        return await self._issued_before_marker(org_key(organization_id), issued_at)

    async def is_user_org_revoked(
        self, user_id: str, organization_id: str, issued_at: int
    ) -> bool:
        return await self._issued_before_marker(
            user_org_key(user_id, organization_id), issued_at
        )

    async def is_context_revoked(self, ctx: RequestContext) -> bool:
        """Check used by the request-authorization path."""
        if await self.is_token_id_revoked(ctx.token_id):
            return True
        if await self.is_user_revoked(ctx.user_id, ctx.issued_at):
            return True
        if ctx.organization_id:
            if await self.is_org_revoked(ctx.organization_id, ctx.issued_at):
                return True
            if await self.is_user_org_revoked(ctx.user_id, ctx.organization_id, ctx.issued_at):
                return True
        return False

    async def cleanup_expired_tokens(self) -> int:
        """Best-effort sweep; TTL expiry already guarantees correctness."""
        purge = getattr(self.cache, "purge_expired", None)
        if purge is None:
            return 0
        try:
            removed = await purge()
        except Exception as exc:
            self.logger.warning("revocation_cleanup_failed", error=str(exc))
            return 0
        if removed:
            self.logger.info("revocation_markers_purged", count=removed)
        return removed
