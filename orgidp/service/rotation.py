from __future__ import annotations

from datetime import datetime, timezone
from typing import ContextManager, List, Optional, Protocol

from orgidp.logging import get_logger
from orgidp.service.audit import AuditDispatcher
from orgidp.service.errors import (
    BindingViolationError,
    InvalidGrantError,
    ServiceError,
    TokenRotationError,
)
from orgidp.service.hashing import CredentialHasher
from orgidp.service.tokens import ACCESS_TOKEN_TTL, IssuerStore, TokenIssuer, TokenResponse
from orgidp.storage.errors import RotationConflict
from orgidp.storage.models import OAuthRefreshToken

logger = get_logger(__name__)


class RefreshTransaction(Protocol):
    def create_refresh_token(self, token: OAuthRefreshToken) -> OAuthRefreshToken: ...

    def mark_refresh_token_used(
        self, token_hash: str, successor_id: str, used_at: datetime
    ) -> bool: ...


class RefreshTokenStore(IssuerStore, Protocol):
    def get_refresh_token(self, token_hash: str) -> Optional[OAuthRefreshToken]: ...

    def list_refresh_family(self, family_id: str) -> List[OAuthRefreshToken]: ...

    def revoke_refresh_family(self, family_id: str) -> int: ...

    def revoke_refresh_token(self, token_hash: str) -> bool: ...

    def refresh_transaction(self) -> ContextManager[RefreshTransaction]: ...

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int: ...


class RefreshRotator:
    """Single-use refresh token rotation with family-wide replay defense.

    A token moves ACTIVE -> USED exactly once, through a conditional write
    on ``used_at`` inside the same transaction that creates its successor.
    Reuse, a binding mismatch, a lost race or a failed commit revokes every
    token in the family.
    """

    def __init__(
        self,
        store: RefreshTokenStore,
        issuer: TokenIssuer,
        hasher: CredentialHasher,
        *,
        audit: Optional[AuditDispatcher] = None,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.hasher = hasher
        self.audit = audit
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _audit(self, action: str, token: OAuthRefreshToken, *, success: bool, **details) -> None:
        if not self.audit:
            return
        self.audit.record(
            action,
            success=success,
            actor_id=token.user_id,
            resource=f"refresh_family:{token.family_id}",
            details={"client_id": token.client_id, **details},
        )

    def revoke_family(self, token: OAuthRefreshToken, reason: str) -> int:
        """Revoke every token sharing ``token.family_id``; never raises."""
        try:
            revoked = self.store.revoke_refresh_family(token.family_id)
        except Exception as exc:
            self.logger.error(
                "refresh_family_revoke_failed",
                family_id=token.family_id,
                reason=reason,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return 0
        self.logger.warning(
            "refresh_family_revoked",
            family_id=token.family_id,
            user_id=token.user_id,
            client_id=token.client_id,
            reason=reason,
            revoked=revoked,
        )
        return revoked

    def cleanup_expired(self) -> int:
        """Best-effort removal of expired refresh tokens."""
        try:
            removed = self.store.delete_expired_refresh_tokens(self._now())
        except Exception as exc:
            self.logger.warning("refresh_token_cleanup_failed", error=str(exc))
            return 0
        if removed:
            self.logger.info("refresh_tokens_purged", count=removed)
        return removed

    async def refresh_access_token(
        self,
        refresh_token: str,
        client_id: str,
        user_agent: Optional[str],
        ip: Optional[str],
    ) -> TokenResponse:
        if not refresh_token:
            raise InvalidGrantError("refresh_token_missing")
        token = self.store.get_refresh_token(self.hasher.lookup_hash(refresh_token))
        if token is None:
            self.logger.warning("refresh_token_unknown", client_id=client_id)
            raise InvalidGrantError("refresh_token_not_found")

        if token.revoked:
            self._audit("oauth.token_refreshed", token, success=False, reason="revoked")
            raise InvalidGrantError("refresh_token_revoked")

        if token.used_at is not None:
            self.logger.warning(
                "refresh_replay_detected",
                family_id=token.family_id,
                user_id=token.user_id,
                used_at=token.used_at.isoformat(),
            )
            self.revoke_family(token, "replay")
            self._audit("oauth.refresh_replay", token, success=False, reason="already_used")
            raise InvalidGrantError("refresh_token_reused")

        now = self._now()
        if token.expires_at <= now:
            self._audit("oauth.token_refreshed", token, success=False, reason="expired")
            raise InvalidGrantError("refresh_token_expired")

        if token.client_id != client_id:
            self.logger.warning(
                "refresh_client_mismatch",
                family_id=token.family_id,
                expected_client_id=token.client_id,
                client_id=client_id,
            )
            self._audit("oauth.token_refreshed", token, success=False, reason="client_mismatch")
            raise InvalidGrantError("refresh_client_mismatch")

        ua_ok = self.hasher.matches(token.user_agent_hash, self.hasher.bind_user_agent(user_agent))
        ip_ok = self.hasher.matches(token.ip_hash, self.hasher.bind_ip(ip))
        if not (ua_ok and ip_ok):
            self.revoke_family(token, "binding_violation")
            self._audit(
                "oauth.binding_violation",
                token,
                success=False,
                user_agent_match=ua_ok,
                ip_match=ip_ok,
            )
            raise BindingViolationError("refresh_binding_violation")

        user = self.store.get_user(token.user_id)
        if user is None or not user.is_active:
            self._audit("oauth.token_refreshed", token, success=False, reason="user_inactive")
            raise InvalidGrantError("user_inactive")
        if token.organization_id and not user.is_superadmin:
            membership = self.store.get_active_membership(token.organization_id, user.id)
            if membership is None:
                self._audit(
                    "oauth.token_refreshed", token, success=False, reason="membership_inactive"
                )
                raise InvalidGrantError("membership_inactive")

        access_token, claims = await self.issuer.build_access_token(
            user, token.client_id, token.organization_id, now=now
        )
        raw_successor, successor = self.issuer.new_refresh_record(
            family_id=token.family_id,
            client_id=token.client_id,
            user_id=token.user_id,
            organization_id=token.organization_id,
            scope=token.scope,
            user_agent_hash=token.user_agent_hash,
            ip_hash=token.ip_hash,
            now=now,
        )
        self._commit_rotation(token, successor, now)

        self.logger.info(
            "refresh_token_rotated",
            family_id=token.family_id,
            user_id=token.user_id,
            client_id=token.client_id,
            token_id=claims["jti"],
        )
        self._audit("oauth.token_refreshed", token, success=True)
        return TokenResponse(
            access_token=access_token,
            refresh_token=raw_successor,
            expires_in=int(ACCESS_TOKEN_TTL.total_seconds()),
            scope=token.scope,
        )

    def _commit_rotation(
        self, token: OAuthRefreshToken, successor: OAuthRefreshToken, now: datetime
    ) -> None:
        try:
            with self.store.refresh_transaction() as tx:
                tx.create_refresh_token(successor)
                if not tx.mark_refresh_token_used(token.token_hash, successor.id, now):
                    raise RotationConflict(token.token_hash)
        except RotationConflict:
            # A concurrent request consumed this token first
            self.logger.warning(
                "refresh_rotation_conflict",
                family_id=token.family_id,
                user_id=token.user_id,
            )
            self.revoke_family(token, "concurrent_reuse")
            self._audit("oauth.refresh_replay", token, success=False, reason="lost_race")
            raise InvalidGrantError("refresh_token_reused")
        except ServiceError:
            raise
        except Exception as exc:
            self.logger.error(
                "refresh_rotation_failed",
                family_id=token.family_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            self.revoke_family(token, "commit_failed")
            self._audit(
                "oauth.rotation_failed", token, success=False, error_type=type(exc).__name__
            )
            raise TokenRotationError(
                "token rotation failed; sign in again"
            ) from exc
