from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Optional, Protocol

from orgidp.logging import get_logger
from orgidp.service.audit import AuditDispatcher
from orgidp.service.errors import (
    InvalidClientError,
    InvalidGrantError,
    InvalidRedirectURIError,
    PKCERequiredError,
    ScopeNotAllowedError,
)
from orgidp.service.hashing import CredentialHasher, generate_opaque_token
from orgidp.service.pkce import METHOD_S256
from orgidp.storage.models import AuthorizationCode, ClientApp

logger = get_logger(__name__)

AUTHORIZATION_CODE_TTL = timedelta(minutes=10)


class ClientRegistry(Protocol):
    def get_client_app(self, client_id: str) -> Optional[ClientApp]: ...


class CodeStore(ClientRegistry, Protocol):
    def create_authorization_code(self, code: AuthorizationCode) -> AuthorizationCode: ...

    def get_authorization_code(self, code_hash: str) -> Optional[AuthorizationCode]: ...

    def consume_authorization_code(
        self,
        code_hash: str,
        client_id: str,
        redirect_uri: str,
        now: Optional[datetime] = None,
    ) -> Optional[AuthorizationCode]: ...

    def delete_expired_authorization_codes(self, now: Optional[datetime] = None) -> int: ...


def split_scope(scope: str) -> List[str]:
    """Split a space-delimited scope string; empty tokens are kept so they fail validation."""
    return scope.split(" ")


class AuthorizationCodeManager:
    """Issues and single-use-consumes PKCE-bound authorization codes."""

    def __init__(
        self,
        store: CodeStore,
        hasher: CredentialHasher,
        *,
        audit: Optional[AuditDispatcher] = None,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.audit = audit
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def resolve_client(self, client_id: str) -> ClientApp:
        client = self.store.get_client_app(client_id) if client_id else None
        if client is None:
            self.logger.warning("oauth_unknown_client", client_id=client_id)
            raise InvalidClientError("unknown client")
        return client

    @staticmethod
    def check_redirect_uri(client: ClientApp, redirect_uri: str) -> None:
        # Byte-exact: no prefix, wildcard or trailing-slash tolerance
        if redirect_uri not in client.redirect_uris:
            raise InvalidRedirectURIError("redirect_uri is not registered for this client")

    @staticmethod
    def check_scope(client: ClientApp, scope: str) -> None:
        allowed = set(client.allowed_scopes)
        for item in split_scope(scope or ""):
            if item not in allowed:
                raise ScopeNotAllowedError(
                    "requested scope is not allowed for this client",
                    detail={"scope": item},
                )

    async def issue_code(
        self,
        client_id: str,
        redirect_uri: str,
        scope: str,
        code_challenge: Optional[str],
        code_challenge_method: Optional[str],
        user_id: str,
        organization_id: Optional[str] = None,
    ) -> str:
        """Validate the request and return a fresh raw code.

        Only the keyed hash is stored; the raw value exists solely in the
        return value.
        """
        client = self.resolve_client(client_id)
        self.check_redirect_uri(client, redirect_uri)
        if not code_challenge or code_challenge_method != METHOD_S256:
            raise PKCERequiredError("PKCE with code_challenge_method=S256 is required")
        self.check_scope(client, scope)

        raw_code = generate_opaque_token()
        record = AuthorizationCode(
            code_hash=self.hasher.lookup_hash(raw_code),
            client_id=client.client_id,
            user_id=user_id,
            organization_id=organization_id,
            redirect_uri=redirect_uri,
            scope=scope,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
            expires_at=self._now() + AUTHORIZATION_CODE_TTL,
        )
        self.store.create_authorization_code(record)
        self.logger.info(
            "authorization_code_issued",
            client_id=client.client_id,
            user_id=user_id,
            organization_id=organization_id,
        )
        if self.audit:
            self.audit.record(
                "oauth.code_issued",
                success=True,
                actor_id=user_id,
                resource=f"client:{client.client_id}",
                details={"organization_id": organization_id, "scope": scope},
            )
        return raw_code

    async def consume_code(
        self, code: str, client_id: str, redirect_uri: str
    ) -> AuthorizationCode:
        """Atomically mark the code used and return it, or raise InvalidGrantError."""
        if not code:
            raise InvalidGrantError("code_missing")
        code_hash = self.hasher.lookup_hash(code)
        now = self._now()
        record = self.store.consume_authorization_code(
            code_hash, client_id, redirect_uri, now=now
        )
        if record is not None:
            return record

        reason = self._failure_reason(code_hash, client_id, redirect_uri, now)
        self.logger.warning(
            "authorization_code_rejected", client_id=client_id, reason=reason
        )
        raise InvalidGrantError(reason)

    def _failure_reason(
        self, code_hash: str, client_id: str, redirect_uri: str, now: datetime
    ) -> str:
        # Read-only classification for logs and the audit trail
        existing = self.store.get_authorization_code(code_hash)
        if existing is None:
            return "code_not_found"
        if existing.used:
            return "code_already_used"
        if existing.expires_at <= now:
            return "code_expired"
        if existing.client_id != client_id:
            return "code_client_mismatch"
        if existing.redirect_uri != redirect_uri:
            return "code_redirect_mismatch"
        return "code_not_redeemable"

    def cleanup_expired(self) -> int:
        """Best-effort removal of expired codes."""
        try:
            removed = self.store.delete_expired_authorization_codes(self._now())
        except Exception as exc:
            self.logger.warning("authorization_code_cleanup_failed", error=str(exc))
            return 0
        if removed:
            self.logger.info("authorization_codes_purged", count=removed)
        return removed
