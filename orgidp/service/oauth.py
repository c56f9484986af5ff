from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol

from orgidp.logging import get_logger
from orgidp.service.audit import AuditDispatcher
from orgidp.service.codes import AuthorizationCodeManager
from orgidp.service.context import RequestContext
from orgidp.service.errors import (
    ForbiddenError,
    InvalidRequestError,
    InvalidTokenError,
    UnsupportedGrantTypeError,
)
from orgidp.service.revocation import RevocationService
from orgidp.service.rotation import RefreshRotator, RefreshTokenStore
from orgidp.service.signer import Signer
from orgidp.service.tokens import TokenIssuer, TokenResponse

logger = get_logger(__name__)

GRANT_AUTHORIZATION_CODE = "authorization_code"
GRANT_REFRESH_TOKEN = "refresh_token"


class OAuthStore(RefreshTokenStore, Protocol):
    pass


@dataclass
class AuthorizationResult:
    code: str
    redirect_uri: str
    state: Optional[str] = None


class OAuthService:
    """Entry points for the authorize, token, revoke and userinfo endpoints."""

    def __init__(
        self,
        store: OAuthStore,
        codes: AuthorizationCodeManager,
        issuer: TokenIssuer,
        rotator: RefreshRotator,
        revocation: RevocationService,
        signer: Signer,
        *,
        audit: Optional[AuditDispatcher] = None,
    ) -> None:
        self.store = store
        self.codes = codes
        self.issuer = issuer
        self.rotator = rotator
        self.revocation = revocation
        self.signer = signer
        self.audit = audit
        self.logger = logger

    async def authenticate(self, bearer_token: Optional[str]) -> RequestContext:
        """Turn a bearer access token into a RequestContext or raise InvalidTokenError."""
        if not bearer_token:
            raise InvalidTokenError("missing bearer token")
        claims = self.signer.decode(bearer_token)
        if claims is None:
            raise InvalidTokenError("invalid or expired token")
        try:
            ctx = RequestContext.from_claims(claims)
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidTokenError("token is missing required claims") from exc
        if await self.revocation.is_context_revoked(ctx):
            self.logger.warning(
                "revoked_token_presented", user_id=ctx.user_id, token_id=ctx.token_id
            )
            raise InvalidTokenError("token has been revoked")
        user = self.store.get_user(ctx.user_id)
        if user is None or not user.is_active:
            raise InvalidTokenError("token subject is not active")
        return ctx

    async def authorize(
        self,
        ctx: RequestContext,
        *,
        client_id: str,
        redirect_uri: str,
        scope: str,
        code_challenge: Optional[str],
        code_challenge_method: Optional[str],
        state: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> AuthorizationResult:
        if organization_id and not ctx.is_superadmin:
            membership = self.store.get_active_membership(organization_id, ctx.user_id)
            if membership is None:
                raise ForbiddenError("no active membership in the requested organization")
        code = await self.codes.issue_code(
            client_id,
            redirect_uri,
            scope,
            code_challenge,
            code_challenge_method,
            ctx.user_id,
            organization_id,
        )
        return AuthorizationResult(code=code, redirect_uri=redirect_uri, state=state)

    async def token(
        self,
        *,
        grant_type: Optional[str],
        client_id: Optional[str],
        client_secret: Optional[str] = None,
        code: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        code_verifier: Optional[str] = None,
        refresh_token: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> TokenResponse:
        if not grant_type:
            raise InvalidRequestError("grant_type is required")
        if not client_id:
            raise InvalidRequestError("client_id is required")
        if grant_type == GRANT_AUTHORIZATION_CODE:
            missing = [
                name
                for name, value in (
                    ("code", code),
                    ("redirect_uri", redirect_uri),
                    ("code_verifier", code_verifier),
                )
                if not value
            ]
            if missing:
                raise InvalidRequestError(
                    f"missing parameter: {', '.join(missing)}", detail={"missing": missing}
                )
            return await self.issuer.exchange_code_for_tokens(
                code, client_id, client_secret, redirect_uri, code_verifier, user_agent, ip
            )
        if grant_type == GRANT_REFRESH_TOKEN:
            if not refresh_token:
                raise InvalidRequestError("missing parameter: refresh_token")
            # Confidential clients authenticate on every grant (RFC 6749 §6)
            self.issuer.authenticate_client(client_id, client_secret)
            return await self.rotator.refresh_access_token(
                refresh_token, client_id, user_agent, ip
            )
        raise UnsupportedGrantTypeError(f"unsupported grant_type: {grant_type}")

    async def revoke_refresh_token(
        self, token: str, client_id: str, client_secret: Optional[str] = None
    ) -> None:
        """Revoke one refresh token; unknown or foreign tokens are ignored."""
        self.issuer.authenticate_client(client_id, client_secret)
        record = self.store.get_refresh_token(self.issuer.hasher.lookup_hash(token))
        if record is None or record.client_id != client_id:
            self.logger.info("refresh_revoke_ignored", client_id=client_id)
            return
        if self.store.revoke_refresh_token(record.token_hash):
            self.logger.info(
                "refresh_token_revoked", family_id=record.family_id, client_id=client_id
            )
            if self.audit:
                self.audit.record(
                    "oauth.refresh_revoked",
                    success=True,
                    actor_id=record.user_id,
                    resource=f"refresh_family:{record.family_id}",
                    details={"client_id": client_id},
                )

    async def get_user_info(self, ctx: RequestContext) -> dict[str, Any]:
        user = self.store.get_user(ctx.user_id)
        if user is None:
            raise InvalidTokenError("token subject no longer exists")
        return {
            "sub": user.id,
            "email": user.email,
            "email_verified": user.email_verified,
            "name": user.name,
            "organization_id": ctx.organization_id,
        }
