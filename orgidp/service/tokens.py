from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol, Tuple

from orgidp.logging import get_logger
from orgidp.service import pkce
from orgidp.service.audit import AuditDispatcher
from orgidp.service.codes import AuthorizationCodeManager
from orgidp.service.errors import InvalidClientError, InvalidGrantError, ServiceError
from orgidp.service.hashing import CredentialHasher, generate_opaque_token
from orgidp.service.permissions import PermissionResolver, PrincipalStore
from orgidp.service.signer import Signer
from orgidp.storage.models import ClientApp, OAuthRefreshToken, User

logger = get_logger(__name__)

ACCESS_TOKEN_TTL = timedelta(hours=1)
REFRESH_TOKEN_TTL = timedelta(days=30)
TOKEN_TYPE = "Bearer"


class IssuerStore(PrincipalStore, Protocol):
    def get_client_app(self, client_id: str) -> Optional[ClientApp]: ...

    def create_refresh_token(self, token: OAuthRefreshToken) -> OAuthRefreshToken: ...


@dataclass
class TokenResponse:
    access_token: str
    refresh_token: str
    expires_in: int
    scope: str
    token_type: str = TOKEN_TYPE

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class TokenIssuer:
    """Exchanges authorization codes for the first token pair of a family.

    Also owns access-token claim construction and refresh-record minting,
    which the refresh rotator reuses for every later pair.
    """

    def __init__(
        self,
        store: IssuerStore,
        codes: AuthorizationCodeManager,
        resolver: PermissionResolver,
        signer: Signer,
        hasher: CredentialHasher,
        *,
        audit: Optional[AuditDispatcher] = None,
    ) -> None:
        self.store = store
        self.codes = codes
        self.resolver = resolver
        self.signer = signer
        self.hasher = hasher
        self.audit = audit
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def build_access_token(
        self,
        user: User,
        client_id: str,
        organization_id: Optional[str],
        *,
        now: Optional[datetime] = None,
    ) -> Tuple[str, dict[str, Any]]:
        """Resolve the principal's grant and sign a one-hour access token."""
        grant = await self.resolver.resolve(user, organization_id)
        issued_at = int((now or self._now()).timestamp())
        claims: dict[str, Any] = {
            "iss": self.signer.issuer_for(client_id),
            "sub": user.id,
            "aud": client_id,
            "email": user.email,
            "org_id": organization_id,
            "roles": grant.roles,
            "permissions": grant.permissions,
            "is_superadmin": user.is_superadmin,
            "jti": str(uuid.uuid4()),
            "iat": issued_at,
            "exp": issued_at + int(ACCESS_TOKEN_TTL.total_seconds()),
        }
        return self.signer.sign(claims), claims

    def new_refresh_record(
        self,
        *,
        family_id: str,
        client_id: str,
        user_id: str,
        organization_id: Optional[str],
        scope: str,
        user_agent_hash: str,
        ip_hash: str,
        now: Optional[datetime] = None,
    ) -> Tuple[str, OAuthRefreshToken]:
        """Mint a raw refresh token and its unsaved record."""
        raw_token = generate_opaque_token()
        record = OAuthRefreshToken(
            token_hash=self.hasher.lookup_hash(raw_token),
            family_id=family_id,
            client_id=client_id,
            user_id=user_id,
            organization_id=organization_id,
            scope=scope,
            user_agent_hash=user_agent_hash,
            ip_hash=ip_hash,
            expires_at=(now or self._now()) + REFRESH_TOKEN_TTL,
        )
        return raw_token, record

    def authenticate_client(self, client_id: str, client_secret: Optional[str]) -> ClientApp:
        client = self.store.get_client_app(client_id)
        if client is None:
            raise InvalidClientError("unknown client")
        if client.is_confidential and not self.hasher.verify_client_secret(
            client.client_secret_hash, client_secret
        ):
            self.logger.warning("client_authentication_failed", client_id=client_id)
            raise InvalidClientError("client authentication failed")
        return client

    async def exchange_code_for_tokens(
        self,
        code: str,
        client_id: str,
        client_secret: Optional[str],
        redirect_uri: str,
        code_verifier: str,
        user_agent: Optional[str],
        ip: Optional[str],
    ) -> TokenResponse:
        try:
            response, user_id = await self._exchange(
                code, client_id, client_secret, redirect_uri, code_verifier, user_agent, ip
            )
        except ServiceError as exc:
            if self.audit:
                self.audit.record(
                    "oauth.code_exchanged",
                    success=False,
                    resource=f"client:{client_id}",
                    details={"reason": getattr(exc, "reason", exc.error_code)},
                    error=exc.message,
                )
            raise
        if self.audit:
            self.audit.record(
                "oauth.code_exchanged",
                success=True,
                actor_id=user_id,
                resource=f"client:{client_id}",
            )
        return response

    async def _exchange(
        self,
        code: str,
        client_id: str,
        client_secret: Optional[str],
        redirect_uri: str,
        code_verifier: str,
        user_agent: Optional[str],
        ip: Optional[str],
    ) -> Tuple[TokenResponse, str]:
        auth_code = await self.codes.consume_code(code, client_id, redirect_uri)
        try:
            pkce.verify(
                code_verifier, auth_code.code_challenge, auth_code.code_challenge_method
            )
        except pkce.PKCEVerificationError as exc:
            self.logger.warning(
                "pkce_verification_failed", client_id=client_id, error=str(exc)
            )
            raise InvalidGrantError("pkce_verification_failed") from exc

        self.authenticate_client(client_id, client_secret)

        user = self.store.get_user(auth_code.user_id)
        if user is None or not user.is_active:
            raise InvalidGrantError("user_unavailable")

        now = self._now()
        access_token, claims = await self.build_access_token(
            user, client_id, auth_code.organization_id, now=now
        )
        raw_refresh, record = self.new_refresh_record(
            family_id=str(uuid.uuid4()),
            client_id=client_id,
            user_id=user.id,
            organization_id=auth_code.organization_id,
            scope=auth_code.scope,
            user_agent_hash=self.hasher.bind_user_agent(user_agent),
            ip_hash=self.hasher.bind_ip(ip),
            now=now,
        )
        self.store.create_refresh_token(record)
        self.logger.info(
            "tokens_issued",
            client_id=client_id,
            user_id=user.id,
            organization_id=auth_code.organization_id,
            family_id=record.family_id,
            token_id=claims["jti"],
        )
        return (
            TokenResponse(
                access_token=access_token,
                refresh_token=raw_refresh,
                expires_in=int(ACCESS_TOKEN_TTL.total_seconds()),
                scope=auth_code.scope,
            ),
            user.id,
        )
