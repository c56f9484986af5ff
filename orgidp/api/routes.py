from __future__ import annotations

import asyncio
from typing import Awaitable, Optional, TypeVar

from fastapi import APIRouter, Depends, Header, Path, Request, Response

from orgidp.api.schemas import (
    AuthorizeRequest,
    AuthorizeResponse,
    Envelope,
    RevocationResult,
    RevokeRequest,
    TokenRequest,
    TokenResponse,
    TokenRevocationRequest,
    UserInfoResponse,
)
from orgidp.logging import get_logger
from orgidp.service.context import RequestContext
from orgidp.service.errors import ForbiddenError, InvalidTokenError, ServiceError
from orgidp.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

T = TypeVar("T")

_NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}


async def _with_deadline(awaitable: Awaitable[T]) -> T:
    """Bound a service call by the configured request timeout."""
    timeout = get_runtime().settings.request_timeout_seconds
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as exc:
        logger.error("request_deadline_exceeded", timeout_seconds=timeout)
        raise ServiceError(
            "request timed out",
            status_code=503,
            error_code="temporarily_unavailable",
        ) from exc


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise InvalidTokenError("authorization header must use the Bearer scheme")
    return token.strip()


async def get_request_context(
    authorization: Optional[str] = Header(None),
) -> RequestContext:
    runtime = get_runtime()
    return await runtime.oauth.authenticate(_bearer_token(authorization))


async def require_superadmin(
    ctx: RequestContext = Depends(get_request_context),
) -> RequestContext:
    if not ctx.is_superadmin:
        raise ForbiddenError("superadmin access required")
    return ctx


@router.post("/oauth/authorize", response_model=AuthorizeResponse)
async def authorize(
    body: AuthorizeRequest,
    response: Response,
    ctx: RequestContext = Depends(get_request_context),
):
    runtime = get_runtime()
    result = await _with_deadline(
        runtime.oauth.authorize(
            ctx,
            client_id=body.client_id,
            redirect_uri=body.redirect_uri,
            scope=body.scope,
            code_challenge=body.code_challenge,
            code_challenge_method=body.code_challenge_method,
            state=body.state,
            organization_id=body.organization_id,
        )
    )
    response.headers.update(_NO_STORE)
    return AuthorizeResponse(code=result.code, redirect_uri=result.redirect_uri, state=result.state)


@router.post("/oauth/token", response_model=TokenResponse)
async def token(body: TokenRequest, request: Request, response: Response):
    runtime = get_runtime()
    issued = await _with_deadline(
        runtime.oauth.token(
            grant_type=body.grant_type,
            client_id=body.client_id,
            client_secret=body.client_secret,
            code=body.code,
            redirect_uri=body.redirect_uri,
            code_verifier=body.code_verifier,
            refresh_token=body.refresh_token,
            user_agent=request.headers.get("User-Agent"),
            ip=_client_ip(request),
        )
    )
    response.headers.update(_NO_STORE)
    return TokenResponse(**issued.as_dict())


@router.post("/oauth/revoke")
async def revoke(body: RevokeRequest):
    runtime = get_runtime()
    await _with_deadline(
        runtime.oauth.revoke_refresh_token(body.token, body.client_id, body.client_secret)
    )
    return {}


@router.get("/oauth/userinfo", response_model=UserInfoResponse)
async def userinfo(ctx: RequestContext = Depends(get_request_context)):
    runtime = get_runtime()
    info = await _with_deadline(runtime.oauth.get_user_info(ctx))
    return UserInfoResponse(**info)


@router.post("/admin/revocations/token", response_model=Envelope)
async def revoke_access_token(
    body: TokenRevocationRequest,
    admin: RequestContext = Depends(require_superadmin),
):
    runtime = get_runtime()
    revoked = await _with_deadline(
        runtime.revocation.revoke_token(body.token, actor_id=admin.user_id)
    )
    return Envelope(status="ok", data=RevocationResult(revoked=revoked).model_dump())


@router.post("/admin/revocations/users/{user_id}", response_model=Envelope)
async def revoke_user(
    user_id: str = Path(..., min_length=1, max_length=255),
    admin: RequestContext = Depends(require_superadmin),
):
    runtime = get_runtime()
    deleted = await _with_deadline(
        runtime.revocation.revoke_user_sessions(user_id, actor_id=admin.user_id)
    )
    return Envelope(
        status="ok", data=RevocationResult(revoked=True, sessions_deleted=deleted).model_dump()
    )


@router.post("/admin/revocations/orgs/{org_id}", response_model=Envelope)
async def revoke_org(
    org_id: str = Path(..., min_length=1, max_length=255),
    admin: RequestContext = Depends(require_superadmin),
):
    runtime = get_runtime()
    deleted = await _with_deadline(
        runtime.revocation.revoke_org_sessions(org_id, actor_id=admin.user_id)
    )
    return Envelope(
        status="ok", data=RevocationResult(revoked=True, sessions_deleted=deleted).model_dump()
    )


@router.post("/admin/revocations/orgs/{org_id}/users/{user_id}", response_model=Envelope)
async def revoke_user_in_org(
    org_id: str = Path(..., min_length=1, max_length=255),
    user_id: str = Path(..., min_length=1, max_length=255),
    admin: RequestContext = Depends(require_superadmin),
):
    runtime = get_runtime()
    deleted = await _with_deadline(
        runtime.revocation.revoke_user_in_org(user_id, org_id, actor_id=admin.user_id)
    )
    return Envelope(
        status="ok", data=RevocationResult(revoked=True, sessions_deleted=deleted).model_dump()
    )
