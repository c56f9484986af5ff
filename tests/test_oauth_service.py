"""Tests for the OAuthService facade used by the HTTP layer."""

import pytest

from conftest import CLIENT_ID, CLIENT_SECRET, REDIRECT_URI
from orgidp.service.errors import (
    ForbiddenError,
    InvalidClientError,
    InvalidRequestError,
    InvalidTokenError,
    UnsupportedGrantTypeError,
)

UA = "agent/1.0"
IP = "192.0.2.1"


async def _bearer_for(runtime, user, organization_id=None):
    token, _ = await runtime.issuer.build_access_token(user, CLIENT_ID, organization_id)
    return token


class TestAuthenticate:
    async def test_valid_bearer(self, runtime, tenants):
        token = await _bearer_for(runtime, tenants.alice, "org-a")
        ctx = await runtime.oauth.authenticate(token)
        assert ctx.user_id == tenants.alice.id
        assert ctx.organization_id == "org-a"
        assert ctx.has_permission("docs:write")
        assert not ctx.is_superadmin

    async def test_missing_or_garbage(self, runtime):
        with pytest.raises(InvalidTokenError):
            await runtime.oauth.authenticate(None)
        with pytest.raises(InvalidTokenError):
            await runtime.oauth.authenticate("garbage")

    async def test_denylisted_token(self, runtime, tenants):
        token = await _bearer_for(runtime, tenants.alice)
        await runtime.revocation.revoke_token(token)
        with pytest.raises(InvalidTokenError):
            await runtime.oauth.authenticate(token)

    async def test_user_marker_rejects_older_tokens(self, runtime, tenants):
        token = await _bearer_for(runtime, tenants.alice)
        await runtime.revocation.revoke_user_sessions(tenants.alice.id)
        with pytest.raises(InvalidTokenError):
            await runtime.oauth.authenticate(token)

    async def test_org_marker_rejects_org_tokens_only(self, runtime, tenants):
        org_token = await _bearer_for(runtime, tenants.alice, "org-a")
        plain_token = await _bearer_for(runtime, tenants.alice)
        await runtime.revocation.revoke_org_sessions("org-a")
        with pytest.raises(InvalidTokenError):
            await runtime.oauth.authenticate(org_token)
        assert (await runtime.oauth.authenticate(plain_token)).organization_id is None

    async def test_inactive_subject(self, runtime, tenants):
        token = await _bearer_for(runtime, tenants.alice)
        runtime.store.set_user_active(tenants.alice.id, False)
        with pytest.raises(InvalidTokenError):
            await runtime.oauth.authenticate(token)


class TestAuthorize:
    async def test_non_member_cannot_target_org(
        self, runtime, oauth_client, tenants, pkce_pair
    ):
        _, challenge = pkce_pair
        ctx = await runtime.oauth.authenticate(await _bearer_for(runtime, tenants.alice))
        with pytest.raises(ForbiddenError):
            await runtime.oauth.authorize(
                ctx,
                client_id=CLIENT_ID,
                redirect_uri=REDIRECT_URI,
                scope="profile",
                code_challenge=challenge,
                code_challenge_method="S256",
                organization_id="org-b",
            )

    async def test_superadmin_may_target_any_org(
        self, runtime, oauth_client, tenants, pkce_pair
    ):
        _, challenge = pkce_pair
        ctx = await runtime.oauth.authenticate(await _bearer_for(runtime, tenants.root))
        result = await runtime.oauth.authorize(
            ctx,
            client_id=CLIENT_ID,
            redirect_uri=REDIRECT_URI,
            scope="profile",
            code_challenge=challenge,
            code_challenge_method="S256",
            state="xyz",
            organization_id="org-b",
        )
        assert result.state == "xyz"
        assert result.redirect_uri == REDIRECT_URI
        assert result.code


class TestTokenDispatch:
    async def test_missing_grant_type(self, runtime):
        with pytest.raises(InvalidRequestError):
            await runtime.oauth.token(grant_type=None, client_id=CLIENT_ID)

    async def test_missing_code_parameters(self, runtime, oauth_client):
        with pytest.raises(InvalidRequestError) as excinfo:
            await runtime.oauth.token(
                grant_type="authorization_code", client_id=CLIENT_ID, code="abc"
            )
        assert excinfo.value.detail["missing"] == ["redirect_uri", "code_verifier"]

    async def test_unsupported_grant(self, runtime, oauth_client):
        with pytest.raises(UnsupportedGrantTypeError):
            await runtime.oauth.token(grant_type="password", client_id=CLIENT_ID)

    async def test_refresh_grant_requires_client_secret(
        self, runtime, oauth_client, tenants, pkce_pair
    ):
        verifier, challenge = pkce_pair
        code = await runtime.codes.issue_code(
            CLIENT_ID, REDIRECT_URI, "profile", challenge, "S256", tenants.alice.id
        )
        first = await runtime.oauth.token(
            grant_type="authorization_code",
            client_id=CLIENT_ID,
            client_secret=CLIENT_SECRET,
            code=code,
            redirect_uri=REDIRECT_URI,
            code_verifier=verifier,
            user_agent=UA,
            ip=IP,
        )
        with pytest.raises(InvalidClientError):
            await runtime.oauth.token(
                grant_type="refresh_token",
                client_id=CLIENT_ID,
                refresh_token=first.refresh_token,
                user_agent=UA,
                ip=IP,
            )
        rotated = await runtime.oauth.token(
            grant_type="refresh_token",
            client_id=CLIENT_ID,
            client_secret=CLIENT_SECRET,
            refresh_token=first.refresh_token,
            user_agent=UA,
            ip=IP,
        )
        assert rotated.refresh_token != first.refresh_token


class TestRevokeAndUserInfo:
    async def test_revoke_refresh_token(self, runtime, oauth_client, tenants, pkce_pair):
        verifier, challenge = pkce_pair
        code = await runtime.codes.issue_code(
            CLIENT_ID, REDIRECT_URI, "profile", challenge, "S256", tenants.alice.id
        )
        pair = await runtime.issuer.exchange_code_for_tokens(
            code, CLIENT_ID, CLIENT_SECRET, REDIRECT_URI, verifier, UA, IP
        )
        await runtime.oauth.revoke_refresh_token(pair.refresh_token, CLIENT_ID, CLIENT_SECRET)
        record = runtime.store.get_refresh_token(runtime.hasher.lookup_hash(pair.refresh_token))
        assert record.revoked

    async def test_unknown_token_is_silently_accepted(self, runtime, oauth_client):
        await runtime.oauth.revoke_refresh_token("unknown", CLIENT_ID, CLIENT_SECRET)

    async def test_revoke_requires_client_authentication(self, runtime, oauth_client):
        with pytest.raises(InvalidClientError):
            await runtime.oauth.revoke_refresh_token("unknown", CLIENT_ID, "wrong")

    async def test_user_info(self, runtime, tenants):
        ctx = await runtime.oauth.authenticate(await _bearer_for(runtime, tenants.alice, "org-a"))
        info = await runtime.oauth.get_user_info(ctx)
        assert info == {
            "sub": tenants.alice.id,
            "email": "alice@example.com",
            "email_verified": True,
            "name": "Alice",
            "organization_id": "org-a",
        }
