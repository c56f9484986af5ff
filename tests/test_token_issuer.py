"""Tests for the authorization-code token exchange."""

import time

import pytest

from conftest import CLIENT_ID, CLIENT_SECRET, REDIRECT_URI
from orgidp.service.errors import InvalidClientError, InvalidGrantError
from orgidp.service.pkce import generate_code_verifier

UA = "Mozilla/5.0 (X11; Linux x86_64)"
IP = "198.51.100.7"


async def _code_for(runtime, challenge, user_id, organization_id=None, scope="profile"):
    return await runtime.codes.issue_code(
        CLIENT_ID, REDIRECT_URI, scope, challenge, "S256", user_id, organization_id
    )


async def _exchange(runtime, code, verifier, secret=CLIENT_SECRET):
    return await runtime.issuer.exchange_code_for_tokens(
        code, CLIENT_ID, secret, REDIRECT_URI, verifier, UA, IP
    )


class TestCodeExchange:
    async def test_confidential_client_scenario(self, runtime, oauth_client, tenants, pkce_pair):
        """Exchange succeeds once with expires_in=3600; a second exchange is invalid_grant."""
        verifier, challenge = pkce_pair
        code = await _code_for(runtime, challenge, tenants.alice.id)

        response = await _exchange(runtime, code, verifier)
        body = response.as_dict()
        assert body["token_type"] == "Bearer"
        assert body["expires_in"] == 3600
        assert body["scope"] == "profile"
        assert body["access_token"] and body["refresh_token"]

        with pytest.raises(InvalidGrantError) as excinfo:
            await _exchange(runtime, code, verifier)
        assert excinfo.value.error_code == "invalid_grant"

    async def test_wrong_verifier_always_fails(self, runtime, oauth_client, tenants, pkce_pair):
        _, challenge = pkce_pair
        code = await _code_for(runtime, challenge, tenants.alice.id)
        with pytest.raises(InvalidGrantError) as excinfo:
            await _exchange(runtime, code, generate_code_verifier())
        assert excinfo.value.reason == "pkce_verification_failed"

    async def test_bad_client_secret(self, runtime, oauth_client, tenants, pkce_pair):
        verifier, challenge = pkce_pair
        code = await _code_for(runtime, challenge, tenants.alice.id)
        with pytest.raises(InvalidClientError):
            await _exchange(runtime, code, verifier, secret="wrong")

    async def test_public_client_needs_no_secret(self, runtime, public_client, tenants, pkce_pair):
        verifier, challenge = pkce_pair
        code = await runtime.codes.issue_code(
            "spa", "https://spa.example.com/cb", "profile", challenge, "S256", tenants.alice.id
        )
        response = await runtime.issuer.exchange_code_for_tokens(
            code, "spa", None, "https://spa.example.com/cb", verifier, UA, IP
        )
        assert response.refresh_token

    async def test_inactive_user_cannot_exchange(self, runtime, oauth_client, tenants, pkce_pair):
        verifier, challenge = pkce_pair
        code = await _code_for(runtime, challenge, tenants.alice.id)
        runtime.store.set_user_active(tenants.alice.id, False)
        with pytest.raises(InvalidGrantError) as excinfo:
            await _exchange(runtime, code, verifier)
        assert excinfo.value.reason == "user_unavailable"

    async def test_access_token_claims(self, runtime, oauth_client, tenants, pkce_pair):
        verifier, challenge = pkce_pair
        code = await _code_for(runtime, challenge, tenants.alice.id, organization_id="org-a")
        response = await _exchange(runtime, code, verifier)

        claims = runtime.signer.decode(response.access_token, audience=CLIENT_ID)
        assert claims["iss"] == f"{runtime.settings.issuer_base_url}/{CLIENT_ID}"
        assert claims["sub"] == tenants.alice.id
        assert claims["email"] == "alice@example.com"
        assert claims["org_id"] == "org-a"
        assert claims["roles"] == ["editor"]
        assert claims["permissions"] == ["docs:write", "profile:read"]
        assert claims["is_superadmin"] is False
        assert claims["exp"] - claims["iat"] == 3600
        assert abs(claims["iat"] - time.time()) < 5
        assert claims["jti"]

    async def test_refresh_record_is_bound_and_starts_a_family(
        self, runtime, oauth_client, tenants, pkce_pair
    ):
        verifier, challenge = pkce_pair
        code = await _code_for(runtime, challenge, tenants.alice.id, organization_id="org-a")
        response = await _exchange(runtime, code, verifier)

        record = runtime.store.get_refresh_token(runtime.hasher.lookup_hash(response.refresh_token))
        assert record.client_id == CLIENT_ID
        assert record.organization_id == "org-a"
        assert record.used_at is None and record.revoked is False
        assert record.user_agent_hash == runtime.hasher.bind_user_agent(UA)
        assert record.ip_hash == runtime.hasher.bind_ip(IP)
        assert (record.expires_at - record.created_at).days in (29, 30)
        assert runtime.store.list_refresh_family(record.family_id) == [record]

    async def test_exchange_is_audited(self, runtime, oauth_client, tenants, pkce_pair):
        verifier, challenge = pkce_pair
        code = await _code_for(runtime, challenge, tenants.alice.id)
        await _exchange(runtime, code, verifier)
        with pytest.raises(InvalidGrantError):
            await _exchange(runtime, code, verifier)

        runtime.audit.flush()
        exchanges = [e for e in runtime.store.audit_events if e.action == "oauth.code_exchanged"]
        assert sorted(e.success for e in exchanges) == [False, True]
        failed = next(e for e in exchanges if not e.success)
        assert failed.details["reason"] == "code_already_used"
