"""End-to-end tests for the HTTP surface.

Covers the authorize -> token -> refresh -> revoke flow, OAuth2 error bodies,
and the superadmin revocation endpoints.
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from conftest import CLIENT_ID, CLIENT_SECRET, REDIRECT_URI
from orgidp import app as app_module


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _bearer(runtime, user, organization_id=None):
    token, _ = asyncio.run(runtime.issuer.build_access_token(user, CLIENT_ID, organization_id))
    return {"Authorization": f"Bearer {token}"}, token


def _authorize(client, headers, challenge, **overrides):
    body = {
        "client_id": CLIENT_ID,
        "redirect_uri": REDIRECT_URI,
        "scope": "profile",
        "code_challenge": challenge,
        "code_challenge_method": "S256",
        "state": "st-1",
    }
    body.update(overrides)
    return client.post("/v1/oauth/authorize", json=body, headers=headers)


def _exchange(client, code, verifier):
    return client.post(
        "/v1/oauth/token",
        json={
            "grant_type": "authorization_code",
            "client_id": CLIENT_ID,
            "client_secret": CLIENT_SECRET,
            "code": code,
            "redirect_uri": REDIRECT_URI,
            "code_verifier": verifier,
        },
    )


class TestHealth:
    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert "X-Request-ID" in response.headers

    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"


class TestAuthorizationCodeFlow:
    def test_full_flow(self, client, runtime, oauth_client, tenants, pkce_pair):
        verifier, challenge = pkce_pair
        headers, _ = _bearer(runtime, tenants.alice)

        authorized = _authorize(client, headers, challenge, organization_id="org-a")
        assert authorized.status_code == 200
        assert authorized.json()["state"] == "st-1"
        assert authorized.json()["redirect_uri"] == REDIRECT_URI

        issued = _exchange(client, authorized.json()["code"], verifier)
        assert issued.status_code == 200
        assert issued.headers["Cache-Control"] == "no-store"
        tokens = issued.json()
        assert tokens["token_type"] == "Bearer"
        assert tokens["expires_in"] == 3600
        assert tokens["scope"] == "profile"

        info = client.get(
            "/v1/oauth/userinfo", headers={"Authorization": f"Bearer {tokens['access_token']}"}
        )
        assert info.status_code == 200
        assert info.json()["email"] == "alice@example.com"
        assert info.json()["organization_id"] == "org-a"

        rotated = client.post(
            "/v1/oauth/token",
            json={
                "grant_type": "refresh_token",
                "client_id": CLIENT_ID,
                "client_secret": CLIENT_SECRET,
                "refresh_token": tokens["refresh_token"],
            },
        )
        assert rotated.status_code == 200
        assert rotated.json()["refresh_token"] != tokens["refresh_token"]

        revoked = client.post(
            "/v1/oauth/revoke",
            json={
                "token": rotated.json()["refresh_token"],
                "client_id": CLIENT_ID,
                "client_secret": CLIENT_SECRET,
            },
        )
        assert revoked.status_code == 200
        assert revoked.json() == {}

        after = client.post(
            "/v1/oauth/token",
            json={
                "grant_type": "refresh_token",
                "client_id": CLIENT_ID,
                "client_secret": CLIENT_SECRET,
                "refresh_token": rotated.json()["refresh_token"],
            },
        )
        assert after.status_code == 400
        assert after.json()["error"] == "invalid_grant"

    def test_code_reuse_is_invalid_grant(self, client, runtime, oauth_client, tenants, pkce_pair):
        verifier, challenge = pkce_pair
        headers, _ = _bearer(runtime, tenants.alice)
        code = _authorize(client, headers, challenge).json()["code"]
        assert _exchange(client, code, verifier).status_code == 200

        second = _exchange(client, code, verifier)
        assert second.status_code == 400
        assert second.json() == {"error": "invalid_grant", "error_description": "invalid grant"}

    def test_replayed_refresh_token_kills_family(
        self, client, runtime, oauth_client, tenants, pkce_pair
    ):
        verifier, challenge = pkce_pair
        headers, _ = _bearer(runtime, tenants.alice)
        code = _authorize(client, headers, challenge).json()["code"]
        first = _exchange(client, code, verifier).json()["refresh_token"]

        def _refresh(token):
            return client.post(
                "/v1/oauth/token",
                json={
                    "grant_type": "refresh_token",
                    "client_id": CLIENT_ID,
                    "client_secret": CLIENT_SECRET,
                    "refresh_token": token,
                },
            )

        second = _refresh(first).json()["refresh_token"]
        assert _refresh(first).json()["error"] == "invalid_grant"
        assert _refresh(second).json()["error"] == "invalid_grant"

    def test_binding_violation_via_forwarded_for(
        self, client, runtime, oauth_client, tenants, pkce_pair
    ):
        verifier, challenge = pkce_pair
        headers, _ = _bearer(runtime, tenants.alice)
        code = _authorize(client, headers, challenge).json()["code"]
        tokens = _exchange(client, code, verifier).json()

        moved = client.post(
            "/v1/oauth/token",
            json={
                "grant_type": "refresh_token",
                "client_id": CLIENT_ID,
                "client_secret": CLIENT_SECRET,
                "refresh_token": tokens["refresh_token"],
            },
            headers={"X-Forwarded-For": "203.0.113.50, 10.0.0.1"},
        )
        assert moved.status_code == 400
        assert moved.json()["error"] == "invalid_grant"


class TestErrorBodies:
    def test_authorize_requires_bearer(self, client, oauth_client, pkce_pair):
        response = _authorize(client, {}, pkce_pair[1])
        assert response.status_code == 401
        assert response.json()["error"] == "invalid_token"
        assert response.headers["WWW-Authenticate"].startswith("Bearer")

    def test_non_bearer_scheme_rejected(self, client, oauth_client, pkce_pair):
        response = _authorize(client, {"Authorization": "Basic abc"}, pkce_pair[1])
        assert response.status_code == 401

    def test_redirect_mismatch_is_invalid_request(
        self, client, runtime, oauth_client, tenants, pkce_pair
    ):
        headers, _ = _bearer(runtime, tenants.alice)
        response = _authorize(client, headers, pkce_pair[1], redirect_uri=REDIRECT_URI + "/")
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_plain_pkce_is_invalid_request(self, client, runtime, oauth_client, tenants, pkce_pair):
        headers, _ = _bearer(runtime, tenants.alice)
        response = _authorize(client, headers, pkce_pair[1], code_challenge_method="plain")
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_scope_violation_is_invalid_scope(
        self, client, runtime, oauth_client, tenants, pkce_pair
    ):
        headers, _ = _bearer(runtime, tenants.alice)
        response = _authorize(client, headers, pkce_pair[1], scope="admin")
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_scope"

    def test_foreign_org_is_access_denied(self, client, runtime, oauth_client, tenants, pkce_pair):
        headers, _ = _bearer(runtime, tenants.alice)
        response = _authorize(client, headers, pkce_pair[1], organization_id="org-b")
        assert response.status_code == 403
        assert response.json()["error"] == "access_denied"

    def test_bad_client_secret_is_invalid_client(
        self, client, runtime, oauth_client, tenants, pkce_pair
    ):
        verifier, challenge = pkce_pair
        headers, _ = _bearer(runtime, tenants.alice)
        code = _authorize(client, headers, challenge).json()["code"]
        response = client.post(
            "/v1/oauth/token",
            json={
                "grant_type": "authorization_code",
                "client_id": CLIENT_ID,
                "client_secret": "wrong",
                "code": code,
                "redirect_uri": REDIRECT_URI,
                "code_verifier": verifier,
            },
        )
        assert response.status_code == 401
        assert response.json()["error"] == "invalid_client"

    def test_unsupported_grant_type(self, client, oauth_client):
        response = client.post(
            "/v1/oauth/token", json={"grant_type": "password", "client_id": CLIENT_ID}
        )
        assert response.status_code == 400
        assert response.json()["error"] == "unsupported_grant_type"

    def test_missing_grant_type(self, client):
        response = client.post("/v1/oauth/token", json={"client_id": CLIENT_ID})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_malformed_body(self, client, runtime, tenants):
        headers, _ = _bearer(runtime, tenants.alice)
        response = client.post(
            "/v1/oauth/authorize", json={"client_id": CLIENT_ID, "bogus": 1}, headers=headers
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"


class TestAdminRevocation:
    def test_requires_superadmin(self, client, runtime, tenants):
        headers, _ = _bearer(runtime, tenants.alice)
        response = client.post(f"/v1/admin/revocations/users/{tenants.bob.id}", headers=headers)
        assert response.status_code == 403
        assert response.json()["error"] == "access_denied"

    def test_revoke_access_token(self, client, runtime, tenants):
        admin_headers, _ = _bearer(runtime, tenants.root)
        alice_headers, alice_token = _bearer(runtime, tenants.alice)
        assert client.get("/v1/oauth/userinfo", headers=alice_headers).status_code == 200

        response = client.post(
            "/v1/admin/revocations/token", json={"token": alice_token}, headers=admin_headers
        )
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.json()["data"]["revoked"] is True

        denied = client.get("/v1/oauth/userinfo", headers=alice_headers)
        assert denied.status_code == 401
        assert denied.json()["error"] == "invalid_token"

    def test_revoke_unparseable_token(self, client, runtime, tenants):
        admin_headers, _ = _bearer(runtime, tenants.root)
        response = client.post(
            "/v1/admin/revocations/token", json={"token": "garbage"}, headers=admin_headers
        )
        assert response.status_code == 401
        assert response.json()["error"] == "invalid_token"

    def test_revoke_user(self, client, runtime, tenants):
        admin_headers, _ = _bearer(runtime, tenants.root)
        bob_headers, _ = _bearer(runtime, tenants.bob)
        runtime.store.create_session(tenants.bob.id)

        response = client.post(
            f"/v1/admin/revocations/users/{tenants.bob.id}", headers=admin_headers
        )
        assert response.status_code == 200
        assert response.json()["data"] == {"revoked": True, "sessions_deleted": 1}
        assert client.get("/v1/oauth/userinfo", headers=bob_headers).status_code == 401

    def test_revoke_org_and_user_in_org(self, client, runtime, tenants):
        admin_headers, _ = _bearer(runtime, tenants.root)
        alice_headers, _ = _bearer(runtime, tenants.alice, "org-a")
        bob_headers, _ = _bearer(runtime, tenants.bob, "org-b")

        response = client.post(
            f"/v1/admin/revocations/orgs/org-b/users/{tenants.bob.id}", headers=admin_headers
        )
        assert response.status_code == 200
        assert client.get("/v1/oauth/userinfo", headers=bob_headers).status_code == 401
        assert client.get("/v1/oauth/userinfo", headers=alice_headers).status_code == 200

        response = client.post("/v1/admin/revocations/orgs/org-a", headers=admin_headers)
        assert response.status_code == 200
        assert client.get("/v1/oauth/userinfo", headers=alice_headers).status_code == 401
