import asyncio
import inspect
import os
import sys
from pathlib import Path
from types import SimpleNamespace

# Configure the environment before any imports that might initialize runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-signing-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("HMAC_SECRET", "test-lookup-key-for-testing-only-do-not-use-in-production")
# Empty REDIS_URL selects the in-process TTL store
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from orgidp.service.pkce import generate_pkce_pair  # noqa: E402
from orgidp.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402
from orgidp.storage.models import ClientApp  # noqa: E402

CLIENT_ID = "c1"
CLIENT_SECRET = "c1-secret-for-tests"
REDIRECT_URI = "https://app/cb"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def oauth_client(runtime):
    """Confidential client c1 registered for https://app/cb."""
    return runtime.store.create_client_app(
        ClientApp(
            client_id=CLIENT_ID,
            name="Client One",
            redirect_uris=[REDIRECT_URI],
            allowed_scopes=["profile", "email"],
            is_confidential=True,
            client_secret_hash=runtime.hasher.hash_client_secret(CLIENT_SECRET),
        )
    )


@pytest.fixture
def public_client(runtime):
    return runtime.store.create_client_app(
        ClientApp(
            client_id="spa",
            name="Single Page App",
            redirect_uris=["https://spa.example.com/cb"],
            allowed_scopes=["profile"],
            is_confidential=False,
        )
    )


@pytest.fixture
def tenants(runtime):
    """Two organizations, a member of org-a, and a superadmin.

    org-a's member role holds an org-a permission and a system permission.
    """
    store = runtime.store
    system_perm = store.create_permission("profile:read", is_system=True)
    docs_a = store.create_permission("docs:write", organization_id="org-a")
    billing_b = store.create_permission("billing:manage", organization_id="org-b")
    role_a = store.create_role("editor", organization_id="org-a")
    role_b = store.create_role("accountant", organization_id="org-b")
    store.assign_permission_to_role(role_a.id, docs_a.id)
    store.assign_permission_to_role(role_a.id, system_perm.id)
    store.assign_permission_to_role(role_b.id, billing_b.id)

    alice = store.create_user("alice@example.com", name="Alice", email_verified=True)
    bob = store.create_user("bob@example.com", name="Bob")
    root = store.create_user("root@example.com", is_superadmin=True)
    membership = store.create_membership("org-a", alice.id, role_a.id)
    store.create_membership("org-b", bob.id, role_b.id)
    return SimpleNamespace(
        alice=alice,
        bob=bob,
        root=root,
        role_a=role_a,
        role_b=role_b,
        membership=membership,
        system_perm=system_perm,
        docs_a=docs_a,
        billing_b=billing_b,
    )


@pytest.fixture
def pkce_pair():
    return generate_pkce_pair()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
