from __future__ import annotations

import contextlib
import threading
import time
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterator, List, Optional, Set, Tuple

from orgidp.logging import get_logger
from orgidp.storage.errors import ConstraintViolation
from orgidp.storage.models import (
    MEMBERSHIP_ACTIVE,
    AuditEvent,
    AuthorizationCode,
    ClientApp,
    Membership,
    OAuthRefreshToken,
    Permission,
    Role,
    User,
    UserSession,
    utcnow,
)


class _MemoryRefreshTransaction:
    """Undo-journal for a rotation; every write is reverted on rollback."""

    def __init__(self, store: "MemoryStore") -> None:
        self._store = store
        self._undo: List[Callable[[], None]] = []

    def create_refresh_token(self, token: OAuthRefreshToken) -> OAuthRefreshToken:
        tokens = self._store.refresh_tokens
        if token.token_hash in tokens:
            raise ConstraintViolation("refresh token already exists", {"field": "token_hash"})
        tokens[token.token_hash] = replace(token)
        self._undo.append(lambda: tokens.pop(token.token_hash, None))
        return token

    def mark_refresh_token_used(
        self, token_hash: str, successor_id: str, used_at: datetime
    ) -> bool:
        """Compare-and-set on ``used_at``; False when another rotation won."""
        record = self._store.refresh_tokens.get(token_hash)
        if record is None or record.used_at is not None or record.revoked:
            return False
        previous = (record.used_at, record.replaced_by)
        record.used_at = used_at
        record.replaced_by = successor_id

        def _restore() -> None:
            record.used_at, record.replaced_by = previous

        self._undo.append(_restore)
        return True

    def rollback(self) -> None:
        while self._undo:
            self._undo.pop()()


class MemoryStore:
    """In-memory backing store for tests and local development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.clients: Dict[str, ClientApp] = {}
        self.users: Dict[str, User] = {}
        self.roles: Dict[str, Role] = {}
        self.permissions: Dict[str, Permission] = {}
        self.role_permissions: Dict[str, Set[str]] = {}
        self.memberships: Dict[str, Membership] = {}
        self.authorization_codes: Dict[str, AuthorizationCode] = {}
        self.refresh_tokens: Dict[str, OAuthRefreshToken] = {}
        self.sessions: Dict[str, UserSession] = {}
        self.audit_events: List[AuditEvent] = []
        # RLock for all data operations; rotation holds it across a transaction
        self._data_lock = threading.RLock()

    # clients
    def create_client_app(self, client: ClientApp) -> ClientApp:
        with self._data_lock:
            if client.client_id in self.clients:
                raise ConstraintViolation("client_id already exists", {"field": "client_id"})
            self.clients[client.client_id] = client
            return client

    def get_client_app(self, client_id: str) -> Optional[ClientApp]:
        with self._data_lock:
            return self.clients.get(client_id)

    # users
    def create_user(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        email_verified: bool = False,
        is_superadmin: bool = False,
        is_active: bool = True,
        user_id: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            if any(u.email.lower() == email.lower() for u in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=user_id or str(uuid.uuid4()),
                email=email,
                name=name,
                email_verified=email_verified,
                is_superadmin=is_superadmin,
                is_active=is_active,
            )
            self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.is_active = is_active
            return user

    # roles, permissions, memberships
    def create_role(
        self,
        name: str,
        *,
        organization_id: Optional[str] = None,
        is_system: bool = False,
    ) -> Role:
        if not is_system and not organization_id:
            raise ConstraintViolation(
                "custom roles require an organization", {"field": "organization_id"}
            )
        with self._data_lock:
            role = Role(
                id=str(uuid.uuid4()),
                name=name,
                is_system=is_system,
                organization_id=None if is_system else organization_id,
            )
            self.roles[role.id] = role
            return role

    def create_permission(
        self,
        name: str,
        *,
        organization_id: Optional[str] = None,
        is_system: bool = False,
    ) -> Permission:
        if not is_system and not organization_id:
            raise ConstraintViolation(
                "custom permissions require an organization", {"field": "organization_id"}
            )
        with self._data_lock:
            scope_key = None if is_system else organization_id
            for existing in self.permissions.values():
                if existing.name == name and existing.organization_id == scope_key:
                    raise ConstraintViolation("permission already exists", {"field": "name"})
            permission = Permission(
                id=str(uuid.uuid4()),
                name=name,
                is_system=is_system,
                organization_id=scope_key,
            )
            self.permissions[permission.id] = permission
            return permission

    def assign_permission_to_role(self, role_id: str, permission_id: str) -> None:
        with self._data_lock:
            if role_id not in self.roles or permission_id not in self.permissions:
                raise ConstraintViolation("unknown role or permission", {"role_id": role_id})
            self.role_permissions.setdefault(role_id, set()).add(permission_id)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            return self.roles.get(role_id)

    def get_role_permissions(self, role_id: str) -> List[Permission]:
        with self._data_lock:
            ids = self.role_permissions.get(role_id, set())
            return sorted(
                (self.permissions[pid] for pid in ids if pid in self.permissions),
                key=lambda p: p.name,
            )

    def list_system_permissions(self) -> List[Permission]:
        with self._data_lock:
            return sorted(
                (
                    p
                    for p in self.permissions.values()
                    if p.is_system and p.organization_id is None
                ),
                key=lambda p: p.name,
            )

    def create_membership(
        self,
        organization_id: str,
        user_id: str,
        role_id: str,
        *,
        status: str = MEMBERSHIP_ACTIVE,
    ) -> Membership:
        with self._data_lock:
            for existing in self.memberships.values():
                if existing.organization_id == organization_id and existing.user_id == user_id:
                    raise ConstraintViolation("membership already exists", {"field": "user_id"})
            membership = Membership(
                id=str(uuid.uuid4()),
                organization_id=organization_id,
                user_id=user_id,
                role_id=role_id,
                status=status,
            )
            self.memberships[membership.id] = membership
            return membership

    def update_membership_status(self, membership_id: str, status: str) -> Optional[Membership]:
        with self._data_lock:
            membership = self.memberships.get(membership_id)
            if membership:
                membership.status = status
            return membership

    def get_active_membership(
        self, organization_id: str, user_id: str
    ) -> Optional[Membership]:
        with self._data_lock:
            for membership in self.memberships.values():
                if (
                    membership.organization_id == organization_id
                    and membership.user_id == user_id
                    and membership.is_active
                ):
                    return membership
            return None

    def list_organization_memberships(self, organization_id: str) -> List[Membership]:
        with self._data_lock:
            return [
                m for m in self.memberships.values() if m.organization_id == organization_id
            ]

    # authorization codes
    def create_authorization_code(self, code: AuthorizationCode) -> AuthorizationCode:
        with self._data_lock:
            if code.code_hash in self.authorization_codes:
                raise ConstraintViolation("authorization code collision", {"field": "code_hash"})
            self.authorization_codes[code.code_hash] = replace(code)
            return code

    def get_authorization_code(self, code_hash: str) -> Optional[AuthorizationCode]:
        with self._data_lock:
            record = self.authorization_codes.get(code_hash)
            return replace(record) if record else None

    def consume_authorization_code(
        self,
        code_hash: str,
        client_id: str,
        redirect_uri: str,
        now: Optional[datetime] = None,
    ) -> Optional[AuthorizationCode]:
        """Flip ``used`` for a live, matching code and return it; None otherwise."""
        now = now or utcnow()
        with self._data_lock:
            record = self.authorization_codes.get(code_hash)
            if (
                record is None
                or record.used
                or record.expires_at <= now
                or record.client_id != client_id
                or record.redirect_uri != redirect_uri
            ):
                return None
            record.used = True
            return replace(record)

    def delete_expired_authorization_codes(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            expired = [h for h, c in self.authorization_codes.items() if c.expires_at <= now]
            for code_hash in expired:
                del self.authorization_codes[code_hash]
            return len(expired)

    # refresh tokens
    def create_refresh_token(self, token: OAuthRefreshToken) -> OAuthRefreshToken:
        with self._data_lock:
            if token.token_hash in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token_hash"})
            self.refresh_tokens[token.token_hash] = replace(token)
            return token

    def get_refresh_token(self, token_hash: str) -> Optional[OAuthRefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            return replace(record) if record else None

    def list_refresh_family(self, family_id: str) -> List[OAuthRefreshToken]:
        with self._data_lock:
            return sorted(
                (replace(t) for t in self.refresh_tokens.values() if t.family_id == family_id),
                key=lambda t: t.created_at,
            )

    def revoke_refresh_family(self, family_id: str) -> int:
        with self._data_lock:
            count = 0
            for token in self.refresh_tokens.values():
                if token.family_id == family_id and not token.revoked:
                    token.revoked = True
                    count += 1
            return count

    def revoke_refresh_token(self, token_hash: str) -> bool:
        with self._data_lock:
            token = self.refresh_tokens.get(token_hash)
            if not token or token.revoked:
                return False
            token.revoked = True
            return True

    def revoke_refresh_tokens_for(
        self, *, user_id: Optional[str] = None, organization_id: Optional[str] = None
    ) -> int:
        if user_id is None and organization_id is None:
            raise ValueError("user_id or organization_id is required")
        with self._data_lock:
            count = 0
            for token in self.refresh_tokens.values():
                if token.revoked:
                    continue
                if user_id is not None and token.user_id != user_id:
                    continue
                if organization_id is not None and token.organization_id != organization_id:
                    continue
                token.revoked = True
                count += 1
            return count

    @contextlib.contextmanager
    def refresh_transaction(self) -> Iterator[_MemoryRefreshTransaction]:
        with self._data_lock:
            tx = _MemoryRefreshTransaction(self)
            try:
                yield tx
            except BaseException:
                tx.rollback()
                raise

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            expired = [h for h, t in self.refresh_tokens.items() if t.expires_at <= now]
            for token_hash in expired:
                del self.refresh_tokens[token_hash]
            return len(expired)

    # sessions
    def create_session(
        self,
        user_id: str,
        *,
        organization_id: Optional[str] = None,
        ttl: timedelta = timedelta(days=1),
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> UserSession:
        now = utcnow()
        session = UserSession(
            id=str(uuid.uuid4()),
            user_id=user_id,
            organization_id=organization_id,
            created_at=now,
            expires_at=now + ttl,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )
        with self._data_lock:
            self.sessions[session.id] = session
        return session

    def list_user_sessions(
        self, user_id: str, organization_id: Optional[str] = None
    ) -> List[UserSession]:
        with self._data_lock:
            return [
                s
                for s in self.sessions.values()
                if s.user_id == user_id
                and (organization_id is None or s.organization_id == organization_id)
            ]

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            return self.sessions.pop(session_id, None) is not None

    def delete_user_sessions(
        self, user_id: str, organization_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            doomed = [s.id for s in self.list_user_sessions(user_id, organization_id)]
            for session_id in doomed:
                del self.sessions[session_id]
            return len(doomed)

    # audit
    def record_audit_event(self, event: AuditEvent) -> None:
        with self._data_lock:
            self.audit_events.append(event)


class MemoryTTLStore:
    """Process-local key/value store with per-key expiry.

    Stands in for Redis when running under TEST_MODE or
    ALLOW_REDIS_FALLBACK_DEV. Expired keys are dropped lazily on access and
    by ``purge_expired``.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, deadline = entry
        if deadline <= self._clock():
            del self._entries[key]
            return None
        return value

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl_seconds)

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [k for k, (_, deadline) in self._entries.items() if deadline <= now]
            for key in expired:
                del self._entries[key]
            return len(expired)

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
