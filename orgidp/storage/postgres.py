from __future__ import annotations

import contextlib
import json
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS client_app (
        id TEXT PRIMARY KEY,
        client_id TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        client_secret_hash TEXT,
        redirect_uris TEXT[] NOT NULL DEFAULT '{}',
        allowed_scopes TEXT[] NOT NULL DEFAULT '{}',
        is_confidential BOOLEAN NOT NULL DEFAULT FALSE,
        organization_id TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        is_superadmin BOOLEAN NOT NULL DEFAULT FALSE,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS role (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        is_system BOOLEAN NOT NULL DEFAULT FALSE,
        organization_id TEXT,
        CHECK (is_system OR organization_id IS NOT NULL)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS permission (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        is_system BOOLEAN NOT NULL DEFAULT FALSE,
        organization_id TEXT,
        CHECK (is_system = (organization_id IS NULL))
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS permission_name_scope_idx
        ON permission (name, COALESCE(organization_id, ''))
    """,
    """
    CREATE TABLE IF NOT EXISTS role_permission (
        role_id TEXT NOT NULL REFERENCES role(id) ON DELETE CASCADE,
        permission_id TEXT NOT NULL REFERENCES permission(id) ON DELETE CASCADE,
        PRIMARY KEY (role_id, permission_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS organization_membership (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        role_id TEXT NOT NULL REFERENCES role(id),
        status TEXT NOT NULL DEFAULT 'active',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (organization_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS authorization_code (
        id TEXT PRIMARY KEY,
        code_hash TEXT NOT NULL UNIQUE,
        client_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        organization_id TEXT,
        redirect_uri TEXT NOT NULL,
        scope TEXT NOT NULL,
        code_challenge TEXT NOT NULL,
        code_challenge_method TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        used BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS oauth_refresh_token (
        id TEXT PRIMARY KEY,
        token_hash TEXT NOT NULL UNIQUE,
        family_id TEXT NOT NULL,
        client_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        organization_id TEXT,
        scope TEXT NOT NULL,
        user_agent_hash TEXT NOT NULL,
        ip_hash TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        used_at TIMESTAMPTZ,
        replaced_by TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS oauth_refresh_token_family_idx
        ON oauth_refresh_token (family_id)
    """,
    """
    CREATE TABLE IF NOT EXISTS user_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        organization_id TEXT,
        user_agent TEXT,
        ip_addr TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id TEXT PRIMARY KEY,
        action TEXT NOT NULL,
        actor_id TEXT,
        resource TEXT,
        success BOOLEAN NOT NULL,
        details JSONB,
        error TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)

_REFRESH_COLUMNS = (
    "id, token_hash, family_id, client_id, user_id, organization_id, scope, "
    "user_agent_hash, ip_hash, expires_at, revoked, used_at, replaced_by, created_at"
)


def _client_from_row(row: Dict[str, Any]) -> ClientApp:
    return ClientApp(
        id=str(row["id"]),
        client_id=row["client_id"],
        name=row["name"],
        client_secret_hash=row.get("client_secret_hash"),
        redirect_uris=list(row.get("redirect_uris") or []),
        allowed_scopes=list(row.get("allowed_scopes") or []),
        is_confidential=row.get("is_confidential", False),
        organization_id=row.get("organization_id"),
        created_at=row.get("created_at") or utcnow(),
    )


def _user_from_row(row: Dict[str, Any]) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        name=row.get("name"),
        email_verified=row.get("email_verified", False),
        is_superadmin=row.get("is_superadmin", False),
        is_active=row.get("is_active", True),
        created_at=row.get("created_at") or utcnow(),
    )


def _role_from_row(row: Dict[str, Any]) -> Role:
    return Role(
        id=str(row["id"]),
        name=row["name"],
        is_system=row.get("is_system", False),
        organization_id=row.get("organization_id"),
    )


def _permission_from_row(row: Dict[str, Any]) -> Permission:
    return Permission(
        id=str(row["id"]),
        name=row["name"],
        is_system=row.get("is_system", False),
        organization_id=row.get("organization_id"),
    )


def _membership_from_row(row: Dict[str, Any]) -> Membership:
    return Membership(
        id=str(row["id"]),
        organization_id=row["organization_id"],
        user_id=str(row["user_id"]),
        role_id=str(row["role_id"]),
        status=row.get("status", MEMBERSHIP_ACTIVE),
        created_at=row.get("created_at") or utcnow(),
    )


def _code_from_row(row: Dict[str, Any]) -> AuthorizationCode:
    return AuthorizationCode(
        id=str(row["id"]),
        code_hash=row["code_hash"],
        client_id=row["client_id"],
        user_id=str(row["user_id"]),
        organization_id=row.get("organization_id"),
        redirect_uri=row["redirect_uri"],
        scope=row["scope"],
        code_challenge=row["code_challenge"],
        code_challenge_method=row["code_challenge_method"],
        expires_at=row["expires_at"],
        used=row.get("used", False),
        created_at=row.get("created_at") or utcnow(),
    )


def _refresh_from_row(row: Dict[str, Any]) -> OAuthRefreshToken:
    return OAuthRefreshToken(
        id=str(row["id"]),
        token_hash=row["token_hash"],
        family_id=str(row["family_id"]),
        client_id=row["client_id"],
        user_id=str(row["user_id"]),
        organization_id=row.get("organization_id"),
        scope=row["scope"],
        user_agent_hash=row["user_agent_hash"],
        ip_hash=row["ip_hash"],
        expires_at=row["expires_at"],
        revoked=row.get("revoked", False),
        used_at=row.get("used_at"),
        replaced_by=row.get("replaced_by"),
        created_at=row.get("created_at") or utcnow(),
    )


def _session_from_row(row: Dict[str, Any]) -> UserSession:
    return UserSession(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        organization_id=row.get("organization_id"),
        user_agent=row.get("user_agent"),
        ip_addr=row.get("ip_addr"),
        created_at=row.get("created_at") or utcnow(),
        expires_at=row["expires_at"],
    )


def _insert_refresh_token(conn, token: OAuthRefreshToken) -> None:
    try:
        conn.execute(
            f"""
            INSERT INTO oauth_refresh_token ({_REFRESH_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                token.id,
                token.token_hash,
                token.family_id,
                token.client_id,
                token.user_id,
                token.organization_id,
                token.scope,
                token.user_agent_hash,
                token.ip_hash,
                token.expires_at,
                token.revoked,
                token.used_at,
                token.replaced_by,
                token.created_at,
            ),
        )
    except errors.UniqueViolation:
        raise ConstraintViolation("refresh token already exists", {"field": "token_hash"})


class _PostgresRefreshTransaction:
    def __init__(self, conn) -> None:
        self._conn = conn

    def create_refresh_token(self, token: OAuthRefreshToken) -> OAuthRefreshToken:
        _insert_refresh_token(self._conn, token)
        return token

    def mark_refresh_token_used(
        self, token_hash: str, successor_id: str, used_at: datetime
    ) -> bool:
        # Row lock serialises concurrent rotations; the loser sees used_at set
        result = self._conn.execute(
            """
            UPDATE oauth_refresh_token
               SET used_at = %s, replaced_by = %s
             WHERE token_hash = %s AND used_at IS NULL AND revoked = FALSE
            """,
            (used_at, successor_id, token_hash),
        )
        return result.rowcount == 1


class PostgresStore:
    """Postgres-backed store for clients, principals, codes and refresh tokens."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the identity tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    def close(self) -> None:
        self.pool.close()

    # clients
    def create_client_app(self, client: ClientApp) -> ClientApp:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO client_app (id, client_id, name, client_secret_hash, redirect_uris,
                                            allowed_scopes, is_confidential, organization_id, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        client.id,
                        client.client_id,
                        client.name,
                        client.client_secret_hash,
                        list(client.redirect_uris),
                        list(client.allowed_scopes),
                        client.is_confidential,
                        client.organization_id,
                        client.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("client_id already exists", {"field": "client_id"})
        return client

    def get_client_app(self, client_id: str) -> Optional[ClientApp]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM client_app WHERE client_id = %s", (client_id,)
            ).fetchone()
        return _client_from_row(row) if row else None

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
        user = User(
            id=user_id or str(uuid.uuid4()),
            email=email,
            name=name,
            email_verified=email_verified,
            is_superadmin=is_superadmin,
            is_active=is_active,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, email_verified, is_superadmin, is_active, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.name,
                        user.email_verified,
                        user.is_superadmin,
                        user.is_active,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return _user_from_row(row) if row else None

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_active = %s WHERE id = %s RETURNING *",
                (is_active, user_id),
            ).fetchone()
        return _user_from_row(row) if row else None

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
        role = Role(
            id=str(uuid.uuid4()),
            name=name,
            is_system=is_system,
            organization_id=None if is_system else organization_id,
        )
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO role (id, name, is_system, organization_id) VALUES (%s, %s, %s, %s)",
                (role.id, role.name, role.is_system, role.organization_id),
            )
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
        permission = Permission(
            id=str(uuid.uuid4()),
            name=name,
            is_system=is_system,
            organization_id=None if is_system else organization_id,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO permission (id, name, is_system, organization_id) VALUES (%s, %s, %s, %s)",
                    (
                        permission.id,
                        permission.name,
                        permission.is_system,
                        permission.organization_id,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("permission already exists", {"field": "name"})
        return permission

    def assign_permission_to_role(self, role_id: str, permission_id: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO role_permission (role_id, permission_id) VALUES (%s, %s)
                    ON CONFLICT DO NOTHING
                    """,
                    (role_id, permission_id),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("unknown role or permission", {"role_id": role_id})

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM role WHERE id = %s", (role_id,)).fetchone()
        return _role_from_row(row) if row else None

    def get_role_permissions(self, role_id: str) -> List[Permission]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT p.* FROM permission p
                JOIN role_permission rp ON rp.permission_id = p.id
                WHERE rp.role_id = %s
                ORDER BY p.name
                """,
                (role_id,),
            ).fetchall()
        return [_permission_from_row(row) for row in rows]

    def list_system_permissions(self) -> List[Permission]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM permission
                WHERE is_system = TRUE AND organization_id IS NULL
                ORDER BY name
                """
            ).fetchall()
        return [_permission_from_row(row) for row in rows]

    def create_membership(
        self,
        organization_id: str,
        user_id: str,
        role_id: str,
        *,
        status: str = MEMBERSHIP_ACTIVE,
    ) -> Membership:
        membership = Membership(
            id=str(uuid.uuid4()),
            organization_id=organization_id,
            user_id=user_id,
            role_id=role_id,
            status=status,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO organization_membership (id, organization_id, user_id, role_id, status, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        membership.id,
                        membership.organization_id,
                        membership.user_id,
                        membership.role_id,
                        membership.status,
                        membership.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("membership already exists", {"field": "user_id"})
        return membership

    def update_membership_status(self, membership_id: str, status: str) -> Optional[Membership]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE organization_membership SET status = %s WHERE id = %s RETURNING *",
                (status, membership_id),
            ).fetchone()
        return _membership_from_row(row) if row else None

    def get_active_membership(
        self, organization_id: str, user_id: str
    ) -> Optional[Membership]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM organization_membership
                WHERE organization_id = %s AND user_id = %s AND status = %s
                """,
                (organization_id, user_id, MEMBERSHIP_ACTIVE),
            ).fetchone()
        return _membership_from_row(row) if row else None

    def list_organization_memberships(self, organization_id: str) -> List[Membership]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM organization_membership WHERE organization_id = %s",
                (organization_id,),
            ).fetchall()
        return [_membership_from_row(row) for row in rows]

    # authorization codes
    def create_authorization_code(self, code: AuthorizationCode) -> AuthorizationCode:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO authorization_code (id, code_hash, client_id, user_id, organization_id,
                        redirect_uri, scope, code_challenge, code_challenge_method, expires_at, used, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        code.id,
                        code.code_hash,
                        code.client_id,
                        code.user_id,
                        code.organization_id,
                        code.redirect_uri,
                        code.scope,
                        code.code_challenge,
                        code.code_challenge_method,
                        code.expires_at,
                        code.used,
                        code.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("authorization code collision", {"field": "code_hash"})
        return code

    def get_authorization_code(self, code_hash: str) -> Optional[AuthorizationCode]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM authorization_code WHERE code_hash = %s", (code_hash,)
            ).fetchone()
        return _code_from_row(row) if row else None

    def consume_authorization_code(
        self,
        code_hash: str,
        client_id: str,
        redirect_uri: str,
        now: Optional[datetime] = None,
    ) -> Optional[AuthorizationCode]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE authorization_code
                   SET used = TRUE
                 WHERE code_hash = %s
                   AND used = FALSE
                   AND expires_at > %s
                   AND client_id = %s
                   AND redirect_uri = %s
                RETURNING *
                """,
                (code_hash, now or utcnow(), client_id, redirect_uri),
            ).fetchone()
        return _code_from_row(row) if row else None

    def delete_expired_authorization_codes(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM authorization_code WHERE expires_at <= %s", (now or utcnow(),)
            )
            return result.rowcount

    # refresh tokens
    def create_refresh_token(self, token: OAuthRefreshToken) -> OAuthRefreshToken:
        with self._connect() as conn:
            _insert_refresh_token(conn, token)
        return token

    def get_refresh_token(self, token_hash: str) -> Optional[OAuthRefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_REFRESH_COLUMNS} FROM oauth_refresh_token WHERE token_hash = %s",
                (token_hash,),
            ).fetchone()
        return _refresh_from_row(row) if row else None

    def list_refresh_family(self, family_id: str) -> List[OAuthRefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_REFRESH_COLUMNS} FROM oauth_refresh_token
                WHERE family_id = %s ORDER BY created_at
                """,
                (family_id,),
            ).fetchall()
        return [_refresh_from_row(row) for row in rows]

    def revoke_refresh_family(self, family_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE oauth_refresh_token SET revoked = TRUE WHERE family_id = %s AND revoked = FALSE",
                (family_id,),
            )
            return result.rowcount

    def revoke_refresh_token(self, token_hash: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE oauth_refresh_token SET revoked = TRUE WHERE token_hash = %s AND revoked = FALSE",
                (token_hash,),
            )
            return result.rowcount > 0

    def revoke_refresh_tokens_for(
        self, *, user_id: Optional[str] = None, organization_id: Optional[str] = None
    ) -> int:
        if user_id is None and organization_id is None:
            raise ValueError("user_id or organization_id is required")
        clauses = ["revoked = FALSE"]
        params: List[Any] = []
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if organization_id is not None:
            clauses.append("organization_id = %s")
            params.append(organization_id)
        with self._connect() as conn:
            result = conn.execute(
                f"UPDATE oauth_refresh_token SET revoked = TRUE WHERE {' AND '.join(clauses)}",
                tuple(params),
            )
            return result.rowcount

    @contextlib.contextmanager
    def refresh_transaction(self) -> Iterator[_PostgresRefreshTransaction]:
        with self._connect() as conn, conn.transaction():
            yield _PostgresRefreshTransaction(conn)

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM oauth_refresh_token WHERE expires_at <= %s", (now or utcnow(),)
            )
            return result.rowcount

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
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_session (id, user_id, organization_id, user_agent, ip_addr, created_at, expires_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    session.id,
                    session.user_id,
                    session.organization_id,
                    session.user_agent,
                    session.ip_addr,
                    session.created_at,
                    session.expires_at,
                ),
            )
        return session

    def list_user_sessions(
        self, user_id: str, organization_id: Optional[str] = None
    ) -> List[UserSession]:
        with self._connect() as conn:
            if organization_id is None:
                rows = conn.execute(
                    "SELECT * FROM user_session WHERE user_id = %s", (user_id,)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM user_session WHERE user_id = %s AND organization_id = %s",
                    (user_id, organization_id),
                ).fetchall()
        return [_session_from_row(row) for row in rows]

    def delete_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM user_session WHERE id = %s", (session_id,))
            return result.rowcount > 0

    def delete_user_sessions(
        self, user_id: str, organization_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            if organization_id is None:
                result = conn.execute(
                    "DELETE FROM user_session WHERE user_id = %s", (user_id,)
                )
            else:
                result = conn.execute(
                    "DELETE FROM user_session WHERE user_id = %s AND organization_id = %s",
                    (user_id, organization_id),
                )
            return result.rowcount

    # audit
    def record_audit_event(self, event: AuditEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_log (id, action, actor_id, resource, success, details, error, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.action,
                    event.actor_id,
                    event.resource,
                    event.success,
                    json.dumps(event.details, default=str) if event.details else None,
                    event.error,
                    event.created_at,
                ),
            )
