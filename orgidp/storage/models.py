from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


MEMBERSHIP_ACTIVE = "active"


@dataclass
class ClientApp:
    client_id: str
    name: str
    redirect_uris: List[str] = field(default_factory=list)
    allowed_scopes: List[str] = field(default_factory=list)
    is_confidential: bool = False
    # argon2id hash; None for public clients
    client_secret_hash: Optional[str] = None
    organization_id: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class User:
    id: str
    email: str
    name: Optional[str] = None
    email_verified: bool = False
    is_superadmin: bool = False
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Role:
    id: str
    name: str
    is_system: bool = False
    # Required for custom roles, None for system roles
    organization_id: Optional[str] = None


@dataclass
class Permission:
    id: str
    name: str
    is_system: bool = False
    organization_id: Optional[str] = None


@dataclass
class Membership:
    id: str
    organization_id: str
    user_id: str
    role_id: str
    status: str = MEMBERSHIP_ACTIVE
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == MEMBERSHIP_ACTIVE


@dataclass
class AuthorizationCode:
    code_hash: str
    client_id: str
    user_id: str
    redirect_uri: str
    scope: str
    code_challenge: str
    code_challenge_method: str
    expires_at: datetime
    organization_id: Optional[str] = None
    used: bool = False
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class OAuthRefreshToken:
    token_hash: str
    family_id: str
    client_id: str
    user_id: str
    scope: str
    user_agent_hash: str
    ip_hash: str
    expires_at: datetime
    organization_id: Optional[str] = None
    revoked: bool = False
    used_at: Optional[datetime] = None
    replaced_by: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class UserSession:
    id: str
    user_id: str
    expires_at: datetime
    organization_id: Optional[str] = None
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AuditEvent:
    action: str
    success: bool
    actor_id: Optional[str] = None
    resource: Optional[str] = None
    details: Dict = field(default_factory=dict)
    error: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
