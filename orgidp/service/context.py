from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Optional


@dataclass(frozen=True)
class RequestContext:
    """Verified principal behind a bearer access token."""

    user_id: str
    client_id: str
    token_id: str
    issued_at: int
    expires_at: int
    organization_id: Optional[str] = None
    is_superadmin: bool = False
    roles: List[str] = field(default_factory=list)
    permissions: List[str] = field(default_factory=list)

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> "RequestContext":
        return cls(
            user_id=str(claims["sub"]),
            client_id=str(claims["aud"]),
            token_id=str(claims["jti"]),
            issued_at=int(claims["iat"]),
            expires_at=int(claims["exp"]),
            organization_id=claims.get("org_id"),
            is_superadmin=bool(claims.get("is_superadmin", False)),
            roles=list(claims.get("roles") or []),
            permissions=list(claims.get("permissions") or []),
        )

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions
