from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Protocol

from orgidp.logging import get_logger
from orgidp.service.errors import PermissionResolutionError
from orgidp.storage.models import Membership, Permission, Role, User

logger = get_logger(__name__)

SUPERADMIN_ROLE = "superadmin"


class PrincipalStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_active_membership(
        self, organization_id: str, user_id: str
    ) -> Optional[Membership]: ...

    def get_role(self, role_id: str) -> Optional[Role]: ...

    def get_role_permissions(self, role_id: str) -> List[Permission]: ...

    def list_system_permissions(self) -> List[Permission]: ...


@dataclass
class ResolvedGrant:
    """Roles and permission names visible to one principal in one org context."""

    roles: List[str] = field(default_factory=list)
    permissions: List[str] = field(default_factory=list)


class PermissionResolver:
    """Single place where roles and permissions become token claims.

    Isolation rules:
    - a superadmin gets every system permission and nothing organization-owned,
      whatever organization context was requested
    - everyone else gets nothing without an active membership in the requested
      organization
    - a member's role permissions are filtered to system permissions and those
      owned by the requested organization
    """

    def __init__(self, store: PrincipalStore) -> None:
        self.store = store
        self.logger = logger

    async def resolve(self, user: User, organization_id: Optional[str]) -> ResolvedGrant:
        if user.is_superadmin:
            system = [
                p.name
                for p in self.store.list_system_permissions()
                if p.is_system and p.organization_id is None
            ]
            return ResolvedGrant(roles=[SUPERADMIN_ROLE], permissions=_dedupe(system))

        if not organization_id:
            return ResolvedGrant()
        membership = self.store.get_active_membership(organization_id, user.id)
        if membership is None or not membership.is_active:
            return ResolvedGrant()

        role = self.store.get_role(membership.role_id)
        if role is None:
            self.logger.error(
                "membership_role_missing",
                membership_id=membership.id,
                role_id=membership.role_id,
            )
            raise PermissionResolutionError("membership references an unknown role")
        if role.is_system or role.organization_id != organization_id:
            self.logger.error(
                "membership_role_invalid",
                membership_id=membership.id,
                role_id=role.id,
                role_is_system=role.is_system,
                role_organization_id=role.organization_id,
                organization_id=organization_id,
            )
            raise PermissionResolutionError("membership role is not an organization role")

        permissions: List[str] = []
        for permission in self.store.get_role_permissions(role.id):
            if _visible_in(permission, organization_id):
                permissions.append(permission.name)
            else:
                self.logger.warning(
                    "foreign_permission_dropped",
                    role_id=role.id,
                    permission_id=permission.id,
                    organization_id=organization_id,
                )
        return ResolvedGrant(roles=[role.name], permissions=_dedupe(permissions))

    async def resolve_roles(self, user: User, organization_id: Optional[str]) -> List[str]:
        return (await self.resolve(user, organization_id)).roles

    async def resolve_permissions(
        self, user: User, organization_id: Optional[str]
    ) -> List[str]:
        return (await self.resolve(user, organization_id)).permissions


def _visible_in(permission: Permission, organization_id: str) -> bool:
    if permission.is_system:
        return permission.organization_id is None
    return permission.organization_id == organization_id


def _dedupe(names: List[str]) -> List[str]:
    return sorted(set(names))
