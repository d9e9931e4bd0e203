"""
Actor directory and target context.

Turns stored users, role assignments and nodes into the plain values the
authorization engine decides on.
"""
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.hierarchy import store
from app.features.hierarchy.models import HierarchyNodeMixin
from app.features.hierarchy.paths import NodeType
from app.features.permissions.engine import Actor, Grant
from app.features.permissions.models import Role, RoleAssignment
from app.features.permissions.scopes import TargetContext, parse_permissions
from app.features.users.models import User
from app.utils import get_logger


log = get_logger(__name__)


async def load_assignments(db: AsyncSession, user_id: str) -> list[tuple[RoleAssignment, Role]]:
    """Active assignments of active roles, oldest first."""
    result = await db.execute(
        select(RoleAssignment, Role)
        .join(Role, Role.id == RoleAssignment.role_id)
        .where(
            RoleAssignment.user_id == user_id,
            RoleAssignment.is_active == True,  # noqa: E712
            Role.is_active == True,  # noqa: E712
        )
        .order_by(RoleAssignment.assigned_at, RoleAssignment.id)
    )
    return [(assignment, role) for assignment, role in result.all()]


async def load_grants(db: AsyncSession, user_id: str) -> tuple[Grant, ...]:
    grants = []
    for assignment, role in await load_assignments(db, user_id):
        anchor = await store.find_node(db, assignment.node_type, assignment.node_id)
        grants.append(
            Grant(
                permissions=parse_permissions(role.permissions or []),
                path=assignment.scope_path,
                team_id=assignment.team_id,
                region=anchor.region if anchor is not None else None,
                node_id=assignment.node_id,
                assignment_id=assignment.id,
                role_name=role.name,
            )
        )
    return tuple(grants)


async def primary_path(db: AsyncSession, user: User) -> Optional[str]:
    if user.primary_organization_type is None or user.primary_organization_id is None:
        return None
    node = await store.find_node(db, user.primary_organization_type, user.primary_organization_id)
    return node.path if node is not None else None


async def load_actor(db: AsyncSession, user: Optional[User]) -> Optional[Actor]:
    """
    Build the engine's view of `user`.

    Super admins skip grant loading; everybody else gets their grants in
    assignment order, which the context policy relies on.
    """
    if user is None:
        return None
    if user.is_super_admin:
        return Actor(id=user.id, is_super=True, primary_organization_id=user.primary_organization_id)
    return Actor(
        id=user.id,
        grants=await load_grants(db, user.id),
        primary_organization_id=user.primary_organization_id,
        primary_path=await primary_path(db, user),
    )


async def build_target(db: AsyncSession, user_id: Optional[str], node: HierarchyNodeMixin) -> TargetContext:
    """Context of an existing node as seen by `user_id`."""
    team_id = store.team_of(node)
    return TargetContext(
        path=node.path,
        team_id=team_id,
        region=node.region,
        team_role=await store.team_role_of(db, user_id, team_id) if user_id else None,
    )


def prospective_target(parent: Optional[HierarchyNodeMixin], node_type: NodeType, path: str, region: Optional[str]) -> TargetContext:
    """Context of a node that is about to be created at `path`."""
    team_id = None
    if node_type is NodeType.SERVICE and parent is not None:
        team_id = parent.id
    return TargetContext(path=path, team_id=team_id, region=region)
