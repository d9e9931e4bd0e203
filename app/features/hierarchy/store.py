"""
Entity store for hierarchy nodes.

Lookups by id and by path prefix over the per-level tables. Everything takes
the caller's session; nothing here commits.
"""
from typing import Optional, Sequence
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import NotFound
from app.features.hierarchy.models import CascadeJob, CascadeKind, CascadeStatus, HierarchyNodeMixin, TeamMembership, model_for
from app.features.hierarchy.paths import NodeType, Relation, SEPARATOR, LEVELS, relation


async def find_node(db: AsyncSession, node_type: NodeType, node_id: str) -> Optional[HierarchyNodeMixin]:
    model = model_for(node_type)
    result = await db.execute(select(model).where(model.id == node_id))
    return result.scalar_one_or_none()


async def get_node(db: AsyncSession, node_type: NodeType, node_id: str) -> HierarchyNodeMixin:
    """Get a node or raise NotFound."""
    node = await find_node(db, node_type, node_id)
    if node is None:
        raise NotFound(f"{node_type.value.capitalize()} not found", node_type=node_type.value, node_id=node_id)
    return node


async def find_node_any_type(db: AsyncSession, node_id: str) -> Optional[HierarchyNodeMixin]:
    """Look a node id up in every level's table."""
    for node_type in LEVELS:
        node = await find_node(db, node_type, node_id)
        if node is not None:
            return node
    return None


async def find_by_path(db: AsyncSession, path: str) -> Optional[HierarchyNodeMixin]:
    """The node whose path is exactly `path`; its level follows from the depth."""
    depth = len(path.split(SEPARATOR)) - 1
    if depth >= len(LEVELS):
        return None
    model = model_for(LEVELS[depth])
    result = await db.execute(select(model).where(model.path == path))
    return result.scalar_one_or_none()


def _under(model, prefix: str):
    return model.path.startswith(prefix + SEPARATOR, autoescape=True)


async def find_by_path_prefix(
    db: AsyncSession,
    node_type: NodeType,
    prefix: str,
    include_inactive: bool = False,
    skip: int = 0,
    limit: Optional[int] = None,
) -> Sequence[HierarchyNodeMixin]:
    """Nodes of `node_type` strictly below `prefix`, ordered by path."""
    model = model_for(node_type)
    stmt = select(model).where(_under(model, prefix))
    if not include_inactive:
        stmt = stmt.where(model.is_active == True)  # noqa: E712
    stmt = stmt.order_by(model.path).offset(skip)
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await db.execute(stmt)
    return result.scalars().all()


async def count_descendants(db: AsyncSession, node_type: NodeType, path: str) -> int:
    """Rows in every descendant table below `path`, active or not."""
    total = 0
    for descendant_type in node_type.descendant_types:
        model = model_for(descendant_type)
        result = await db.execute(select(func.count()).select_from(model).where(_under(model, path)))
        total += result.scalar_one()
    return total


async def count_children(db: AsyncSession, node: HierarchyNodeMixin) -> int:
    child_type = node.node_type.child_type
    if child_type is None:
        return 0
    model = model_for(child_type)
    result = await db.execute(select(func.count()).select_from(model).where(model.parent_id == node.id))
    return result.scalar_one()


def team_of(node: HierarchyNodeMixin) -> Optional[str]:
    """Id of the team a node belongs to: the team itself or a service's team."""
    if node.node_type is NodeType.TEAM:
        return node.id
    if node.node_type is NodeType.SERVICE:
        return node.parent_id
    return None


async def team_role_of(db: AsyncSession, user_id: str, team_id: Optional[str]) -> Optional[str]:
    """The user's membership role in a team ("leader"/"member"), if any."""
    if team_id is None:
        return None
    result = await db.execute(
        select(TeamMembership.role).where(
            TeamMembership.user_id == user_id,
            TeamMembership.team_id == team_id,
        )
    )
    role = result.scalar_one_or_none()
    return role.value if role is not None else None


async def find_unfinished_cascade(
    db: AsyncSession, path: str, kind: Optional[CascadeKind] = None
) -> Optional[CascadeJob]:
    """
    Oldest running or failed cascade (of `kind`, if given) whose subtree overlaps `path`.

    Until such a job completes, part of its subtree still carries the old
    prefix.
    """
    stmt = select(CascadeJob).where(CascadeJob.status != CascadeStatus.COMPLETED)
    if kind is not None:
        stmt = stmt.where(CascadeJob.kind == kind)
    result = await db.execute(stmt.order_by(CascadeJob.created_at, CascadeJob.id))
    for job in result.scalars().all():
        if any(relation(prefix, path) is not Relation.UNRELATED for prefix in (job.old_prefix, job.new_prefix)):
            return job
    return None
