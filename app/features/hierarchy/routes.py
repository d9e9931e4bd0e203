"""
Hierarchy routes: nodes, structural mutations, cascades and team members.

Every node route decides on the node's resource ("churches", "teams", ...)
at the node's path; structural mutations then hand over to the cascade
coordinator.
"""
from typing import Annotated, Optional
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import select, delete
from sqlalchemy.exc import IntegrityError

from app.core import config
from app.core.errors import InvalidHierarchy, NotFound
from app.core.limiter import limiter
from app.features.hierarchy import paths, store
from app.features.hierarchy.cascade import CascadeCoordinator
from app.features.hierarchy.dependencies import get_coordinator, get_node_type
from app.features.hierarchy.models import TeamMembership, generate_ulid
from app.features.hierarchy.paths import NodeType
from app.features.hierarchy.schemas import (
    CascadeJobResponse,
    CascadeResultResponse,
    DeactivateRequest,
    MoveRequest,
    NodeCreate,
    NodeResponse,
    NodeUpdate,
    TeamMemberCreate,
    TeamMemberResponse,
)
from app.features.permissions.dependencies import Authorizer, get_authorizer
from app.features.permissions.directory import prospective_target
from app.features.users.dependencies import get_current_super_admin
from app.features.users.models import User
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter(tags=["hierarchy"])


# ============================================================================
# Cascade jobs (super admin)
# ============================================================================

@router.get("/cascades/{job_id}", response_model=CascadeJobResponse)
async def get_cascade_job(
    job_id: str,
    admin: Annotated[User, Depends(get_current_super_admin)],
    coordinator: Annotated[CascadeCoordinator, Depends(get_coordinator)]
):
    """Get the journal entry of a cascade."""
    return await coordinator.get_job(job_id)


@router.post("/cascades/resume-pending", response_model=list[CascadeResultResponse])
async def resume_pending_cascades(
    admin: Annotated[User, Depends(get_current_super_admin)],
    coordinator: Annotated[CascadeCoordinator, Depends(get_coordinator)]
):
    """Resume every running or failed cascade."""
    results = await coordinator.resume_pending()
    return [result.to_dict() for result in results]


@router.post("/cascades/{job_id}/resume", response_model=CascadeResultResponse)
async def resume_cascade(
    job_id: str,
    admin: Annotated[User, Depends(get_current_super_admin)],
    coordinator: Annotated[CascadeCoordinator, Depends(get_coordinator)]
):
    """Drive a partially applied cascade to completion."""
    result = await coordinator.resume(job_id)
    return result.to_dict()


# ============================================================================
# Team members
# ============================================================================

@router.get("/teams/{team_id}/members", response_model=list[TeamMemberResponse])
async def list_team_members(
    team_id: str,
    auth: Annotated[Authorizer, Depends(get_authorizer)]
):
    """List a team's members and leaders."""
    team = await store.get_node(auth.db, NodeType.TEAM, team_id)
    await auth.require("teams", "read", node=team)
    result = await auth.db.execute(
        select(TeamMembership).where(TeamMembership.team_id == team.id).order_by(TeamMembership.created_at)
    )
    return result.scalars().all()


@router.post("/teams/{team_id}/members", response_model=TeamMemberResponse, status_code=status.HTTP_201_CREATED)
async def add_team_member(
    team_id: str,
    member_data: TeamMemberCreate,
    auth: Annotated[Authorizer, Depends(get_authorizer)]
):
    """Add a user to a team as member or leader."""
    team = await store.get_node(auth.db, NodeType.TEAM, team_id)
    await auth.require("teams", "update", node=team)
    if not team.is_active:
        raise InvalidHierarchy(f"Team {team.id} is deactivated")

    membership = TeamMembership(user_id=member_data.user_id, team_id=team.id, role=member_data.role)
    auth.db.add(membership)
    try:
        await auth.db.commit()
    except IntegrityError:
        await auth.db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="User is already a member of this team"
        )
    await auth.db.refresh(membership)

    auth.audit("add_member", "teams", team.id, details={"user_id": member_data.user_id, "role": member_data.role.value})
    return membership


@router.delete("/teams/{team_id}/members/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_team_member(
    team_id: str,
    user_id: str,
    auth: Annotated[Authorizer, Depends(get_authorizer)]
):
    """Remove a user from a team."""
    team = await store.get_node(auth.db, NodeType.TEAM, team_id)
    await auth.require("teams", "update", node=team)
    result = await auth.db.execute(
        delete(TeamMembership).where(TeamMembership.team_id == team.id, TeamMembership.user_id == user_id)
    )
    if result.rowcount == 0:
        raise NotFound("Team membership not found", team_id=team_id, user_id=user_id)
    await auth.db.commit()
    auth.audit("remove_member", "teams", team.id, details={"user_id": user_id})
    return None


# ============================================================================
# Nodes
# ============================================================================

@router.post("/{resource}", response_model=NodeResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(config.RATE_LIMIT)
async def create_node(
    request: Request,
    node_data: NodeCreate,
    node_type: Annotated[NodeType, Depends(get_node_type)],
    auth: Annotated[Authorizer, Depends(get_authorizer)],
    coordinator: Annotated[CascadeCoordinator, Depends(get_coordinator)]
):
    """
    Create a node under its parent.

    The decision is taken at the path the node will have, so a grant with
    subordinate scope at the parent allows creating children.
    """
    node_id = node_data.id or generate_ulid()
    parent = None
    if node_data.parent_id is not None:
        parent = await coordinator.get_parent(auth.db, node_type, node_data.parent_id)
    elif node_type is not NodeType.UNION:
        raise InvalidHierarchy(f"A {node_type.value} must have a parent {node_type.parent_type.value}")

    region = node_data.region if node_data.region is not None else (parent.region if parent else None)
    target = prospective_target(parent, node_type, paths.build(parent.path if parent else None, node_id), region)
    await auth.require(node_type.resource, "create", target=target, resource_id=node_id)

    try:
        node = await coordinator.create(
            node_type,
            node_data.name,
            parent_id=node_data.parent_id,
            region=node_data.region,
            node_id=node_id,
        )
    except IntegrityError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"A node with id {node_id} already exists"
        )

    auth.audit("create", node_type.resource, node.id, details={"path": node.path, "name": node.name})
    return node


@router.get("/{resource}/{node_id}", response_model=NodeResponse)
async def get_node(
    node_id: str,
    node_type: Annotated[NodeType, Depends(get_node_type)],
    auth: Annotated[Authorizer, Depends(get_authorizer)]
):
    """Get a node by ID."""
    node = await store.get_node(auth.db, node_type, node_id)
    await auth.require(node_type.resource, "read", node=node)
    return node


@router.get("/{resource}/{node_id}/descendants", response_model=list[NodeResponse])
async def list_descendants(
    node_id: str,
    node_type: Annotated[NodeType, Depends(get_node_type)],
    auth: Annotated[Authorizer, Depends(get_authorizer)],
    level: Optional[str] = None,
    include_inactive: bool = False,
    skip: int = 0,
    limit: int = 100
):
    """
    List the nodes of one level below a node (the next level by default).

    Requires read on the node itself; descendants the user may not read
    are left out of the page.

    Example: GET /hierarchy/conferences/{id}/descendants?level=teams
    """
    node = await store.get_node(auth.db, node_type, node_id)
    await auth.require(node_type.resource, "read", node=node)
    if level is None:
        descendant_type = node_type.child_type
        if descendant_type is None:
            return []
    else:
        descendant_type = get_node_type(level)
        if descendant_type not in node_type.descendant_types:
            raise InvalidHierarchy(f"{level} are not below {node_type.resource}")

    descendants = await store.find_by_path_prefix(
        auth.db, descendant_type, node.path, include_inactive=include_inactive, skip=skip, limit=limit
    )
    visible = []
    for descendant in descendants:
        if await auth.decide(descendant_type.resource, "read", node=descendant):
            visible.append(descendant)
    return visible


@router.patch("/{resource}/{node_id}", response_model=NodeResponse)
async def update_node(
    node_id: str,
    update_data: NodeUpdate,
    node_type: Annotated[NodeType, Depends(get_node_type)],
    auth: Annotated[Authorizer, Depends(get_authorizer)]
):
    """Rename or re-tag a node. Paths are unaffected."""
    node = await store.get_node(auth.db, node_type, node_id)
    await auth.require(node_type.resource, "update", node=node)
    if not node.is_active:
        raise InvalidHierarchy(f"{node_type.value.capitalize()} {node_id} is deactivated")

    changes = update_data.model_dump(exclude_unset=True)
    for key, value in changes.items():
        setattr(node, key, value)
    await auth.db.commit()
    await auth.db.refresh(node)

    auth.audit("update", node_type.resource, node.id, details=changes)
    return node


@router.post("/{resource}/{node_id}/move", response_model=CascadeResultResponse)
@limiter.limit(config.RATE_LIMIT)
async def move_node(
    request: Request,
    node_id: str,
    move_data: MoveRequest,
    node_type: Annotated[NodeType, Depends(get_node_type)],
    auth: Annotated[Authorizer, Depends(get_authorizer)],
    coordinator: Annotated[CascadeCoordinator, Depends(get_coordinator)]
):
    """
    Move a node under a new parent, rewriting its subtree's paths.

    Requires update on the node where it is and create where it lands.
    """
    node = await store.get_node(auth.db, node_type, node_id)
    await auth.require(node_type.resource, "update", node=node)

    new_parent = await coordinator.get_parent(auth.db, node_type, move_data.new_parent_id)
    landing = prospective_target(new_parent, node_type, paths.build(new_parent.path, node.id), node.region)
    await auth.require(node_type.resource, "create", target=landing, resource_id=node.id)

    result = await coordinator.move(node_type, node_id, move_data.new_parent_id, actor_id=auth.user.id)
    auth.audit("move", node_type.resource, node_id, details=result.to_dict())
    return result.to_dict()


@router.post("/{resource}/{node_id}/deactivate", response_model=CascadeResultResponse)
@limiter.limit(config.RATE_LIMIT)
async def deactivate_node(
    request: Request,
    node_id: str,
    node_type: Annotated[NodeType, Depends(get_node_type)],
    auth: Annotated[Authorizer, Depends(get_authorizer)],
    coordinator: Annotated[CascadeCoordinator, Depends(get_coordinator)],
    deactivate_data: Optional[DeactivateRequest] = None
):
    """Deactivate a node and its subtree (services below are archived)."""
    node = await store.get_node(auth.db, node_type, node_id)
    await auth.require(node_type.resource, "delete", node=node)

    reason = deactivate_data.reason if deactivate_data else None
    result = await coordinator.deactivate(node_type, node_id, actor_id=auth.user.id, reason=reason)
    auth.audit("deactivate", node_type.resource, node_id, details=result.to_dict())
    return result.to_dict()


@router.delete("/{resource}/{node_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit(config.RATE_LIMIT)
async def delete_node(
    request: Request,
    node_id: str,
    node_type: Annotated[NodeType, Depends(get_node_type)],
    auth: Annotated[Authorizer, Depends(get_authorizer)],
    coordinator: Annotated[CascadeCoordinator, Depends(get_coordinator)]
):
    """Hard delete a node without children."""
    node = await store.get_node(auth.db, node_type, node_id)
    await auth.require(node_type.resource, "delete", node=node)

    await coordinator.delete(node_type, node_id)
    auth.audit("delete", node_type.resource, node_id, details={"path": node.path})
    return None
