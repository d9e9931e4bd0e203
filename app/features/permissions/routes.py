"""
Permission management API routes.

Provides endpoints for roles, role assignments (quota-guarded), quota
status, decision checks and audit logs.
"""
from typing import Annotated, List, Optional
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.core.errors import InvalidHierarchy, NotFound, QuotaExceeded
from app.features.hierarchy import store
from app.features.hierarchy.models import HierarchyNodeMixin
from app.features.hierarchy.paths import NodeType
from app.features.permissions.dependencies import Authorizer, get_authorizer, get_quota_guard
from app.features.permissions.models import AuditLog, Role, RoleAssignment
from app.features.permissions.quota import QuotaGuard, forget_role_counters
from app.features.permissions.schemas import (
    AssignmentCreate,
    AssignmentResponse,
    AuditLogListResponse,
    AuditLogResponse,
    BulkAssignmentCreate,
    GrantResponse,
    MyPermissionsResponse,
    PermissionCheckRequest,
    PermissionCheckResponse,
    QuotaOverviewResponse,
    QuotaStatusResponse,
    RoleCreate,
    RoleResponse,
    RoleUpdate,
)
from app.features.users.dependencies import get_current_super_admin, get_current_user, get_user_or_404
from app.features.users.models import User
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter()


async def get_role_or_404(db: AsyncSession, role_id: str) -> Role:
    result = await db.execute(select(Role).where(Role.id == role_id))
    role = result.scalar_one_or_none()
    if role is None:
        raise NotFound("Role not found", role_id=role_id)
    return role


def check_assignable(role: Role, node: HierarchyNodeMixin):
    """A role is assigned at its own level, at an active node."""
    if not role.is_active:
        raise InvalidHierarchy(f"Role {role.name} is inactive")
    if role.level is not node.node_type:
        raise InvalidHierarchy(
            f"Role {role.name} is assigned at {role.level.value} level, not at a {node.node_type.value}"
        )
    if not node.is_active:
        raise InvalidHierarchy(f"{node.node_type.value.capitalize()} {node.id} is deactivated")


def new_assignment(user_id: str, role: Role, node: HierarchyNodeMixin, assigned_by_id: str) -> RoleAssignment:
    return RoleAssignment(
        user_id=user_id,
        role_id=role.id,
        node_type=node.node_type,
        node_id=node.id,
        scope_path=node.path,
        team_id=store.team_of(node),
        assigned_by_id=assigned_by_id,
    )


# ============================================================================
# Role Routes
# ============================================================================

@router.post("/roles", response_model=RoleResponse, status_code=status.HTTP_201_CREATED)
async def create_role(
    role: RoleCreate,
    admin: Annotated[User, Depends(get_current_super_admin)],
    auth: Annotated[Authorizer, Depends(get_authorizer)]
):
    """Create a new role (super admin only)."""
    db_role = Role(**role.model_dump())
    auth.db.add(db_role)
    try:
        await auth.db.commit()
    except IntegrityError:
        await auth.db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Role with this name already exists"
        )
    await auth.db.refresh(db_role)

    auth.audit("create", "roles", db_role.id, details=role.model_dump(mode="json"))
    return db_role


@router.get("/roles", response_model=List[RoleResponse])
async def list_roles(
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    skip: int = 0,
    limit: int = 100,
    level: Optional[NodeType] = None,
    include_inactive: bool = False
):
    """List roles with optional level filtering."""
    stmt = select(Role)
    if level:
        stmt = stmt.where(Role.level == level)
    if not include_inactive:
        stmt = stmt.where(Role.is_active == True)  # noqa: E712

    stmt = stmt.order_by(Role.name).offset(skip).limit(limit)
    result = await db.execute(stmt)
    return result.scalars().all()


@router.get("/roles/{role_id}", response_model=RoleResponse)
async def get_role(
    role_id: str,
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Get a specific role."""
    return await get_role_or_404(db, role_id)


@router.put("/roles/{role_id}", response_model=RoleResponse)
async def update_role(
    role_id: str,
    role_update: RoleUpdate,
    admin: Annotated[User, Depends(get_current_super_admin)],
    auth: Annotated[Authorizer, Depends(get_authorizer)]
):
    """Update a role (super admin only). Grants pick up the change on the next request."""
    db_role = await get_role_or_404(auth.db, role_id)

    update_data = role_update.model_dump(exclude_unset=True)
    quota_changed = any(
        key in update_data and update_data[key] != getattr(db_role, key)
        for key in ("quota_max_users", "quota_scope")
    )
    for key, value in update_data.items():
        setattr(db_role, key, value)
    if quota_changed:
        # Counters were kept under the old ceiling or scope
        dropped = await forget_role_counters(auth.db, db_role.id)
        log.info("Quota of role %s changed; %d counters dropped", db_role.name, dropped)

    await auth.db.commit()
    await auth.db.refresh(db_role)

    auth.audit("update", "roles", role_id, details=role_update.model_dump(mode="json", exclude_unset=True))
    return db_role


@router.delete("/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_role(
    role_id: str,
    admin: Annotated[User, Depends(get_current_super_admin)],
    auth: Annotated[Authorizer, Depends(get_authorizer)]
):
    """Delete a role that nobody holds (super admin only)."""
    db_role = await get_role_or_404(auth.db, role_id)
    if db_role.is_system:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="System roles cannot be deleted"
        )

    result = await auth.db.execute(
        select(func.count()).select_from(RoleAssignment).where(RoleAssignment.role_id == role_id)
    )
    holders = result.scalar_one()
    if holders:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Cannot delete role: {holders} assignments still exist"
        )

    role_name = db_role.name
    await auth.db.delete(db_role)
    await auth.db.commit()

    auth.audit("delete", "roles", role_id, details={"name": role_name})
    return None


# ============================================================================
# Assignment Routes
# ============================================================================

@router.post("/assignments", response_model=AssignmentResponse, status_code=status.HTTP_201_CREATED)
async def create_assignment(
    assignment: AssignmentCreate,
    auth: Annotated[Authorizer, Depends(get_authorizer)],
    guard: Annotated[QuotaGuard, Depends(get_quota_guard)]
):
    """
    Assign a role to a user at a node.

    The quota slot is reserved in the same transaction as the insert.
    """
    node = await store.get_node(auth.db, assignment.node_type, assignment.node_id)
    await auth.require("role_assignments", "create", node=node)

    role = await get_role_or_404(auth.db, assignment.role_id)
    await get_user_or_404(auth.db, assignment.user_id)
    check_assignable(role, node)

    quota = await guard.reserve(auth.db, role, node.path)
    db_assignment = new_assignment(assignment.user_id, role, node, auth.user.id)
    auth.db.add(db_assignment)
    try:
        await auth.db.commit()
    except IntegrityError:
        await auth.db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="User already has this role at this node"
        )
    await auth.db.refresh(db_assignment)

    if quota.near_limit:
        log.warning("Role %s is near its quota in %s (%s/%s)", role.name, quota.scope_key, quota.current + 1, quota.max)
    auth.audit(
        "assign_role",
        "role_assignments",
        db_assignment.id,
        details={"user_id": assignment.user_id, "role": role.name, "path": node.path},
    )
    return db_assignment


@router.post("/assignments/bulk", response_model=List[AssignmentResponse], status_code=status.HTTP_201_CREATED)
async def create_assignments_bulk(
    bulk: BulkAssignmentCreate,
    auth: Annotated[Authorizer, Depends(get_authorizer)],
    guard: Annotated[QuotaGuard, Depends(get_quota_guard)]
):
    """
    Assign several roles at one node, all or nothing.

    Quotas are checked for the whole batch first so the caller sees every
    violation at once.
    """
    node = await store.get_node(auth.db, bulk.node_type, bulk.node_id)
    await auth.require("role_assignments", "create", node=node)

    roles: dict[str, Role] = {}
    requested: dict[Role, int] = {}
    for item in bulk.assignments:
        if item.role_id not in roles:
            roles[item.role_id] = await get_role_or_404(auth.db, item.role_id)
            check_assignable(roles[item.role_id], node)
        role = roles[item.role_id]
        requested[role] = requested.get(role, 0) + 1
        await get_user_or_404(auth.db, item.user_id)

    violations = await guard.check_bulk(auth.db, requested, node.path)
    if violations:
        raise QuotaExceeded(
            "Bulk assignment exceeds role quotas",
            violations=[
                {**violation.to_dict(), "requested": requested[roles[violation.role_id]]}
                for violation in violations
            ],
        )

    created = []
    for item in bulk.assignments:
        role = roles[item.role_id]
        await guard.reserve(auth.db, role, node.path)
        db_assignment = new_assignment(item.user_id, role, node, auth.user.id)
        auth.db.add(db_assignment)
        created.append(db_assignment)
    try:
        await auth.db.commit()
    except IntegrityError:
        await auth.db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="One or more users already hold these roles at this node"
        )
    for db_assignment in created:
        await auth.db.refresh(db_assignment)

    auth.audit(
        "bulk_assign_roles",
        "role_assignments",
        node.id,
        details={"count": len(created), "path": node.path},
    )
    return created


@router.get("/assignments", response_model=List[AssignmentResponse])
async def list_assignments(
    node_type: NodeType,
    node_id: str,
    auth: Annotated[Authorizer, Depends(get_authorizer)],
    include_inactive: bool = False
):
    """List the role assignments anchored at a node."""
    node = await store.get_node(auth.db, node_type, node_id)
    await auth.require("role_assignments", "read", node=node)

    stmt = select(RoleAssignment).where(RoleAssignment.node_id == node.id)
    if not include_inactive:
        stmt = stmt.where(RoleAssignment.is_active == True)  # noqa: E712
    result = await auth.db.execute(stmt.order_by(RoleAssignment.assigned_at))
    return result.scalars().all()


@router.delete("/assignments/{assignment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_assignment(
    assignment_id: str,
    auth: Annotated[Authorizer, Depends(get_authorizer)],
    guard: Annotated[QuotaGuard, Depends(get_quota_guard)]
):
    """Revoke a role assignment and give its quota slot back."""
    result = await auth.db.execute(select(RoleAssignment).where(RoleAssignment.id == assignment_id))
    db_assignment = result.scalar_one_or_none()
    if db_assignment is None:
        raise NotFound("Role assignment not found", assignment_id=assignment_id)

    node = await store.get_node(auth.db, db_assignment.node_type, db_assignment.node_id)
    await auth.require("role_assignments", "delete", node=node)

    role = await get_role_or_404(auth.db, db_assignment.role_id)
    if db_assignment.is_active:
        await guard.release(auth.db, role, db_assignment.scope_path)
    await auth.db.delete(db_assignment)
    await auth.db.commit()

    auth.audit(
        "revoke_role",
        "role_assignments",
        assignment_id,
        details={"user_id": db_assignment.user_id, "role": role.name, "path": db_assignment.scope_path},
    )
    return None


# ============================================================================
# Quota Routes
# ============================================================================

@router.get("/quota", response_model=QuotaOverviewResponse)
async def get_quota_overview(
    node_type: NodeType,
    node_id: str,
    auth: Annotated[Authorizer, Depends(get_authorizer)],
    guard: Annotated[QuotaGuard, Depends(get_quota_guard)]
):
    """Quota status of every limited role at a node, with a health summary."""
    node = await store.get_node(auth.db, node_type, node_id)
    await auth.require("roles", "read", node=node)
    return await guard.status_for_all(auth.db, node.path)


@router.get("/quota/{role_id}", response_model=QuotaStatusResponse)
async def get_quota_status(
    role_id: str,
    node_type: NodeType,
    node_id: str,
    auth: Annotated[Authorizer, Depends(get_authorizer)],
    guard: Annotated[QuotaGuard, Depends(get_quota_guard)]
):
    """Quota status of one role at a node."""
    node = await store.get_node(auth.db, node_type, node_id)
    await auth.require("roles", "read", node=node)
    role = await get_role_or_404(auth.db, role_id)
    quota = await guard.check(auth.db, role, node.path)
    return quota.to_dict()


# ============================================================================
# Permission Check Routes
# ============================================================================

@router.post("/check", response_model=PermissionCheckResponse)
async def check_permission(
    check: PermissionCheckRequest,
    auth: Annotated[Authorizer, Depends(get_authorizer)]
):
    """Check whether the current user may perform an action. Never fails on Deny."""
    node = None
    if check.node_type is not None and check.node_id is not None:
        node = await store.get_node(auth.db, check.node_type, check.node_id)

    decision = await auth.decide(check.resource, check.action, node=node)
    auth.audit(
        f"{check.resource}.{check.action}",
        check.resource,
        node.id if node else None,
        outcome=decision.kind.value,
        details={"check": True, "target_path": decision.target_path},
    )
    return decision.to_dict()


@router.get("/me", response_model=MyPermissionsResponse)
async def get_my_permissions(
    auth: Annotated[Authorizer, Depends(get_authorizer)]
):
    """The current user's grants, in assignment order, and the active one."""
    actor = await auth.actor()
    active = auth.engine.resolve_context(actor)
    return MyPermissionsResponse(
        user_id=actor.id,
        is_super_admin=actor.is_super,
        active_assignment_id=active.assignment_id if active else None,
        active_path=active.path if active else None,
        grants=[
            GrantResponse(
                assignment_id=grant.assignment_id,
                role_name=grant.role_name,
                node_id=grant.node_id,
                path=grant.path,
                team_id=grant.team_id,
                region=grant.region,
                permissions=sorted(str(permission) for permission in grant.permissions),
            )
            for grant in actor.grants
        ],
    )


# ============================================================================
# Audit Log Routes
# ============================================================================

@router.get("/audit-logs", response_model=AuditLogListResponse)
async def list_audit_logs(
    admin: Annotated[User, Depends(get_current_super_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
    skip: int = 0,
    limit: int = 50,
    user_id: Optional[str] = None,
    action: Optional[str] = None,
    resource_type: Optional[str] = None,
    outcome: Optional[str] = None
):
    """List audit logs with optional filtering (super admin only)."""
    stmt = select(AuditLog)

    if user_id:
        stmt = stmt.where(AuditLog.user_id == user_id)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if resource_type:
        stmt = stmt.where(AuditLog.resource_type == resource_type)
    if outcome:
        stmt = stmt.where(AuditLog.outcome == outcome)

    # Get total count
    count_stmt = select(func.count()).select_from(stmt.subquery())
    total_result = await db.execute(count_stmt)
    total = total_result.scalar() or 0

    # Get paginated results
    stmt = stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    logs = result.scalars().all()

    pages = (total + limit - 1) // limit if limit > 0 else 0
    page = (skip // limit) + 1 if limit > 0 else 1

    return AuditLogListResponse(
        items=[AuditLogResponse.model_validate(entry) for entry in logs],
        total=total,
        page=page,
        page_size=limit,
        pages=pages
    )
