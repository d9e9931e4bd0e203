"""
User routes: the current user's profile and primary organization, and
super-admin user management.
"""
from typing import Annotated
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.core.errors import InvalidHierarchy
from app.features.hierarchy import store
from app.features.hierarchy.paths import NodeType
from app.features.permissions.models import Role, RoleAssignment
from app.features.permissions.quota import QuotaGuard
from app.features.users.models import User
from app.features.users.schemas import (
    SetPrimaryOrganizationRequest,
    UserCreate,
    UserPublic,
    UserResponse,
    UserUpdate,
)
from app.features.users.dependencies import get_current_user, get_current_super_admin, get_user_or_404
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter(tags=["users"])

# Levels a user can declare as their primary organization
PRIMARY_ORGANIZATION_TYPES = (NodeType.UNION, NodeType.CONFERENCE, NodeType.CHURCH)


@router.get("/me", response_model=UserResponse)
async def get_current_user_profile(
    user: Annotated[User, Depends(get_current_user)]
):
    """The authenticated user's profile."""
    return user


@router.patch("/me", response_model=UserResponse)
async def update_current_user_profile(
    update_data: UserUpdate,
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    if update_data.name is not None:
        user.name = update_data.name

    await db.commit()
    await db.refresh(user)
    return user


@router.put("/me/primary-organization", response_model=UserResponse)
async def set_primary_organization(
    request_data: SetPrimaryOrganizationRequest,
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """
    Declare the organization whose grant is active when a request names no target.
    """
    if request_data.node_type not in PRIMARY_ORGANIZATION_TYPES:
        raise InvalidHierarchy("Primary organization must be a union, conference or church")

    node = await store.get_node(db, request_data.node_type, request_data.node_id)
    if not node.is_active:
        raise InvalidHierarchy(f"{node.node_type.value.capitalize()} {node.id} is deactivated")

    user.primary_organization_type = request_data.node_type
    user.primary_organization_id = node.id
    await db.commit()
    await db.refresh(user)
    return user


@router.get("/{user_id}", response_model=UserPublic)
async def get_user_by_id(
    user_id: str,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    return await get_user_or_404(db, user_id)


@router.get("/", response_model=list[UserPublic])
async def list_users(
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    skip: int = 0,
    limit: int = 50
):
    """Active users, public fields only."""
    result = await db.execute(
        select(User)
        .where(User.is_active == True)  # noqa: E712
        .order_by(User.name)
        .offset(skip)
        .limit(limit)
    )
    return result.scalars().all()


# Super admin routes
@router.post("/", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def create_user(
    user_data: UserCreate,
    admin: Annotated[User, Depends(get_current_super_admin)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Register a user; tokens for them are issued by the identity provider."""
    user = User(**user_data.model_dump())
    db.add(user)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="User with this email already exists"
        )
    await db.refresh(user)
    log.info("User %s registered by %s", user.id, admin.id)
    return user


@router.patch("/{user_id}/super-admin", response_model=UserResponse)
async def toggle_super_admin_status(
    user_id: str,
    admin: Annotated[User, Depends(get_current_super_admin)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Grant or withdraw the super-admin bypass."""
    user = await get_user_or_404(db, user_id)
    if user.id == admin.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Cannot modify your own super admin status"
        )

    user.is_super_admin = not user.is_super_admin
    await db.commit()
    await db.refresh(user)
    log.warning("Super admin status of %s set to %s by %s", user.id, user.is_super_admin, admin.id)
    return user


@router.delete("/{user_id}")
async def deactivate_user(
    user_id: str,
    admin: Annotated[User, Depends(get_current_super_admin)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """
    Deactivate a user account.

    The user's role assignments are deactivated with it and their quota
    slots given back.
    """
    user = await get_user_or_404(db, user_id)
    if user.id == admin.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Cannot deactivate your own account"
        )

    guard = QuotaGuard()
    result = await db.execute(
        select(RoleAssignment, Role)
        .join(Role, Role.id == RoleAssignment.role_id)
        .where(RoleAssignment.user_id == user.id, RoleAssignment.is_active == True)  # noqa: E712
    )
    revoked = 0
    for assignment, role in result.all():
        assignment.is_active = False
        await guard.release(db, role, assignment.scope_path)
        revoked += 1

    user.is_active = False
    await db.commit()
    log.info("User %s deactivated by %s (%d role assignments revoked)", user.id, admin.id, revoked)

    return {"message": "User deactivated successfully", "revoked_assignments": revoked}
