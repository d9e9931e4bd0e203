"""
Pydantic schemas for permission management.

Request and response models for roles, role assignments, quotas, decision
checks and audit logs.
"""
from datetime import datetime
from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator

from app.features.hierarchy.paths import NodeType
from app.features.permissions.models import QuotaScope
from app.features.permissions.scopes import validate_permissions


def _check_permission_strings(v: Optional[List[str]]) -> Optional[List[str]]:
    if v is None:
        return v
    invalid = validate_permissions(v)
    if invalid:
        raise ValueError(f"Invalid permission strings: {', '.join(map(str, invalid))}")
    # Deduplicate, keep order
    return list(dict.fromkeys(p.strip() for p in v))


# ============================================================================
# Role Schemas
# ============================================================================

class RoleBase(BaseModel):
    """Base role schema."""
    name: str = Field(..., min_length=1, max_length=50, description="Unique role name")
    display_name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000, description="Role description")
    level: NodeType = Field(..., description="Hierarchy level the role is assigned at")
    permissions: List[str] = Field(default_factory=list, description="e.g. ['churches.read:subordinate', 'teams.*:subordinate']")
    quota_max_users: Optional[int] = Field(None, ge=0, description="Maximum holders per quota scope (null for unlimited)")
    quota_scope: QuotaScope = QuotaScope.CHURCH
    quota_warning_threshold: Optional[float] = Field(None, gt=0, le=1)


class RoleCreate(RoleBase):
    """Schema for creating a new role."""

    @field_validator('name')
    @classmethod
    def name_alphanumeric_underscore(cls, v: str) -> str:
        """Validate role name format."""
        if not v.replace('_', '').replace('-', '').isalnum():
            raise ValueError('Role name must contain only alphanumeric characters, underscores, and hyphens')
        return v

    @field_validator('permissions')
    @classmethod
    def permissions_follow_grammar(cls, v: List[str]) -> List[str]:
        return _check_permission_strings(v)


class RoleUpdate(BaseModel):
    """Schema for updating a role."""
    display_name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    permissions: Optional[List[str]] = None
    quota_max_users: Optional[int] = Field(None, ge=0)
    quota_scope: Optional[QuotaScope] = None
    quota_warning_threshold: Optional[float] = Field(None, gt=0, le=1)
    is_active: Optional[bool] = None

    @field_validator('permissions')
    @classmethod
    def permissions_follow_grammar(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        return _check_permission_strings(v)


class RoleResponse(RoleBase):
    """Schema for role response."""
    id: str
    is_system: bool
    is_active: bool
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Assignment Schemas
# ============================================================================

class AssignmentCreate(BaseModel):
    """Schema for assigning a role to a user at a hierarchy node."""
    user_id: str = Field(..., description="User ID")
    role_id: str = Field(..., description="Role ID")
    node_type: NodeType = Field(..., description="Level of the anchor node")
    node_id: str = Field(..., description="Anchor node ID")


class BulkAssignmentItem(BaseModel):
    user_id: str
    role_id: str


class BulkAssignmentCreate(BaseModel):
    """Assign several roles at one node in one transaction."""
    node_type: NodeType
    node_id: str
    assignments: List[BulkAssignmentItem] = Field(..., min_length=1, max_length=100)


class AssignmentResponse(BaseModel):
    id: str
    user_id: str
    role_id: str
    node_type: NodeType
    node_id: str
    scope_path: str
    team_id: Optional[str] = None
    is_active: bool
    assigned_at: datetime
    assigned_by_id: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Quota Schemas
# ============================================================================

class QuotaStatusResponse(BaseModel):
    role_id: str
    role_name: str
    scope_key: str
    allowed: bool
    current: int
    max: Optional[int] = None
    remaining: Optional[int] = None
    near_limit: bool
    percentage: Optional[float] = None


class QuotaHealth(BaseModel):
    status: str
    roles_at_limit: List[str]
    roles_near_limit: List[str]
    average_usage: float


class QuotaOverviewResponse(BaseModel):
    roles: List[QuotaStatusResponse]
    health: QuotaHealth


# ============================================================================
# Permission Check Schemas
# ============================================================================

class PermissionCheckRequest(BaseModel):
    """
    Schema for checking a permission for the current user.

    Without a node the decision is taken in the user's active context.
    """
    resource: str = Field(..., description="Resource type, e.g. 'teams'")
    action: str = Field(..., description="Action, e.g. 'update'")
    node_type: Optional[NodeType] = None
    node_id: Optional[str] = None


class PermissionCheckResponse(BaseModel):
    """Schema for permission check response."""
    allowed: bool
    kind: str
    resource: str
    action: str
    reason: Optional[str] = None
    target_path: Optional[str] = None
    matched_permission: Optional[str] = None
    matched_assignment_id: Optional[str] = None


class GrantResponse(BaseModel):
    assignment_id: Optional[str]
    role_name: Optional[str]
    node_id: Optional[str]
    path: Optional[str]
    team_id: Optional[str] = None
    region: Optional[str] = None
    permissions: List[str]


class MyPermissionsResponse(BaseModel):
    """The current user's grants and active context."""
    user_id: str
    is_super_admin: bool
    active_assignment_id: Optional[str] = None
    active_path: Optional[str] = None
    grants: List[GrantResponse] = []


# ============================================================================
# Audit Log Schemas
# ============================================================================

class AuditLogResponse(BaseModel):
    """Schema for audit log response."""
    id: str
    user_id: Optional[str]
    action: str
    resource_type: str
    resource_id: Optional[str]
    outcome: str
    details: Optional[Dict[str, Any]]
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuditLogListResponse(BaseModel):
    """Schema for paginated audit log list."""
    items: List[AuditLogResponse]
    total: int
    page: int
    page_size: int
    pages: int
