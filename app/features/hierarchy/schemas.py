"""
Pydantic schemas for hierarchy nodes and cascades.
"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator

from app.features.hierarchy.models import CascadeKind, CascadeStatus, ServiceStatus, TeamRole
from app.features.hierarchy.paths import NodeType, is_valid_segment


class NodeBase(BaseModel):
    """Base node schema."""
    name: str = Field(..., min_length=1, max_length=255)
    region: Optional[str] = Field(None, max_length=100, description="Region tag matched by region-scoped permissions")


class NodeCreate(NodeBase):
    """
    Schema for creating a node.

    `parent_id` is required for everything below a union and must name a
    node exactly one level up. `region` defaults to the parent's region.
    """
    parent_id: Optional[str] = Field(None, max_length=26)
    id: Optional[str] = Field(None, max_length=26, description="Explicit node id (generated when omitted)")

    @field_validator("id")
    @classmethod
    def id_is_path_segment(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not is_valid_segment(v):
            raise ValueError("Node id may contain only letters, digits and underscores")
        return v


class NodeUpdate(BaseModel):
    """Renaming or re-tagging a node does not touch paths."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    region: Optional[str] = Field(None, max_length=100)


class NodeResponse(NodeBase):
    id: str
    node_type: NodeType
    parent_id: Optional[str]
    path: str
    depth: int
    is_active: bool
    deactivated_at: Optional[datetime] = None
    deactivation_reason: Optional[str] = None
    status: Optional[ServiceStatus] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class MoveRequest(BaseModel):
    new_parent_id: str = Field(..., min_length=1, max_length=26)


class DeactivateRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=255)


class CascadeResultResponse(BaseModel):
    kind: CascadeKind
    node_type: NodeType
    node_id: str
    old_path: str
    new_path: str
    rewritten: int
    job_id: Optional[str] = None
    status: CascadeStatus


class CascadeJobResponse(BaseModel):
    id: str
    kind: CascadeKind
    node_type: NodeType
    node_id: str
    old_prefix: str
    new_prefix: str
    status: CascadeStatus
    rewritten: int
    attempts: int
    error: Optional[str] = None
    actor_id: Optional[str] = None
    created_at: datetime
    finished_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class TeamMemberCreate(BaseModel):
    user_id: str = Field(..., max_length=26)
    role: TeamRole = TeamRole.MEMBER


class TeamMemberResponse(BaseModel):
    id: str
    user_id: str
    team_id: str
    role: TeamRole
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
