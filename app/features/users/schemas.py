"""
Pydantic schemas for user-related requests and responses.
"""
from datetime import datetime
from pydantic import BaseModel, EmailStr, Field

from app.features.hierarchy.paths import NodeType


class UserBase(BaseModel):
    """Base user schema with common fields."""
    email: EmailStr
    name: str = Field(..., min_length=1, max_length=255)


class UserCreate(UserBase):
    """Schema for creating a new user (super admin only)."""
    is_super_admin: bool = False


class UserUpdate(BaseModel):
    """Schema for updating user information."""
    name: str | None = Field(None, min_length=1, max_length=255)


class UserResponse(UserBase):
    """Schema for user responses."""
    id: str
    is_active: bool
    is_super_admin: bool
    primary_organization_type: NodeType | None = None
    primary_organization_id: str | None = None
    last_login_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class UserPublic(BaseModel):
    """Public user information (limited fields)."""
    id: str
    name: str

    model_config = {"from_attributes": True}


class SetPrimaryOrganizationRequest(BaseModel):
    """Schema for declaring the user's primary organization."""
    node_type: NodeType = Field(..., description="union, conference or church")
    node_id: str = Field(..., min_length=1, max_length=26)
