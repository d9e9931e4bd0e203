"""
Role, assignment, quota and audit models for hierarchical RBAC.

This module implements:
- Roles carrying scoped permission strings ("teams.update:subordinate")
- Role assignments anchored at a hierarchy node (the grants of an actor)
- Per-role quotas with a durable counter for atomic reservation
- An audit log of decisions and mutations
"""
from datetime import datetime, timezone
import enum
from typing import Any, Dict
from sqlalchemy import String, ForeignKey, JSON, Text, DateTime, Boolean, Integer, Float, UniqueConstraint, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
from ulid import ULID

from app.core.database.base import Base, TimestampMixin
from app.features.hierarchy.paths import NodeType


def generate_ulid() -> str:
    """Generate a new ULID string."""
    return str(ULID())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QuotaScope(str, enum.Enum):
    """
    Where a role quota is counted.

    SYSTEM counts every assignment of the role; a level scope counts the
    assignments inside the subtree of the given organization at that level
    (a "conference" quota assigned in a church counts the whole conference).
    """
    SYSTEM = "system"
    UNION = "union"
    CONFERENCE = "conference"
    CHURCH = "church"
    TEAM = "team"
    SERVICE = "service"


class Role(Base, TimestampMixin):
    """
    Role model for grouping permissions.

    Examples: conference_admin, church_pastor, team_leader, viewer
    """
    __tablename__ = "roles"

    # Primary key using ULID
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # Role definition
    name: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Level the role is meant to be assigned at
    level: Mapped[NodeType] = mapped_column(SQLEnum(NodeType), nullable=False)

    # Permission strings, validated on write and parsed when grants load
    # Example: ["churches.read:subordinate", "teams.*:subordinate", "services.read:team"]
    permissions: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    # Quota: None means unlimited
    quota_max_users: Mapped[int | None] = mapped_column(Integer, nullable=True)
    quota_scope: Mapped[QuotaScope] = mapped_column(SQLEnum(QuotaScope), default=QuotaScope.CHURCH, nullable=False)
    quota_warning_threshold: Mapped[float | None] = mapped_column(Float, nullable=True)

    is_system: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Role(id={self.id}, name={self.name!r}, level={self.level})>"


class RoleAssignment(Base, TimestampMixin):
    """
    A role held by a user at a hierarchy node: one grant of the actor.

    `scope_path` copies the anchor node's path so grants can be evaluated
    without loading the node; the move cascade rewrites it with the nodes.
    """
    __tablename__ = "role_assignments"
    __table_args__ = (UniqueConstraint("user_id", "role_id", "node_id", name="uq_role_assignments_user_role_node"),)

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    user_id: Mapped[str] = mapped_column(String(26), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role_id: Mapped[str] = mapped_column(String(26), ForeignKey("roles.id", ondelete="CASCADE"), nullable=False, index=True)

    # Anchor node
    node_type: Mapped[NodeType] = mapped_column(SQLEnum(NodeType), nullable=False)
    node_id: Mapped[str] = mapped_column(String(26), nullable=False, index=True)
    scope_path: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    # Set when the anchor is a team
    team_id: Mapped[str | None] = mapped_column(String(26), nullable=True, index=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    assigned_by_id: Mapped[str | None] = mapped_column(String(26), ForeignKey("users.id"), nullable=True)

    def __repr__(self) -> str:
        return f"<RoleAssignment(id={self.id}, user_id={self.user_id}, role_id={self.role_id}, path={self.scope_path!r})>"


class QuotaCounter(Base, TimestampMixin):
    """
    Durable usage counter for a role quota.

    Reservations increment `used` with a conditional UPDATE, so two
    concurrent assignments can never both take the last slot.
    """
    __tablename__ = "quota_counters"
    __table_args__ = (UniqueConstraint("role_id", "scope_key", name="uq_quota_counters_role_scope"),)

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    role_id: Mapped[str] = mapped_column(String(26), ForeignKey("roles.id", ondelete="CASCADE"), nullable=False, index=True)
    # "*" for system scope, otherwise the path of the counted subtree
    scope_key: Mapped[str] = mapped_column(String(255), nullable=False)
    used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    def __repr__(self) -> str:
        return f"<QuotaCounter(role_id={self.role_id}, scope={self.scope_key!r}, used={self.used})>"


class AuditLog(Base, TimestampMixin):
    """
    Audit log for authorization decisions and structural mutations.

    Tracks who did what to which node, with what outcome, and from where.
    """
    __tablename__ = "audit_logs"

    # Primary key using ULID
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # Actor
    user_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    # Action details
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_id: Mapped[str | None] = mapped_column(String(26), nullable=True, index=True)
    outcome: Mapped[str] = mapped_column(String(50), nullable=False, index=True)

    # Context
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, user_id={self.user_id}, action={self.action}, outcome={self.outcome})>"
