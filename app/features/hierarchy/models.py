"""
Organizational hierarchy models.

Union → Conference → Church → Team → Service, one table per level. Every node
stores its parent's id (never a parent object) and a materialized path of
ancestor ids; subtree queries and cascades are prefix searches on `path`.
"""
from datetime import datetime
import enum
from typing import ClassVar
from sqlalchemy import String, ForeignKey, Boolean, Integer, Text, DateTime, UniqueConstraint, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
from ulid import ULID

from app.core.database.base import Base, TimestampMixin
from app.features.hierarchy.paths import NodeType


def generate_ulid() -> str:
    """Generate a new ULID string."""
    return str(ULID())


class HierarchyNodeMixin(TimestampMixin):
    """
    Columns shared by every node of the tree.

    `depth` is fixed per table and never changes once a row exists;
    `path` changes only through the cascade coordinator.
    """
    node_type: ClassVar[NodeType]

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    # Materialized path, root first, own id last
    path: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    depth: Mapped[int] = mapped_column(Integer, nullable=False)

    # Optional region tag matched by "region" scoped permissions
    region: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)
    deactivated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deactivated_by_id: Mapped[str | None] = mapped_column(String(26), nullable=True)
    deactivation_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<{type(self).__name__}(id={self.id}, path={self.path!r}, active={self.is_active})>"


class Union(Base, HierarchyNodeMixin):
    """Root of the hierarchy; its path is its own id."""
    __tablename__ = "unions"
    node_type = NodeType.UNION

    # Unions have no parent
    parent_id: Mapped[str | None] = mapped_column(String(26), nullable=True)


class Conference(Base, HierarchyNodeMixin):
    __tablename__ = "conferences"
    node_type = NodeType.CONFERENCE

    parent_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("unions.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )


class Church(Base, HierarchyNodeMixin):
    __tablename__ = "churches"
    node_type = NodeType.CHURCH

    parent_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("conferences.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )


class Team(Base, HierarchyNodeMixin):
    """Teams bind only to a church."""
    __tablename__ = "teams"
    node_type = NodeType.TEAM

    parent_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("churches.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )


class ServiceStatus(str, enum.Enum):
    """Lifecycle of a service; archived is terminal."""
    ACTIVE = "active"
    ARCHIVED = "archived"


class Service(Base, HierarchyNodeMixin):
    """
    Leaf of the hierarchy. Services bind only to a team.

    Deactivating an ancestor archives services instead of deactivating them.
    """
    __tablename__ = "services"
    node_type = NodeType.SERVICE

    parent_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("teams.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )

    status: Mapped[ServiceStatus] = mapped_column(
        SQLEnum(ServiceStatus),
        default=ServiceStatus.ACTIVE,
        nullable=False,
        index=True
    )
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    archived_by_id: Mapped[str | None] = mapped_column(String(26), nullable=True)
    archive_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)


# Node type -> model. The cascade walks these tables by path prefix.
NODE_MODELS: dict[NodeType, type[HierarchyNodeMixin]] = {
    NodeType.UNION: Union,
    NodeType.CONFERENCE: Conference,
    NodeType.CHURCH: Church,
    NodeType.TEAM: Team,
    NodeType.SERVICE: Service,
}


def model_for(node_type: NodeType) -> type[HierarchyNodeMixin]:
    return NODE_MODELS[node_type]


def descendant_models(node_type: NodeType) -> list[type[HierarchyNodeMixin]]:
    """Tables that can hold descendants of a node of `node_type`, nearest first."""
    return [NODE_MODELS[t] for t in node_type.descendant_types]


class TeamRole(str, enum.Enum):
    LEADER = "leader"
    MEMBER = "member"


class TeamMembership(Base, TimestampMixin):
    """
    A user's membership in a team.

    The membership role feeds the "team_subordinate" permission scope:
    team leaders may act on their team's subordinate records.
    """
    __tablename__ = "team_memberships"
    __table_args__ = (UniqueConstraint("user_id", "team_id", name="uq_team_memberships_user_team"),)

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    user_id: Mapped[str] = mapped_column(String(26), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    team_id: Mapped[str] = mapped_column(String(26), ForeignKey("teams.id", ondelete="CASCADE"), nullable=False, index=True)
    role: Mapped[TeamRole] = mapped_column(SQLEnum(TeamRole), default=TeamRole.MEMBER, nullable=False)

    def __repr__(self) -> str:
        return f"<TeamMembership(user_id={self.user_id}, team_id={self.team_id}, role={self.role})>"


class CascadeKind(str, enum.Enum):
    MOVE = "move"
    DEACTIVATE = "deactivate"


class CascadeStatus(str, enum.Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class CascadeJob(Base, TimestampMixin):
    """
    Durable marker of a structural cascade.

    Written in the same transaction as the primary node write, so a job left
    in "running" or "failed" means some descendants may still carry the old
    prefix (or status). Resuming re-runs the rewrite until nothing matches.
    """
    __tablename__ = "cascade_jobs"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    kind: Mapped[CascadeKind] = mapped_column(SQLEnum(CascadeKind), nullable=False)
    node_type: Mapped[NodeType] = mapped_column(SQLEnum(NodeType), nullable=False)
    node_id: Mapped[str] = mapped_column(String(26), nullable=False, index=True)

    # Move: rewrite old_prefix -> new_prefix. Deactivate: both hold the node path.
    old_prefix: Mapped[str] = mapped_column(String(255), nullable=False)
    new_prefix: Mapped[str] = mapped_column(String(255), nullable=False)

    status: Mapped[CascadeStatus] = mapped_column(
        SQLEnum(CascadeStatus),
        default=CascadeStatus.RUNNING,
        nullable=False,
        index=True
    )
    rewritten: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    actor_id: Mapped[str | None] = mapped_column(String(26), nullable=True)
    reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<CascadeJob(id={self.id}, kind={self.kind}, {self.old_prefix!r}->{self.new_prefix!r}, status={self.status})>"
