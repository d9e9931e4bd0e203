"""
User model with ULID primary keys.

Users are the actors of the authorization engine: a user resolves to a set of
grants (role assignments anchored at hierarchy nodes) and a super-admin flag.
"""
from datetime import datetime
from sqlalchemy import String, Boolean, DateTime, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
from ulid import ULID

from app.core.database.base import Base, TimestampMixin
from app.features.hierarchy.paths import NodeType


def generate_ulid() -> str:
    """Generate a new ULID string."""
    return str(ULID())


class User(Base, TimestampMixin):
    """
    User model representing authenticated actors.

    Uses ULID instead of auto-incrementing integers for better distributed systems support.
    """
    __tablename__ = "users"

    # Primary key using ULID (Universally Unique Lexicographically Sortable Identifier)
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # User information
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Status flags
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Bypasses all path reasoning
    is_super_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Declared primary organization (union, conference or church); picks the
    # active grant when a request carries no explicit target
    primary_organization_type: Mapped[NodeType | None] = mapped_column(SQLEnum(NodeType), nullable=True)
    primary_organization_id: Mapped[str | None] = mapped_column(String(26), nullable=True, index=True)

    # Track last login
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email!r})>"
