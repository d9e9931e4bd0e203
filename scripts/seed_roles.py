"""
Seed script to populate default roles.

Run this script after database initialization to create:
- Default system roles for every hierarchy level, with quotas
- Optionally a super admin user (SUPER_ADMIN_EMAIL), printing a token for it

Usage:
    uv run python -m scripts.seed_roles
"""
import asyncio
import os
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db, init_db
from app.features.hierarchy.paths import NodeType
from app.features.permissions.models import QuotaScope, Role
from app.features.permissions.scopes import validate_permissions
from app.features.users.auth import create_access_token
from app.features.users.models import User
from app.utils import get_logger


log = get_logger(__name__)


DEFAULT_ROLES = {
    "union_admin": {
        "display_name": "Union Administrator",
        "description": "Manages a union and everything below it",
        "level": NodeType.UNION,
        "quota_max_users": 10,
        "quota_scope": QuotaScope.UNION,
        "permissions": [
            "unions.read", "unions.update",
            "conferences.*:subordinate",
            "churches.*:subordinate",
            "teams.*:subordinate",
            "services.*:subordinate",
            "role_assignments.*:subordinate",
            "role_assignments.read",
            "roles.read:region",
        ],
    },
    "conference_admin": {
        "display_name": "Conference Administrator",
        "description": "Manages a conference, its churches, teams and services",
        "level": NodeType.CONFERENCE,
        "quota_max_users": 20,
        "quota_scope": QuotaScope.CONFERENCE,
        "permissions": [
            "conferences.read", "conferences.update",
            "churches.*:subordinate",
            "teams.*:subordinate",
            "services.*:subordinate",
            "role_assignments.*:subordinate",
            "role_assignments.read",
            "roles.read:region",
        ],
    },
    "church_pastor": {
        "display_name": "Church Pastor",
        "description": "Leads a church and its teams",
        "level": NodeType.CHURCH,
        "quota_max_users": 5,
        "quota_scope": QuotaScope.CHURCH,
        "permissions": [
            "churches.read", "churches.update",
            "teams.*:subordinate",
            "services.*:subordinate",
            "role_assignments.create:subordinate",
            "role_assignments.read:region",
            "roles.read",
        ],
    },
    "team_leader": {
        "display_name": "Team Leader",
        "description": "Runs a team and its services",
        "level": NodeType.TEAM,
        "quota_max_users": 3,
        "quota_scope": QuotaScope.TEAM,
        "permissions": [
            "teams.read:team", "teams.update:team",
            "services.*:team",
        ],
    },
    "team_member": {
        "display_name": "Team Member",
        "description": "Takes part in a team's services",
        "level": NodeType.TEAM,
        "quota_max_users": None,
        "quota_scope": QuotaScope.TEAM,
        "permissions": [
            "teams.read:team",
            "services.read:team",
            "services.update:team_subordinate",
        ],
    },
}


async def seed_roles(db: AsyncSession):
    """
    Create default roles. Existing roles are left untouched.

    Raises:
        ValueError: if a default role carries a malformed permission string
    """
    log.info("Creating default roles...")

    for role_name, role_config in DEFAULT_ROLES.items():
        invalid = validate_permissions(role_config["permissions"])
        if invalid:
            raise ValueError(f"Role '{role_name}' has invalid permissions: {invalid}")

        # Check if role already exists
        stmt = select(Role).where(Role.name == role_name)
        result = await db.execute(stmt)
        existing = result.scalars().first()

        if existing:
            log.debug(f"Role '{role_name}' already exists, skipping")
            continue

        db.add(Role(name=role_name, is_system=True, **role_config))
        log.info(f"Created role '{role_name}' with {len(role_config['permissions'])} permissions")

    await db.commit()
    log.info("Default roles created successfully")


async def seed_super_admin(db: AsyncSession, email: str) -> User:
    """Create (or promote) the super admin user."""
    result = await db.execute(select(User).where(User.email == email))
    user = result.scalar_one_or_none()
    if user is None:
        user = User(email=email, name=email.split("@")[0], is_super_admin=True)
        db.add(user)
        log.info(f"Created super admin {email}")
    else:
        user.is_super_admin = True
        log.info(f"Promoted {email} to super admin")
    await db.commit()
    await db.refresh(user)
    return user


async def main():
    """Main function to seed roles."""
    log.info("Starting role seeding...")

    # Initialize database tables first
    log.info("Initializing database tables...")
    await init_db()

    # Get database session
    async for db in get_db():
        await seed_roles(db)

        email = os.environ.get("SUPER_ADMIN_EMAIL")
        if email:
            admin = await seed_super_admin(db, email)
            log.info(f"Super admin token: {create_access_token(admin.id)}")

        log.info("Role seeding completed successfully!")
        log.info("")
        log.info("Default roles:")
        for role_name, role_config in DEFAULT_ROLES.items():
            log.info(f"  - {role_name}: {role_config['description']}")

        break  # Only use first session


if __name__ == "__main__":
    asyncio.run(main())
