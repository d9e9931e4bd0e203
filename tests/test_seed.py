from sqlalchemy import func, select

from app.features.permissions.models import Role
from app.features.permissions.scopes import validate_permissions
from scripts.seed_roles import DEFAULT_ROLES, seed_roles, seed_super_admin

from tests.conftest import make_user


def test_default_roles_use_valid_permissions():
    for role_name, role_config in DEFAULT_ROLES.items():
        assert validate_permissions(role_config["permissions"]) == [], role_name


async def test_seed_roles_is_idempotent(db):
    await seed_roles(db)
    await seed_roles(db)
    result = await db.execute(select(func.count()).select_from(Role))
    assert result.scalar_one() == len(DEFAULT_ROLES)

    result = await db.execute(select(Role).where(Role.name == "team_leader"))
    role = result.scalar_one()
    assert role.is_system


async def test_seed_super_admin_promotes_existing_user(db):
    user = await make_user(db, "owner@example.org")
    admin = await seed_super_admin(db, "owner@example.org")
    assert admin.id == user.id
    assert admin.is_super_admin

    created = await seed_super_admin(db, "new@example.org")
    assert created.is_super_admin
