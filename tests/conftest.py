"""
Shared fixtures: a temp-file SQLite database per test, a cascade coordinator
with small batches, a seeded tree and an HTTP client bound to the app.
"""
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.core.database.engine import get_db, get_session_factory, init_db
from app.features.hierarchy.cascade import CascadeCoordinator, SubtreeLeases
from app.features.hierarchy.models import NODE_MODELS
from app.features.hierarchy.paths import NodeType
from app.features.permissions.models import QuotaScope, Role, RoleAssignment
from app.features.hierarchy import store
from app.features.users.auth import create_access_token
from app.features.users.models import User


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def coordinator(session_factory):
    # Tiny batches so every cascade spans several commits
    return CascadeCoordinator(session_factory, leases=SubtreeLeases(timeout=5), batch_size=2)


@pytest.fixture
async def tree(coordinator):
    """
    U1
    ├── C1
    │   ├── CH2
    │   │   ├── T5 ── S1, S2, S3
    │   │   └── T6
    │   └── CH3
    └── C9
    U2 ── C20
    """
    nodes = {}
    nodes["U1"] = await coordinator.create(NodeType.UNION, "North Union", node_id="U1", region="north")
    nodes["U2"] = await coordinator.create(NodeType.UNION, "South Union", node_id="U2", region="south")
    nodes["C1"] = await coordinator.create(NodeType.CONFERENCE, "Lakes", parent_id="U1", node_id="C1")
    nodes["C9"] = await coordinator.create(NodeType.CONFERENCE, "Hills", parent_id="U1", node_id="C9")
    nodes["C20"] = await coordinator.create(NodeType.CONFERENCE, "Coast", parent_id="U2", node_id="C20")
    nodes["CH2"] = await coordinator.create(NodeType.CHURCH, "Central", parent_id="C1", node_id="CH2")
    nodes["CH3"] = await coordinator.create(NodeType.CHURCH, "Riverside", parent_id="C1", node_id="CH3")
    nodes["T5"] = await coordinator.create(NodeType.TEAM, "Worship", parent_id="CH2", node_id="T5")
    nodes["T6"] = await coordinator.create(NodeType.TEAM, "Youth", parent_id="CH2", node_id="T6")
    for service_id in ("S1", "S2", "S3"):
        nodes[service_id] = await coordinator.create(NodeType.SERVICE, f"Service {service_id}", parent_id="T5", node_id=service_id)
    return nodes


async def reload(db: AsyncSession, node):
    """Fresh copy of a node from the database."""
    node_type, node_id = node.node_type, node.id
    db.expire_all()
    return await store.get_node(db, node_type, node_id)


async def all_nodes(db: AsyncSession) -> list:
    db.expire_all()
    nodes = []
    for model in NODE_MODELS.values():
        result = await db.execute(select(model))
        nodes.extend(result.scalars().all())
    return nodes


async def assert_tree_consistent(db: AsyncSession):
    """Every node's path is its parent's path plus its id, at the right depth."""
    nodes = await all_nodes(db)
    by_id = {node.id: node for node in nodes}
    for node in nodes:
        assert node.depth == len(node.path.split("/")) - 1, node
        if node.parent_id is None:
            assert node.path == node.id, node
        else:
            parent = by_id[node.parent_id]
            assert node.path == f"{parent.path}/{node.id}", node
            assert parent.depth == node.depth - 1, node


async def make_user(db: AsyncSession, email: str, is_super_admin: bool = False) -> User:
    user = User(email=email, name=email.split("@")[0], is_super_admin=is_super_admin)
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


async def make_role(
    db: AsyncSession,
    name: str,
    level: NodeType,
    permissions: list[str],
    quota_max_users=None,
    quota_scope: QuotaScope = QuotaScope.CHURCH,
    quota_warning_threshold=None,
) -> Role:
    role = Role(
        name=name,
        display_name=name.replace("_", " ").title(),
        level=level,
        permissions=permissions,
        quota_max_users=quota_max_users,
        quota_scope=quota_scope,
        quota_warning_threshold=quota_warning_threshold,
    )
    db.add(role)
    await db.commit()
    await db.refresh(role)
    return role


async def assign(db: AsyncSession, user: User, role: Role, node) -> RoleAssignment:
    assignment = RoleAssignment(
        user_id=user.id,
        role_id=role.id,
        node_type=node.node_type,
        node_id=node.id,
        scope_path=node.path,
        team_id=store.team_of(node),
    )
    db.add(assignment)
    await db.commit()
    await db.refresh(assignment)
    return assignment


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


@pytest.fixture
async def client(session_factory):
    from app.main import app

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
