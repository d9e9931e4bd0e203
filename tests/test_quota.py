import asyncio

import pytest
from sqlalchemy import select

from app.core.errors import CascadeBusy, QuotaExceeded
from app.features.hierarchy.models import CascadeJob, CascadeKind, CascadeStatus
from app.features.hierarchy.paths import NodeType
from app.features.permissions.models import QuotaCounter, QuotaScope, RoleAssignment
from app.features.permissions.quota import QuotaGuard, near_limit, scope_key, system_health

from tests.conftest import assign, make_role, make_user


@pytest.fixture
def guard():
    return QuotaGuard(warning_threshold=0.8)


async def fill(db, role, node, count: int, prefix: str = "member"):
    for i in range(count):
        user = await make_user(db, f"{prefix}{i}@example.org")
        await assign(db, user, role, node)


async def used(db, role) -> int:
    result = await db.execute(select(QuotaCounter.used).where(QuotaCounter.role_id == role.id))
    return result.scalar_one()


@pytest.mark.parametrize(
    "current, requested, allowed",
    [
        (0, 1, True),
        (4, 1, True),
        (5, 1, False),
        (6, 1, False),
        (3, 2, True),
        (4, 2, False),
    ],
)
async def test_status_allows_up_to_the_ceiling(db, guard, current, requested, allowed):
    role = await make_role(db, "pastor", NodeType.CHURCH, ["churches.read"], quota_max_users=5)
    status = guard.status(role, "U1/C1/CH2", current, requested=requested)
    assert status.allowed is allowed
    assert status.max == 5
    assert status.remaining == max(5 - current, 0)


async def test_unlimited_role_is_always_allowed(db, guard, tree):
    role = await make_role(db, "viewer", NodeType.CHURCH, ["churches.read"])
    await fill(db, role, tree["CH2"], 3)
    status = await guard.check(db, role, "U1/C1/CH2")
    assert status.allowed
    assert status.current == 3
    assert status.max is None
    assert status.remaining is None


async def test_full_quota_is_reported(db, guard, tree):
    role = await make_role(db, "pastor", NodeType.CHURCH, ["churches.read"], quota_max_users=5)
    await fill(db, role, tree["CH2"], 5)

    status = await guard.check(db, role, tree["CH2"].path)
    assert status.current == 5
    assert status.allowed is False
    assert status.remaining == 0
    assert status.near_limit
    assert status.percentage == 100.0


@pytest.mark.parametrize(
    "current, max_count, threshold, expected",
    [(3, 5, 0.8, False), (4, 5, 0.8, True), (9, 10, 0.9, True), (8, 10, 0.9, False)],
)
def test_near_limit(current, max_count, threshold, expected):
    assert near_limit(current, max_count, threshold) is expected


async def test_role_threshold_overrides_the_default(db, guard):
    role = await make_role(db, "pastor", NodeType.CHURCH, [], quota_max_users=10, quota_warning_threshold=0.5)
    assert guard.status(role, "U1/C1/CH2", 5).near_limit
    assert not guard.status(role, "U1/C1/CH2", 4).near_limit


@pytest.mark.parametrize(
    "quota_scope, org_path, expected",
    [
        (QuotaScope.SYSTEM, "U1/C1/CH2", "*"),
        (QuotaScope.UNION, "U1/C1/CH2", "U1"),
        (QuotaScope.CONFERENCE, "U1/C1/CH2/T5", "U1/C1"),
        (QuotaScope.CHURCH, "U1/C1/CH2", "U1/C1/CH2"),
        (QuotaScope.TEAM, "U1/C1", "U1/C1"),
        (QuotaScope.CHURCH, None, "*"),
    ],
)
async def test_scope_key(db, quota_scope, org_path, expected):
    role = await make_role(db, "scoped", NodeType.CHURCH, [], quota_max_users=1, quota_scope=quota_scope)
    assert scope_key(role, org_path) == expected


async def test_conference_quota_counts_the_whole_conference(db, guard, tree):
    role = await make_role(
        db, "elder", NodeType.CHURCH, ["churches.read"], quota_max_users=3, quota_scope=QuotaScope.CONFERENCE
    )
    await fill(db, role, tree["CH2"], 2, prefix="a")
    await fill(db, role, tree["CH3"], 1, prefix="b")

    status = await guard.check(db, role, tree["CH3"].path)
    assert status.scope_key == "U1/C1"
    assert status.current == 3
    assert not status.allowed

    # Another conference has its own budget
    other = await guard.check(db, role, "U2/C20")
    assert other.current == 0
    assert other.allowed


async def test_inactive_assignments_do_not_count(db, guard, tree):
    role = await make_role(db, "pastor", NodeType.CHURCH, [], quota_max_users=2)
    await fill(db, role, tree["CH2"], 2)
    result = await db.execute(select(RoleAssignment).where(RoleAssignment.role_id == role.id).limit(1))
    result.scalar_one().is_active = False
    await db.commit()

    assert (await guard.check(db, role, tree["CH2"].path)).current == 1


async def test_reserve_takes_slots_until_the_ceiling(db, guard, tree):
    role = await make_role(db, "leader", NodeType.TEAM, [], quota_max_users=2, quota_scope=QuotaScope.TEAM)

    first = await guard.reserve(db, role, tree["T5"].path)
    await db.commit()
    assert first.current == 0
    second = await guard.reserve(db, role, tree["T5"].path)
    await db.commit()
    assert second.current == 1
    assert await used(db, role) == 2

    with pytest.raises(QuotaExceeded) as exc_info:
        await guard.reserve(db, role, tree["T5"].path)
    await db.rollback()
    error = exc_info.value
    assert error.status_code == 409
    assert error.extra["max"] == 2
    assert error.extra["scope_key"] == "U1/C1/CH2/T5"
    assert await used(db, role) == 2

    # A different team is counted separately
    await guard.reserve(db, role, tree["T6"].path)
    await db.commit()


async def test_reserve_seeds_from_existing_assignments(db, guard, tree):
    role = await make_role(db, "pastor", NodeType.CHURCH, [], quota_max_users=3)
    await fill(db, role, tree["CH2"], 3)
    with pytest.raises(QuotaExceeded):
        await guard.reserve(db, role, tree["CH2"].path)
    await db.rollback()


async def test_release_frees_a_slot(db, guard, tree):
    role = await make_role(db, "pastor", NodeType.CHURCH, [], quota_max_users=1)
    await guard.reserve(db, role, tree["CH2"].path)
    await db.commit()

    await guard.release(db, role, tree["CH2"].path)
    await db.commit()
    assert await used(db, role) == 0

    # Never goes below zero
    await guard.release(db, role, tree["CH2"].path)
    await db.commit()
    assert await used(db, role) == 0

    await guard.reserve(db, role, tree["CH2"].path)
    await db.commit()
    assert await used(db, role) == 1


async def test_unlimited_reserve_does_not_track_a_counter(db, guard, tree):
    role = await make_role(db, "viewer", NodeType.CHURCH, [])
    status = await guard.reserve(db, role, tree["CH2"].path)
    await db.commit()
    assert status.allowed
    result = await db.execute(select(QuotaCounter).where(QuotaCounter.role_id == role.id))
    assert result.scalars().all() == []


async def test_check_bulk_reports_every_violation(db, guard, tree):
    pastor = await make_role(db, "pastor", NodeType.CHURCH, [], quota_max_users=2)
    elder = await make_role(db, "elder", NodeType.CHURCH, [], quota_max_users=5)
    viewer = await make_role(db, "viewer", NodeType.CHURCH, [])
    await fill(db, pastor, tree["CH2"], 1)

    violations = await guard.check_bulk(db, {pastor: 2, elder: 5, viewer: 50}, tree["CH2"].path)
    assert [violation.role_name for violation in violations] == ["pastor"]
    assert violations[0].current == 1

    assert await guard.check_bulk(db, {pastor: 1, elder: 5}, tree["CH2"].path) == []


async def test_status_for_all_summarizes_health(db, guard, tree):
    full = await make_role(db, "pastor", NodeType.CHURCH, [], quota_max_users=1)
    busy = await make_role(db, "elder", NodeType.CHURCH, [], quota_max_users=5)
    await make_role(db, "viewer", NodeType.CHURCH, [])
    await fill(db, full, tree["CH2"], 1, prefix="p")
    await fill(db, busy, tree["CH2"], 4, prefix="e")

    overview = await guard.status_for_all(db, tree["CH2"].path)
    assert [role["role_name"] for role in overview["roles"]] == ["elder", "pastor"]
    assert overview["health"] == {
        "status": "critical",
        "roles_at_limit": ["pastor"],
        "roles_near_limit": ["elder"],
        "average_usage": 90.0,
    }


def test_system_health_without_limited_roles():
    assert system_health([]) == {
        "status": "healthy",
        "roles_at_limit": [],
        "roles_near_limit": [],
        "average_usage": 0.0,
    }


async def test_concurrent_reservations_cannot_both_take_the_last_slot(db, session_factory, guard, tree):
    role = await make_role(db, "pastor", NodeType.CHURCH, ["churches.read"], quota_max_users=5)
    church = tree["CH2"]
    for i in range(4):
        user = await make_user(db, f"seated{i}@example.org")
        await guard.reserve(db, role, church.path)
        db.add(
            RoleAssignment(
                user_id=user.id, role_id=role.id, node_type=NodeType.CHURCH,
                node_id=church.id, scope_path=church.path,
            )
        )
        await db.commit()

    contenders = [await make_user(db, f"contender{i}@example.org") for i in range(2)]

    async def attempt(user) -> bool:
        async with session_factory() as session:
            try:
                await guard.reserve(session, role, church.path)
                session.add(
                    RoleAssignment(
                        user_id=user.id, role_id=role.id, node_type=NodeType.CHURCH,
                        node_id=church.id, scope_path=church.path,
                    )
                )
                await session.commit()
                return True
            except QuotaExceeded:
                await session.rollback()
                return False

    results = await asyncio.gather(*(attempt(user) for user in contenders))

    assert sorted(results) == [False, True]
    assert (await guard.check(db, role, church.path)).current == 5
    assert await used(db, role) == 5


async def test_move_recounts_quotas_on_both_sides(db, session_factory, coordinator, guard, tree):
    role = await make_role(
        db, "district_elder", NodeType.CHURCH, ["churches.read"], quota_max_users=2, quota_scope=QuotaScope.CONFERENCE
    )
    summit = await coordinator.create(NodeType.CHURCH, "Summit", parent_id="C9", node_id="CH9")
    for i, node in enumerate((summit, tree["CH2"])):
        await guard.reserve(db, role, node.path)
        await assign(db, await make_user(db, f"elder{i}@example.org"), role, node)

    await coordinator.move(NodeType.CHURCH, "CH2", "C9")

    status = await guard.check(db, role, "U1/C9/CH9")
    assert status.current == 2
    assert status.allowed is False
    async with session_factory() as session:
        with pytest.raises(QuotaExceeded):
            await guard.reserve(session, role, "U1/C9/CH9")

    # The old conference has its slots back
    reserved = await guard.reserve(db, role, "U1/C1/CH3")
    assert reserved.current == 0
    await db.commit()
    counters = await db.execute(
        select(QuotaCounter.scope_key, QuotaCounter.used).where(QuotaCounter.role_id == role.id)
    )
    assert dict(counters.all()) == {"U1/C1": 1}


async def test_reserve_waits_for_unfinished_move(db, session_factory, guard, tree):
    role = await make_role(db, "church_elder", NodeType.CHURCH, ["churches.read"], quota_max_users=3)
    db.add(
        CascadeJob(
            kind=CascadeKind.MOVE,
            node_type=NodeType.CHURCH,
            node_id="CH2",
            old_prefix="U1/C1/CH2",
            new_prefix="U1/C9/CH2",
            status=CascadeStatus.FAILED,
        )
    )
    await db.commit()

    async with session_factory() as session:
        with pytest.raises(CascadeBusy):
            await guard.reserve(session, role, "U1/C9/CH2/T5")

    # Churches the move does not touch are unaffected
    status = await guard.reserve(db, role, "U1/C1/CH3")
    assert status.allowed is True
