"""
Role quotas.

A role may cap how many users hold it inside a scope (system wide, or the
subtree of a union/conference/church/team/service). `check` reports the live
count for display; `reserve` is the gate used by assignment writes: it takes
a slot with a conditional increment on the durable counter, so two
concurrent assignments cannot both take the last slot.

Reservations run inside the caller's transaction: if the assignment insert
fails the reservation rolls back with it.
"""
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

from sqlalchemy import select, update, delete, func, or_
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.core.errors import CascadeBusy, QuotaExceeded
from app.features.hierarchy import paths, store
from app.features.hierarchy.models import CascadeKind
from app.features.hierarchy.paths import NodeType
from app.features.permissions.models import QuotaCounter, QuotaScope, Role, RoleAssignment, generate_ulid
from app.utils import get_logger


log = get_logger(__name__)

SYSTEM_SCOPE_KEY = "*"


@dataclass(frozen=True)
class QuotaStatus:
    role_id: str
    role_name: str
    scope_key: str
    allowed: bool
    current: int
    max: Optional[int] = None
    remaining: Optional[int] = None
    near_limit: bool = False
    percentage: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "role_id": self.role_id,
            "role_name": self.role_name,
            "scope_key": self.scope_key,
            "allowed": self.allowed,
            "current": self.current,
            "max": self.max,
            "remaining": self.remaining,
            "near_limit": self.near_limit,
            "percentage": self.percentage,
        }


def scope_key(role: Role, org_path: Optional[str]) -> str:
    """
    Key of the subtree a role's quota is counted in.

    A conference-scoped role assigned in "U1/C1/CH2" counts the whole of
    "U1/C1". Paths shallower than the scope level are their own key.
    """
    if role.quota_scope is QuotaScope.SYSTEM or not org_path:
        return SYSTEM_SCOPE_KEY
    depth = NodeType(role.quota_scope.value).depth
    return paths.truncate(org_path, depth)


def near_limit(current: int, max_count: int, threshold: float) -> bool:
    return current >= threshold * max_count


class QuotaGuard:
    """
    Usage:
        guard = QuotaGuard()
        status = await guard.check(db, role, church.path)
        await guard.reserve(db, role, church.path)   # raises QuotaExceeded
    """

    def __init__(self, warning_threshold: float = config.QUOTA_WARNING_THRESHOLD):
        self.warning_threshold = warning_threshold

    def threshold_for(self, role: Role) -> float:
        if role.quota_warning_threshold is not None:
            return role.quota_warning_threshold
        return self.warning_threshold

    async def count(self, db: AsyncSession, role: Role, key: str) -> int:
        """Active assignments of `role` inside the scope `key`."""
        stmt = select(func.count()).select_from(RoleAssignment).where(
            RoleAssignment.role_id == role.id,
            RoleAssignment.is_active == True,  # noqa: E712
        )
        if key != SYSTEM_SCOPE_KEY:
            stmt = stmt.where(
                or_(
                    RoleAssignment.scope_path == key,
                    RoleAssignment.scope_path.startswith(key + paths.SEPARATOR, autoescape=True),
                )
            )
        result = await db.execute(stmt)
        return result.scalar_one()

    def status(self, role: Role, key: str, current: int, requested: int = 1) -> QuotaStatus:
        max_count = role.quota_max_users
        if max_count is None:
            return QuotaStatus(role.id, role.name, key, allowed=True, current=current)
        percentage = round(current / max_count * 100, 1) if max_count else 100.0
        return QuotaStatus(
            role.id,
            role.name,
            key,
            allowed=current + requested <= max_count,
            current=current,
            max=max_count,
            remaining=max(max_count - current, 0),
            near_limit=near_limit(current, max_count, self.threshold_for(role)),
            percentage=percentage,
        )

    async def check(self, db: AsyncSession, role: Role, org_path: Optional[str]) -> QuotaStatus:
        """Quota status from the live count. Never raises on a full quota."""
        key = scope_key(role, org_path)
        current = await self.count(db, role, key)
        return self.status(role, key, current)

    async def check_bulk(
        self,
        db: AsyncSession,
        requests: Mapping[Role, int],
        org_path: Optional[str],
    ) -> list[QuotaStatus]:
        """
        Statuses of the roles that cannot take `requested` more assignments.

        An empty list means the whole batch fits.
        """
        violations = []
        for role, requested in requests.items():
            key = scope_key(role, org_path)
            status = self.status(role, key, await self.count(db, role, key), requested=requested)
            if not status.allowed:
                violations.append(status)
        return violations

    async def _seed(self, db: AsyncSession, role: Role, key: str):
        """Create the counter from the live count unless it already exists."""
        current = await self.count(db, role, key)
        values = {"id": generate_ulid(), "role_id": role.id, "scope_key": key, "used": current}
        dialect = db.get_bind().dialect.name
        if dialect == "sqlite":
            stmt = sqlite.insert(QuotaCounter).values(**values).on_conflict_do_nothing()
        elif dialect == "postgresql":
            stmt = postgresql.insert(QuotaCounter).values(**values).on_conflict_do_nothing()
        else:
            existing = await db.execute(
                select(QuotaCounter.id).where(QuotaCounter.role_id == role.id, QuotaCounter.scope_key == key)
            )
            if existing.scalar_one_or_none() is not None:
                return
            db.add(QuotaCounter(**values))
            await db.flush()
            return
        await db.execute(stmt)

    async def reserve(self, db: AsyncSession, role: Role, org_path: Optional[str]) -> QuotaStatus:
        """
        Take one slot of the role's quota.

        Raises:
            QuotaExceeded: the scope is already at its ceiling
            CascadeBusy: a move touching the scope has not finished
        """
        key = scope_key(role, org_path)
        max_count = role.quota_max_users
        if max_count is None:
            return QuotaStatus(role.id, role.name, key, allowed=True, current=await self.count(db, role, key))

        if key != SYSTEM_SCOPE_KEY:
            # Assignments in the scope are still being re-anchored
            job = await store.find_unfinished_cascade(db, key, CascadeKind.MOVE)
            if job is not None:
                raise CascadeBusy(f"Quota scope {key} is being restructured; retry once the cascade completes", job_id=job.id)

        await self._seed(db, role, key)
        result = await db.execute(
            update(QuotaCounter)
            .where(
                QuotaCounter.role_id == role.id,
                QuotaCounter.scope_key == key,
                QuotaCounter.used < max_count,
            )
            .values(used=QuotaCounter.used + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            log.info("Quota for role %s in %s is full (%d)", role.name, key, max_count)
            raise QuotaExceeded(
                f"Role {role.name} has reached its limit of {max_count} users",
                role_id=role.id,
                scope_key=key,
                max=max_count,
            )
        used = await db.execute(
            select(QuotaCounter.used).where(QuotaCounter.role_id == role.id, QuotaCounter.scope_key == key)
        )
        # `used` already counts the slot just taken
        return self.status(role, key, used.scalar_one() - 1)

    async def release(self, db: AsyncSession, role: Role, org_path: Optional[str]):
        """Give back one slot, e.g. when an assignment is revoked."""
        if role.quota_max_users is None:
            return
        key = scope_key(role, org_path)
        await db.execute(
            update(QuotaCounter)
            .where(
                QuotaCounter.role_id == role.id,
                QuotaCounter.scope_key == key,
                QuotaCounter.used > 0,
            )
            .values(used=QuotaCounter.used - 1)
            .execution_options(synchronize_session=False)
        )

    async def status_for_all(self, db: AsyncSession, org_path: Optional[str]) -> dict:
        """Quota status of every active role with a ceiling, plus a health summary."""
        result = await db.execute(
            select(Role)
            .where(Role.is_active == True, Role.quota_max_users.is_not(None))  # noqa: E712
            .order_by(Role.name)
        )
        statuses = [await self.check(db, role, org_path) for role in result.scalars().all()]
        return {
            "roles": [status.to_dict() for status in statuses],
            "health": system_health(statuses),
        }


def system_health(statuses: Sequence[QuotaStatus]) -> dict:
    limited = [status for status in statuses if status.max is not None]
    at_limit = [status.role_name for status in limited if status.current >= status.max]
    near = [status.role_name for status in limited if status.near_limit and status.current < status.max]
    mean = round(sum(status.percentage for status in limited) / len(limited), 1) if limited else 0.0
    if at_limit:
        state = "critical"
    elif near:
        state = "warning"
    else:
        state = "healthy"
    return {
        "status": state,
        "roles_at_limit": at_limit,
        "roles_near_limit": near,
        "average_usage": mean,
    }


async def revoke_assignments_at(db: AsyncSession, node_id: str, guard: Optional[QuotaGuard] = None) -> int:
    """Delete every assignment anchored at `node_id`, releasing their quota slots."""
    guard = guard or QuotaGuard()
    result = await db.execute(
        select(RoleAssignment, Role)
        .join(Role, Role.id == RoleAssignment.role_id)
        .where(RoleAssignment.node_id == node_id)
    )
    rows = result.all()
    for assignment, role in rows:
        if assignment.is_active:
            await guard.release(db, role, assignment.scope_path)
    await db.execute(delete(RoleAssignment).where(RoleAssignment.node_id == node_id))
    return len(rows)


async def forget_counters(db: AsyncSession, *subtree_paths: str) -> int:
    """
    Drop the counters of every scope on, above or below the given subtrees.

    Used after a move re-anchors assignments: the next reservation in each
    affected scope seeds its counter again from the live count.
    """
    conditions = []
    for path in subtree_paths:
        conditions.append(QuotaCounter.scope_key.in_(paths.ancestor_paths(path)))
        conditions.append(QuotaCounter.scope_key.startswith(path + paths.SEPARATOR, autoescape=True))
    result = await db.execute(
        delete(QuotaCounter).where(or_(*conditions)).execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def forget_role_counters(db: AsyncSession, role_id: str) -> int:
    """Drop every counter of a role whose ceiling or scope changed."""
    result = await db.execute(
        delete(QuotaCounter).where(QuotaCounter.role_id == role_id).execution_options(synchronize_session=False)
    )
    return result.rowcount or 0
