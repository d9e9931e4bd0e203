"""
Cascade coordinator for structural mutations.

Moving or deactivating a node changes every node below it: moved subtrees
get their stored path prefix rewritten, deactivated subtrees get their status
flipped (services are archived). The coordinator

1. serializes mutations per union subtree with an in-process lease,
2. validates the mutation (parent active, parent type, no cycle, size bound),
3. commits the primary node write together with a CascadeJob marker,
4. rewrites descendants in bounded, individually committed batches.

Every batch only touches rows that still match the old state, so re-running
a job is idempotent; a job that fails midway stays in the journal as
"failed" and `resume()` drives it to a fixed point. Partial failures are
raised as PartialCascadeFailure, never swallowed.
"""
import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update, delete, literal, func, or_, String
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core import config
from app.core.errors import CascadeBusy, InvalidHierarchy, NotFound, PartialCascadeFailure
from app.features.hierarchy import paths, store
from app.features.hierarchy.models import (
    CascadeJob,
    CascadeKind,
    CascadeStatus,
    HierarchyNodeMixin,
    Service,
    ServiceStatus,
    TeamMembership,
    descendant_models,
    generate_ulid,
    model_for,
)
from app.features.hierarchy.paths import NodeType
from app.features.permissions.models import RoleAssignment
from app.features.permissions.quota import forget_counters, revoke_assignments_at
from app.utils import get_logger


log = get_logger(__name__)

DESCENDANT_DEACTIVATION_REASON = "Parent entity deactivated"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def root_of(path: str) -> str:
    """Union id a path belongs to; the lease key of its subtree."""
    return paths.split(path)[0]


class SubtreeLeases:
    """
    Mutual exclusion per union subtree.

    Locks are taken in sorted key order so a move between two unions cannot
    deadlock against a move in the opposite direction.
    """

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, key: str) -> asyncio.Lock:
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    def is_held(self, key: str) -> bool:
        return key in self._locks and self._locks[key].locked()

    @asynccontextmanager
    async def hold(self, *keys: str) -> AsyncIterator[None]:
        acquired: list[asyncio.Lock] = []
        try:
            for key in sorted(set(keys)):
                lock = self._lock(key)
                try:
                    await asyncio.wait_for(lock.acquire(), timeout=self.timeout)
                except asyncio.TimeoutError:
                    raise CascadeBusy(f"Another structural change is in progress under union {key}")
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


# Shared by every coordinator in the process
default_leases = SubtreeLeases()


@dataclass
class CascadeResult:
    kind: CascadeKind
    node_type: NodeType
    node_id: str
    old_path: str
    new_path: str
    rewritten: int = 0
    job_id: Optional[str] = None
    status: CascadeStatus = CascadeStatus.COMPLETED

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "node_type": self.node_type.value,
            "node_id": self.node_id,
            "old_path": self.old_path,
            "new_path": self.new_path,
            "rewritten": self.rewritten,
            "job_id": self.job_id,
            "status": self.status.value,
        }


class CascadeCoordinator:
    """
    Usage:
        coordinator = CascadeCoordinator(AsyncSessionLocal)
        result = await coordinator.move(NodeType.CHURCH, church_id, new_conference_id, actor_id=user.id)

    The coordinator opens its own sessions: the primary write and each
    cascade batch are separate commits.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        leases: SubtreeLeases = default_leases,
        batch_size: int = config.CASCADE_BATCH_SIZE,
        max_nodes: int = config.CASCADE_MAX_NODES,
    ):
        self.session_factory = session_factory
        self.leases = leases
        self.batch_size = batch_size
        self.max_nodes = max_nodes

    # ------------------------------------------------------------------
    # Validation helpers
    # ------------------------------------------------------------------

    async def get_parent(self, db: AsyncSession, node_type: NodeType, parent_id: str) -> HierarchyNodeMixin:
        """Load the parent a node of `node_type` would hang under, enforcing the type rule."""
        parent_type = node_type.parent_type
        if parent_type is None:
            raise InvalidHierarchy("Unions are the root of the hierarchy and have no parent")
        parent = await store.find_node(db, parent_type, parent_id)
        if parent is None:
            other = await store.find_node_any_type(db, parent_id)
            if other is not None:
                raise InvalidHierarchy(
                    f"A {node_type.value} can only be placed under a {parent_type.value}, "
                    f"not a {other.node_type.value}"
                )
            raise NotFound(f"{parent_type.value.capitalize()} not found", node_type=parent_type.value, node_id=parent_id)
        return parent

    @staticmethod
    def _check_parent_active(parent: HierarchyNodeMixin):
        if not parent.is_active:
            raise InvalidHierarchy(f"Parent {parent.node_type.value} {parent.id} is deactivated")

    @staticmethod
    async def _check_no_unfinished_cascade(db: AsyncSession, node: HierarchyNodeMixin):
        job = await store.find_unfinished_cascade(db, node.path)
        if job is not None:
            raise CascadeBusy(
                f"Cascade {job.id} ({job.kind.value} of {job.node_type.value} {job.node_id}) "
                f"has not finished under {node.path}; resume it first",
                job_id=job.id,
            )

    async def _check_size(self, db: AsyncSession, node: HierarchyNodeMixin):
        size = await store.count_descendants(db, node.node_type, node.path)
        if size > self.max_nodes:
            raise InvalidHierarchy(
                f"Subtree of {size} nodes exceeds the cascade limit of {self.max_nodes}"
            )

    # ------------------------------------------------------------------
    # Create / delete
    # ------------------------------------------------------------------

    async def create(
        self,
        node_type: NodeType,
        name: str,
        parent_id: Optional[str] = None,
        region: Optional[str] = None,
        node_id: Optional[str] = None,
    ) -> HierarchyNodeMixin:
        """
        Create a node with its path derived from the parent.

        Takes the parent's subtree lease so the parent cannot move while the
        child's path is being derived from it.
        """
        node_id = node_id or generate_ulid()
        model = model_for(node_type)

        if node_type is NodeType.UNION:
            if parent_id is not None:
                raise InvalidHierarchy("Unions are the root of the hierarchy and have no parent")
            async with self.session_factory() as db:
                node = model(id=node_id, name=name, parent_id=None, depth=0, region=region, path=paths.build(None, node_id))
                db.add(node)
                await db.commit()
                await db.refresh(node)
            log.info("Created union %s", node_id)
            return node

        if parent_id is None:
            raise InvalidHierarchy(f"A {node_type.value} must have a parent {node_type.parent_type.value}")

        async with self.session_factory() as db:
            parent = await self.get_parent(db, node_type, parent_id)
            lease_key = root_of(parent.path)

        async with self.leases.hold(lease_key):
            async with self.session_factory() as db:
                parent = await self.get_parent(db, node_type, parent_id)
                self._check_parent_active(parent)
                path = paths.build(parent.path, node_id)
                if not paths.validate(path) or paths.depth_of(path) != node_type.depth:
                    raise InvalidHierarchy(f"Invalid hierarchy path for a {node_type.value}: {path!r}")
                node = model(
                    id=node_id,
                    name=name,
                    parent_id=parent.id,
                    depth=node_type.depth,
                    region=region if region is not None else parent.region,
                    path=path,
                )
                db.add(node)
                await db.commit()
                await db.refresh(node)

        log.info("Created %s %s at %s", node_type.value, node_id, path)
        return node

    async def delete(self, node_type: NodeType, node_id: str) -> HierarchyNodeMixin:
        """Hard delete a node whose subtree is empty."""
        async with self.session_factory() as db:
            node = await store.get_node(db, node_type, node_id)
            lease_key = root_of(node.path)

        async with self.leases.hold(lease_key):
            async with self.session_factory() as db:
                node = await store.get_node(db, node_type, node_id)
                children = await store.count_children(db, node)
                if children:
                    child_type = node_type.child_type
                    raise InvalidHierarchy(
                        f"Cannot delete {node_type.value}: {children} {child_type.resource} still exist"
                    )
                await revoke_assignments_at(db, node.id)
                if node_type is NodeType.TEAM:
                    await db.execute(delete(TeamMembership).where(TeamMembership.team_id == node.id))
                await db.delete(node)
                await db.commit()

        log.info("Deleted %s %s", node_type.value, node_id)
        return node

    # ------------------------------------------------------------------
    # Move
    # ------------------------------------------------------------------

    async def move(
        self,
        node_type: NodeType,
        node_id: str,
        new_parent_id: str,
        actor_id: Optional[str] = None,
    ) -> CascadeResult:
        """
        Re-attach a node under a new parent and rewrite its subtree's paths.

        Raises:
            InvalidHierarchy / NotFound: rejected before any write
            CascadeBusy: the subtree lease could not be taken, or an earlier
                cascade under the node has not finished
            PartialCascadeFailure: the node moved but some descendants were not rewritten
        """
        if node_type is NodeType.UNION:
            raise InvalidHierarchy("Unions are the root of the hierarchy and cannot be moved")

        async with self.session_factory() as db:
            node = await store.get_node(db, node_type, node_id)
            parent = await self.get_parent(db, node_type, new_parent_id)
            lease_keys = {root_of(node.path), root_of(parent.path)}

        async with self.leases.hold(*lease_keys):
            async with self.session_factory() as db:
                # Re-read under the lease; either side may have moved meanwhile
                node = await store.get_node(db, node_type, node_id)
                parent = await self.get_parent(db, node_type, new_parent_id)
                if {root_of(node.path), root_of(parent.path)} - lease_keys:
                    raise CascadeBusy("The hierarchy changed while the move was waiting; retry")
                await self._check_no_unfinished_cascade(db, node)

                if not node.is_active:
                    raise InvalidHierarchy(f"{node_type.value.capitalize()} {node_id} is deactivated and cannot be moved")
                self._check_parent_active(parent)

                old_path = node.path
                new_path = paths.rebuild(node, parent.path)

                if new_path == old_path:
                    return CascadeResult(CascadeKind.MOVE, node_type, node_id, old_path, new_path)

                await self._check_size(db, node)

                node.parent_id = parent.id
                node.path = new_path
                job = CascadeJob(
                    kind=CascadeKind.MOVE,
                    node_type=node_type,
                    node_id=node_id,
                    old_prefix=old_path,
                    new_prefix=new_path,
                    actor_id=actor_id,
                )
                db.add(job)
                await db.commit()

            log.info("Moved %s %s from %s to %s (cascade job %s)", node_type.value, node_id, old_path, new_path, job.id)
            return await self._run(job)

    async def _rewrite_batches(self, job: CascadeJob) -> AsyncIterator[int]:
        old, new = job.old_prefix, job.new_prefix
        # Characters of `old` to drop; SQL substr is 1-based
        tail_start = len(old) + 1

        for model in descendant_models(job.node_type):
            under_old = model.path.startswith(old + paths.SEPARATOR, autoescape=True)
            async for count in self._batched(
                update(model),
                model.id,
                under_old,
                {"path": literal(new, String).concat(func.substr(model.path, tail_start))},
            ):
                yield count

        # Grants anchored at the node or below it
        anchored = or_(
            RoleAssignment.scope_path == old,
            RoleAssignment.scope_path.startswith(old + paths.SEPARATOR, autoescape=True),
        )
        async for count in self._batched(
            update(RoleAssignment),
            RoleAssignment.id,
            anchored,
            {"scope_path": literal(new, String).concat(func.substr(RoleAssignment.scope_path, tail_start))},
        ):
            yield count

        # Counters on both sides were seeded from the old anchors
        async with self.session_factory() as db:
            await forget_counters(db, old, new)
            await db.commit()

    async def _batched(self, stmt, id_column, condition, values) -> AsyncIterator[int]:
        """
        Apply `values` to rows matching `condition`, `batch_size` rows per commit.

        The condition must stop matching a row once it has been updated.
        """
        ids = select(id_column).where(condition).limit(self.batch_size)
        while True:
            async with self.session_factory() as db:
                result = await db.execute(
                    stmt.where(id_column.in_(ids)).values(**values).execution_options(synchronize_session=False)
                )
                await db.commit()
            count = result.rowcount or 0
            if count:
                yield count
            if count < self.batch_size:
                return

    # ------------------------------------------------------------------
    # Deactivate
    # ------------------------------------------------------------------

    async def deactivate(
        self,
        node_type: NodeType,
        node_id: str,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> CascadeResult:
        """
        Soft-delete a node and cascade to its subtree.

        Descendant unions/conferences/churches/teams are deactivated, services
        are archived. Deactivation is terminal.
        """
        async with self.session_factory() as db:
            node = await store.get_node(db, node_type, node_id)
            lease_key = root_of(node.path)

        async with self.leases.hold(lease_key):
            async with self.session_factory() as db:
                node = await store.get_node(db, node_type, node_id)
                if not node.is_active:
                    return CascadeResult(CascadeKind.DEACTIVATE, node_type, node_id, node.path, node.path)
                await self._check_no_unfinished_cascade(db, node)

                await self._check_size(db, node)

                now = utcnow()
                node.is_active = False
                node.deactivated_at = now
                node.deactivated_by_id = actor_id
                node.deactivation_reason = reason
                if isinstance(node, Service):
                    node.status = ServiceStatus.ARCHIVED
                    node.archived_at = now
                    node.archived_by_id = actor_id
                    node.archive_reason = reason

                job = CascadeJob(
                    kind=CascadeKind.DEACTIVATE,
                    node_type=node_type,
                    node_id=node_id,
                    old_prefix=node.path,
                    new_prefix=node.path,
                    actor_id=actor_id,
                    reason=DESCENDANT_DEACTIVATION_REASON,
                )
                db.add(job)
                await db.commit()

            log.info("Deactivated %s %s (cascade job %s)", node_type.value, node_id, job.id)
            return await self._run(job)

    async def _deactivate_batches(self, job: CascadeJob) -> AsyncIterator[int]:
        now = utcnow()
        for model in descendant_models(job.node_type):
            under = model.path.startswith(job.old_prefix + paths.SEPARATOR, autoescape=True)
            if model is Service:
                condition = under & (Service.status != ServiceStatus.ARCHIVED)
                values = {
                    "status": ServiceStatus.ARCHIVED,
                    "is_active": False,
                    "archived_at": now,
                    "archived_by_id": job.actor_id,
                    "archive_reason": job.reason,
                }
            else:
                condition = under & (model.is_active == True)  # noqa: E712
                values = {
                    "is_active": False,
                    "deactivated_at": now,
                    "deactivated_by_id": job.actor_id,
                    "deactivation_reason": job.reason,
                }
            async for count in self._batched(update(model), model.id, condition, values):
                yield count

    # ------------------------------------------------------------------
    # Job execution
    # ------------------------------------------------------------------

    async def _run(self, job: CascadeJob) -> CascadeResult:
        batches = self._rewrite_batches(job) if job.kind is CascadeKind.MOVE else self._deactivate_batches(job)
        rewritten = 0
        try:
            async for count in batches:
                rewritten += count
                log.debug("Cascade %s: %d rows so far", job.id, rewritten)
        except Exception as exc:
            log.error(
                "Cascade %s (%s %s) failed after %d rows; job left for reconciliation: %s",
                job.id, job.kind.value, job.node_id, rewritten, exc,
                exc_info=True,
            )
            await self._finish(job.id, CascadeStatus.FAILED, rewritten, error=repr(exc))
            raise PartialCascadeFailure(
                f"{job.kind.value.capitalize()} of {job.node_type.value} {job.node_id} was applied "
                f"but its cascade failed after {rewritten} rows",
                job_id=job.id,
                rewritten=rewritten,
                cause=exc,
            ) from exc

        await self._finish(job.id, CascadeStatus.COMPLETED, rewritten)
        log.info("Cascade %s completed: %d rows", job.id, rewritten)
        return CascadeResult(
            job.kind, job.node_type, job.node_id, job.old_prefix, job.new_prefix,
            rewritten=rewritten, job_id=job.id,
        )

    async def _finish(self, job_id: str, status: CascadeStatus, rewritten: int, error: Optional[str] = None):
        async with self.session_factory() as db:
            job = await db.get(CascadeJob, job_id)
            job.status = status
            job.rewritten += rewritten
            job.error = error
            job.finished_at = utcnow()
            await db.commit()

    async def get_job(self, job_id: str) -> CascadeJob:
        async with self.session_factory() as db:
            job = await db.get(CascadeJob, job_id)
        if job is None:
            raise NotFound("Cascade job not found", job_id=job_id)
        return job

    async def resume(self, job_id: str) -> CascadeResult:
        """Re-run a running or failed cascade until nothing matches its old state."""
        job = await self.get_job(job_id)
        if job.status is CascadeStatus.COMPLETED:
            return CascadeResult(
                job.kind, job.node_type, job.node_id, job.old_prefix, job.new_prefix,
                rewritten=0, job_id=job.id,
            )

        async with self.leases.hold(root_of(job.old_prefix), root_of(job.new_prefix)):
            async with self.session_factory() as db:
                job = await db.get(CascadeJob, job_id)
                job.status = CascadeStatus.RUNNING
                job.attempts += 1
                job.error = None
                await db.commit()
            log.info("Resuming cascade %s (attempt %d)", job.id, job.attempts)
            return await self._run(job)

    async def resume_pending(self) -> list[CascadeResult]:
        """
        Resume every unfinished cascade, oldest first.

        Jobs that fail again stay failed (and are logged); the others are
        returned.
        """
        async with self.session_factory() as db:
            result = await db.execute(
                select(CascadeJob.id)
                .where(CascadeJob.status != CascadeStatus.COMPLETED)
                .order_by(CascadeJob.created_at, CascadeJob.id)
            )
            job_ids = result.scalars().all()

        results = []
        for job_id in job_ids:
            try:
                results.append(await self.resume(job_id))
            except PartialCascadeFailure as exc:
                log.warning("Cascade %s still incomplete after resume (%d rows this attempt)", exc.job_id, exc.rewritten)
        return results
