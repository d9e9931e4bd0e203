"""
Permission checking dependencies for hierarchical RBAC.

Implements:
- The shared AuthorizationEngine and QuotaGuard
- A per-request Authorizer: loads the actor once, decides, converts Deny
  into the matching AppError, and records decisions to the audit sink
- Audit logging helpers
"""
from typing import Annotated, Any, Dict, Optional
from fastapi import BackgroundTasks, Depends, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.database.engine import get_db, get_session_factory
from app.core.errors import AppError, InvalidHierarchy, Unauthenticated, Unauthorized
from app.features.hierarchy.models import HierarchyNodeMixin
from app.features.permissions.directory import build_target, load_actor
from app.features.permissions.engine import Actor, AuthorizationEngine, Decision, DecisionKind
from app.features.permissions.models import AuditLog
from app.features.permissions.quota import QuotaGuard
from app.features.permissions.scopes import TargetContext
from app.features.users.dependencies import get_current_user
from app.features.users.models import User
from app.utils import get_logger


log = get_logger(__name__)

_engine = AuthorizationEngine()
_quota_guard = QuotaGuard()


def get_engine() -> AuthorizationEngine:
    return _engine


def get_quota_guard() -> QuotaGuard:
    return _quota_guard


def error_for(decision: Decision) -> AppError:
    """The AppError a route raises for a Deny."""
    extra = {"resource": decision.resource, "action": decision.action, "reason": decision.kind.value}
    if decision.kind is DecisionKind.UNAUTHENTICATED:
        return Unauthenticated(decision.reason)
    if decision.kind is DecisionKind.INVALID_TARGET:
        return InvalidHierarchy(decision.reason, **extra)
    return Unauthorized(
        f"Permission denied: {decision.action} on {decision.resource} ({decision.reason})",
        **extra,
    )


# ============================================================================
# Audit Logging
# ============================================================================

async def create_audit_log(
    session_factory: async_sessionmaker[AsyncSession],
    user_id: Optional[str],
    action: str,
    resource_type: str,
    resource_id: Optional[str] = None,
    outcome: str = "success",
    details: Optional[Dict[str, Any]] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None
):
    """
    Write an audit log entry in its own session.

    Usually queued as a background task after the response. A failing write
    is logged and dropped so that it never affects the request it describes.
    """
    try:
        async with session_factory() as db:
            db.add(AuditLog(
                user_id=user_id,
                action=action,
                resource_type=resource_type,
                resource_id=resource_id,
                outcome=outcome,
                details=details,
                ip_address=ip_address,
                user_agent=user_agent,
            ))
            await db.commit()
    except SQLAlchemyError:
        log.warning("Audit write failed: user=%s action=%s resource=%s:%s", user_id, action, resource_type, resource_id, exc_info=True)
        return

    log.info(f"Audit: user={user_id} action={action} resource={resource_type}:{resource_id} outcome={outcome}")


# ============================================================================
# Authorizer
# ============================================================================

class Authorizer:
    """
    Authorization for one request.

    Usage in FastAPI routes:
        @router.patch("/churches/{church_id}")
        async def update_church(church_id: str, auth: Authorizer = Depends(get_authorizer)):
            church = await store.get_node(auth.db, NodeType.CHURCH, church_id)
            await auth.require("churches", "update", node=church)
    """

    def __init__(
        self,
        db: AsyncSession,
        user: User,
        engine: AuthorizationEngine,
        session_factory: async_sessionmaker[AsyncSession],
        background_tasks: BackgroundTasks,
        request: Optional[Request] = None,
    ):
        self.db = db
        self.user = user
        self.engine = engine
        self.session_factory = session_factory
        self.background_tasks = background_tasks
        self.request = request
        self._actor: Optional[Actor] = None

    async def actor(self) -> Actor:
        if self._actor is None:
            self._actor = await load_actor(self.db, self.user)
        return self._actor

    async def target_for(self, node: HierarchyNodeMixin) -> TargetContext:
        return await build_target(self.db, self.user.id, node)

    async def decide(
        self,
        resource: str,
        action: str,
        node: Optional[HierarchyNodeMixin] = None,
        target: Optional[TargetContext] = None,
    ) -> Decision:
        """Decide without raising. `node` is a shortcut for its target context."""
        if target is None and node is not None:
            target = await self.target_for(node)
        return self.engine.decide(await self.actor(), resource, action, target)

    async def require(
        self,
        resource: str,
        action: str,
        node: Optional[HierarchyNodeMixin] = None,
        target: Optional[TargetContext] = None,
        resource_id: Optional[str] = None,
    ) -> Decision:
        """
        Decide and raise on Deny.

        Allowed decisions are audited after the response. Denied ones are
        written before raising: background tasks do not run once the route
        has failed.

        Raises:
            Unauthenticated, Unauthorized or InvalidHierarchy, by Deny kind
        """
        decision = await self.decide(resource, action, node=node, target=target)
        resource_id = resource_id or (node.id if node is not None else None)
        if decision.allowed:
            self.audit(f"{resource}.{action}", resource, resource_id, outcome=decision.kind.value)
            return decision

        log.info("Denied %s on %s for user %s: %s", action, resource, self.user.id, decision.reason)
        await create_audit_log(**self._audit_record(
            f"{resource}.{action}",
            resource,
            resource_id,
            outcome=decision.kind.value,
            details={"target_path": decision.target_path, "reason": decision.reason},
        ))
        raise error_for(decision)

    def _audit_record(
        self,
        action: str,
        resource_type: str,
        resource_id: Optional[str] = None,
        outcome: str = "success",
        details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        return dict(
            session_factory=self.session_factory,
            user_id=self.user.id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            outcome=outcome,
            details=details,
            ip_address=self.request.client.host if self.request and self.request.client else None,
            user_agent=self.request.headers.get("user-agent") if self.request else None,
        )

    def audit(
        self,
        action: str,
        resource_type: str,
        resource_id: Optional[str] = None,
        outcome: str = "success",
        details: Optional[Dict[str, Any]] = None,
    ):
        """Queue an audit record for after the response."""
        self.background_tasks.add_task(
            create_audit_log,
            **self._audit_record(action, resource_type, resource_id, outcome, details),
        )


async def get_authorizer(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Annotated[AsyncSession, Depends(get_db)],
    user: Annotated[User, Depends(get_current_user)],
    engine: Annotated[AuthorizationEngine, Depends(get_engine)],
    session_factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)],
) -> Authorizer:
    return Authorizer(db, user, engine, session_factory, background_tasks, request)


def require_permission(resource: str, action: str):
    """
    FastAPI dependency requiring a permission in the user's active context.

    The active context is the grant picked by the engine's context policy,
    so this is for routes that do not act on a specific node.

    Usage:
        @router.post("/roles")
        async def create_role(auth: Authorizer = Depends(require_permission("roles", "create"))):
            ...
    """
    async def permission_dependency(
        auth: Annotated[Authorizer, Depends(get_authorizer)]
    ) -> Authorizer:
        await auth.require(resource, action)
        return auth

    return permission_dependency
