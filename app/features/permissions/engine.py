"""
Hierarchical authorization engine.

Decides allow/deny for (actor, resource, action, target) from the actor's
grants. Grants are ORed: there are no deny rules, the first grant and
permission that reach the target allow the request.

Everything here is pure and synchronous; the actor and target context are
loaded by the caller (see app.features.permissions.directory), so the engine
is safe to share between concurrent requests.
"""
import enum
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from app.core import config
from app.features.hierarchy import paths
from app.features.permissions.scopes import (
    Permission,
    ScopeAnchor,
    TargetContext,
    parse_permissions,
    resolve,
)
from app.utils import get_logger


log = get_logger(__name__)


@dataclass(frozen=True)
class Grant:
    """
    A set of permissions held at one place in the tree.

    `path` is the anchor node's materialized path; team-anchored grants also
    carry the team id. `assignment_id` and `role_name` identify the record
    the grant came from (for explanations and audit).
    """
    permissions: frozenset[Permission]
    path: Optional[str] = None
    team_id: Optional[str] = None
    region: Optional[str] = None
    node_id: Optional[str] = None
    assignment_id: Optional[str] = None
    role_name: Optional[str] = None

    @classmethod
    def from_strings(cls, permissions: Iterable[str], **anchor) -> "Grant":
        return cls(permissions=parse_permissions(permissions), **anchor)

    @property
    def anchor(self) -> ScopeAnchor:
        return ScopeAnchor(path=self.path, team_id=self.team_id, region=self.region)


@dataclass(frozen=True)
class Actor:
    """An authenticated user as the engine sees it."""
    id: str
    is_super: bool = False
    grants: tuple[Grant, ...] = ()
    primary_organization_id: Optional[str] = None
    primary_path: Optional[str] = None


class DecisionKind(str, enum.Enum):
    ALLOW = "allow"
    UNAUTHENTICATED = "unauthenticated"
    NO_ROLE = "no_role"
    INSUFFICIENT = "insufficient_permissions"
    INVALID_TARGET = "invalid_target"


# Deny kinds -> HTTP status a route should answer with
DENY_STATUS = {
    DecisionKind.UNAUTHENTICATED: 401,
    DecisionKind.NO_ROLE: 403,
    DecisionKind.INSUFFICIENT: 403,
    DecisionKind.INVALID_TARGET: 400,
}


@dataclass(frozen=True)
class Decision:
    """
    Result of an authorization check. Never raised, always returned.
    """
    kind: DecisionKind
    resource: str
    action: str
    reason: Optional[str] = None
    grant: Optional[Grant] = None
    permission: Optional[Permission] = None
    target_path: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.kind is DecisionKind.ALLOW

    @property
    def status_code(self) -> int:
        return 200 if self.allowed else DENY_STATUS[self.kind]

    def __bool__(self) -> bool:
        return self.allowed

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "kind": self.kind.value,
            "resource": self.resource,
            "action": self.action,
            "reason": self.reason,
            "target_path": self.target_path,
            "matched_permission": str(self.permission) if self.permission else None,
            "matched_assignment_id": self.grant.assignment_id if self.grant else None,
        }


def allow(resource, action, grant=None, permission=None, target_path=None) -> Decision:
    return Decision(DecisionKind.ALLOW, resource, action, grant=grant, permission=permission, target_path=target_path)


def deny(kind: DecisionKind, reason: str, resource: str, action: str, target_path=None) -> Decision:
    return Decision(kind, resource, action, reason=reason, target_path=target_path)


# ============================================================================
# Context resolution policies
# ============================================================================

ContextPolicy = Callable[[Actor], Optional[Grant]]


def primary_then_first(actor: Actor) -> Optional[Grant]:
    """
    Prefer the grant anchored at the actor's primary organization, else the
    first grant in assignment order.
    """
    if not actor.grants:
        return None
    if actor.primary_organization_id is not None or actor.primary_path is not None:
        for grant in actor.grants:
            if actor.primary_path is not None and grant.path == actor.primary_path:
                return grant
            if actor.primary_organization_id is not None and grant.node_id == actor.primary_organization_id:
                return grant
    return actor.grants[0]


def first_assigned(actor: Actor) -> Optional[Grant]:
    """Always the earliest assignment, ignoring the primary organization."""
    return actor.grants[0] if actor.grants else None


CONTEXT_POLICIES: dict[str, ContextPolicy] = {
    "primary_then_first": primary_then_first,
    "first_assigned": first_assigned,
}


def get_context_policy(name: str) -> ContextPolicy:
    try:
        return CONTEXT_POLICIES[name]
    except KeyError:
        raise ValueError(f"Unknown context policy: {name!r}; expected one of {sorted(CONTEXT_POLICIES)}")


# ============================================================================
# Engine
# ============================================================================

@dataclass
class AuthorizationEngine:
    """
    Usage:
        engine = AuthorizationEngine()
        decision = engine.decide(actor, "teams", "update", TargetContext(path=team.path))
        if not decision:
            ...render decision.status_code / decision.reason
    """
    context_policy: ContextPolicy = field(default_factory=lambda: get_context_policy(config.CONTEXT_POLICY))

    def resolve_context(self, actor: Actor) -> Optional[Grant]:
        """The grant that is "active" when a request names no target."""
        return self.context_policy(actor)

    def decide(
        self,
        actor: Optional[Actor],
        resource: str,
        action: str,
        target: Optional[TargetContext] = None,
    ) -> Decision:
        """
        Decide whether `actor` may perform `action` on `resource` at `target`.

        Without a target, the grant picked by the context policy is the only
        one evaluated, against its own anchor.
        """
        if actor is None:
            return deny(DecisionKind.UNAUTHENTICATED, "authentication required", resource, action)

        target_path = target.path if target else None

        if actor.is_super:
            log.debug("Actor %s is super admin - allowed %s on %s", actor.id, action, resource)
            return allow(resource, action, target_path=target_path)

        if not actor.grants:
            return deny(DecisionKind.NO_ROLE, "no role assigned", resource, action, target_path)

        if target is not None and target.path is not None and not paths.validate(target.path):
            return deny(DecisionKind.INVALID_TARGET, f"malformed target path: {target.path!r}", resource, action, target_path)

        if target is None:
            grant = self.resolve_context(actor)
            target = TargetContext(path=grant.path, team_id=grant.team_id, region=grant.region)
            candidates: tuple[Grant, ...] = (grant,)
            target_path = grant.path
        else:
            candidates = actor.grants

        for grant in candidates:
            for permission in grant.permissions:
                if resolve(permission, grant.anchor, resource, action, target):
                    log.debug(
                        "Actor %s allowed %s on %s at %s via %s (assignment %s)",
                        actor.id, action, resource, target_path, permission, grant.assignment_id,
                    )
                    return allow(resource, action, grant, permission, target_path)

        log.debug("Actor %s denied %s on %s at %s", actor.id, action, resource, target_path)
        return deny(DecisionKind.INSUFFICIENT, "insufficient permissions", resource, action, target_path)
