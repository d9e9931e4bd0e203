"""
Permission strings and scope evaluation.

Grammar:
    "*"                         everything, everywhere
    "<resource>.<action>"       only on the grant's own node
    "<resource>.<action>:<scope>"
    "<resource>.*"              every action on the resource (optionally ":<scope>")

Strings are parsed once, when grants are loaded, into Permission tuples; the
engine never re-splits strings while deciding.
"""
import enum
import re
from dataclasses import dataclass
from typing import Iterable, NamedTuple, Optional

from app.core.errors import InvalidPermission
from app.features.hierarchy.paths import Relation, relation


WILDCARD = "*"

PERMISSION_PATTERN = re.compile(
    r"^(?P<resource>[a-z_]+|\*)\.(?P<action>[a-z_]+|\*)(?::(?P<scope>[a-z_]+))?$"
)


class Scope(str, enum.Enum):
    NONE = "none"
    OWN = "own"
    SUBORDINATE = "subordinate"
    ALL = "all"
    TEAM = "team"
    TEAM_SUBORDINATE = "team_subordinate"
    REGION = "region"


SCOPE_ALIASES = {"self": Scope.OWN}


class Permission(NamedTuple):
    resource: str
    action: str
    scope: Scope

    def __str__(self) -> str:
        if self.resource == WILDCARD:
            return WILDCARD
        text = f"{self.resource}.{self.action}"
        if self.scope is not Scope.NONE:
            text += f":{self.scope.value}"
        return text

    def matches(self, resource: str, action: str) -> bool:
        return (self.resource in (WILDCARD, resource)) and (self.action in (WILDCARD, action))


FULL_WILDCARD = Permission(WILDCARD, WILDCARD, Scope.ALL)


def parse_scope(value: str) -> Scope:
    if value in SCOPE_ALIASES:
        return SCOPE_ALIASES[value]
    try:
        scope = Scope(value)
    except ValueError:
        raise InvalidPermission(f"Unknown permission scope: {value!r}")
    if scope is Scope.NONE:
        raise InvalidPermission(f"Unknown permission scope: {value!r}")
    return scope


def parse_permission(text: str) -> Permission:
    """
    Parse one permission string.

    Raises:
        InvalidPermission: if the string does not follow the grammar or names
            an unknown scope
    """
    if not isinstance(text, str):
        raise InvalidPermission(f"Permission must be a string, got {type(text).__name__}")
    text = text.strip()
    if text == WILDCARD:
        return FULL_WILDCARD
    match = PERMISSION_PATTERN.match(text)
    if match is None:
        raise InvalidPermission(f"Invalid permission format: {text!r}")
    scope = parse_scope(match["scope"]) if match["scope"] else Scope.NONE
    return Permission(match["resource"], match["action"], scope)


def parse_permissions(texts: Iterable[str]) -> frozenset[Permission]:
    return frozenset(parse_permission(text) for text in texts)


def validate_permissions(texts: Iterable[str]) -> list[str]:
    """Return the strings that fail to parse, in input order."""
    invalid = []
    for text in texts:
        try:
            parse_permission(text)
        except InvalidPermission:
            invalid.append(text)
    return invalid


@dataclass(frozen=True)
class ScopeAnchor:
    """Where a grant sits: a tree path, a team, and an optional region tag."""
    path: Optional[str] = None
    team_id: Optional[str] = None
    region: Optional[str] = None


@dataclass(frozen=True)
class TargetContext:
    """
    What a request acts on.

    `path` is the target node's materialized path. The remaining fields are
    supplied by the caller because they cannot be derived from the path:
    the team the target belongs to, its region tag, and the actor's role in
    the target's team ("leader" or "member").
    """
    path: Optional[str] = None
    team_id: Optional[str] = None
    region: Optional[str] = None
    team_role: Optional[str] = None


def scope_satisfied(scope: Scope, anchor: ScopeAnchor, target: TargetContext) -> bool:
    """Decide whether `scope`, granted at `anchor`, reaches `target`."""
    if scope is Scope.ALL:
        return True

    if scope is Scope.TEAM:
        return anchor.team_id is not None and anchor.team_id == target.team_id

    if scope is Scope.TEAM_SUBORDINATE:
        return target.team_role == "leader"

    if anchor.path is None or target.path is None:
        rel = Relation.UNRELATED
    else:
        rel = relation(anchor.path, target.path)

    if scope in (Scope.NONE, Scope.OWN):
        return rel is Relation.EQUAL

    if scope is Scope.SUBORDINATE:
        # Strictly below the grant; the grant's own node does not qualify
        return rel is Relation.ANCESTOR

    if scope is Scope.REGION:
        if rel in (Relation.ANCESTOR, Relation.EQUAL):
            return True
        return anchor.region is not None and anchor.region == target.region

    return False


def resolve(
    permission: Permission,
    anchor: ScopeAnchor,
    resource: str,
    action: str,
    target: TargetContext,
) -> bool:
    """True when `permission` held at `anchor` allows `action` on `resource` at `target`."""
    if not permission.matches(resource, action):
        return False
    return scope_satisfied(permission.scope, anchor, target)
