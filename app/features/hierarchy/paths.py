"""
Materialized tree paths.

A path is the slash-joined list of node ids from the union down to the node
itself, e.g. "U1/C1/CH2/T5". Subtree queries are prefix queries on it, and
every authorization scope is evaluated on the relation between two paths.

The tree has five fixed levels. Node types, their depth and their parent
type are defined here so that path arithmetic and the type rule
(a node's parent sits exactly one level above it) live in one place.
"""
import enum
import re
from typing import Optional, Protocol

from app.core.errors import InvalidHierarchy


SEPARATOR = "/"

# Segments are node ids: ULIDs in practice, alphanumerics and underscores in general
SEGMENT_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")
PATH_PATTERN = re.compile(r"^[A-Za-z0-9_]+(/[A-Za-z0-9_]+)*$")


class NodeType(str, enum.Enum):
    """Organizational levels, root first."""
    UNION = "union"
    CONFERENCE = "conference"
    CHURCH = "church"
    TEAM = "team"
    SERVICE = "service"

    @property
    def depth(self) -> int:
        return DEPTHS[self]

    @property
    def parent_type(self) -> Optional["NodeType"]:
        if self.depth == 0:
            return None
        return LEVELS[self.depth - 1]

    @property
    def child_type(self) -> Optional["NodeType"]:
        if self.depth == len(LEVELS) - 1:
            return None
        return LEVELS[self.depth + 1]

    @property
    def descendant_types(self) -> list["NodeType"]:
        return LEVELS[self.depth + 1:]

    @property
    def resource(self) -> str:
        """Resource name used in permission strings ("churches.update")."""
        return RESOURCES[self]

    @classmethod
    def from_resource(cls, resource: str) -> "NodeType":
        for node_type, name in RESOURCES.items():
            if name == resource:
                return node_type
        raise ValueError(f"Unknown hierarchy resource: {resource}")


LEVELS: list[NodeType] = [
    NodeType.UNION,
    NodeType.CONFERENCE,
    NodeType.CHURCH,
    NodeType.TEAM,
    NodeType.SERVICE,
]

DEPTHS: dict[NodeType, int] = {node_type: depth for depth, node_type in enumerate(LEVELS)}

RESOURCES: dict[NodeType, str] = {
    NodeType.UNION: "unions",
    NodeType.CONFERENCE: "conferences",
    NodeType.CHURCH: "churches",
    NodeType.TEAM: "teams",
    NodeType.SERVICE: "services",
}


class Relation(str, enum.Enum):
    """How path `a` relates to path `b`."""
    EQUAL = "equal"
    ANCESTOR = "ancestor"
    DESCENDANT = "descendant"
    UNRELATED = "unrelated"


class PathNode(Protocol):
    """Anything with an id, a path and a fixed depth (ORM nodes, test doubles)."""
    id: str
    path: str
    depth: int


def split(path: str) -> list[str]:
    """Split a path into its segments; the empty path has none."""
    if not path:
        return []
    return path.split(SEPARATOR)


def depth_of(path: str) -> int:
    """Depth implied by a path: number of segments minus one."""
    return len(split(path)) - 1


def is_valid_segment(segment: str) -> bool:
    return bool(segment) and SEGMENT_PATTERN.match(segment) is not None


def validate(path: Optional[str]) -> bool:
    """
    Check a stored path.

    Valid paths are one or more identifier segments joined by "/", with no
    empty segment, no leading or trailing slash, and no repeated segment.
    """
    if not isinstance(path, str) or not PATH_PATTERN.match(path):
        return False
    segments = split(path)
    return len(segments) == len(set(segments))


def relation(a: str, b: str) -> Relation:
    """
    Relation of `a` to `b`.

    Ancestor means `a` is a strict prefix of `b` ending on a segment
    boundary ("U1/C1" is an ancestor of "U1/C1/CH2" but not of "U1/C10").
    """
    if a == b:
        return Relation.EQUAL
    if b.startswith(a + SEPARATOR):
        return Relation.ANCESTOR
    if a.startswith(b + SEPARATOR):
        return Relation.DESCENDANT
    return Relation.UNRELATED


def is_in_subtree(path: str, root: str) -> bool:
    """True when `path` is `root` itself or lies below it."""
    return relation(root, path) in (Relation.EQUAL, Relation.ANCESTOR)


def parent_path(path: str) -> Optional[str]:
    segments = split(path)
    if len(segments) <= 1:
        return None
    return SEPARATOR.join(segments[:-1])


def ancestor_paths(path: str) -> list[str]:
    """All prefixes of `path`, root first and `path` itself last."""
    segments = split(path)
    return [SEPARATOR.join(segments[:i]) for i in range(1, len(segments) + 1)]


def truncate(path: str, depth: int) -> str:
    """Prefix of `path` down to `depth`; shallower paths come back unchanged."""
    return SEPARATOR.join(split(path)[:depth + 1])


def build(parent: Optional[str], node_id: str) -> str:
    """Path of a node with id `node_id` placed under `parent`."""
    if not node_id:
        raise InvalidHierarchy("Node id is required to build a hierarchy path")
    if not is_valid_segment(node_id):
        raise InvalidHierarchy(f"Invalid node id for a hierarchy path: {node_id!r}")
    if not parent:
        return node_id
    return f"{parent}{SEPARATOR}{node_id}"


def is_valid_parent_child(child_depth: int, parent_depth: int) -> bool:
    """A child sits exactly one level below its parent."""
    return child_depth == parent_depth + 1


def rebuild(node: PathNode, new_parent_path: Optional[str]) -> str:
    """
    Path of `node` once re-attached under `new_parent_path`.

    Raises InvalidHierarchy when the new parent lies inside the node's own
    subtree (the move would create a cycle), when the parent's depth does not
    sit one level above the node, or when the result is not a valid path.
    Calling it twice with the same inputs gives the same path.
    """
    if new_parent_path is None:
        if node.depth != 0:
            raise InvalidHierarchy("Only unions can be placed at the root of the hierarchy")
        return build(None, node.id)

    if not validate(new_parent_path):
        raise InvalidHierarchy(f"Invalid parent hierarchy path: {new_parent_path!r}")

    if node.path and relation(node.path, new_parent_path) in (Relation.EQUAL, Relation.ANCESTOR):
        raise InvalidHierarchy("Move would create a circular dependency in the hierarchy")

    if node.id in split(new_parent_path):
        raise InvalidHierarchy("Move would create a circular dependency in the hierarchy")

    if not is_valid_parent_child(node.depth, depth_of(new_parent_path)):
        raise InvalidHierarchy(
            f"Invalid parent-child relationship: depth {depth_of(new_parent_path)} "
            f"cannot hold a node at depth {node.depth}"
        )

    new_path = build(new_parent_path, node.id)
    if not validate(new_path):
        raise InvalidHierarchy(f"Invalid hierarchy path: {new_path!r}")
    return new_path


def rewrite_prefix(path: str, old_prefix: str, new_prefix: str) -> str:
    """Move `path` from under `old_prefix` to under `new_prefix`."""
    if path == old_prefix:
        return new_prefix
    if not path.startswith(old_prefix + SEPARATOR):
        return path
    return new_prefix + path[len(old_prefix):]
