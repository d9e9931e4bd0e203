"""
Hierarchy-related dependency injection functions.
"""
from typing import Annotated
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.database.engine import get_session_factory
from app.core.errors import NotFound
from app.features.hierarchy.cascade import CascadeCoordinator
from app.features.hierarchy.paths import NodeType


def get_coordinator(
    session_factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]
) -> CascadeCoordinator:
    return CascadeCoordinator(session_factory)


def get_node_type(resource: str) -> NodeType:
    """
    Resolve the `{resource}` path segment ("churches", "teams", ...).

    Raises:
        NotFound: for anything that is not a hierarchy level
    """
    try:
        return NodeType.from_resource(resource)
    except ValueError:
        raise NotFound(f"Unknown hierarchy level: {resource}")
