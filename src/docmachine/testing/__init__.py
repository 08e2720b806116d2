"""
Testing support for docmachine.

Provides an in-memory, motor-shaped client so models can be exercised
without a MongoDB deployment.
"""

from typing import Optional

from docmachine.connection import Connection, ConnectionConfig, ConnectionRegistry, connections
from docmachine.testing.memory import InMemoryClient, InMemoryCollection, InMemorySession


def use_memory_connection(
    name: str = "default",
    database: str = "test",
    *,
    registry: Optional[ConnectionRegistry] = None,
    default: bool = True,
) -> Connection:
    """
    Register a connection backed by a fresh :class:`InMemoryClient`.

    Example:
        >>> @pytest.fixture(autouse=True)
        ... def db():
        ...     connections.clear()
        ...     use_memory_connection()
    """
    return (registry or connections).add(
        name,
        ConnectionConfig(database=database),
        default=default,
        client_factory=InMemoryClient,
    )


__all__ = [
    "InMemoryClient",
    "InMemoryCollection",
    "InMemorySession",
    "use_memory_connection",
]
