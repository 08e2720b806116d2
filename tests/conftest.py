"""
Pytest configuration for docmachine tests.

Every test runs against a fresh in-memory connection registered as the
default connection.
"""

import pytest

from docmachine import connections
from docmachine.testing import use_memory_connection


@pytest.fixture(autouse=True)
def memory_connection():
    """Register a fresh in-memory default connection for each test."""
    connections.clear()
    connection = use_memory_connection()
    yield connection
    connections.clear()
