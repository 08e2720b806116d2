"""
Tests for connection configuration and the connection registry.
"""

import pytest
from pydantic import ValidationError as PydanticValidationError
from pymongo import errors as driver_errors

from docmachine import (
    ConnectionConfig,
    ConnectionRegistry,
    DatabaseConnectionError,
    Model,
    connections,
)
from docmachine.testing import InMemoryClient, use_memory_connection
from docmachine.testing.memory import InMemoryDatabase


class Metric(Model, connection="analytics"):
    name: str
    value: float = 0.0


class RecordingFactory:
    """Client factory remembering the arguments it was called with."""

    def __init__(self):
        self.calls = []

    def __call__(self, *args, **kwargs):
        self.calls.append((args, kwargs))
        return InMemoryClient(*args, **kwargs)


class TestConnectionConfig:
    """Test translating settings into driver client arguments."""

    def test_url(self):
        config = ConnectionConfig(url="mongodb://db:27017/app", options={"maxPoolSize": 5})
        assert config.client_arguments() == (("mongodb://db:27017/app",), {"maxPoolSize": 5})

    def test_discrete_settings(self):
        config = ConnectionConfig(
            host="db",
            port=27018,
            username="app",
            password="secret",
            auth_source="admin",
            options={"serverSelectionTimeoutMS": 2000},
        )
        assert config.client_arguments() == ((), {
            "serverSelectionTimeoutMS": 2000,
            "host": "db",
            "port": 27018,
            "username": "app",
            "password": "secret",
            "authSource": "admin",
        })

    def test_defaults(self):
        assert ConnectionConfig().client_arguments() == ((), {"host": "localhost", "port": 27017})

    def test_unknown_settings_are_rejected(self):
        with pytest.raises(PydanticValidationError):
            ConnectionConfig(hostname="db")


class TestConnection:
    """Test a single named connection."""

    def test_client_is_created_lazily(self):
        factory = RecordingFactory()
        connection = ConnectionRegistry().add("main", ConnectionConfig(database="app"), client_factory=factory)

        assert not connection.is_open
        assert factory.calls == []

        assert connection.client is connection.client
        assert connection.is_open
        assert factory.calls == [((), {"host": "localhost", "port": 27017})]

    def test_database_from_url(self):
        registry = ConnectionRegistry(client_factory=InMemoryClient)
        connection = registry.add("main", ConnectionConfig(url="mongodb://localhost/appdb"))
        assert connection.database.name == "appdb"
        assert connection.collection("users").name == "users"

    def test_missing_database(self):
        registry = ConnectionRegistry(client_factory=InMemoryClient)
        connection = registry.add("main", ConnectionConfig(url="mongodb://localhost"))
        with pytest.raises(DatabaseConnectionError) as exc_info:
            connection.database
        assert exc_info.value.connection_name == "main"

    def test_client_creation_failure(self):
        def broken(*args, **kwargs):
            raise driver_errors.ConfigurationError("bad uri")

        connection = ConnectionRegistry().add("main", ConnectionConfig(), client_factory=broken)
        with pytest.raises(DatabaseConnectionError):
            connection.client

    @pytest.mark.asyncio
    async def test_ping_and_connect(self):
        connection = connections.get()
        assert await connection.ping() is True
        assert await connection.connect() is connection

    @pytest.mark.asyncio
    async def test_unreachable(self, monkeypatch):
        async def timeout(self, command, **kwargs):
            raise driver_errors.ServerSelectionTimeoutError("no servers")

        monkeypatch.setattr(InMemoryDatabase, "command", timeout)

        with pytest.raises(DatabaseConnectionError) as exc_info:
            await connections.get().ping()
        assert exc_info.value.connection_name == "default"

    def test_close(self):
        connection = connections.get()
        client = connection.client

        connection.close()

        assert client.closed
        assert not connection.is_open
        assert connection.client is not client


class TestConnectionRegistry:
    """Test registering and resolving connections."""

    def test_first_connection_is_default(self):
        registry = ConnectionRegistry(client_factory=InMemoryClient)
        registry.add("primary", ConnectionConfig(database="a"))
        registry.add("secondary", ConnectionConfig(database="b"))

        assert registry.default == "primary"
        assert registry.get().name == "primary"
        assert registry.get("secondary").config.database == "b"
        assert registry.names() == ["primary", "secondary"]
        assert registry.has("secondary")

    def test_explicit_default(self):
        registry = ConnectionRegistry(client_factory=InMemoryClient)
        registry.add("primary", ConnectionConfig(database="a"))
        registry.add("secondary", ConnectionConfig(database="b"), default=True)
        assert registry.default == "secondary"

        registry.set_default("primary")
        assert registry.get().name == "primary"

    def test_unknown_name(self):
        registry = ConnectionRegistry()
        registry.add("primary", ConnectionConfig(database="a"))

        with pytest.raises(DatabaseConnectionError) as exc_info:
            registry.get("missing")
        assert exc_info.value.connection_name == "missing"

        with pytest.raises(DatabaseConnectionError):
            registry.set_default("missing")

    def test_empty_registry(self):
        with pytest.raises(DatabaseConnectionError):
            ConnectionRegistry().get()

    def test_readding_closes_the_old_client(self):
        registry = ConnectionRegistry(client_factory=InMemoryClient)
        old = registry.add("primary", ConnectionConfig(database="a"))
        client = old.client

        new = registry.add("primary", ConnectionConfig(database="b"))

        assert client.closed
        assert not old.is_open
        assert registry.get() is new

    def test_remove(self):
        registry = ConnectionRegistry(client_factory=InMemoryClient)
        registry.add("primary", ConnectionConfig(database="a"))
        registry.add("secondary", ConnectionConfig(database="b"))

        registry.remove("primary")

        assert registry.default == "secondary"
        assert not registry.has("primary")
        registry.remove("secondary")
        assert registry.default is None

    def test_from_config(self):
        registry = ConnectionRegistry.from_config(
            {
                "default": "analytics",
                "connections": {
                    "primary": {"url": "mongodb://localhost/app"},
                    "analytics": ConnectionConfig(database="stats"),
                },
            },
            client_factory=InMemoryClient,
        )

        assert registry.names() == ["primary", "analytics"]
        assert registry.get().config.database == "stats"
        assert registry.get("primary").database.name == "app"

    def test_clear(self):
        registry = ConnectionRegistry(client_factory=InMemoryClient)
        client = registry.add("primary", ConnectionConfig(database="a")).client

        registry.clear()

        assert client.closed
        assert registry.names() == []
        assert registry.default is None


class TestModelConnections:
    """Test models bound to a named connection."""

    def test_schema_records_the_connection(self):
        assert Metric.__schema__.connection == "analytics"

    def test_unregistered_connection(self):
        with pytest.raises(DatabaseConnectionError):
            Metric.get_collection()

    @pytest.mark.asyncio
    async def test_named_connection_is_used(self):
        analytics = use_memory_connection("analytics", database="stats", default=False)

        await Metric.create(name="latency", value=1.5)

        assert await analytics.collection("metrics").count_documents({}) == 1
        assert await connections.get().collection("metrics").count_documents({}) == 0
        assert (await Metric.find_by(name="latency")).value == 1.5
