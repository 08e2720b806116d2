"""
Connection registry for docmachine.

Owns named client handles to one or more MongoDB deployments. Connection
settings are supplied by the hosting application and forwarded verbatim to
the driver; nothing here hard-codes pool sizes, timeouts or concerns.
"""

import logging
from typing import Any, Callable, Optional

from motor.motor_asyncio import AsyncIOMotorClient
from pydantic import BaseModel, ConfigDict, Field
from pymongo import errors as driver_errors

from docmachine.exceptions import DatabaseConnectionError, wrap_driver_errors

logger = logging.getLogger(__name__)

ClientFactory = Callable[..., Any]


class ConnectionConfig(BaseModel):
    """
    Settings for one named connection.

    Either ``url`` or the discrete host/port/credentials are used. ``options``
    is passed straight to the driver client (e.g. ``maxPoolSize``,
    ``serverSelectionTimeoutMS``, ``w``, ``tls``).

    Example:
        >>> ConnectionConfig(url="mongodb://localhost:27017", database="app")
        >>> ConnectionConfig(host="db", port=27017, username="app",
        ...                  password="secret", database="app",
        ...                  options={"serverSelectionTimeoutMS": 2000})
    """

    model_config = ConfigDict(extra="forbid")

    url: Optional[str] = None
    host: str = "localhost"
    port: int = 27017
    username: Optional[str] = None
    password: Optional[str] = None
    auth_source: Optional[str] = None
    database: Optional[str] = None
    options: dict[str, Any] = Field(default_factory=dict)

    def client_arguments(self) -> tuple[tuple[Any, ...], dict[str, Any]]:
        """Positional and keyword arguments for the driver client constructor."""
        kwargs: dict[str, Any] = dict(self.options)
        if self.url:
            return (self.url,), kwargs

        kwargs.setdefault("host", self.host)
        kwargs.setdefault("port", self.port)
        if self.username is not None:
            kwargs.setdefault("username", self.username)
        if self.password is not None:
            kwargs.setdefault("password", self.password)
        if self.auth_source is not None:
            kwargs.setdefault("authSource", self.auth_source)
        return (), kwargs


class Connection:
    """
    A named handle on one deployment.

    The driver client is created lazily on first use so that declaring
    connections at import time does no I/O.
    """

    def __init__(
        self,
        name: str,
        config: ConnectionConfig,
        client_factory: Optional[ClientFactory] = None,
    ):
        self.name = name
        self.config = config
        self._client_factory = client_factory or AsyncIOMotorClient
        self._client: Optional[Any] = None

    def __repr__(self) -> str:
        return f"<Connection {self.name!r} database={self.config.database!r}>"

    @property
    def client(self) -> Any:
        """Get or create the driver client."""
        if self._client is None:
            args, kwargs = self.config.client_arguments()
            try:
                self._client = self._client_factory(*args, **kwargs)
            except driver_errors.PyMongoError as exc:
                raise DatabaseConnectionError(self.name, f"could not create client: {exc}") from exc
            logger.debug(f"Created client for connection '{self.name}'")
        return self._client

    @property
    def database(self) -> Any:
        """The database this connection points at."""
        if self.config.database:
            return self.client[self.config.database]
        try:
            return self.client.get_default_database()
        except driver_errors.ConfigurationError as exc:
            raise DatabaseConnectionError(
                self.name, "no database configured and none in the connection string"
            ) from exc

    def collection(self, name: str) -> Any:
        """Get a collection handle by name."""
        return self.database[name]

    async def ping(self) -> bool:
        """Round-trip to the server; raises DatabaseConnectionError when unreachable."""
        with wrap_driver_errors(self.name):
            await self.database.command("ping")
        return True

    async def connect(self) -> "Connection":
        """Create the client and verify the deployment is reachable."""
        await self.ping()
        logger.info(f"Connected '{self.name}'")
        return self

    async def start_session(self) -> Any:
        """Start a driver session on this connection."""
        with wrap_driver_errors(self.name):
            return await self.client.start_session()

    @property
    def is_open(self) -> bool:
        return self._client is not None

    def close(self) -> None:
        """Close the driver client (a new one is created on next use)."""
        if self._client is not None:
            self._client.close()
            self._client = None
            logger.debug(f"Closed connection '{self.name}'")


class ConnectionRegistry:
    """
    Named connections with one default.

    Example:
        >>> registry = ConnectionRegistry()
        >>> registry.add("primary", ConnectionConfig(url="mongodb://localhost", database="app"))
        >>> registry.add("analytics", ConnectionConfig(url="mongodb://replica", database="stats"))
        >>> registry.get().name
        'primary'
    """

    def __init__(self, client_factory: Optional[ClientFactory] = None):
        self._connections: dict[str, Connection] = {}
        self._default: Optional[str] = None
        self._client_factory = client_factory

    @classmethod
    def from_config(
        cls,
        config: dict[str, Any],
        client_factory: Optional[ClientFactory] = None,
    ) -> "ConnectionRegistry":
        """
        Build a registry from a mapping.

        Args:
            config: ``{"default": "primary", "connections": {"primary": {...}}}``
            client_factory: Optional driver client factory

        Returns:
            Populated registry
        """
        registry = cls(client_factory=client_factory)
        registry.configure(config)
        return registry

    def configure(self, config: dict[str, Any]) -> None:
        """Add every connection described by ``config``."""
        default = config.get("default")
        for name, settings in config.get("connections", {}).items():
            if not isinstance(settings, ConnectionConfig):
                settings = ConnectionConfig(**settings)
            self.add(name, settings, default=(name == default))

    def add(
        self,
        name: str,
        config: ConnectionConfig,
        *,
        default: bool = False,
        client_factory: Optional[ClientFactory] = None,
    ) -> Connection:
        """
        Register a connection.

        The first connection added becomes the default unless another one is
        added with ``default=True``. Re-adding a name closes the old client.
        """
        existing = self._connections.get(name)
        if existing is not None:
            existing.close()

        connection = Connection(name, config, client_factory or self._client_factory)
        self._connections[name] = connection
        if default or self._default is None:
            self._default = name
        logger.debug(f"Registered connection '{name}'")
        return connection

    def remove(self, name: str) -> None:
        connection = self._connections.pop(name, None)
        if connection is not None:
            connection.close()
        if self._default == name:
            self._default = next(iter(self._connections), None)

    def get(self, name: Optional[str] = None) -> Connection:
        """
        Resolve a connection by name, or the default one.

        Raises:
            DatabaseConnectionError: If the name is unknown or nothing is registered
        """
        resolved = name or self._default
        if resolved is None:
            raise DatabaseConnectionError(None, "no connections have been registered")
        try:
            return self._connections[resolved]
        except KeyError:
            raise DatabaseConnectionError(resolved, "connection is not registered") from None

    def has(self, name: str) -> bool:
        return name in self._connections

    def names(self) -> list[str]:
        return list(self._connections)

    @property
    def default(self) -> Optional[str]:
        return self._default

    def set_default(self, name: str) -> None:
        self.get(name)
        self._default = name

    def close_all(self) -> None:
        for connection in self._connections.values():
            connection.close()

    def clear(self) -> None:
        """Close and forget every connection."""
        self.close_all()
        self._connections.clear()
        self._default = None


# Process-wide registry used by models unless one is passed explicitly.
connections = ConnectionRegistry()
