"""
Transaction coordinator for docmachine.

A :class:`TransactionClient` wraps exactly one driver session. Models, query
builders and raw collection calls that are handed the client attach its
session to every driver call, so all of them commit or abort together.

Usage:
    # Managed: commit on return, rollback and re-raise on error
    async def transfer(trx):
        await Account.query().use_transaction(trx).where("id", src).update({"$inc": {"balance": -10}})
        await Account.query().use_transaction(trx).where("id", dst).update({"$inc": {"balance": 10}})

    await transaction(transfer)

    # Manual
    trx = await transaction()
    try:
        await user.save(transaction=trx)
        await trx.commit()
    except Exception:
        await trx.rollback()
        raise

    # Context manager
    async with await transaction() as trx:
        await Post.create(title="Hello", transaction=trx)
"""

import inspect
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union, TYPE_CHECKING

from pymongo import errors as driver_errors

from docmachine.connection import Connection, ConnectionRegistry, connections
from docmachine.exceptions import TransactionError, error_labels_of, wrap_driver_errors

if TYPE_CHECKING:
    from docmachine.models.base import Model
    from docmachine.query.builder import QueryBuilder

logger = logging.getLogger(__name__)


class TransactionState(str, Enum):
    """Lifecycle of a transaction client. COMMITTED and ABORTED are terminal."""
    ACTIVE = "active"
    COMMITTED = "committed"
    ABORTED = "aborted"


class TransactionClient:
    """
    One logical unit of work bound to a single driver session.

    Operations issued through a client are causally ordered by call sequence.
    Do not share one client across concurrently running coroutines; the
    server rejects overlapping operations on one session.
    """

    def __init__(self, connection: Connection, session: Any):
        self.connection = connection
        self._session = session
        self._state = TransactionState.ACTIVE

    def __repr__(self) -> str:
        return f"<TransactionClient connection={self.connection.name!r} state={self._state.value}>"

    @property
    def state(self) -> TransactionState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state is TransactionState.ACTIVE

    @property
    def session(self) -> Any:
        """The driver session; only available while the transaction is active."""
        self.ensure_active()
        return self._session

    def ensure_active(self, phase: str = "operation") -> None:
        """
        Fail fast when the transaction has already finished.

        Raises:
            TransactionError: If the client is committed or aborted
        """
        if self._state is not TransactionState.ACTIVE:
            raise TransactionError(
                phase,
                f"transaction is already {self._state.value}; no further operations may be issued",
            )

    def session_kwargs(self) -> dict[str, Any]:
        """Keyword arguments that attach this client's session to a driver call."""
        return {"session": self.session}

    async def commit(self) -> None:
        """
        Commit the transaction.

        Raises:
            TransactionError: If the client is not active or the commit fails.
                Check ``is_unknown_commit_result`` / ``is_transient`` to decide
                whether to retry.
        """
        self.ensure_active("commit")
        try:
            await self._session.commit_transaction()
        except driver_errors.PyMongoError as exc:
            self._state = TransactionState.ABORTED
            await self._end_session()
            raise TransactionError("commit", str(exc), error_labels=error_labels_of(exc)) from exc

        self._state = TransactionState.COMMITTED
        await self._end_session()
        logger.debug(f"Committed transaction on '{self.connection.name}'")

    async def rollback(self) -> None:
        """
        Abort the transaction, discarding every write issued through it.

        Raises:
            TransactionError: If the client is not active or the abort fails
        """
        self.ensure_active("rollback")
        try:
            await self._session.abort_transaction()
        except driver_errors.PyMongoError as exc:
            raise TransactionError("rollback", str(exc), error_labels=error_labels_of(exc)) from exc
        finally:
            self._state = TransactionState.ABORTED
            await self._end_session()
        logger.debug(f"Rolled back transaction on '{self.connection.name}'")

    async def _end_session(self) -> None:
        try:
            await self._session.end_session()
        except driver_errors.PyMongoError as exc:
            logger.warning(f"Failed to end session on '{self.connection.name}': {exc}")

    def query(self, model_class: type["Model"]) -> "QueryBuilder":
        """Query builder for ``model_class`` bound to this transaction."""
        return model_class.query(transaction=self)

    def collection(self, name: str) -> "SessionCollection":
        """Raw collection handle whose calls all carry this client's session."""
        return SessionCollection(self, self.connection.collection(name))

    async def __aenter__(self) -> "TransactionClient":
        self.ensure_active()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if not self.is_active:
            return False
        if exc_type is None:
            await self.commit()
        else:
            await self.rollback()
        return False


class SessionCollection:
    """
    Proxy around a driver collection injecting the transaction's session.

    Driver errors raised by awaited calls are translated like every other
    docmachine operation.
    """

    def __init__(self, client: TransactionClient, collection: Any):
        self._client = client
        self._collection = collection

    @property
    def name(self) -> str:
        return self._collection.name

    def __getattr__(self, name: str) -> Any:
        attr = getattr(self._collection, name)
        if not callable(attr):
            return attr

        def bound(*args: Any, **kwargs: Any) -> Any:
            kwargs.setdefault("session", self._client.session)
            result = attr(*args, **kwargs)
            if inspect.isawaitable(result):
                return _translated(result, self._client.connection.name)
            return result

        return bound


async def _translated(awaitable: Awaitable[Any], connection_name: str) -> Any:
    with wrap_driver_errors(connection_name):
        return await awaitable


TransactionCallback = Callable[[TransactionClient], Any]


async def transaction(
    callback: Optional[TransactionCallback] = None,
    *,
    connection: Union[str, Connection, None] = None,
    registry: Optional[ConnectionRegistry] = None,
    **options: Any,
) -> Any:
    """
    Start a transaction.

    Managed form (``callback`` given): the callback receives the client; the
    transaction commits when it returns and rolls back when it raises, after
    which the original exception is re-raised. If the rollback itself fails a
    TransactionError(phase="rollback") is raised from the original error.

    Manual form (no callback): returns an active client; the caller must
    ``commit()`` or ``rollback()``.

    Args:
        callback: Optional sync or async callable receiving the client
        connection: Connection name or instance (default connection if None)
        registry: Registry to resolve names from (process-wide by default)
        **options: Passed to the driver's ``start_transaction`` (read/write
            concern, read preference, max commit time)

    Returns:
        The callback's return value, or the client in manual form
    """
    if not isinstance(connection, Connection):
        connection = (registry or connections).get(connection)

    session = await connection.start_session()
    try:
        session.start_transaction(**options)
    except driver_errors.PyMongoError as exc:
        await session.end_session()
        raise TransactionError("start", str(exc), error_labels=error_labels_of(exc)) from exc

    client = TransactionClient(connection, session)
    logger.debug(f"Started transaction on '{connection.name}'")
    if callback is None:
        return client

    try:
        result = callback(client)
        if inspect.isawaitable(result):
            result = await result
    except BaseException as exc:
        if client.is_active:
            try:
                await client.rollback()
            except TransactionError as rollback_error:
                rollback_error.original_error = exc
                logger.warning(f"Rollback failed after error {exc!r}: {rollback_error}")
                raise rollback_error from exc
        raise

    if client.is_active:
        await client.commit()
    return result
