"""
Exception taxonomy for docmachine.

Every failure the ODM surfaces is one of the classes below so calling code
can branch on the kind of failure instead of parsing messages. Driver
(pymongo) exceptions are wrapped by :func:`wrap_driver_errors`, never
swallowed.
"""

from contextlib import contextmanager
from typing import Any, Iterator, Optional

from pymongo import errors as driver_errors

TRANSIENT_TRANSACTION_ERROR = "TransientTransactionError"
UNKNOWN_COMMIT_RESULT = "UnknownTransactionCommitResult"
RETRYABLE_WRITE_ERROR = "RetryableWriteError"

_KNOWN_LABELS = (TRANSIENT_TRANSACTION_ERROR, UNKNOWN_COMMIT_RESULT, RETRYABLE_WRITE_ERROR)

# Server error codes that mean "could not authenticate".
_AUTH_ERROR_CODES = {18, 13}


class DocMachineError(Exception):
    """Base exception for all docmachine errors."""
    pass


class NotFoundError(DocMachineError):
    """An *_or_fail lookup matched nothing."""

    def __init__(self, model_name: str, criteria: Any):
        self.model_name = model_name
        self.criteria = criteria
        super().__init__(f"{model_name} not found matching {criteria!r}")


class ValidationError(DocMachineError):
    """
    A field failed one of its declared constraints.

    Attributes:
        field: Name of the first failing field
        value: The offending value
        rules: The declared constraints of that field (e.g. ``{"ge": 18, "le": 120}``)
        violated: The rule that failed (pydantic error type plus context)
        errors: Every error reported by pydantic, in order
    """

    def __init__(
        self,
        field: Optional[str],
        value: Any,
        rules: Optional[dict[str, Any]] = None,
        *,
        violated: Optional[dict[str, Any]] = None,
        errors: Optional[list[dict[str, Any]]] = None,
        message: Optional[str] = None,
    ):
        self.field = field
        self.value = value
        self.rules = rules or {}
        self.violated = violated or {}
        self.errors = errors or []
        detail = message or self.violated.get("msg") or "invalid value"
        super().__init__(f"Validation failed for field '{field}' with value {value!r}: {detail}")


class DatabaseConnectionError(DocMachineError):
    """The store could not be reached or authenticated."""

    def __init__(self, connection_name: Optional[str], message: str):
        self.connection_name = connection_name
        super().__init__(f"[{connection_name}] {message}")


class OperationError(DocMachineError):
    """
    A well-formed request was rejected by the store.

    ``error_labels`` carries the driver's labels so retry wrappers can tell
    transient failures from terminal ones.
    """

    def __init__(self, message: str, *, error_labels: Optional[set[str]] = None, code: Optional[int] = None):
        self.error_labels = set(error_labels or ())
        self.code = code
        super().__init__(message)

    def has_error_label(self, label: str) -> bool:
        return label in self.error_labels

    @property
    def is_transient(self) -> bool:
        return TRANSIENT_TRANSACTION_ERROR in self.error_labels


class DuplicateKeyError(OperationError):
    """Unique constraint violation."""
    pass


class InvalidQueryError(OperationError):
    """A query could not be compiled (bad field path, operator or value)."""
    pass


class TransactionError(DocMachineError):
    """
    Commit, rollback, or an operation on a finished transaction failed.

    Attributes:
        phase: ``"start"``, ``"commit"``, ``"rollback"`` or ``"operation"``
        original_error: The error that triggered a failed rollback, if any
    """

    def __init__(
        self,
        phase: str,
        message: str,
        *,
        error_labels: Optional[set[str]] = None,
        original_error: Optional[BaseException] = None,
    ):
        self.phase = phase
        self.error_labels = set(error_labels or ())
        self.original_error = original_error
        super().__init__(f"Transaction {phase} failed: {message}")

    @property
    def is_transient(self) -> bool:
        return TRANSIENT_TRANSACTION_ERROR in self.error_labels

    @property
    def is_unknown_commit_result(self) -> bool:
        return UNKNOWN_COMMIT_RESULT in self.error_labels


class SchemaError(DocMachineError, TypeError):
    """A model class declaration is invalid."""
    pass


class ModelStateError(DocMachineError):
    """An operation is not allowed in the instance's lifecycle state."""
    pass


class MultipleResultsError(DocMachineError):
    """sole() matched more than one record."""
    pass


def error_labels_of(exc: BaseException) -> set[str]:
    """Collect the known driver error labels carried by ``exc``."""
    has_label = getattr(exc, "has_error_label", None)
    if not callable(has_label):
        return set()
    return {label for label in _KNOWN_LABELS if has_label(label)}


def translate_driver_error(exc: Exception, connection_name: Optional[str] = None) -> DocMachineError:
    """Map a pymongo exception onto the docmachine taxonomy."""
    labels = error_labels_of(exc)
    code = getattr(exc, "code", None)

    if isinstance(exc, driver_errors.DuplicateKeyError):
        return DuplicateKeyError(str(exc), error_labels=labels, code=code)
    if isinstance(exc, driver_errors.BulkWriteError):
        write_errors = (exc.details or {}).get("writeErrors", [])
        if any(err.get("code") == 11000 for err in write_errors):
            return DuplicateKeyError(str(exc), error_labels=labels, code=11000)
        return OperationError(str(exc), error_labels=labels, code=code)
    if isinstance(exc, driver_errors.ConnectionFailure):
        return DatabaseConnectionError(connection_name, str(exc))
    if isinstance(exc, driver_errors.OperationFailure) and code in _AUTH_ERROR_CODES:
        return DatabaseConnectionError(connection_name, str(exc))
    return OperationError(str(exc), error_labels=labels, code=code)


@contextmanager
def wrap_driver_errors(connection_name: Optional[str] = None) -> Iterator[None]:
    """
    Re-raise driver exceptions as docmachine exceptions.

    Example:
        >>> with wrap_driver_errors("primary"):
        ...     await collection.insert_one(doc)
    """
    try:
        yield
    except DocMachineError:
        raise
    except driver_errors.PyMongoError as exc:
        raise translate_driver_error(exc, connection_name) from exc
