"""
docmachine - async ActiveRecord-style ODM for MongoDB.

Models are Pydantic classes persisted through motor. Provides a fluent query
builder, dirty tracking, lifecycle hooks, embedded documents with their own
query builder, relationships and multi-document transactions.
"""

from docmachine.connection import Connection, ConnectionConfig, ConnectionRegistry, connections
from docmachine.embedded import EmbeddedList, EmbeddedModel, EmbeddedQueryBuilder
from docmachine.exceptions import (
    DatabaseConnectionError,
    DocMachineError,
    DuplicateKeyError,
    InvalidQueryError,
    ModelStateError,
    MultipleResultsError,
    NotFoundError,
    OperationError,
    SchemaError,
    TransactionError,
    ValidationError,
)
from docmachine.mixins import TimestampMixin
from docmachine.models.base import Model
from docmachine.models.fields import Field
from docmachine.models.hooks import (
    after_create,
    after_delete,
    after_fetch,
    after_find,
    after_save,
    after_update,
    before_create,
    before_delete,
    before_fetch,
    before_find,
    before_save,
    before_update,
    hook,
)
from docmachine.models.relations import belongs_to, has_many, has_one
from docmachine.query import Paginator, QueryBuilder
from docmachine.transaction import TransactionClient, TransactionState, transaction

__version__ = "0.1.0"

__all__ = [
    "Model",
    "Field",
    "EmbeddedModel",
    "EmbeddedList",
    "EmbeddedQueryBuilder",
    "QueryBuilder",
    "Paginator",
    "TimestampMixin",
    "before_save",
    "after_save",
    "before_create",
    "after_create",
    "before_update",
    "after_update",
    "before_delete",
    "after_delete",
    "before_find",
    "after_find",
    "before_fetch",
    "after_fetch",
    "hook",
    "has_one",
    "has_many",
    "belongs_to",
    "Connection",
    "ConnectionConfig",
    "ConnectionRegistry",
    "connections",
    "transaction",
    "TransactionClient",
    "TransactionState",
    "DocMachineError",
    "NotFoundError",
    "ValidationError",
    "DatabaseConnectionError",
    "OperationError",
    "DuplicateKeyError",
    "InvalidQueryError",
    "TransactionError",
    "SchemaError",
    "ModelStateError",
    "MultipleResultsError",
]
