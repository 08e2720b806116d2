"""
Base model class for docmachine.

Provides an ActiveRecord-style, asyncio interface over MongoDB collections
using Pydantic for validation.
"""

import copy
import logging
from datetime import datetime, timezone
from typing import Any, ClassVar, Optional, TYPE_CHECKING

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, PrivateAttr
from pydantic import ValidationError as PydanticValidationError

from docmachine.connection import Connection, connections
from docmachine.embedded.collection import EmbeddedList
from docmachine.embedded.model import EmbeddedModel
from docmachine.exceptions import (
    ModelStateError,
    NotFoundError,
    SchemaError,
    TransactionError,
    ValidationError,
    wrap_driver_errors,
)
from docmachine.models.document import DocumentMixin, json_value, wrap_validation_error
from docmachine.models.fields import Field
from docmachine.models.hooks import run_after, run_before
from docmachine.models.relations import Relation, RelatedQuery, register_model
from docmachine.models.schema import ModelSchema, _unwrap_optional, build_schema
from docmachine.query.matching import values_equal

if TYPE_CHECKING:
    from docmachine.query.builder import QueryBuilder
    from docmachine.transaction import TransactionClient

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Naive UTC timestamp at the millisecond precision BSON stores."""
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def session_kwargs(transaction: Optional["TransactionClient"]) -> dict[str, Any]:
    return transaction.session_kwargs() if transaction is not None else {}


class Model(DocumentMixin, BaseModel):
    """
    Base model class for docmachine.

    Provides ActiveRecord-style CRUD operations, dirty tracking, lifecycle
    hooks and relationship loading, and integrates with Pydantic for
    validation.

    Example:
        >>> class User(Model, collection="users"):
        ...     email: str = Field(db_column="email_address")
        ...     name: str
        ...     age: int = Field(ge=18, le=120)
        ...
        >>> user = await User.create(email="alice@example.com", name="Alice", age=30)
        >>> user.name = "Alice Smith"
        >>> user.dirty
        {'name': 'Alice Smith'}
        >>> await user.save()  # $set of the dirty fields only

        Models use the default connection unless one is named:
        >>> class Event(Model, connection="analytics"):
        ...     kind: str
    """

    # Pydantic configuration
    model_config = ConfigDict(
        validate_assignment=True,  # Validate on attribute assignment
        arbitrary_types_allowed=True,  # Allow ObjectId and other BSON types
        from_attributes=True,
        ignored_types=(Relation,),  # Relation descriptors are not fields
    )

    __schema__: ClassVar[Optional[ModelSchema]] = None
    __layout__: ClassVar[Optional[ModelSchema]] = None
    __collection__: ClassVar[Optional[str]] = None
    __connection__: ClassVar[Optional[str]] = None

    id: Optional[Any] = Field(None, primary_key=True)

    # Lifecycle state
    _is_persisted: bool = False
    _is_deleted: bool = False
    _original: dict[str, Any] = PrivateAttr(default_factory=dict)
    _transaction: Optional[Any] = None
    _relations: dict[str, Any] = PrivateAttr(default_factory=dict)
    _partial_fields: set[str] = PrivateAttr(default_factory=set)

    def __init_subclass__(cls, collection: Optional[str] = None, connection: Optional[str] = None, **kwargs: Any):
        """
        Args:
            collection: Collection name (defaults to the snake-cased plural
                of the class name)
            connection: Registered connection name (defaults to the
                registry's default connection)
        """
        super().__init_subclass__(**kwargs)
        cls.__collection__ = collection
        if connection is not None:
            cls.__connection__ = connection

    @classmethod
    def __pydantic_init_subclass__(cls, **kwargs: Any) -> None:
        super().__pydantic_init_subclass__(**kwargs)
        schema = build_schema(cls, collection=cls.__collection__, connection=cls.__connection__)
        cls.__schema__ = schema
        cls.__layout__ = schema
        register_model(cls)

    def __init__(self, **data: Any):
        try:
            super().__init__(**data)
        except PydanticValidationError as exc:
            raise wrap_validation_error(type(self), exc) from exc

    def model_post_init(self, __context: Any) -> None:
        self._bind_embedded()

    def __setattr__(self, name: str, value: Any) -> None:
        schema = type(self).__schema__
        if schema is not None and name in schema.relations:
            schema.relations[name].__set__(self, value)
            return
        try:
            super().__setattr__(name, value)
        except PydanticValidationError as exc:
            raise wrap_validation_error(type(self), exc) from exc
        if schema is not None and name in schema.embedded:
            self._bind_embedded(name)

    @classmethod
    def _schema(cls) -> ModelSchema:
        if cls.__schema__ is None:
            raise SchemaError(f"{cls.__name__} is abstract; subclass it to declare a model")
        return cls.__schema__

    def _bind_embedded(self, only: Optional[str] = None) -> None:
        schema = type(self).__schema__
        if schema is None:
            return
        for name, descriptor in schema.embedded.items():
            if only is not None and name != only:
                continue
            value = self.__dict__.get(name)
            if value is None:
                continue
            if descriptor.many:
                if not (isinstance(value, EmbeddedList) and value.owner is self):
                    self.__dict__[name] = EmbeddedList(value, owner=self, field=name, target=descriptor.target)
            elif isinstance(value, EmbeddedModel):
                value._bind(self, name)

    # Connection and transaction resolution

    @classmethod
    def _get_connection(cls, transaction: Optional["TransactionClient"] = None) -> Connection:
        schema = cls._schema()
        if transaction is not None:
            if schema.connection is not None and transaction.connection.name != schema.connection:
                raise TransactionError(
                    "operation",
                    f"{cls.__name__} uses connection '{schema.connection}' but the transaction "
                    f"runs on '{transaction.connection.name}'",
                )
            return transaction.connection
        return connections.get(schema.connection)

    @classmethod
    def get_collection(cls, transaction: Optional["TransactionClient"] = None) -> Any:
        """The driver collection backing this model."""
        return cls._get_connection(transaction).collection(cls._schema().collection)

    def _resolve_transaction(self, transaction: Optional["TransactionClient"]) -> Optional["TransactionClient"]:
        if transaction is not None:
            self._transaction = transaction
        bound = self._transaction
        if bound is not None:
            bound.ensure_active()
        return bound

    def use_transaction(self, transaction: Optional["TransactionClient"]) -> "Model":
        """
        Bind this instance to a transaction (None detaches it).

        Later ``save()``/``delete()``/element writes run in it. Using the
        instance after the transaction has finished raises TransactionError
        until it is rebound or detached.
        """
        if transaction is not None:
            transaction.ensure_active()
        self._transaction = transaction
        return self

    # Dirty tracking

    @property
    def attributes(self) -> dict[str, Any]:
        """Current field values in stored form, keyed by field name."""
        return {name: self._stored_value(name) for name in self._loaded_field_names()}

    @property
    def original(self) -> dict[str, Any]:
        """Snapshot of the values last written to or read from the store."""
        return copy.deepcopy(self._original)

    @property
    def dirty(self) -> dict[str, Any]:
        """Fields whose current value differs from the snapshot."""
        return {
            name: value
            for name, value in self.attributes.items()
            if name not in self._original or not values_equal(self._original[name], value)
        }

    def is_dirty(self, field: Optional[str] = None) -> bool:
        changes = self.dirty
        return bool(changes) if field is None else field in changes

    @property
    def is_persisted(self) -> bool:
        return self._is_persisted

    @property
    def is_local(self) -> bool:
        return not self._is_persisted and not self._is_deleted

    @property
    def is_deleted(self) -> bool:
        return self._is_deleted

    def _mark_clean(self) -> None:
        self._original = copy.deepcopy(self.attributes)
        for name, descriptor in self._schema().embedded.items():
            value = self.__dict__.get(name)
            elements = value if descriptor.many and isinstance(value, list) else [value]
            for element in elements:
                if isinstance(element, EmbeddedModel):
                    element._sync_original()

    def fill(self, **attributes: Any) -> None:
        """Assign several fields (validated) without touching the snapshot."""
        for name, value in attributes.items():
            setattr(self, name, value)

    def merge(self, **attributes: Any) -> "Model":
        """:meth:`fill` returning self, for ``await user.merge(name="x").save()``."""
        self.fill(**attributes)
        return self

    # Rehydration

    @classmethod
    def _hydrate(
        cls,
        document: dict[str, Any],
        *,
        partial: bool = False,
        transaction: Optional["TransactionClient"] = None,
    ) -> "Model":
        """Build a persisted, clean instance from a stored document."""
        values = cls._values_from_document(document)
        if partial:
            instance = cls.model_construct(**values)
            unloaded = set(cls._schema().fields) - set(values)
            # model_construct fills defaults; unloaded fields must stay absent
            for name in unloaded:
                instance.__dict__.pop(name, None)
            instance._partial_fields = unloaded
        else:
            try:
                instance = cls.model_validate(values)
            except PydanticValidationError as exc:
                raise wrap_validation_error(cls, exc) from exc
        instance._is_persisted = True
        instance._transaction = transaction
        instance._bind_embedded()
        instance._mark_clean()
        return instance

    def _attach_embedded_subset(self, field: str, value: Any) -> None:
        """Replace an embedded field with a filtered subset of what is stored."""
        descriptor = self._schema().embedded[field]
        if descriptor.many:
            self.__dict__[field] = EmbeddedList(value or [], owner=self, field=field, target=descriptor.target)
        else:
            self.__dict__[field] = value
            if isinstance(value, EmbeddedModel):
                value._bind(self, field)
        self._original[field] = copy.deepcopy(self._stored_value(field))
        self._partial_fields.add(field)

    # Class-level API

    @classmethod
    def query(cls, transaction: Optional["TransactionClient"] = None) -> "QueryBuilder":
        """
        Create a query builder for this model.

        Example:
            >>> adults = await User.query().where("age", ">=", 18).order_by("-age").all()
        """
        from docmachine.query.builder import QueryBuilder

        builder = QueryBuilder(cls)
        if transaction is not None:
            builder.use_transaction(transaction)
        return builder

    @classmethod
    def where(cls, *args: Any, **kwargs: Any) -> "QueryBuilder":
        """Shortcut for ``query().where(...)``."""
        return cls.query().where(*args, **kwargs)

    @classmethod
    async def create(cls, transaction: Optional["TransactionClient"] = None, **attributes: Any) -> "Model":
        """
        Create and save a new record in one operation.

        Raises:
            ValidationError: If field validation fails
            DuplicateKeyError: If a unique index is violated

        Example:
            >>> user = await User.create(email="alice@example.com", name="Alice", age=30)
        """
        instance = cls(**attributes)
        await instance.save(transaction=transaction)
        return instance

    @classmethod
    async def create_many(
        cls,
        records: list[dict[str, Any]],
        transaction: Optional["TransactionClient"] = None,
    ) -> list["Model"]:
        """Create several records in order, running hooks for each."""
        instances = [cls(**record) for record in records]
        for instance in instances:
            await instance.save(transaction=transaction)
        return instances

    @classmethod
    def coerce_id(cls, value: Any) -> Any:
        """Convert a 24-character hex string to ObjectId unless the key is typed ``str``."""
        pk = cls._schema().primary_key
        annotation = _unwrap_optional(cls.model_fields[pk.name].annotation)
        if isinstance(value, str) and annotation is not str and len(value) == 24 and ObjectId.is_valid(value):
            return ObjectId(value)
        return value

    @classmethod
    async def find(cls, id: Any, transaction: Optional["TransactionClient"] = None) -> Optional["Model"]:
        """Find a record by primary key, or None."""
        return await cls.query(transaction).find(id)

    @classmethod
    async def find_or_fail(cls, id: Any, transaction: Optional["TransactionClient"] = None) -> "Model":
        """
        Find a record by primary key.

        Raises:
            NotFoundError: If no record has that key
        """
        return await cls.query(transaction).find_or_fail(id)

    @classmethod
    async def find_by(cls, **conditions: Any) -> Optional["Model"]:
        """
        First record matching the lookups (all ANDed together).

        Example:
            >>> user = await User.find_by(email="alice@example.com")
        """
        return await cls.query().where(**conditions).first()

    @classmethod
    async def find_by_or_fail(cls, **conditions: Any) -> "Model":
        return await cls.query().where(**conditions).first_or_fail()

    @classmethod
    async def first_or_create(
        cls,
        attributes: dict[str, Any],
        values: Optional[dict[str, Any]] = None,
        transaction: Optional["TransactionClient"] = None,
    ) -> "Model":
        """First record matching ``attributes``, creating it with ``values`` if missing."""
        existing = await cls.query(transaction).where(dict(attributes)).first()
        if existing is not None:
            return existing
        return await cls.create(transaction=transaction, **{**attributes, **(values or {})})

    @classmethod
    async def update_or_create(
        cls,
        attributes: dict[str, Any],
        values: Optional[dict[str, Any]] = None,
        transaction: Optional["TransactionClient"] = None,
    ) -> "Model":
        """Update the first record matching ``attributes`` with ``values``, or create it."""
        existing = await cls.query(transaction).where(dict(attributes)).first()
        if existing is None:
            return await cls.create(transaction=transaction, **{**attributes, **(values or {})})
        existing.fill(**(values or {}))
        await existing.save(transaction=transaction)
        return existing

    @classmethod
    async def all(cls, transaction: Optional["TransactionClient"] = None) -> list["Model"]:
        """Every record of this model."""
        return await cls.query(transaction).all()

    @classmethod
    async def count(cls, transaction: Optional["TransactionClient"] = None) -> int:
        return await cls.query(transaction).count()

    # Persistence

    def _pk_filter(self) -> dict[str, Any]:
        pk = self._schema().primary_key
        value = self._original.get(pk.name) if self._is_persisted else None
        if value is None:
            value = self._stored_value(pk.name)
        return {pk.column: value}

    def _assign_primary_key(self) -> None:
        pk = self._schema().primary_key
        generated = ObjectId()
        try:
            setattr(self, pk.name, generated)
        except ValidationError:
            # String-typed keys get the hex form
            setattr(self, pk.name, str(generated))

    async def save(self, transaction: Optional["TransactionClient"] = None) -> "Model":
        """
        Validate and write this record.

        Inserts when the instance is not persisted yet, otherwise ``$set``s
        the dirty fields. A clean persisted instance dispatches no write;
        its hooks still run.

        Hooks:
            create: before_save, before_create, [insert], after_create, after_save
            update: before_save, before_update, [update], after_update, after_save

        A before hook returning False aborts: nothing is written and the
        instance is returned unchanged.

        Raises:
            ModelStateError: If the instance was deleted
            TransactionError: If the bound transaction has finished
        """
        if self._is_deleted:
            raise ModelStateError(f"Cannot save a deleted {type(self).__name__}")
        schema = self._schema()
        trx = self._resolve_transaction(transaction)
        operation = "update" if self._is_persisted else "create"

        if not await run_before(schema.hooks, operation, self):
            logger.debug(f"{schema.model_name} {operation} aborted by hook")
            return self

        if operation == "create":
            await self._insert(trx)
        else:
            await self._update(trx)

        await run_after(schema.hooks, operation, self)
        return self

    async def _insert(self, transaction: Optional["TransactionClient"]) -> None:
        schema = self._schema()
        now = utcnow()
        for descriptor in schema.fields.values():
            if descriptor.auto_now or (descriptor.auto_now_add and getattr(self, descriptor.name) is None):
                setattr(self, descriptor.name, now)
        if getattr(self, schema.primary_key.name) is None:
            self._assign_primary_key()

        document = self.to_document()
        connection = type(self)._get_connection(transaction)
        logger.debug(f"Inserting into '{schema.collection}': {document}")
        with wrap_driver_errors(connection.name):
            await connection.collection(schema.collection).insert_one(document, **session_kwargs(transaction))

        self._is_persisted = True
        self._mark_clean()

    async def _update(self, transaction: Optional["TransactionClient"]) -> None:
        schema = self._schema()
        changes = self.dirty
        if not changes:
            logger.debug(f"{schema.model_name} {self._pk_filter()} is clean; nothing to write")
            return

        partial = sorted(name for name in changes if name in self._partial_fields)
        if partial:
            raise ModelStateError(
                f"Fields {partial} of {schema.model_name} were loaded partially "
                f"(projection or filtered embed); save their elements individually instead"
            )
        if schema.primary_key.name in changes:
            raise ModelStateError(f"The primary key of a stored {schema.model_name} cannot change")

        now = utcnow()
        for descriptor in schema.fields.values():
            if descriptor.auto_now:
                setattr(self, descriptor.name, now)
        changes = self.dirty

        update = {"$set": {schema.fields[name].column: value for name, value in changes.items()}}
        criteria = self._pk_filter()
        connection = type(self)._get_connection(transaction)
        logger.debug(f"Updating '{schema.collection}' {criteria}: {update}")
        with wrap_driver_errors(connection.name):
            result = await connection.collection(schema.collection).update_one(
                criteria, update, **session_kwargs(transaction)
            )
        if result.matched_count == 0:
            raise NotFoundError(schema.model_name, criteria)
        self._mark_clean()

    async def delete(self, transaction: Optional["TransactionClient"] = None) -> bool:
        """
        Delete this record.

        Attributes are kept; the instance is flagged deleted and can no
        longer be saved.

        Returns:
            True if deleted, False if a before_delete hook aborted

        Raises:
            ModelStateError: If the instance is not persisted or already deleted
        """
        schema = self._schema()
        if self._is_deleted:
            raise ModelStateError(f"{schema.model_name} is already deleted")
        if not self._is_persisted:
            raise ModelStateError(f"Cannot delete an unsaved {schema.model_name}")
        trx = self._resolve_transaction(transaction)

        if not await run_before(schema.hooks, "delete", self):
            logger.debug(f"{schema.model_name} delete aborted by hook")
            return False

        criteria = self._pk_filter()
        connection = type(self)._get_connection(trx)
        with wrap_driver_errors(connection.name):
            await connection.collection(schema.collection).delete_one(criteria, **session_kwargs(trx))

        self._is_deleted = True
        self._is_persisted = False
        await run_after(schema.hooks, "delete", self)
        return True

    async def refresh(self) -> "Model":
        """
        Reload every field from the store, discarding local changes.

        Raises:
            NotFoundError: If the record no longer exists
        """
        schema = self._schema()
        if not self._is_persisted:
            raise ModelStateError(f"Cannot refresh an unsaved {schema.model_name}")
        trx = self._resolve_transaction(None)
        criteria = self._pk_filter()
        connection = type(self)._get_connection(trx)
        with wrap_driver_errors(connection.name):
            document = await connection.collection(schema.collection).find_one(criteria, **session_kwargs(trx))
        if document is None:
            raise NotFoundError(schema.model_name, criteria)

        fresh = type(self)._hydrate(document, transaction=trx)
        self.__dict__.update(fresh.__dict__)
        self._partial_fields = set()
        self._bind_embedded()
        self._mark_clean()
        return self

    # Embedded element persistence

    def _embedded_target(self, field: Optional[str]) -> tuple[ModelSchema, Any]:
        schema = self._schema()
        descriptor = schema.embedded.get(field or "")
        if descriptor is None:
            raise SchemaError(f"{schema.model_name} has no embedded field '{field}'")
        if self._is_deleted or not self._is_persisted:
            raise ModelStateError(
                f"Save the {schema.model_name} before writing its embedded '{field}' elements"
            )
        return schema, descriptor

    async def _write_embedded(self, field: str, element: EmbeddedModel) -> None:
        schema, descriptor = self._embedded_target(field)
        trx = self._resolve_transaction(None)
        connection = type(self)._get_connection(trx)
        collection = connection.collection(schema.collection)
        column = schema.column_for(field)
        criteria = self._pk_filter()
        document = element.to_document()
        session = session_kwargs(trx)

        with wrap_driver_errors(connection.name):
            if not descriptor.many:
                result = await collection.update_one(criteria, {"$set": {column: document}}, **session)
                self._original[field] = copy.deepcopy(document)
            elif document.get("_id") is not None:
                element_id = document["_id"]
                result = await collection.update_one(
                    {**criteria, f"{column}._id": element_id},
                    {"$set": {f"{column}.$": document}},
                    **session,
                )
                if result.matched_count == 0:
                    result = await collection.update_one(criteria, {"$push": {column: document}}, **session)
                self._snapshot_element(field, element_id, document)
            else:
                values = self._stored_value(field)
                result = await collection.update_one(criteria, {"$set": {column: values}}, **session)
                self._original[field] = copy.deepcopy(values)

        if result.matched_count == 0:
            raise NotFoundError(schema.model_name, criteria)
        element._sync_original()

    def _snapshot_element(self, field: str, element_id: Any, document: Optional[dict[str, Any]]) -> None:
        stored = self._original.get(field)
        if not isinstance(stored, list):
            stored = []
        kept = []
        replaced = False
        for item in stored:
            if isinstance(item, dict) and values_equal(item.get("_id"), element_id):
                if document is not None:
                    kept.append(copy.deepcopy(document))
                replaced = True
            else:
                kept.append(item)
        if document is not None and not replaced:
            kept.append(copy.deepcopy(document))
        self._original[field] = kept

    async def _remove_embedded(self, field: str, element: EmbeddedModel) -> None:
        schema, descriptor = self._embedded_target(field)
        trx = self._resolve_transaction(None)
        connection = type(self)._get_connection(trx)
        collection = connection.collection(schema.collection)
        column = schema.column_for(field)
        criteria = self._pk_filter()
        session = session_kwargs(trx)

        if not descriptor.many:
            with wrap_driver_errors(connection.name):
                result = await collection.update_one(criteria, {"$unset": {column: ""}}, **session)
            self.__dict__[field] = None
            self._original[field] = None
        else:
            current = self.__dict__.get(field) or []
            for index, item in enumerate(current):
                if item is element:
                    list.pop(current, index)
                    break
            element_id = element.id
            with wrap_driver_errors(connection.name):
                if element_id is not None:
                    result = await collection.update_one(
                        criteria, {"$pull": {column: {"_id": element_id}}}, **session
                    )
                    self._snapshot_element(field, element_id, None)
                else:
                    values = self._stored_value(field)
                    result = await collection.update_one(criteria, {"$set": {column: values}}, **session)
                    self._original[field] = copy.deepcopy(values)

        if result.matched_count == 0:
            raise NotFoundError(schema.model_name, criteria)
        element._owner = None
        element._field = None

    # Relations

    async def load(self, relation: str, callback: Optional[Any] = None) -> "Model":
        """
        Load a relation onto this instance.

        Example:
            >>> await user.load("posts", lambda q: q.where("published", True))
            >>> user.posts
            [Post(...), ...]
        """
        schema = self._schema()
        if relation not in schema.relations:
            raise SchemaError(f"{schema.model_name} has no relation '{relation}'")
        await schema.relations[relation].resolve([self], callback, self._resolve_transaction(None))
        return self

    def related(self, relation: str) -> RelatedQuery:
        """Query or create records related to this instance."""
        schema = self._schema()
        if relation not in schema.relations:
            raise SchemaError(f"{schema.model_name} has no relation '{relation}'")
        return schema.relations[relation].related_query(self)

    def _extra_json(self, wanted: Any) -> dict[str, Any]:
        return {name: json_value(value) for name, value in self._relations.items() if wanted(name)}
