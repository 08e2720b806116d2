"""
Query builder for docmachine.

Provides a fluent interface for building and executing MongoDB queries
against a model's collection.
"""

import asyncio
import copy
import logging
from typing import Any, Callable, Optional, TYPE_CHECKING

from docmachine.embedded.builder import EmbeddedQueryBuilder
from docmachine.exceptions import (
    InvalidQueryError,
    MultipleResultsError,
    NotFoundError,
    SchemaError,
    wrap_driver_errors,
)
from docmachine.models.hooks import run_after, run_before
from docmachine.query.conditions import Node, compile_filter, to_storage_value, validate_field_path
from docmachine.query.filters import FilterBuilder
from docmachine.query.matching import resolve_path
from docmachine.query.paginator import Paginator

if TYPE_CHECKING:
    from docmachine.models.base import Model
    from docmachine.transaction import TransactionClient

logger = logging.getLogger(__name__)

_DIRECTIONS = {"asc": 1, "ascending": 1, 1: 1, "desc": -1, "descending": -1, -1: -1}


def _check_count(name: str, value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidQueryError(f"{name}() requires a non-negative integer, got {value!r}")
    return value


class QueryBuilder(FilterBuilder):
    """
    Fluent query builder for a model's collection.

    Builder methods mutate and return the builder; terminal methods are
    coroutines that run against the store. Terminals work on a copy, so a
    builder can be executed more than once.

    Example:
        >>> users = await (
        ...     User.query()
        ...     .where("age", ">=", 18)
        ...     .or_where("role", "admin")
        ...     .order_by("-created_at")
        ...     .limit(10)
        ...     .all()
        ... )
        >>> page = await User.query().where(status="active").paginate(2, 10)
        >>> await User.query().where("status", "banned").delete()
        3
    """

    def __init__(self, model_class: type["Model"]):
        super().__init__()
        self.model_class = model_class
        self._sort: list[tuple[str, int]] = []
        self._skip: Optional[int] = None
        self._limit: Optional[int] = None
        self._select: list[str] = []
        self._deselect: list[str] = []
        self._required: list[str] = []
        self._group_by: list[str] = []
        self._having: list[Node] = []
        self._loads: list[tuple[str, Optional[Callable[..., Any]]]] = []
        self._embeds: list[tuple[str, Optional[Callable[..., Any]], bool]] = []
        self._transaction: Optional["TransactionClient"] = None

    def __repr__(self) -> str:
        return f"<QueryBuilder {self.model_class.__name__} filter={self.to_filter()!r}>"

    @property
    def schema(self):
        return self.model_class._schema()

    def _column_mapper(self) -> Callable[[str], str]:
        return self.schema.column_for

    def _check_field(self, field: str) -> str:
        validate_field_path(field)
        return field

    # Ordering, windowing and projection

    def order_by(self, field: str, direction: Any = "asc") -> "QueryBuilder":
        """
        Add a sort key. Call repeatedly for secondary keys.

        Example:
            >>> User.query().order_by("last_name").order_by("age", "desc")
            >>> User.query().order_by("-age")
        """
        if field.startswith("-"):
            field, direction = field[1:], "desc"
        self._check_field(field)
        if direction not in _DIRECTIONS:
            raise InvalidQueryError(f"Invalid sort direction {direction!r}")
        self._sort.append((field, _DIRECTIONS[direction]))
        return self

    def limit(self, count: int) -> "QueryBuilder":
        self._limit = _check_count("limit", count)
        return self

    def skip(self, count: int) -> "QueryBuilder":
        self._skip = _check_count("skip", count)
        return self

    offset = skip

    def for_page(self, page: int, per_page: int) -> "QueryBuilder":
        """Window the results to one page (1-based)."""
        if page < 1 or per_page < 1:
            raise InvalidQueryError("for_page() requires page >= 1 and per_page >= 1")
        return self.skip((page - 1) * per_page).limit(per_page)

    def select(self, *fields: str) -> "QueryBuilder":
        """
        Only load the given fields (the primary key is always loaded).

        Instances loaded this way are partial: the missing fields cannot be
        saved back.
        """
        if self._deselect:
            raise InvalidQueryError("select() and deselect() cannot be combined")
        self._select.extend(self._check_field(field) for field in fields)
        return self

    def deselect(self, *fields: str) -> "QueryBuilder":
        """Load every field except the given ones."""
        if self._select:
            raise InvalidQueryError("select() and deselect() cannot be combined")
        self._deselect.extend(self._check_field(field) for field in fields)
        return self

    def group_by(self, *fields: str) -> "QueryBuilder":
        """
        Group matching records; ``all()`` then returns plain dicts holding the
        group fields and a ``count``.

        Example:
            >>> await User.query().group_by("role").having("count", ">", 1).all()
            [{'role': 'member', 'count': 25}, {'role': 'admin', 'count': 5}]
        """
        self._group_by.extend(self._check_field(field) for field in fields)
        return self

    def having(self, *args: Any, **kwargs: Any) -> "QueryBuilder":
        """Filter groups by their fields or ``count`` (same forms as ``where``)."""
        group = FilterBuilder()
        group.where(*args, **kwargs)
        self._having.extend(group.conditions)
        return self

    def load(self, relation: str, callback: Optional[Callable[..., Any]] = None) -> "QueryBuilder":
        """
        Eager-load a relation with one batched query for all results.

        Example:
            >>> users = await User.query().load("posts", lambda q: q.where("published", True)).all()
        """
        if relation not in self.schema.relations:
            raise SchemaError(f"{self.model_class.__name__} has no relation '{relation}'")
        self._loads.append((relation, callback))
        return self

    def embed(
        self,
        field: str,
        callback: Optional[Callable[[EmbeddedQueryBuilder], Any]] = None,
        push_down: bool = False,
    ) -> "QueryBuilder":
        """
        Narrow an embedded field of every result with a sub-query.

        The callback receives an :class:`EmbeddedQueryBuilder`. With
        ``push_down=True`` its conditions also run on the server inside an
        aggregation ``$filter`` so unmatched elements are never transferred;
        ordering, windowing and ``search`` still run in memory. Narrowed
        fields are partial and cannot be saved wholesale.

        Example:
            >>> posts = await Post.query().embed(
            ...     "comments", lambda c: c.where("approved", True).order_by("-likes").limit(3)
            ... ).all()
        """
        if field not in self.schema.embedded:
            raise SchemaError(f"{self.model_class.__name__} has no embedded field '{field}'")
        self._embeds.append((field, callback, push_down))
        return self

    def use_transaction(self, transaction: Optional["TransactionClient"]) -> "QueryBuilder":
        """Run this query in a transaction (None detaches it)."""
        if transaction is not None:
            transaction.ensure_active()
        self._transaction = transaction
        return self

    def clone(self) -> "QueryBuilder":
        """Independent copy of this builder."""
        clone = copy.copy(self)
        clone._conditions = copy.deepcopy(self._conditions)
        clone._having = copy.deepcopy(self._having)
        clone._sort = list(self._sort)
        clone._select = list(self._select)
        clone._deselect = list(self._deselect)
        clone._required = list(self._required)
        clone._group_by = list(self._group_by)
        clone._loads = list(self._loads)
        clone._embeds = list(self._embeds)
        return clone

    # Compilation

    def _require(self, *fields: str) -> "QueryBuilder":
        """Keep fields in the projection whatever select()/deselect() say."""
        self._required.extend(field for field in fields if field not in self._required)
        return self

    def _projection(self) -> Optional[dict[str, int]]:
        column_for = self.schema.column_for
        # Relation keys are needed to match eager-loaded records.
        required = self._required + [self.schema.relations[name].local_key for name, _ in self._loads]
        if self._select:
            fields = self._select + [field for field in required if field not in self._select]
            return {column_for(field): 1 for field in fields}
        if self._deselect:
            return {column_for(field): 0 for field in self._deselect if field not in required} or None
        return None

    def _sort_spec(self) -> list[tuple[str, int]]:
        column_for = self.schema.column_for
        return [(column_for(field), direction) for field, direction in self._sort]

    def to_find_options(self) -> dict[str, Any]:
        """
        Keyword arguments for the driver's ``find()``.

        Example:
            >>> User.query().order_by("-age").skip(10).limit(5).to_find_options()
            {'sort': [('age', -1)], 'skip': 10, 'limit': 5}
        """
        options: dict[str, Any] = {}
        if self._sort:
            options["sort"] = self._sort_spec()
        if self._skip:
            options["skip"] = self._skip
        if self._limit is not None:
            options["limit"] = self._limit
        projection = self._projection()
        if projection:
            options["projection"] = projection
        return options

    # Execution helpers

    def _context(self) -> tuple[str, Any, dict[str, Any]]:
        transaction = self._transaction
        connection = self.model_class._get_connection(transaction)
        if transaction is not None:
            transaction.ensure_active()
        collection = connection.collection(self.schema.collection)
        session = transaction.session_kwargs() if transaction is not None else {}
        return connection.name, collection, session

    def _pushed_down(self) -> list[tuple[str, Optional[Callable[..., Any]]]]:
        embedded = self.schema.embedded
        return [
            (field, callback)
            for field, callback, push_down in self._embeds
            if push_down and embedded[field].many
        ]

    async def _fetch_documents(self) -> list[dict[str, Any]]:
        if self._limit == 0:
            return []
        connection_name, collection, session = self._context()
        filter_doc = self.to_filter()

        pushed = self._pushed_down()
        if pushed:
            pipeline = self._pushdown_pipeline(filter_doc, pushed)
            logger.debug(f"aggregate '{self.schema.collection}': {pipeline}")
            with wrap_driver_errors(connection_name):
                return await collection.aggregate(pipeline, **session).to_list(length=None)

        options = self.to_find_options()
        logger.debug(f"find '{self.schema.collection}': filter={filter_doc} options={options}")
        with wrap_driver_errors(connection_name):
            return await collection.find(filter_doc, **options, **session).to_list(length=None)

    def _pushdown_pipeline(
        self,
        filter_doc: dict[str, Any],
        pushed: list[tuple[str, Optional[Callable[..., Any]]]],
    ) -> list[dict[str, Any]]:
        schema = self.schema
        pipeline: list[dict[str, Any]] = []
        if filter_doc:
            pipeline.append({"$match": filter_doc})

        narrowed: dict[str, Any] = {}
        for field, callback in pushed:
            sub = EmbeddedQueryBuilder([], schema.embedded[field].target)
            if callback is not None:
                callback(sub)
            column = schema.column_for(field)
            narrowed[column] = {
                "$filter": {
                    "input": {"$ifNull": [f"${column}", []]},
                    "as": "item",
                    "cond": sub.to_expression("$$item"),
                }
            }
        pipeline.append({"$addFields": narrowed})

        if self._sort:
            pipeline.append({"$sort": dict(self._sort_spec())})
        if self._skip:
            pipeline.append({"$skip": self._skip})
        if self._limit is not None:
            pipeline.append({"$limit": self._limit})
        projection = self._projection()
        if projection:
            pipeline.append({"$project": projection})
        return pipeline

    def _apply_embeds(self, models: list["Model"]) -> None:
        embedded = self.schema.embedded
        for field, callback, _ in self._embeds:
            descriptor = embedded[field]
            for model in models:
                value = model.__dict__.get(field)
                items = list(value or []) if descriptor.many else ([] if value is None else [value])
                sub = EmbeddedQueryBuilder(items, descriptor.target)
                if callback is not None:
                    callback(sub)
                selected = sub.get()
                if descriptor.many:
                    model._attach_embedded_subset(field, selected)
                else:
                    model._attach_embedded_subset(field, selected[0] if selected else None)

    async def _fetch_models(self) -> list["Model"]:
        documents = await self._fetch_documents()
        partial = bool(self._select or self._deselect)
        models = [
            self.model_class._hydrate(document, partial=partial, transaction=self._transaction)
            for document in documents
        ]
        if self._embeds:
            self._apply_embeds(models)
        for relation, callback in self._loads:
            await self.schema.relations[relation].resolve(models, callback, self._transaction)
        return models

    # Terminals

    async def all(self) -> list[Any]:
        """
        Execute the query and return every matching model.

        Runs ``before_fetch``/``after_fetch`` hooks. Grouped queries return
        plain dicts instead.
        """
        if self._group_by:
            return await self._grouped()
        query = self.clone()
        hooks = self.schema.hooks
        if not await run_before(hooks, "fetch", self.model_class, query):
            return []
        models = await query._fetch_models()
        await run_after(hooks, "fetch", self.model_class, models)
        return models

    fetch = all

    async def first(self) -> Optional["Model"]:
        """First matching model or None. Runs ``before_find``/``after_find`` hooks."""
        query = self.clone()
        hooks = self.schema.hooks
        if not await run_before(hooks, "find", self.model_class, query):
            return None
        query._limit = 1
        models = await query._fetch_models()
        model = models[0] if models else None
        if model is not None:
            await run_after(hooks, "find", model)
        return model

    async def first_or_fail(self) -> "Model":
        """
        Raises:
            NotFoundError: If nothing matches
        """
        model = await self.first()
        if model is None:
            raise NotFoundError(self.model_class.__name__, self.to_filter())
        return model

    async def sole(self) -> "Model":
        """
        The only matching model.

        Raises:
            NotFoundError: If nothing matches
            MultipleResultsError: If more than one record matches
        """
        query = self.clone()
        query._limit = 2
        models = await query._fetch_models()
        if not models:
            raise NotFoundError(self.model_class.__name__, self.to_filter())
        if len(models) > 1:
            raise MultipleResultsError(f"More than one {self.model_class.__name__} matches {self.to_filter()!r}")
        return models[0]

    async def find(self, id: Any) -> Optional["Model"]:
        """Matching model with the given primary key, or None."""
        pk = self.schema.primary_key.name
        return await self.clone().where(pk, self.model_class.coerce_id(id)).first()

    async def find_or_fail(self, id: Any) -> "Model":
        """
        Raises:
            NotFoundError: If no record has that key
        """
        model = await self.find(id)
        if model is None:
            raise NotFoundError(self.model_class.__name__, {self.schema.primary_key.name: id})
        return model

    async def count(self) -> int:
        """Number of matching records; skip and limit are ignored."""
        connection_name, collection, session = self._context()
        filter_doc = self.to_filter()
        logger.debug(f"count '{self.schema.collection}': {filter_doc}")
        with wrap_driver_errors(connection_name):
            return await collection.count_documents(filter_doc, **session)

    async def exists(self) -> bool:
        connection_name, collection, session = self._context()
        with wrap_driver_errors(connection_name):
            return await collection.count_documents(self.to_filter(), limit=1, **session) > 0

    async def paginate(self, page: int = 1, per_page: int = 15) -> Paginator:
        """
        One page of models plus pagination metadata.

        The count and the page query run concurrently unless the builder is
        bound to a transaction (one session cannot run operations in
        parallel).
        """
        if page < 1 or per_page < 1:
            raise InvalidQueryError("paginate() requires page >= 1 and per_page >= 1")
        query = self.clone()
        hooks = self.schema.hooks
        if not await run_before(hooks, "fetch", self.model_class, query):
            return Paginator([], total=0, page=page, per_page=per_page)

        window = query.clone().for_page(page, per_page)
        if self._transaction is None:
            total, models = await asyncio.gather(query.count(), window._fetch_models())
        else:
            total = await query.count()
            models = await window._fetch_models()
        await run_after(hooks, "fetch", self.model_class, models)
        return Paginator(models, total=total, page=page, per_page=per_page)

    def _update_document(self, changes: dict[str, Any]) -> dict[str, Any]:
        if not changes:
            raise InvalidQueryError("update() requires at least one change")
        column_for = self.schema.column_for
        operators = [key.startswith("$") for key in changes]
        if all(operators):
            return {
                operator: {column_for(key): to_storage_value(value) for key, value in arguments.items()}
                for operator, arguments in changes.items()
            }
        if any(operators):
            raise InvalidQueryError("update() cannot mix update operators and plain fields")
        return {"$set": {column_for(key): to_storage_value(value) for key, value in changes.items()}}

    async def update(self, changes: dict[str, Any]) -> int:
        """
        Update every matching record without loading it.

        Plain fields are ``$set``; update-operator documents such as
        ``{"$inc": {"balance": 10}}`` pass through with field names mapped.
        Model hooks do not run.

        Returns:
            The number of matched records
        """
        update = self._update_document(changes)
        connection_name, collection, session = self._context()
        filter_doc = self.to_filter()
        logger.debug(f"update_many '{self.schema.collection}': filter={filter_doc} update={update}")
        with wrap_driver_errors(connection_name):
            result = await collection.update_many(filter_doc, update, **session)
        return result.matched_count

    async def delete(self) -> int:
        """
        Delete every matching record without loading it. Model hooks do not run.

        Returns:
            The number of deleted records
        """
        connection_name, collection, session = self._context()
        filter_doc = self.to_filter()
        logger.debug(f"delete_many '{self.schema.collection}': {filter_doc}")
        with wrap_driver_errors(connection_name):
            result = await collection.delete_many(filter_doc, **session)
        return result.deleted_count

    async def pluck(self, field: str) -> list[Any]:
        """Values of one field across the matching records."""
        self._check_field(field)
        query = self.clone()
        query._select = [field]
        query._deselect = []
        documents = await query._fetch_documents()
        if "." not in field and field in self.schema.fields:
            return [self.model_class._values_from_document(document).get(field) for document in documents]
        column = self.schema.column_for(field)
        values = []
        for document in documents:
            found = resolve_path(document, column)
            values.append(found[0] if len(found) == 1 else (found or None))
        return values

    async def ids(self) -> list[Any]:
        return await self.pluck(self.schema.primary_key.name)

    async def distinct(self, field: str) -> list[Any]:
        """Distinct stored values of ``field`` among matching records."""
        self._check_field(field)
        connection_name, collection, session = self._context()
        with wrap_driver_errors(connection_name):
            return await collection.distinct(self.schema.column_for(field), self.to_filter(), **session)

    async def aggregate(self, pipeline: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """
        Run an aggregation pipeline over the matching records.

        The builder's filter is prepended as a ``$match`` stage.
        """
        stages = list(pipeline)
        filter_doc = self.to_filter()
        if filter_doc:
            stages.insert(0, {"$match": filter_doc})
        connection_name, collection, session = self._context()
        logger.debug(f"aggregate '{self.schema.collection}': {stages}")
        with wrap_driver_errors(connection_name):
            return await collection.aggregate(stages, **session).to_list(length=None)

    async def _accumulate(self, accumulator: str, field: str) -> Any:
        self._check_field(field)
        column = self.schema.column_for(field)
        rows = await self.aggregate([{"$group": {"_id": None, "value": {accumulator: f"${column}"}}}])
        return rows[0]["value"] if rows else None

    async def sum(self, field: str) -> Any:
        value = await self._accumulate("$sum", field)
        return 0 if value is None else value

    async def avg(self, field: str) -> Optional[float]:
        return await self._accumulate("$avg", field)

    async def min(self, field: str) -> Any:
        return await self._accumulate("$min", field)

    async def max(self, field: str) -> Any:
        return await self._accumulate("$max", field)

    async def _grouped(self) -> list[dict[str, Any]]:
        column_for = self.schema.column_for
        keys = {field: field.replace(".", "_") for field in self._group_by}
        stages: list[dict[str, Any]] = [
            {"$group": {
                "_id": {key: f"${column_for(field)}" for field, key in keys.items()},
                "count": {"$sum": 1},
            }},
            {"$project": {"_id": 0, "count": 1, **{key: f"$_id.{key}" for key in keys.values()}}},
        ]
        if self._having:
            stages.append({"$match": compile_filter(self._having)})
        if self._sort:
            stages.append({"$sort": {field.replace(".", "_"): direction for field, direction in self._sort}})
        if self._skip:
            stages.append({"$skip": self._skip})
        if self._limit is not None:
            stages.append({"$limit": self._limit})
        return await self.aggregate(stages)
