"""
In-memory query builder over embedded documents.

Filters compile exactly like collection queries and are evaluated with the
same matcher the in-memory client uses, so a predicate selects the same
elements whether the data is embedded or stored in its own collection.
Nothing here performs I/O; every terminal method is synchronous.
"""

import math
from typing import Any, Callable, Iterable, Optional, Sequence

from docmachine.exceptions import InvalidQueryError
from docmachine.query.conditions import compile_expression, validate_field_path
from docmachine.query.filters import FilterBuilder
from docmachine.query.matching import matches, resolve_path, sort_documents, values_equal
from docmachine.query.paginator import Paginator


def _hashable(value: Any) -> Any:
    if isinstance(value, list):
        return tuple(_hashable(item) for item in value)
    if isinstance(value, dict):
        return tuple((key, _hashable(item)) for key, item in value.items())
    return value


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class EmbeddedQueryBuilder(FilterBuilder):
    """
    Filter, order, paginate and aggregate a loaded list of embedded documents.

    Example:
        >>> builder = post.comments.query()
        >>> builder.where("approved", True).where_like("author", "a%").order_by("-likes")
        >>> builder.first()
        >>> post.comments.query().where("likes", ">=", 3).aggregate("likes")
        {'count': 4, 'sum': 31, 'avg': 7.75, 'min': 3, 'max': 12}

    ``search`` and element ordering/pagination are evaluated in memory only;
    they are never pushed down to the server.
    """

    def __init__(self, items: Sequence[Any], target: Optional[type] = None, source: Optional[Any] = None):
        super().__init__()
        self._items = list(items)
        self._target = target
        self._source = source
        self._sort: list[tuple[str, int]] = []
        self._skip: Optional[int] = None
        self._limit: Optional[int] = None
        self._search: Optional[tuple[str, Optional[list[str]]]] = None

    def _column_mapper(self) -> Optional[Callable[[str], str]]:
        layout = getattr(self._target, "__layout__", None)
        return layout.column_for if layout is not None else None

    def _column(self, field: str) -> str:
        mapper = self._column_mapper()
        return mapper(field) if mapper is not None else field

    def create(self, **attributes: Any) -> Any:
        """
        Append a new element to the list this builder was made from.

        Like ``EmbeddedList.create`` nothing is written; the owner becomes
        dirty. The element is also visible to this builder's terminals.
        """
        if self._source is None:
            raise TypeError("EmbeddedQueryBuilder was not built from an embedded list")
        element = self._source.create(**attributes)
        self._items.append(element)
        return element

    # Ordering and windowing

    def order_by(self, field: str, direction: Any = "asc") -> "EmbeddedQueryBuilder":
        """Sort by ``field``; ``"-field"`` or ``direction="desc"`` sorts descending."""
        if field.startswith("-"):
            field, direction = field[1:], "desc"
        validate_field_path(field)
        if direction in ("asc", 1, "ascending"):
            self._sort.append((field, 1))
        elif direction in ("desc", -1, "descending"):
            self._sort.append((field, -1))
        else:
            raise InvalidQueryError(f"Invalid sort direction {direction!r}")
        return self

    def limit(self, count: int) -> "EmbeddedQueryBuilder":
        if isinstance(count, bool) or not isinstance(count, int) or count < 0:
            raise InvalidQueryError(f"limit() requires a non-negative integer, got {count!r}")
        self._limit = count
        return self

    def skip(self, count: int) -> "EmbeddedQueryBuilder":
        if isinstance(count, bool) or not isinstance(count, int) or count < 0:
            raise InvalidQueryError(f"skip() requires a non-negative integer, got {count!r}")
        self._skip = count
        return self

    offset = skip

    def for_page(self, page: int, per_page: int) -> "EmbeddedQueryBuilder":
        if page < 1 or per_page < 1:
            raise InvalidQueryError("for_page() requires page >= 1 and per_page >= 1")
        return self.skip((page - 1) * per_page).limit(per_page)

    def search(self, term: str, fields: Optional[Iterable[str]] = None) -> "EmbeddedQueryBuilder":
        """
        Case-insensitive substring match over ``fields``, or over every
        string field when no fields are given.
        """
        self._search = (term.lower(), list(fields) if fields is not None else None)
        return self

    def to_expression(self, variable: str = "$$item") -> dict[str, Any]:
        """
        The filter as an aggregation expression over ``variable``.

        Only the conditions compile; ``search``, ordering and windowing have
        no server-side form here.
        """
        return compile_expression(self._conditions, variable, self._column_mapper())

    # Evaluation

    def _document(self, item: Any) -> dict[str, Any]:
        to_document = getattr(item, "to_document", None)
        if callable(to_document):
            return to_document()
        if isinstance(item, dict):
            return item
        raise InvalidQueryError(f"Cannot query embedded value of type {type(item).__name__}")

    def _search_matches(self, document: dict[str, Any]) -> bool:
        if self._search is None:
            return True
        term, fields = self._search
        if fields is None:
            values = [value for value in document.values() if isinstance(value, str)]
        else:
            values = []
            for field in fields:
                values.extend(resolve_path(document, self._column(field)))
        return any(isinstance(value, str) and term in value.lower() for value in values)

    def _matching(self) -> list[Any]:
        query = self.to_filter()
        pairs = []
        for item in self._items:
            document = self._document(item)
            if matches(document, query) and self._search_matches(document):
                pairs.append((document, item))
        if self._sort:
            by_identity = {id(document): item for document, item in pairs}
            sort = [(self._column(field), direction) for field, direction in self._sort]
            ordered = sort_documents([document for document, _ in pairs], sort)
            return [by_identity[id(document)] for document in ordered]
        return [item for _, item in pairs]

    def _window(self, items: list[Any]) -> list[Any]:
        start = self._skip or 0
        end = start + self._limit if self._limit is not None else None
        return items[start:end]

    def _value(self, item: Any, field: str) -> Any:
        if "." not in field and not isinstance(item, dict):
            return getattr(item, field, None)
        values = resolve_path(self._document(item), self._column(field))
        return values[0] if len(values) == 1 else (values or None)

    # Terminals

    def get(self) -> list[Any]:
        """Matching elements after ordering, skip and limit."""
        return self._window(self._matching())

    all = get
    fetch = get

    def first(self) -> Optional[Any]:
        items = self._window(self._matching())
        return items[0] if items else None

    def count(self) -> int:
        """Number of matching elements (skip/limit ignored)."""
        return len(self._matching())

    def exists(self) -> bool:
        return bool(self._matching())

    def paginate(self, page: int = 1, per_page: int = 15) -> Paginator:
        if page < 1 or per_page < 1:
            raise InvalidQueryError("paginate() requires page >= 1 and per_page >= 1")
        matching = self._matching()
        start = (page - 1) * per_page
        return Paginator(matching[start:start + per_page], total=len(matching), page=page, per_page=per_page)

    def pluck(self, field: str) -> list[Any]:
        return [self._value(item, field) for item in self.get()]

    def ids(self) -> list[Any]:
        return self.pluck("id")

    def distinct(self, field: str) -> list[Any]:
        """Distinct values of ``field`` among matching elements, in first-seen order."""
        seen: list[Any] = []
        for item in self._matching():
            value = self._value(item, field)
            for candidate in value if isinstance(value, list) else [value]:
                if not any(values_equal(candidate, existing) for existing in seen):
                    seen.append(candidate)
        return seen

    def group_by(self, field: str) -> dict[Any, list[Any]]:
        """Matching elements grouped by the value of ``field``."""
        groups: dict[Any, list[Any]] = {}
        for item in self._window(self._matching()):
            groups.setdefault(_hashable(self._value(item, field)), []).append(item)
        return groups

    def aggregate(self, field: str) -> dict[str, Any]:
        """
        Numeric summary of ``field`` over the matching elements.

        Non-numeric, null and missing values are ignored.
        """
        numbers = [
            value for value in (self._value(item, field) for item in self._window(self._matching()))
            if _is_number(value)
        ]
        if not numbers:
            return {"count": 0, "sum": 0, "avg": None, "min": None, "max": None}
        total = math.fsum(numbers) if any(isinstance(n, float) for n in numbers) else sum(numbers)
        return {
            "count": len(numbers),
            "sum": total,
            "avg": total / len(numbers),
            "min": min(numbers),
            "max": max(numbers),
        }

    def sum(self, field: str) -> Any:
        return self.aggregate(field)["sum"]

    def avg(self, field: str) -> Optional[float]:
        return self.aggregate(field)["avg"]

    def min(self, field: str) -> Any:
        return self.aggregate(field)["min"]

    def max(self, field: str) -> Any:
        return self.aggregate(field)["max"]
