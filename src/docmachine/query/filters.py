"""
Fluent filter DSL shared by the collection query builder and the embedded
sub-builder.

Every ``where`` form builds :class:`~docmachine.query.conditions.Condition`
leaves or :class:`~docmachine.query.conditions.ConditionGroup` nodes:

    >>> q.where("status", "active")                 # equality
    >>> q.where("age", ">=", 18)                    # operator (symbol alphabet)
    >>> q.where("age", "gte", 18)                   # operator (keyword alphabet)
    >>> q.where(age__gte=18, status="active")       # lookups, ANDed
    >>> q.where(lambda g: g.where("a", 1).or_where("b", 2))   # nested group
"""

import copy
from typing import Any, Callable, Iterable, Optional, Sequence, Union

from docmachine.exceptions import InvalidQueryError
from docmachine.query.conditions import (
    AND,
    OR,
    Condition,
    ConditionGroup,
    Node,
    compile_filter,
    parse_field_lookup,
)

ConditionSpec = Union[Condition, ConditionGroup, dict, Sequence[Any]]


class FilterBuilder:
    """Accumulates conditions; subclasses decide how they are executed."""

    def __init__(self) -> None:
        self._conditions: list[Node] = []

    def _column_mapper(self) -> Optional[Callable[[str], str]]:
        """Maps logical field paths onto stored paths (identity by default)."""
        return None

    def _new_group(self) -> "FilterBuilder":
        return FilterBuilder()

    @property
    def conditions(self) -> list[Node]:
        return list(self._conditions)

    def _add(self, node: Node) -> "FilterBuilder":
        self._conditions.append(node)
        return self

    def _build(self, connector: str, negated: bool, args: tuple[Any, ...], kwargs: dict[str, Any]) -> Node:
        if args and kwargs:
            raise InvalidQueryError("where() accepts either positional arguments or lookups, not both")

        if len(args) == 1:
            target = args[0]
            if callable(target) and not isinstance(target, (str, dict)):
                group = self._new_group()
                target(group)
                return ConditionGroup(group.conditions, connector, negated)
            if isinstance(target, dict):
                kwargs = target
            elif isinstance(target, (Condition, ConditionGroup)):
                target = copy.deepcopy(target)
                target.connector = connector
                target.negated = target.negated != negated
                return target
            else:
                raise InvalidQueryError(f"where() cannot interpret argument {target!r}")
        elif len(args) == 2:
            return Condition(args[0], "eq", args[1], connector, negated)
        elif len(args) == 3:
            return Condition(args[0], args[1], args[2], connector, negated)
        elif len(args) > 3:
            raise InvalidQueryError(f"where() takes at most 3 positional arguments, got {len(args)}")

        if not kwargs:
            raise InvalidQueryError("where() requires a condition")
        leaves: list[Node] = []
        for lookup, value in kwargs.items():
            field, operator = parse_field_lookup(lookup)
            if operator == "null":
                operator = "null" if value else "not_null"
            leaves.append(Condition(field, operator, value))
        if len(leaves) == 1:
            leaf = leaves[0]
            leaf.connector = connector
            leaf.negated = negated
            return leaf
        return ConditionGroup(leaves, connector, negated)

    # where / or_where / where_not / or_where_not

    def where(self, *args: Any, **kwargs: Any) -> Any:
        """
        Add an AND condition.

        Accepts ``(field, value)``, ``(field, operator, value)``, a callback
        receiving a nested group builder, a dict or ``field__lookup=value``
        keyword arguments.
        """
        return self._add(self._build(AND, False, args, kwargs))

    def or_where(self, *args: Any, **kwargs: Any) -> Any:
        """Add an OR condition. AND binds tighter than OR."""
        return self._add(self._build(OR, False, args, kwargs))

    def where_not(self, *args: Any, **kwargs: Any) -> Any:
        """Add a negated AND condition."""
        return self._add(self._build(AND, True, args, kwargs))

    def or_where_not(self, *args: Any, **kwargs: Any) -> Any:
        """Add a negated OR condition."""
        return self._add(self._build(OR, True, args, kwargs))

    # Shorthands

    def where_in(self, field: str, values: Iterable[Any]) -> Any:
        return self._add(Condition(field, "in", _as_list(values)))

    def or_where_in(self, field: str, values: Iterable[Any]) -> Any:
        return self._add(Condition(field, "in", _as_list(values), OR))

    def where_not_in(self, field: str, values: Iterable[Any]) -> Any:
        return self._add(Condition(field, "nin", _as_list(values)))

    def or_where_not_in(self, field: str, values: Iterable[Any]) -> Any:
        return self._add(Condition(field, "nin", _as_list(values), OR))

    def where_between(self, field: str, bounds: Sequence[Any]) -> Any:
        """Inclusive range: ``low <= field <= high``."""
        return self._add(Condition(field, "between", bounds))

    def or_where_between(self, field: str, bounds: Sequence[Any]) -> Any:
        return self._add(Condition(field, "between", bounds, OR))

    def where_not_between(self, field: str, bounds: Sequence[Any]) -> Any:
        """``field < low`` or ``field > high``."""
        return self._add(Condition(field, "not_between", bounds))

    def or_where_not_between(self, field: str, bounds: Sequence[Any]) -> Any:
        return self._add(Condition(field, "not_between", bounds, OR))

    def where_null(self, field: str) -> Any:
        """Matches documents where the field is null or absent."""
        return self._add(Condition(field, "null"))

    def or_where_null(self, field: str) -> Any:
        return self._add(Condition(field, "null", connector=OR))

    def where_not_null(self, field: str) -> Any:
        """Matches documents where the field is present and not null."""
        return self._add(Condition(field, "not_null"))

    def or_where_not_null(self, field: str) -> Any:
        return self._add(Condition(field, "not_null", connector=OR))

    def where_exists(self, field: str) -> Any:
        """Matches documents where the field is present, even if null."""
        return self._add(Condition(field, "exists", True))

    def or_where_exists(self, field: str) -> Any:
        return self._add(Condition(field, "exists", True, OR))

    def where_not_exists(self, field: str) -> Any:
        return self._add(Condition(field, "exists", False))

    def or_where_not_exists(self, field: str) -> Any:
        return self._add(Condition(field, "exists", False, OR))

    def where_like(self, field: str, pattern: str) -> Any:
        """SQL-style pattern where ``%`` matches any run of characters."""
        return self._add(Condition(field, "like", pattern))

    def or_where_like(self, field: str, pattern: str) -> Any:
        return self._add(Condition(field, "like", pattern, OR))

    def where_ilike(self, field: str, pattern: str) -> Any:
        """Case-insensitive :meth:`where_like`."""
        return self._add(Condition(field, "ilike", pattern))

    def or_where_ilike(self, field: str, pattern: str) -> Any:
        return self._add(Condition(field, "ilike", pattern, OR))

    def where_regex(self, field: str, pattern: Any) -> Any:
        """Regular expression match (string or compiled pattern)."""
        return self._add(Condition(field, "regex", pattern))

    def where_array_contains(self, field: str, value: Any) -> Any:
        """Matches when the array field holds ``value``."""
        return self._add(Condition(field, "contains", value))

    def where_all(self, conditions: Iterable[ConditionSpec]) -> Any:
        """
        AND-combine a list of conditions as one group.

        Each entry is a ``(field, value)`` / ``(field, operator, value)``
        sequence, a lookup dict or a Condition.

        Example:
            >>> q.where_all([("status", "active"), ("age", ">", 18)])
        """
        return self._add(ConditionGroup(self._nodes(conditions, AND), AND))

    def where_any(self, conditions: Iterable[ConditionSpec]) -> Any:
        """OR-combine a list of conditions as one group."""
        return self._add(ConditionGroup(self._nodes(conditions, OR), AND))

    def _nodes(self, conditions: Iterable[ConditionSpec], connector: str) -> list[Node]:
        nodes: list[Node] = []
        for spec in conditions:
            if isinstance(spec, (Condition, ConditionGroup)):
                node = copy.deepcopy(spec)
            elif isinstance(spec, dict):
                node = self._build(AND, False, (), dict(spec))
            elif isinstance(spec, (list, tuple)):
                node = self._build(AND, False, tuple(spec), {})
            else:
                raise InvalidQueryError(f"Cannot interpret condition {spec!r}")
            node.connector = connector
            nodes.append(node)
        return nodes

    def to_filter(self) -> dict[str, Any]:
        """The compiled MongoDB filter document."""
        return compile_filter(self._conditions, self._column_mapper())


def _as_list(values: Iterable[Any]) -> list[Any]:
    if isinstance(values, (str, bytes, dict)):
        raise InvalidQueryError(f"Expected a list of values, got {type(values).__name__}")
    try:
        return list(values)
    except TypeError:
        raise InvalidQueryError(f"Expected a list of values, got {type(values).__name__}") from None
