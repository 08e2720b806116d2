"""
Condition AST and compiler.

The fluent ``where`` family builds a small tree of :class:`Condition` leaves
and :class:`ConditionGroup` nodes. The tree compiles either to a MongoDB
filter document (:func:`compile_filter`) or to an aggregation expression over
an array element (:func:`compile_expression`, used to push embedded filters
down to the server).

Both the mathematical symbol alphabet and the MongoDB keyword alphabet are
accepted and resolve to the same canonical operator:

    >>> compile_filter([Condition("age", ">=", 18)]) == compile_filter([Condition("age", "gte", 18)])
    True
"""

import copy
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Optional, Union

from docmachine.exceptions import InvalidQueryError

AND = "and"
OR = "or"

# Alias -> canonical operator
OPERATORS: dict[str, str] = {
    "=": "eq",
    "==": "eq",
    "eq": "eq",
    "!=": "ne",
    "<>": "ne",
    "ne": "ne",
    ">": "gt",
    "gt": "gt",
    ">=": "gte",
    "gte": "gte",
    "<": "lt",
    "lt": "lt",
    "<=": "lte",
    "lte": "lte",
    "in": "in",
    "nin": "nin",
    "not in": "nin",
    "not_in": "nin",
    "exists": "exists",
    "regex": "regex",
    "like": "like",
    "ilike": "ilike",
    "between": "between",
    "not between": "not_between",
    "not_between": "not_between",
    "null": "null",
    "not null": "not_null",
    "not_null": "not_null",
    "contains": "contains",
    "all": "all",
    "size": "size",
}

# Django-style lookup suffixes accepted by where(age__gte=18)
LOOKUPS: dict[str, str] = {
    "eq": "eq",
    "ne": "ne",
    "gt": "gt",
    "gte": "gte",
    "lt": "lt",
    "lte": "lte",
    "in": "in",
    "nin": "nin",
    "exists": "exists",
    "regex": "regex",
    "like": "like",
    "ilike": "ilike",
    "contains": "contains",
    "isnull": "null",
}

_COMPARISONS = {"gt": "$gt", "gte": "$gte", "lt": "$lt", "lte": "$lte"}

_REGEX_FLAGS = ((re.IGNORECASE, "i"), (re.MULTILINE, "m"), (re.DOTALL, "s"), (re.VERBOSE, "x"))


@dataclass
class Condition:
    """A single ``field <operator> value`` predicate."""

    field: str
    operator: str
    value: Any = None
    connector: str = AND
    negated: bool = False

    def __post_init__(self) -> None:
        self.operator = resolve_operator(self.operator)
        validate_field_path(self.field)
        self.value = normalize_value(self.operator, self.value, self.field)


@dataclass
class ConditionGroup:
    """A parenthesised group of conditions joined by their connectors."""

    children: list[Union[Condition, "ConditionGroup"]] = field(default_factory=list)
    connector: str = AND
    negated: bool = False


Node = Union[Condition, ConditionGroup]
ColumnMapper = Callable[[str], str]


def resolve_operator(operator: str) -> str:
    """
    Map an operator alias onto its canonical name.

    Raises:
        InvalidQueryError: If the operator is not supported
    """
    if not isinstance(operator, str):
        raise InvalidQueryError(f"Operator must be a string, got {type(operator).__name__}")
    canonical = OPERATORS.get(operator.strip().lower())
    if canonical is None:
        supported = ", ".join(sorted(OPERATORS))
        raise InvalidQueryError(f"Unsupported operator '{operator}'. Supported operators: {supported}")
    return canonical


def validate_field_path(path: str) -> None:
    """
    Reject malformed dotted field paths before they reach the driver.

    Raises:
        InvalidQueryError: For empty paths, ``$``-prefixed segments or empty segments
    """
    if not isinstance(path, str) or not path.strip():
        raise InvalidQueryError(f"Field path must be a non-empty string, got {path!r}")
    if "\x00" in path:
        raise InvalidQueryError(f"Field path {path!r} contains a null character")
    for segment in path.split("."):
        if not segment or segment != segment.strip():
            raise InvalidQueryError(f"Field path {path!r} contains an empty or padded segment")
        if segment.startswith("$"):
            raise InvalidQueryError(f"Field path {path!r} may not contain operator segment '{segment}'")


def parse_field_lookup(field_lookup: str) -> tuple[str, str]:
    """
    Parse a field lookup string into field name and operator.

    Example:
        >>> parse_field_lookup("age__gte")
        ('age', 'gte')
        >>> parse_field_lookup("name")
        ('name', 'eq')
    """
    if "__" in field_lookup:
        name, suffix = field_lookup.rsplit("__", 1)
        if suffix in LOOKUPS:
            return name.replace("__", "."), LOOKUPS[suffix]
    return field_lookup.replace("__", "."), "eq"


def _is_sequence(value: Any) -> bool:
    return isinstance(value, (list, tuple, set, frozenset))


def normalize_value(operator: str, value: Any, field_path: str = "") -> Any:
    """
    Check an operator/value combination and coerce the value to storage form.

    Raises:
        InvalidQueryError: If the value cannot be used with the operator
    """
    if operator in ("in", "nin", "all"):
        if not _is_sequence(value):
            raise InvalidQueryError(
                f"Operator '{operator}' on '{field_path}' requires a list of values, got {type(value).__name__}"
            )
        return [to_storage_value(item) for item in value]

    if operator in ("between", "not_between"):
        if not _is_sequence(value) or len(value) != 2:
            raise InvalidQueryError(f"Operator '{operator}' on '{field_path}' requires exactly two bounds")
        low, high = list(value)
        if low is None or high is None:
            raise InvalidQueryError(f"Operator '{operator}' on '{field_path}' does not accept null bounds")
        return [to_storage_value(low), to_storage_value(high)]

    if operator in _COMPARISONS:
        if value is None:
            raise InvalidQueryError(f"Operator '{operator}' on '{field_path}' cannot compare against null")
        return to_storage_value(value)

    if operator == "exists":
        if not isinstance(value, bool):
            raise InvalidQueryError(f"Operator 'exists' on '{field_path}' requires a boolean")
        return value

    if operator in ("like", "ilike"):
        if not isinstance(value, str):
            raise InvalidQueryError(f"Operator '{operator}' on '{field_path}' requires a string pattern")
        return value

    if operator == "regex":
        if isinstance(value, re.Pattern):
            return value
        if not isinstance(value, str):
            raise InvalidQueryError(f"Operator 'regex' on '{field_path}' requires a string or compiled pattern")
        try:
            re.compile(value)
        except re.error as exc:
            raise InvalidQueryError(f"Invalid regular expression for '{field_path}': {exc}") from exc
        return value

    if operator == "size":
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise InvalidQueryError(f"Operator 'size' on '{field_path}' requires a non-negative integer")
        return value

    if operator in ("null", "not_null"):
        return None

    return to_storage_value(value)


def to_storage_value(value: Any) -> Any:
    """Convert a Python value into something the driver can encode."""
    to_document = getattr(value, "to_document", None)
    if callable(to_document):
        return to_document()
    model_dump = getattr(value, "model_dump", None)
    if callable(model_dump):
        return model_dump()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, date) and not isinstance(value, datetime):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_storage_value(item) for item in value]
    if isinstance(value, dict):
        return {key: to_storage_value(item) for key, item in value.items()}
    return value


def like_to_regex(pattern: str) -> str:
    """
    Translate a LIKE pattern into an anchored regular expression.

    ``%`` is the only wildcard; every other character matches literally.

    Example:
        >>> like_to_regex("J%n.")
        '^J.*n\\\\.$'
    """
    return "^" + ".*".join(re.escape(part) for part in pattern.split("%")) + "$"


def regex_options(flags: int) -> str:
    return "".join(letter for flag, letter in _REGEX_FLAGS if flags & flag)


def _identity(path: str) -> str:
    return path


def compile_filter(nodes: list[Node], mapper: Optional[ColumnMapper] = None) -> dict[str, Any]:
    """
    Compile a condition list into a MongoDB filter document.

    Conditions are split at OR connectors into AND-chains, which gives AND
    precedence over OR: ``a OR b AND c`` compiles to ``a OR (b AND c)``.
    """
    mapper = mapper or _identity
    chains: list[list[dict[str, Any]]] = [[]]
    for node in nodes:
        fragment = _compile_node(node, mapper)
        if not fragment:
            continue
        if node.connector == OR and chains[-1]:
            chains.append([])
        chains[-1].append(fragment)

    parts = [_join("$and", chain) for chain in chains if chain]
    if not parts:
        return {}
    return _join("$or", parts)


def _join(operator: str, fragments: list[dict[str, Any]]) -> dict[str, Any]:
    if len(fragments) == 1:
        return fragments[0]
    return {operator: fragments}


def _compile_node(node: Node, mapper: ColumnMapper) -> dict[str, Any]:
    if isinstance(node, ConditionGroup):
        fragment = compile_filter(node.children, mapper)
    else:
        fragment = compile_condition(node, mapper)
    if fragment and node.negated:
        return {"$nor": [fragment]}
    return fragment


def compile_condition(condition: Condition, mapper: Optional[ColumnMapper] = None) -> dict[str, Any]:
    """Compile one leaf into a filter fragment."""
    path = (mapper or _identity)(condition.field)
    op = condition.operator
    value = copy.deepcopy(condition.value) if not isinstance(condition.value, re.Pattern) else condition.value

    if op == "eq":
        if isinstance(value, dict):
            return {path: {"$eq": value}}
        return {path: value}
    if op in ("null",):
        return {path: None}
    if op == "not_null":
        return {path: {"$ne": None}}
    if op == "ne":
        return {path: {"$ne": value}}
    if op in _COMPARISONS:
        return {path: {_COMPARISONS[op]: value}}
    if op == "in":
        return {path: {"$in": value}}
    if op == "nin":
        return {path: {"$nin": value}}
    if op == "between":
        return {path: {"$gte": value[0], "$lte": value[1]}}
    if op == "not_between":
        return {"$or": [{path: {"$lt": value[0]}}, {path: {"$gt": value[1]}}]}
    if op == "exists":
        return {path: {"$exists": value}}
    if op == "like":
        return {path: {"$regex": like_to_regex(value)}}
    if op == "ilike":
        return {path: {"$regex": like_to_regex(value), "$options": "i"}}
    if op == "regex":
        if isinstance(value, re.Pattern):
            options = regex_options(value.flags)
            fragment = {"$regex": value.pattern}
            if options:
                fragment["$options"] = options
            return {path: fragment}
        return {path: {"$regex": value}}
    if op == "contains":
        return {path: value}
    if op == "all":
        return {path: {"$all": value}}
    if op == "size":
        return {path: {"$size": value}}
    raise InvalidQueryError(f"Operator '{op}' cannot be compiled")


# Operators whose aggregation-expression form matches find() semantics.
PUSHDOWN_OPERATORS = frozenset({
    "eq", "ne", "gt", "gte", "lt", "lte", "in", "nin", "between", "not_between",
    "exists", "null", "not_null", "like", "ilike", "regex", "contains", "all", "size",
})


def compile_expression(
    nodes: list[Node], variable: str = "$$item", mapper: Optional[ColumnMapper] = None
) -> dict[str, Any]:
    """
    Compile a condition list into an aggregation expression over ``variable``.

    Used inside ``$filter`` to select matching embedded array elements on the
    server. Type guards keep ordering comparisons within the value's type the
    way find() does.

    Raises:
        InvalidQueryError: If a condition uses an operator with no expression form
    """
    chains: list[list[dict[str, Any]]] = [[]]
    for node in nodes:
        expr = _expression_node(node, variable, mapper or _identity)
        if expr is None:
            continue
        if node.connector == OR and chains[-1]:
            chains.append([])
        chains[-1].append(expr)

    parts = [_join("$and", chain) for chain in chains if chain]
    if not parts:
        return {"$literal": True}
    return _join("$or", parts)


def _expression_node(node: Node, variable: str, mapper: ColumnMapper) -> Optional[dict[str, Any]]:
    if isinstance(node, ConditionGroup):
        if not node.children:
            return None
        expr = compile_expression(node.children, variable, mapper)
    else:
        expr = _expression_leaf(node, variable, mapper)
    if node.negated:
        return {"$not": [expr]}
    return expr


def _type_guard(path: str, value: Any) -> dict[str, Any]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return {"$isNumber": path}
    return {"$eq": [{"$type": path}, {"$type": {"$literal": value}}]}


def _expression_leaf(condition: Condition, variable: str, mapper: ColumnMapper) -> dict[str, Any]:
    op = condition.operator
    if op not in PUSHDOWN_OPERATORS:
        raise InvalidQueryError(f"Operator '{op}' cannot be pushed down to the server")

    path = f"{variable}.{mapper(condition.field)}"
    value = condition.value
    absent = {"$in": [{"$type": path}, ["missing", "null"]]}

    if op == "null" or (op == "eq" and value is None):
        return absent
    if op == "not_null" or (op == "ne" and value is None):
        return {"$not": [absent]}
    if op == "eq":
        return {"$eq": [path, {"$literal": value}]}
    if op == "ne":
        return {"$ne": [path, {"$literal": value}]}
    if op in _COMPARISONS:
        return {"$and": [_type_guard(path, value), {_COMPARISONS[op]: [path, {"$literal": value}]}]}
    if op == "between":
        low, high = value
        return {"$and": [
            _type_guard(path, low),
            {"$gte": [path, {"$literal": low}]},
            {"$lte": [path, {"$literal": high}]},
        ]}
    if op == "not_between":
        low, high = value
        return {"$and": [
            _type_guard(path, low),
            {"$or": [{"$lt": [path, {"$literal": low}]}, {"$gt": [path, {"$literal": high}]}]},
        ]}
    if op in ("in", "nin"):
        member = {"$in": [path, {"$literal": value}]}
        # find() treats a None member as matching missing paths too.
        if any(item is None for item in value):
            member = {"$or": [absent, member]}
        return member if op == "in" else {"$not": [member]}
    if op == "exists":
        present = {"$ne": [{"$type": path}, "missing"]}
        return present if value else {"$not": [present]}
    if op in ("like", "ilike", "regex"):
        if op == "regex":
            pattern = value.pattern if isinstance(value, re.Pattern) else value
            options = regex_options(value.flags) if isinstance(value, re.Pattern) else ""
        else:
            pattern = like_to_regex(value)
            options = "i" if op == "ilike" else ""
        return {"$and": [
            {"$eq": [{"$type": path}, "string"]},
            {"$regexMatch": {"input": path, "regex": pattern, "options": options}},
        ]}
    if op == "contains":
        return {"$or": [
            {"$eq": [path, {"$literal": value}]},
            {"$and": [{"$isArray": path}, {"$in": [{"$literal": value}, path]}]},
        ]}
    if op == "all":
        return {"$and": [{"$isArray": path}, {"$setIsSubset": [{"$literal": value}, path]}]}
    # size
    return {"$and": [{"$isArray": path}, {"$eq": [{"$size": path}, value]}]}
