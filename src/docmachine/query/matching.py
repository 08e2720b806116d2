"""
In-process evaluation of MongoDB filter documents.

Embedded sub-builders filter already-loaded documents with this matcher, and
the in-memory test client uses it for its collections, so a predicate
evaluates the same way against an embedded array as against a collection.

Semantics follow the server:
- dotted paths traverse sub-documents and fan out across arrays
- equality against an array field matches the array or any element
- ``{field: None}`` matches null *and* absent fields; ``$exists`` checks presence
- ordering comparisons only match values of the same type bracket
"""

import re
from datetime import datetime
from functools import cmp_to_key
from typing import Any, Iterable, Optional

from bson import ObjectId

from docmachine.exceptions import InvalidQueryError

_LOGICAL = {"$and", "$or", "$nor"}


def resolve_path(document: Any, path: str) -> list[Any]:
    """
    Resolve a dotted path to every value it reaches.

    Returns an empty list when the path is absent.
    """
    return _walk(document, path.split("."))


def _walk(current: Any, parts: list[str]) -> list[Any]:
    if not parts:
        return [current]
    head, rest = parts[0], parts[1:]
    if isinstance(current, dict):
        if head in current:
            return _walk(current[head], rest)
        return []
    if isinstance(current, list):
        if head.isdigit():
            index = int(head)
            return _walk(current[index], rest) if index < len(current) else []
        values: list[Any] = []
        for element in current:
            if isinstance(element, dict):
                values.extend(_walk(element, parts))
        return values
    return []


def _candidates(values: list[Any]) -> list[Any]:
    expanded: list[Any] = []
    for value in values:
        expanded.append(value)
        if isinstance(value, list):
            expanded.extend(value)
    return expanded


def type_bracket(value: Any) -> int:
    """Position of a value's type in the server's cross-type sort order."""
    if value is None:
        return 1
    if isinstance(value, bool):
        return 8
    if isinstance(value, (int, float)):
        return 2
    if isinstance(value, str):
        return 3
    if isinstance(value, dict):
        return 4
    if isinstance(value, list):
        return 5
    if isinstance(value, bytes):
        return 6
    if isinstance(value, ObjectId):
        return 7
    if isinstance(value, datetime):
        return 9
    if isinstance(value, re.Pattern):
        return 11
    return 10


def values_equal(left: Any, right: Any) -> bool:
    """Equality that keeps booleans distinct from numbers."""
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    if isinstance(left, dict) and isinstance(right, dict):
        return list(left.keys()) == list(right.keys()) and all(
            values_equal(left[key], right[key]) for key in left
        )
    if isinstance(left, list) and isinstance(right, list):
        return len(left) == len(right) and all(values_equal(a, b) for a, b in zip(left, right))
    return bool(left == right)


def compare_values(left: Any, right: Any) -> int:
    """Three-way comparison using the server's type ordering."""
    left_bracket, right_bracket = type_bracket(left), type_bracket(right)
    if left_bracket != right_bracket:
        return -1 if left_bracket < right_bracket else 1
    if left is None or values_equal(left, right):
        return 0
    if isinstance(left, dict):
        return compare_values(list(left.items()), list(right.items()))
    if isinstance(left, list):
        for a, b in zip(left, right):
            result = compare_values(a, b)
            if result:
                return result
        return (len(left) > len(right)) - (len(left) < len(right))
    if isinstance(left, tuple):
        return compare_values(list(left), list(right))
    try:
        return -1 if left < right else 1
    except TypeError:
        return 0


def _regex(pattern: Any, options: str = "") -> re.Pattern:
    if isinstance(pattern, re.Pattern):
        return pattern
    flags = 0
    if "i" in options:
        flags |= re.IGNORECASE
    if "m" in options:
        flags |= re.MULTILINE
    if "s" in options:
        flags |= re.DOTALL
    if "x" in options:
        flags |= re.VERBOSE
    return re.compile(pattern, flags)


def matches(document: dict[str, Any], query: Optional[dict[str, Any]]) -> bool:
    """
    Check whether ``document`` satisfies the filter ``query``.

    Raises:
        InvalidQueryError: If the filter uses an unsupported operator
    """
    if not query:
        return True
    if not isinstance(query, dict):
        raise InvalidQueryError("Filter must be a document")
    for key, condition in query.items():
        if key in _LOGICAL:
            if not isinstance(condition, list):
                raise InvalidQueryError(f"{key} requires a list of clauses")
            results = [matches(document, clause) for clause in condition]
            if key == "$and" and not all(results):
                return False
            if key == "$or" and not any(results):
                return False
            if key == "$nor" and any(results):
                return False
        elif key.startswith("$"):
            raise InvalidQueryError(f"Unsupported top-level operator: {key}")
        elif not _match_field(resolve_path(document, key), condition):
            return False
    return True


def _is_operator_document(condition: Any) -> bool:
    return isinstance(condition, dict) and bool(condition) and all(
        isinstance(key, str) and key.startswith("$") for key in condition
    )


def _match_field(values: list[Any], condition: Any) -> bool:
    if _is_operator_document(condition):
        options = condition.get("$options", "")
        for operator, argument in condition.items():
            if operator == "$options":
                continue
            if not _apply_operator(values, operator, argument, options):
                return False
        return True
    return _equals(values, condition)


def _equals(values: list[Any], expected: Any) -> bool:
    if isinstance(expected, re.Pattern):
        return any(isinstance(c, str) and expected.search(c) for c in _candidates(values))
    if expected is None:
        return not values or any(c is None for c in _candidates(values))
    return any(values_equal(candidate, expected) for candidate in _candidates(values))


def _apply_operator(values: list[Any], operator: str, argument: Any, options: str) -> bool:
    if operator == "$eq":
        return _equals(values, argument)
    if operator == "$ne":
        return not _equals(values, argument)
    if operator in ("$gt", "$gte", "$lt", "$lte"):
        bracket = type_bracket(argument)
        for candidate in _candidates(values):
            if type_bracket(candidate) != bracket or candidate is None:
                continue
            result = compare_values(candidate, argument)
            if (
                (operator == "$gt" and result > 0)
                or (operator == "$gte" and result >= 0)
                or (operator == "$lt" and result < 0)
                or (operator == "$lte" and result <= 0)
            ):
                return True
        return False
    if operator == "$in":
        return any(_equals(values, item) for item in argument)
    if operator == "$nin":
        return not any(_equals(values, item) for item in argument)
    if operator == "$exists":
        return bool(values) == bool(argument)
    if operator == "$regex":
        pattern = _regex(argument, options)
        return any(isinstance(c, str) and pattern.search(c) for c in _candidates(values))
    if operator == "$not":
        if isinstance(argument, (re.Pattern, str)):
            return not _apply_operator(values, "$regex", argument, "")
        return not _match_field(values, argument)
    if operator == "$size":
        return any(isinstance(value, list) and len(value) == argument for value in values)
    if operator == "$all":
        return any(
            isinstance(value, list) and all(any(values_equal(v, item) for v in value) for item in argument)
            for value in values
        )
    if operator == "$elemMatch":
        for value in values:
            if not isinstance(value, list):
                continue
            for element in value:
                if isinstance(element, dict) and not _is_operator_document(argument):
                    if matches(element, argument):
                        return True
                elif _match_field([element], argument):
                    return True
        return False
    raise InvalidQueryError(f"Unsupported query operator: {operator}")


def sort_documents(documents: Iterable[dict[str, Any]], sort: list[tuple[str, int]]) -> list[dict[str, Any]]:
    """
    Sort documents the way the server does.

    Missing values sort with nulls (first ascending). Array values sort by
    their smallest element ascending and their largest descending.
    """
    ordered = list(documents)
    if not sort:
        return ordered

    def sort_value(document: dict[str, Any], path: str, direction: int) -> Any:
        values = resolve_path(document, path)
        if not values:
            return None
        value = values[0] if len(values) == 1 else values
        if isinstance(value, list):
            if not value:
                return None
            keyed = sorted(value, key=cmp_to_key(compare_values))
            return keyed[0] if direction > 0 else keyed[-1]
        return value

    def compare(left: dict[str, Any], right: dict[str, Any]) -> int:
        for path, direction in sort:
            result = compare_values(sort_value(left, path, direction), sort_value(right, path, direction))
            if result:
                return result if direction > 0 else -result
        return 0

    return sorted(ordered, key=cmp_to_key(compare))
