"""Query builder for docmachine."""

from docmachine.query.builder import QueryBuilder
from docmachine.query.conditions import Condition, ConditionGroup
from docmachine.query.paginator import Paginator

__all__ = ["QueryBuilder", "Condition", "ConditionGroup", "Paginator"]
