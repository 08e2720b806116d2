"""Embedded documents stored inside a model's document."""

# Model bases import the embedded classes; load them through the models package.
import docmachine.models  # noqa: F401
from docmachine.embedded.model import EmbeddedModel
from docmachine.embedded.collection import EmbeddedList
from docmachine.embedded.builder import EmbeddedQueryBuilder

__all__ = ["EmbeddedModel", "EmbeddedList", "EmbeddedQueryBuilder"]
