"""Model definitions for docmachine."""

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

__all__ = [
    "Model",
    "Field",
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
]
