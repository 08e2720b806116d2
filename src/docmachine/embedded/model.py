"""
Embedded documents.

An :class:`EmbeddedModel` lives inside its owner's document; it has no
collection of its own. Once attached to a model instance it knows its owner
and field, and its ``save()``/``delete()`` become targeted updates on the
owning document.
"""

import copy
from typing import Any, ClassVar, Optional, TYPE_CHECKING

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, PrivateAttr, model_validator
from pydantic import ValidationError as PydanticValidationError

from docmachine.exceptions import ModelStateError
from docmachine.models.document import DocumentMixin, wrap_validation_error
from docmachine.models.fields import Field
from docmachine.models.schema import DocumentLayout, build_layout
from docmachine.query.matching import values_equal

if TYPE_CHECKING:
    from docmachine.models.base import Model


class EmbeddedModel(DocumentMixin, BaseModel):
    """
    Base class for documents stored inside another document.

    Example:
        >>> class Comment(EmbeddedModel):
        ...     author: str
        ...     body: str
        ...
        >>> class Post(Model):
        ...     title: str
        ...     comments: list[Comment] = Field(default_factory=list)
        ...
        >>> post = await Post.find_or_fail(post_id)
        >>> comment = post.comments.find(comment_id)
        >>> comment.body = "edited"
        >>> await comment.save()  # positional $set on posts.comments.$
    """

    model_config = ConfigDict(
        validate_assignment=True,
        arbitrary_types_allowed=True,
        from_attributes=True,
    )

    __layout__: ClassVar[Optional[DocumentLayout]] = None

    id: Optional[Any] = Field(default_factory=ObjectId, db_column="_id")

    _owner: Optional[Any] = None
    _field: Optional[str] = None
    _original: Optional[dict[str, Any]] = PrivateAttr(default=None)

    @classmethod
    def __pydantic_init_subclass__(cls, **kwargs: Any) -> None:
        super().__pydantic_init_subclass__(**kwargs)
        cls.__layout__ = build_layout(cls)

    def __init__(self, **data: Any):
        try:
            super().__init__(**data)
        except PydanticValidationError as exc:
            raise wrap_validation_error(type(self), exc) from exc

    def __setattr__(self, name: str, value: Any) -> None:
        try:
            super().__setattr__(name, value)
        except PydanticValidationError as exc:
            raise wrap_validation_error(type(self), exc) from exc

    @model_validator(mode="before")
    @classmethod
    def _accept_stored_keys(cls, data: Any) -> Any:
        # Nested embedded values arrive keyed by stored column.
        layout = cls.__layout__
        if not isinstance(data, dict) or layout is None:
            return data
        renamed = {}
        for key, value in data.items():
            name = layout.columns.get(key, key)
            if name != key and name in data:
                continue
            renamed[name] = value
        return renamed

    def __eq__(self, other: Any) -> bool:
        # Owner back-references are not part of an element's identity
        if not isinstance(other, EmbeddedModel):
            return NotImplemented
        return type(self) is type(other) and values_equal(self.to_document(), other.to_document())

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> "EmbeddedModel":
        """Build an element from its stored form."""
        instance = cls(**cls._values_from_document(document))
        instance._original = instance.to_document()
        return instance

    # Ownership

    def _bind(self, owner: "Model", field: str) -> None:
        self._owner = owner
        self._field = field

    @property
    def owner(self) -> Optional["Model"]:
        return self._owner

    @property
    def is_attached(self) -> bool:
        return self._owner is not None

    def _require_owner(self) -> "Model":
        if self._owner is None or self._field is None:
            raise ModelStateError(f"{type(self).__name__} is not attached to a parent document")
        return self._owner

    # Dirty state

    @property
    def original(self) -> Optional[dict[str, Any]]:
        return copy.deepcopy(self._original)

    def is_dirty(self) -> bool:
        """True when the element differs from its last stored form (or was never stored)."""
        if self._original is None:
            return True
        return not values_equal(self.to_document(), self._original)

    def _sync_original(self) -> None:
        self._original = self.to_document()

    # Persistence through the owner

    async def save(self) -> "EmbeddedModel":
        """
        Write this element into its owner's document.

        Single fields rewrite the whole sub-object; list elements are
        updated in place by ``_id`` without touching their siblings.

        Raises:
            ModelStateError: If the element is detached or its owner unsaved
        """
        owner = self._require_owner()
        await owner._write_embedded(self._field, self)
        return self

    async def delete(self) -> bool:
        """Remove this element from its owner's document."""
        owner = self._require_owner()
        await owner._remove_embedded(self._field, self)
        return True
