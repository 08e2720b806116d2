"""List of embedded documents bound to its owner."""

import copy
from typing import Any, Iterable, Optional, SupportsIndex, TYPE_CHECKING

from bson import ObjectId

from docmachine.embedded.model import EmbeddedModel

if TYPE_CHECKING:
    from docmachine.embedded.builder import EmbeddedQueryBuilder
    from docmachine.models.base import Model


class EmbeddedList(list):
    """
    The value of a ``list[SomeEmbeddedModel]`` field.

    Behaves like a list. Elements added through it are attached to the owner
    so their ``save()``/``delete()`` target the owning document.

    Example:
        >>> comment = post.comments.create(author="bob", body="Nice")  # in memory
        >>> await post.save()                                           # persisted
        >>> recent = post.comments.query().where("likes", ">", 5).order_by("-likes").get()
    """

    def __init__(
        self,
        items: Iterable[Any] = (),
        *,
        owner: Optional["Model"] = None,
        field: Optional[str] = None,
        target: Optional[type] = None,
    ):
        super().__init__(items)
        self.owner = owner
        self.field = field
        self.target = target
        for item in self:
            self._attach(item)

    def _attach(self, item: Any) -> Any:
        if isinstance(item, EmbeddedModel) and self.owner is not None and self.field is not None:
            item._bind(self.owner, self.field)
        return item

    def append(self, item: Any) -> None:
        super().append(self._attach(item))

    def insert(self, index: SupportsIndex, item: Any) -> None:
        super().insert(index, self._attach(item))

    def extend(self, items: Iterable[Any]) -> None:
        super().extend(self._attach(item) for item in items)

    def __setitem__(self, index: Any, value: Any) -> None:
        if isinstance(index, slice):
            value = [self._attach(item) for item in value]
        else:
            value = self._attach(value)
        super().__setitem__(index, value)

    def __deepcopy__(self, memo: dict[int, Any]) -> list:
        return [copy.deepcopy(item, memo) for item in self]

    def query(self) -> "EmbeddedQueryBuilder":
        """In-memory query builder over the elements."""
        from docmachine.embedded.builder import EmbeddedQueryBuilder
        return EmbeddedQueryBuilder(self, self.target, source=self)

    def create(self, **attributes: Any) -> EmbeddedModel:
        """
        Build an element, attach it and append it.

        Nothing is written; the owner becomes dirty and its next ``save()``
        persists the new element.
        """
        if self.target is None:
            raise TypeError("EmbeddedList has no element type")
        element = self.target(**attributes)
        self.append(element)
        return element

    def find(self, element_id: Any) -> Optional[EmbeddedModel]:
        """Element with the given id, accepting ObjectId hex strings."""
        if isinstance(element_id, str) and len(element_id) == 24 and ObjectId.is_valid(element_id):
            candidates = (element_id, ObjectId(element_id))
        else:
            candidates = (element_id,)
        for item in self:
            if getattr(item, "id", None) in candidates:
                return item
        return None

    def at(self, index: int) -> Optional[EmbeddedModel]:
        """Element at ``index`` or None when out of range."""
        try:
            return self[index]
        except IndexError:
            return None
