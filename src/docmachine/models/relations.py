"""
Referenced relationships between models.

Relations are declared as class attributes:

    >>> class User(Model):
    ...     name: str
    ...     posts = has_many("Post")
    ...     profile = has_one("Profile")
    ...
    >>> class Post(Model):
    ...     title: str
    ...     user_id: Optional[ObjectId] = None
    ...     author = belongs_to(User, local_key="user_id")

Every relation pairs a ``local_key`` on the declaring model with a
``foreign_key`` on the related model. Defaults follow the usual convention:
``has_one``/``has_many`` match ``owner.id`` to ``related.<owner>_id`` and
``belongs_to`` matches ``owner.<related>_id`` to ``related.id``.

Loading a relation for a batch of parents issues a single ``$in`` query and
attaches the results by key, so ``User.query().load("posts").all()`` costs
two round trips regardless of how many users are returned.
"""

import inspect
import logging
import re
from typing import Any, Callable, Optional, Union, TYPE_CHECKING

from docmachine.exceptions import ModelStateError, SchemaError

if TYPE_CHECKING:
    from docmachine.models.base import Model
    from docmachine.query.builder import QueryBuilder
    from docmachine.transaction import TransactionClient

logger = logging.getLogger(__name__)

HAS_ONE = "has_one"
HAS_MANY = "has_many"
BELONGS_TO = "belongs_to"

RelatedTarget = Union[type, str, Callable[[], type]]
QueryCallback = Callable[["QueryBuilder"], Any]

# Model classes by name, used to resolve string targets.
_model_registry: dict[str, type] = {}


def register_model(model_class: type) -> None:
    _model_registry[model_class.__name__] = model_class


def resolve_model(name: str) -> type:
    try:
        return _model_registry[name]
    except KeyError:
        raise SchemaError(f"Unknown model '{name}'; is the module defining it imported?") from None


def _snake(name: str) -> str:
    return re.sub(r"(?<=[a-z0-9])(?=[A-Z])", "_", name).lower()


class Relation:
    """Descriptor for one relationship of a model class."""

    kind: str = ""

    def __init__(
        self,
        related: RelatedTarget,
        *,
        local_key: Optional[str] = None,
        foreign_key: Optional[str] = None,
    ):
        self._related = related
        self._local_key = local_key
        self._foreign_key = foreign_key
        self.name = ""
        self.owner: Optional[type] = None

    def __set_name__(self, owner: type, name: str) -> None:
        self.owner = owner
        self.name = name

    def __repr__(self) -> str:
        target = self._related if isinstance(self._related, str) else getattr(self._related, "__name__", "?")
        return f"<{type(self).__name__} {self.name} -> {target}>"

    @property
    def many(self) -> bool:
        return self.kind == HAS_MANY

    @property
    def related_model(self) -> type["Model"]:
        """The related model class, resolving names and factories lazily."""
        target = self._related
        if isinstance(target, str):
            return resolve_model(target)
        if isinstance(target, type):
            return target
        return target()

    @property
    def local_key(self) -> str:
        if self._local_key:
            return self._local_key
        if self.kind == BELONGS_TO:
            return f"{_snake(self.related_model.__name__)}_id"
        return "id"

    @property
    def foreign_key(self) -> str:
        if self._foreign_key:
            return self._foreign_key
        if self.kind == BELONGS_TO:
            return "id"
        owner_name = self.owner.__name__ if self.owner is not None else ""
        return f"{_snake(owner_name)}_id"

    def __get__(self, instance: Optional["Model"], owner: type) -> Any:
        if instance is None:
            return self
        loaded = instance._relations
        if self.name not in loaded:
            raise ModelStateError(
                f"Relation '{self.name}' of {owner.__name__} is not loaded; "
                f"call 'await instance.load(\"{self.name}\")' or query().load(\"{self.name}\")"
            )
        return loaded[self.name]

    def __set__(self, instance: "Model", value: Any) -> None:
        instance._relations[self.name] = value

    def empty(self) -> Any:
        return [] if self.many else None

    async def resolve(
        self,
        parents: list["Model"],
        callback: Optional[QueryCallback] = None,
        transaction: Optional["TransactionClient"] = None,
    ) -> None:
        """
        Load this relation for every parent with one batched query.

        Args:
            parents: Already fetched instances of the owning model
            callback: Optional callable receiving the related query builder to
                filter, order or limit the related set
            transaction: Transaction the secondary query runs in
        """
        keys: list[Any] = []
        seen: set[Any] = set()
        for parent in parents:
            key = getattr(parent, self.local_key)
            if key is not None and key not in seen:
                seen.add(key)
                keys.append(key)

        if not keys:
            for parent in parents:
                self.__set__(parent, self.empty())
            return

        query = self.related_model.query(transaction=transaction).where_in(self.foreign_key, keys)
        if callback is not None:
            result = callback(query)
            if inspect.isawaitable(result):
                await result
        related = await query._require(self.foreign_key).all()
        logger.debug(f"Loaded {len(related)} {self.related_model.__name__} for relation '{self.name}'")

        grouped: dict[Any, list[Any]] = {}
        for item in related:
            grouped.setdefault(getattr(item, self.foreign_key), []).append(item)

        for parent in parents:
            matches = grouped.get(getattr(parent, self.local_key), [])
            self.__set__(parent, list(matches) if self.many else (matches[0] if matches else None))

    def related_query(self, parent: "Model") -> "RelatedQuery":
        return RelatedQuery(parent, self)


class HasOne(Relation):
    kind = HAS_ONE


class HasMany(Relation):
    kind = HAS_MANY


class BelongsTo(Relation):
    kind = BELONGS_TO


def has_one(related: RelatedTarget, *, local_key: Optional[str] = None, foreign_key: Optional[str] = None) -> HasOne:
    """The related model stores this model's key (one record)."""
    return HasOne(related, local_key=local_key, foreign_key=foreign_key)


def has_many(related: RelatedTarget, *, local_key: Optional[str] = None, foreign_key: Optional[str] = None) -> HasMany:
    """The related model stores this model's key (many records)."""
    return HasMany(related, local_key=local_key, foreign_key=foreign_key)


def belongs_to(
    related: RelatedTarget, *, local_key: Optional[str] = None, foreign_key: Optional[str] = None
) -> BelongsTo:
    """This model stores the related model's key."""
    return BelongsTo(related, local_key=local_key, foreign_key=foreign_key)


class RelatedQuery:
    """
    Queries scoped to the records related to one instance.

    Example:
        >>> posts = await user.related("posts").query().where("published", True).all()
        >>> post = await user.related("posts").create(title="Hello")
    """

    def __init__(self, parent: "Model", relation: Relation):
        self.parent = parent
        self.relation = relation

    def query(self) -> "QueryBuilder":
        key = getattr(self.parent, self.relation.local_key)
        return (
            self.relation.related_model.query(transaction=self.parent._transaction)
            .where(self.relation.foreign_key, key)
        )

    async def all(self) -> list["Model"]:
        return await self.query().all()

    async def first(self) -> Optional["Model"]:
        return await self.query().first()

    async def get(self) -> Any:
        """Fetch the relation and attach it to the parent like load() does."""
        if self.relation.many:
            value: Any = await self.all()
        else:
            value = await self.first()
        self.relation.__set__(self.parent, value)
        return value

    async def create(self, **attributes: Any) -> "Model":
        """
        Create a related record linked to the parent.

        For ``has_one``/``has_many`` the related record gets the parent's
        key. For ``belongs_to`` the parent's local key is pointed at the new
        record; the parent itself is not saved.
        """
        relation = self.relation
        transaction = self.parent._transaction
        if relation.kind == BELONGS_TO:
            created = await relation.related_model.create(transaction=transaction, **attributes)
            setattr(self.parent, relation.local_key, getattr(created, relation.foreign_key))
            relation.__set__(self.parent, created)
            return created

        key = getattr(self.parent, relation.local_key)
        if key is None:
            raise ModelStateError(
                f"Cannot create '{relation.name}' for an unsaved {type(self.parent).__name__}"
            )
        attributes[relation.foreign_key] = key
        created = await relation.related_model.create(transaction=transaction, **attributes)
        if relation.name in self.parent._relations:
            if relation.many:
                self.parent._relations[relation.name].append(created)
            else:
                self.parent._relations[relation.name] = created
        return created
