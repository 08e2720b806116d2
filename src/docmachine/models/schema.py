"""
Per-class schema registry.

A :class:`ModelSchema` is built once when a model class is defined and is
read by the query, serialization, hook and relation code from then on. It is
frozen; subclasses get their own schema instead of mutating a parent's.
"""

import re
import sys
import types
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union, get_args, get_origin, TYPE_CHECKING

from pydantic.fields import FieldInfo

from docmachine.exceptions import SchemaError
from docmachine.models.fields import (
    FieldTransforms,
    get_field_odm_metadata,
    get_field_rules,
    get_field_transforms,
)
from docmachine.models.hooks import collect_hooks

if TYPE_CHECKING:
    from docmachine.models.relations import Relation

PRIMARY_KEY_COLUMN = "_id"


@dataclass(frozen=True)
class FieldDescriptor:
    """Static description of one model field."""
    name: str
    column: str
    primary_key: bool = False
    serialize_as: Union[str, bool, None] = None
    transforms: FieldTransforms = FieldTransforms()
    auto_now: bool = False
    auto_now_add: bool = False
    rules: dict[str, Any] = field(default_factory=dict)

    @property
    def json_key(self) -> Optional[str]:
        """Key used by to_json(), or None when the field is hidden."""
        if self.serialize_as is False:
            return None
        if isinstance(self.serialize_as, str):
            return self.serialize_as
        return self.name


@dataclass(frozen=True)
class EmbeddedDescriptor:
    """A field holding one (``many=False``) or a list of embedded documents."""
    name: str
    target: type
    many: bool


@dataclass(frozen=True)
class DocumentLayout:
    """Field-to-column mapping of a document class."""
    fields: dict[str, FieldDescriptor]
    columns: dict[str, str]  # column -> field name
    embedded: dict[str, EmbeddedDescriptor]

    def column_for(self, name: str) -> str:
        """
        Map a logical (possibly dotted) field path onto its stored path.

        Segments inside embedded documents are mapped through the embedded
        class's own layout; other nested keys are stored as written.

        Example:
            >>> User.__schema__.column_for("id")
            '_id'
            >>> User.__schema__.column_for("comments.id")
            'comments._id'
        """
        head, _, rest = name.partition(".")
        descriptor = self.fields.get(head)
        column = descriptor.column if descriptor is not None else head
        if not rest:
            return column
        embedded = self.embedded.get(head)
        layout = getattr(embedded.target, "__layout__", None) if embedded is not None else None
        if layout is not None:
            index, _, remainder = rest.partition(".")
            if index.isdigit():
                return f"{column}.{index}.{layout.column_for(remainder)}" if remainder else f"{column}.{index}"
            rest = layout.column_for(rest)
        return f"{column}.{rest}"

    def field_for_column(self, column: str) -> str:
        """Map a stored key back onto its logical field name."""
        return self.columns.get(column, column)


@dataclass(frozen=True)
class ModelSchema(DocumentLayout):
    """Immutable metadata of a model class."""
    model_name: str
    collection: str
    connection: Optional[str]
    primary_key: FieldDescriptor
    relations: dict[str, "Relation"]
    hooks: dict[str, tuple[Callable[..., Any], ...]]

    def hooks_for(self, event: str) -> tuple[Callable[..., Any], ...]:
        return self.hooks.get(event, ())


def pluralize(word: str) -> str:
    if re.search(r"[^aeiou]y$", word):
        return word[:-1] + "ies"
    if re.search(r"(s|x|z|ch|sh)$", word):
        return word + "es"
    return word + "s"


def default_collection_name(class_name: str) -> str:
    """
    Snake-cased plural of a class name.

    Example:
        >>> default_collection_name("BlogPost")
        'blog_posts'
        >>> default_collection_name("Category")
        'categories'
    """
    snake = re.sub(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])", "_", class_name).lower()
    return pluralize(snake)


def _unwrap_optional(annotation: Any) -> Any:
    origin = get_origin(annotation)
    is_union = origin is Union or (sys.version_info >= (3, 10) and isinstance(annotation, types.UnionType))
    if is_union:
        args = [arg for arg in get_args(annotation) if arg is not type(None)]
        if len(args) == 1:
            return args[0]
    return annotation


def embedded_target(annotation: Any) -> Optional[tuple[type, bool]]:
    """
    Detect an embedded-document annotation.

    Returns:
        ``(target_class, many)`` or None if the field is not embedded
    """
    from docmachine.embedded.model import EmbeddedModel

    annotation = _unwrap_optional(annotation)
    origin = get_origin(annotation)
    many = False
    if origin in (list, tuple) or (origin is not None and getattr(origin, "__name__", "") in ("Sequence", "List")):
        args = get_args(annotation)
        if not args:
            return None
        annotation = _unwrap_optional(args[0])
        many = True
    if isinstance(annotation, type) and issubclass(annotation, EmbeddedModel):
        return annotation, many
    return None


def describe_field(name: str, field_info: FieldInfo) -> FieldDescriptor:
    odm = get_field_odm_metadata(field_info)
    primary_key = bool(odm.get("primary_key"))
    column = odm.get("db_column") or (PRIMARY_KEY_COLUMN if primary_key else name)
    return FieldDescriptor(
        name=name,
        column=column,
        primary_key=primary_key,
        serialize_as=odm.get("serialize_as"),
        transforms=get_field_transforms(field_info),
        auto_now=bool(odm.get("auto_now")),
        auto_now_add=bool(odm.get("auto_now_add")),
        rules=get_field_rules(field_info),
    )


def build_layout(document_class: type) -> DocumentLayout:
    """
    Describe the fields of a pydantic document class.

    Raises:
        SchemaError: If two fields map onto the same stored key
    """
    fields: dict[str, FieldDescriptor] = {}
    columns: dict[str, str] = {}
    embedded: dict[str, EmbeddedDescriptor] = {}

    for name, field_info in document_class.model_fields.items():  # type: ignore[attr-defined]
        descriptor = describe_field(name, field_info)
        if descriptor.column in columns:
            raise SchemaError(
                f"{document_class.__name__}: fields '{columns[descriptor.column]}' and '{name}' "
                f"both map to stored key '{descriptor.column}'"
            )
        fields[name] = descriptor
        columns[descriptor.column] = name

        target = embedded_target(field_info.annotation)
        if target is not None:
            embedded[name] = EmbeddedDescriptor(name=name, target=target[0], many=target[1])

    return DocumentLayout(fields=fields, columns=columns, embedded=embedded)


def build_schema(
    model_class: type,
    *,
    collection: Optional[str] = None,
    connection: Optional[str] = None,
) -> ModelSchema:
    """
    Build the schema of a model class from its pydantic fields.

    Raises:
        SchemaError: If the class does not declare exactly one primary key,
            or two fields map onto the same stored key
    """
    from docmachine.models.relations import Relation

    # Two primary keys also collide on '_id'; report the key count first.
    primary_keys = [
        name
        for name, field_info in model_class.model_fields.items()  # type: ignore[attr-defined]
        if get_field_odm_metadata(field_info).get("primary_key")
    ]
    if len(primary_keys) != 1:
        found = ", ".join(primary_keys) or "none"
        raise SchemaError(
            f"{model_class.__name__} must declare exactly one primary key field (found: {found}). "
            f"Override 'id' to change the primary key type."
        )

    layout = build_layout(model_class)
    fields = layout.fields

    relations: dict[str, Relation] = {}
    for klass in reversed(model_class.__mro__):
        for attr_name, attr in vars(klass).items():
            if isinstance(attr, Relation):
                relations[attr_name] = attr

    return ModelSchema(
        model_name=model_class.__name__,
        collection=collection or default_collection_name(model_class.__name__),
        connection=connection,
        fields=fields,
        primary_key=fields[primary_keys[0]],
        embedded=layout.embedded,
        relations=relations,
        hooks=collect_hooks(model_class),
        columns=layout.columns,
    )
