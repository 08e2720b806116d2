"""
Field definitions for docmachine.

Extends Pydantic's field system with ODM metadata: primary key, storage
column name, external (JSON) key, value transforms and automatic timestamps.
"""

from dataclasses import dataclass
from typing import Any, Optional, Callable, Union

from pydantic import Field as PydanticField
from pydantic.fields import FieldInfo
from pydantic_core import PydanticUndefined

Transform = Callable[[Any], Any]


@dataclass(frozen=True)
class FieldTransforms:
    """Value transforms attached to a field."""
    serializer: Optional[Transform] = None
    prepare: Optional[Transform] = None
    consume: Optional[Transform] = None


def Field(
    default: Any = PydanticUndefined,
    *,
    # Standard Pydantic validation
    default_factory: Optional[Callable[[], Any]] = None,
    alias: Optional[str] = None,
    title: Optional[str] = None,
    description: Optional[str] = None,
    examples: Optional[list[Any]] = None,
    gt: Optional[float] = None,
    ge: Optional[float] = None,
    lt: Optional[float] = None,
    le: Optional[float] = None,
    min_length: Optional[int] = None,
    max_length: Optional[int] = None,
    pattern: Optional[str] = None,
    # ODM-specific options
    primary_key: bool = False,
    db_column: Optional[str] = None,  # Key used in the stored document
    serialize_as: Union[str, bool, None] = None,  # Key used by to_json(); False hides the field
    serializer: Optional[Transform] = None,  # Value transform for to_json()
    prepare: Optional[Transform] = None,  # Value transform before writing
    consume: Optional[Transform] = None,  # Value transform after reading
    auto_now: bool = False,  # Update timestamp on every save
    auto_now_add: bool = False,  # Set timestamp on create
    **extra: Any,
) -> FieldInfo:
    """
    Define a model field with validation and ODM metadata.

    Args:
        default: Default value for the field
        default_factory: Factory function for default values
        alias: Alternative name for the field
        title: Human-readable title
        description: Field description
        examples: Example values
        gt: Greater than validation
        ge: Greater than or equal validation
        lt: Less than validation
        le: Less than or equal validation
        min_length: Minimum string/list length
        max_length: Maximum string/list length
        pattern: Regex pattern for string validation
        primary_key: Whether this is the primary key
        db_column: Custom key in the stored document
        serialize_as: Custom key in to_json() output, or False to omit the field
        serializer: Transform applied to the value in to_json()
        prepare: Transform applied to the value before it is stored
        consume: Transform applied to the stored value when loading
        auto_now: Auto-update timestamp on save
        auto_now_add: Auto-set timestamp on create
        **extra: Additional Pydantic field arguments

    Returns:
        FieldInfo object with ODM metadata

    Example:
        >>> class User(Model):
        ...     email: str = Field(db_column="email_address")
        ...     password: str = Field(serialize_as=False)
        ...     age: int = Field(ge=18, le=120)
        ...     tags: list[str] = Field(default_factory=list, prepare=sorted)
        ...     created_at: Optional[datetime] = Field(None, auto_now_add=True)
    """
    if primary_key and db_column is None:
        db_column = "_id"

    json_schema_extra = extra.pop("json_schema_extra", {})
    json_schema_extra.update({
        "odm": {
            "primary_key": primary_key,
            "db_column": db_column,
            "serialize_as": serialize_as,
            "auto_now": auto_now,
            "auto_now_add": auto_now_add,
        }
    })

    field_info = PydanticField(  # type: ignore[call-overload]
        default=default,
        default_factory=default_factory,
        alias=alias,
        title=title,
        description=description,
        examples=examples,
        gt=gt,
        ge=ge,
        lt=lt,
        le=le,
        min_length=min_length,
        max_length=max_length,
        pattern=pattern,
        json_schema_extra=json_schema_extra,
        **extra,
    )
    if serializer or prepare or consume:
        # Kept as annotation metadata so the callables stay out of the JSON schema.
        field_info.metadata.append(FieldTransforms(serializer, prepare, consume))
    return field_info


def get_field_odm_metadata(field_info: FieldInfo) -> dict[str, Any]:
    """
    Extract ODM metadata from a FieldInfo object.

    Example:
        >>> field = Field(primary_key=True)
        >>> get_field_odm_metadata(field)["primary_key"]
        True
    """
    if hasattr(field_info, "json_schema_extra") and field_info.json_schema_extra:
        extra = field_info.json_schema_extra
        if isinstance(extra, dict):
            odm_data = extra.get("odm", {})
            if isinstance(odm_data, dict):
                return odm_data
    return {}


def get_field_transforms(field_info: FieldInfo) -> FieldTransforms:
    for item in field_info.metadata:
        if isinstance(item, FieldTransforms):
            return item
    return FieldTransforms()


def get_field_rules(field_info: FieldInfo) -> dict[str, Any]:
    """
    Collect the declared validation constraints of a field.

    Example:
        >>> get_field_rules(Field(ge=18, le=120))
        {'ge': 18, 'le': 120}
    """
    rules: dict[str, Any] = {}
    for constraint in field_info.metadata:
        for name in ("gt", "ge", "lt", "le", "min_length", "max_length", "pattern", "multiple_of"):
            value = getattr(constraint, name, None)
            if value is not None:
                rules[name] = value
    return rules


def is_primary_key(field_info: FieldInfo) -> bool:
    """Check if a field is a primary key."""
    return bool(get_field_odm_metadata(field_info).get("primary_key", False))
