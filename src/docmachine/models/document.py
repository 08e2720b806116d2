"""
Conversion between model instances, stored documents and JSON output.

Shared by :class:`~docmachine.models.base.Model` and
:class:`~docmachine.embedded.model.EmbeddedModel`. Both expose a
``__layout__`` (field descriptors keyed by field name plus their embedded
descriptors) that drives the mapping.
"""

from datetime import date, datetime
from enum import Enum
from typing import Any, Iterable, Optional

from bson import ObjectId
from pydantic import ValidationError as PydanticValidationError
from pydantic_core import to_jsonable_python

from docmachine.exceptions import ValidationError
from docmachine.models.schema import DocumentLayout
from docmachine.query.conditions import to_storage_value


def _json_fallback(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def json_value(value: Any) -> Any:
    """Convert a field value into JSON-compatible data."""
    to_json = getattr(value, "to_json", None)
    if callable(to_json):
        return to_json()
    if isinstance(value, (list, tuple)):
        return [json_value(item) for item in value]
    if isinstance(value, dict):
        return {key: json_value(item) for key, item in value.items()}
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return to_jsonable_python(value, fallback=_json_fallback)


def wrap_validation_error(model_class: type, exc: PydanticValidationError) -> ValidationError:
    """Turn a pydantic ValidationError into a docmachine ValidationError."""
    errors = exc.errors(include_url=False)
    first = errors[0] if errors else {}
    loc = first.get("loc", ())
    field = str(loc[0]) if loc else None
    layout = getattr(model_class, "__layout__", None)
    rules: dict[str, Any] = {}
    if layout is not None and field in layout.fields:
        rules = dict(layout.fields[field].rules)
    violated = {"type": first.get("type"), "msg": first.get("msg")}
    if first.get("ctx"):
        violated["ctx"] = first["ctx"]
    return ValidationError(field, first.get("input"), rules, violated=violated, errors=errors)


class DocumentMixin:
    """Storage and JSON conversion for pydantic document classes."""

    __layout__: Optional[DocumentLayout] = None

    def _loaded_field_names(self) -> list[str]:
        values = self.__dict__
        return [name for name in self.__layout__.fields if name in values]

    def _stored_value(self, name: str) -> Any:
        """Value of one field in stored form (``prepare`` applied)."""
        descriptor = self.__layout__.fields[name]
        value = getattr(self, name)
        if descriptor.transforms.prepare is not None and value is not None:
            value = descriptor.transforms.prepare(value)
        return to_storage_value(value)

    def to_document(self) -> dict[str, Any]:
        """
        The document as stored: db column keys, ``prepare`` transforms
        applied, no computed values.
        """
        return {
            self.__layout__.fields[name].column: self._stored_value(name)
            for name in self._loaded_field_names()
        }

    @classmethod
    def _values_from_document(cls, document: dict[str, Any]) -> dict[str, Any]:
        """Map a stored document onto field values (``consume`` applied)."""
        layout = cls.__layout__
        values: dict[str, Any] = {}
        for column, raw in document.items():
            name = layout.columns.get(column)
            if name is None:
                continue
            descriptor = layout.fields[name]
            if descriptor.transforms.consume is not None and raw is not None:
                raw = descriptor.transforms.consume(raw)
            embedded = layout.embedded.get(name)
            if embedded is not None and raw is not None:
                target = embedded.target
                if embedded.many and isinstance(raw, list):
                    raw = [target.from_document(item) if isinstance(item, dict) else item for item in raw]
                elif isinstance(raw, dict):
                    raw = target.from_document(raw)
            values[name] = raw
        return values

    def to_json(
        self,
        include: Optional[Iterable[str]] = None,
        exclude: Optional[Iterable[str]] = None,
        computed: bool = True,
    ) -> dict[str, Any]:
        """
        Serialize to JSON-compatible data.

        Applies ``serializer`` transforms and ``serialize_as`` keys and
        includes computed fields unless ``computed=False``. ``include`` and
        ``exclude`` accept field names or output keys.

        Example:
            >>> user.to_json(exclude=["email"])
            {'id': '65f...', 'name': 'Alice', 'display_name': 'Alice (admin)'}
        """
        include_set = set(include) if include is not None else None
        exclude_set = set(exclude or ())

        def wanted(*names: str) -> bool:
            if any(name in exclude_set for name in names):
                return False
            return include_set is None or any(name in include_set for name in names)

        output: dict[str, Any] = {}
        for name in self._loaded_field_names():
            descriptor = self.__layout__.fields[name]
            key = descriptor.json_key
            if key is None or not wanted(name, key):
                continue
            value = getattr(self, name)
            if descriptor.transforms.serializer is not None:
                output[key] = descriptor.transforms.serializer(value)
            else:
                output[key] = json_value(value)

        if computed:
            for name in type(self).model_computed_fields:  # type: ignore[attr-defined]
                if wanted(name):
                    output[name] = json_value(getattr(self, name))

        output.update(self._extra_json(wanted))
        return output

    def _extra_json(self, wanted: Any) -> dict[str, Any]:
        return {}

    def serialize(self, **kwargs: Any) -> dict[str, Any]:
        """Alias of :meth:`to_json`."""
        return self.to_json(**kwargs)
