"""
Tests for docmachine model definitions.

Covers the schema registry, field metadata, validation errors, dirty
tracking and JSON serialization. Nothing here touches the store.
"""

import subprocess
import sys
from datetime import datetime
from typing import Optional

import pytest
from bson import ObjectId
from pydantic import computed_field

from docmachine import DocMachineError, Field, Model, SchemaError, ValidationError
from docmachine.models.schema import default_collection_name


class Account(Model):
    """Account model exercising most field options."""

    email: str = Field(db_column="email_address")
    name: str
    age: int = Field(ge=18, le=120)
    role: str = "member"
    password: Optional[str] = Field(None, serialize_as=False)
    nickname: Optional[str] = Field(None, serialize_as="nick")
    tags: list[str] = Field(default_factory=list, prepare=sorted)
    joined: Optional[datetime] = None

    @computed_field
    @property
    def display_name(self) -> str:
        return f"{self.name} ({self.role})"


class Ledger(Model, collection="ledger_entries"):
    """Model with an explicit collection and a serializer transform."""

    balance: int = Field(0, serializer=lambda value: f"${value}")


class Sku(Model):
    """Model with a string primary key."""

    id: str = Field(primary_key=True)
    label: str


class BlogEntry(Model):
    title: str


def stored_account(**overrides):
    document = {"_id": ObjectId(), "email_address": "alice@example.com", "name": "Alice", "age": 30}
    document.update(overrides)
    return Account._hydrate(document)


class TestSchema:
    """Test the per-class schema."""

    def test_default_collection_name(self):
        """Test that collections default to the snake-cased plural."""
        assert Account.__schema__.collection == "accounts"
        assert BlogEntry.__schema__.collection == "blog_entries"

    def test_explicit_collection_name(self):
        assert Ledger.__schema__.collection == "ledger_entries"

    @pytest.mark.parametrize("class_name,expected", [
        ("User", "users"),
        ("BlogPost", "blog_posts"),
        ("Category", "categories"),
        ("Box", "boxes"),
        ("HTTPRequest", "http_requests"),
    ])
    def test_collection_naming(self, class_name, expected):
        assert default_collection_name(class_name) == expected

    def test_primary_key(self):
        """Test that id is the primary key stored as _id."""
        schema = Account.__schema__
        assert schema.primary_key.name == "id"
        assert schema.column_for("id") == "_id"

    def test_db_column(self):
        assert Account.__schema__.column_for("email") == "email_address"
        assert Account.__schema__.field_for_column("email_address") == "email"

    def test_unmapped_paths_pass_through(self):
        assert Account.__schema__.column_for("profile.city") == "profile.city"

    def test_string_primary_key(self):
        assert Sku.__schema__.primary_key.name == "id"
        assert Sku.coerce_id("a" * 24) == "a" * 24

    def test_object_id_coercion(self):
        """Test that hex strings become ObjectIds for the default key."""
        oid = ObjectId()
        assert Account.coerce_id(str(oid)) == oid
        assert Account.coerce_id("not-an-id") == "not-an-id"

    def test_field_rules_recorded(self):
        assert Account.__schema__.fields["age"].rules == {"ge": 18, "le": 120}

    def test_second_primary_key_rejected(self):
        """Test that exactly one primary key is required."""
        with pytest.raises(SchemaError, match="exactly one primary key"):
            class TwoKeys(Model):
                code: str = Field(primary_key=True)

    def test_duplicate_column_rejected(self):
        with pytest.raises(SchemaError, match="both map to stored key"):
            class Clash(Model):
                first: str = Field(db_column="value")
                second: str = Field(db_column="value")

    def test_schema_error_is_type_error(self):
        assert issubclass(SchemaError, TypeError)
        assert issubclass(SchemaError, DocMachineError)

    def test_base_model_is_abstract(self):
        with pytest.raises(SchemaError):
            Model.get_collection()


class TestValidation:
    """Test validation errors."""

    def test_constraint_violation_on_create(self):
        """Test that the error names the field, value and declared rules."""
        with pytest.raises(ValidationError) as exc_info:
            Account(email="kid@example.com", name="Kid", age=17)

        error = exc_info.value
        assert error.field == "age"
        assert error.value == 17
        assert error.rules == {"ge": 18, "le": 120}
        assert error.violated["type"] == "greater_than_equal"
        assert isinstance(error, DocMachineError)

    def test_constraint_violation_on_assignment(self):
        account = Account(email="a@example.com", name="A", age=30)
        with pytest.raises(ValidationError) as exc_info:
            account.age = 200

        assert exc_info.value.field == "age"
        assert exc_info.value.value == 200
        assert exc_info.value.violated["type"] == "less_than_equal"
        assert account.age == 30

    def test_missing_required_field(self):
        with pytest.raises(ValidationError) as exc_info:
            Account(name="A", age=30)
        assert exc_info.value.field == "email"

    def test_all_errors_kept(self):
        with pytest.raises(ValidationError) as exc_info:
            Account(name="A", age=5)
        assert len(exc_info.value.errors) == 2


class TestDirtyTracking:
    """Test dirty tracking against the stored snapshot."""

    def test_new_instance_is_local(self):
        account = Account(email="a@example.com", name="A", age=30)
        assert account.is_local
        assert not account.is_persisted
        assert account.is_dirty()

    def test_loaded_instance_is_clean(self):
        account = stored_account()
        assert account.is_persisted
        assert account.dirty == {}
        assert not account.is_dirty()

    def test_assignment_marks_field_dirty(self):
        account = stored_account()
        account.name = "Alice Smith"

        assert account.dirty == {"name": "Alice Smith"}
        assert account.is_dirty("name")
        assert not account.is_dirty("age")
        assert account.original["name"] == "Alice"

    def test_reverting_clears_dirty_state(self):
        account = stored_account()
        account.name = "Bob"
        account.name = "Alice"
        assert account.dirty == {}

    def test_in_place_mutation_is_detected(self):
        account = stored_account(tags=["a"])
        account.tags.append("b")
        assert account.dirty == {"tags": ["a", "b"]}

    def test_dirty_values_are_in_stored_form(self):
        """Test that prepare transforms apply to dirty values."""
        account = stored_account(tags=["a"])
        account.tags = ["c", "b"]
        assert account.dirty == {"tags": ["b", "c"]}

    def test_original_is_a_copy(self):
        account = stored_account(tags=["a"])
        account.original["tags"].append("x")
        assert account.original["tags"] == ["a"]

    def test_fill(self):
        account = stored_account()
        assert account.fill(name="B", role="admin") is None
        assert account.dirty == {"name": "B", "role": "admin"}

    def test_fill_validates(self):
        account = stored_account()
        with pytest.raises(ValidationError):
            account.fill(age=3)

    def test_merge_returns_instance(self):
        account = stored_account()
        assert account.merge(name="B") is account


class TestSerialization:
    """Test to_document() and to_json()."""

    def test_to_document_uses_stored_keys(self):
        account = Account(email="a@example.com", name="A", age=30, tags=["b", "a"])
        document = account.to_document()

        assert document["email_address"] == "a@example.com"
        assert document["tags"] == ["a", "b"]
        assert document["_id"] is None
        assert "email" not in document
        assert "display_name" not in document

    def test_to_json(self):
        """Test hidden fields, renamed keys and computed fields."""
        oid = ObjectId()
        account = stored_account(_id=oid, nickname="al", password="secret", joined=datetime(2024, 5, 1, 12, 0))
        data = account.to_json()

        assert data["id"] == str(oid)
        assert data["email"] == "alice@example.com"
        assert data["nick"] == "al"
        assert data["joined"] == "2024-05-01T12:00:00"
        assert data["display_name"] == "Alice (member)"
        assert "password" not in data
        assert "nickname" not in data

    def test_to_json_include(self):
        account = stored_account()
        assert account.to_json(include=["name"]) == {"name": "Alice"}

    def test_to_json_include_by_output_key(self):
        account = stored_account(nickname="al")
        assert account.to_json(include=["nick"]) == {"nick": "al"}

    def test_to_json_exclude(self):
        data = stored_account().to_json(exclude=["email", "display_name"])
        assert "email" not in data
        assert "display_name" not in data
        assert data["name"] == "Alice"

    def test_to_json_without_computed(self):
        assert "display_name" not in stored_account().to_json(computed=False)

    def test_serializer_transform(self):
        assert Ledger(balance=12).to_json()["balance"] == "$12"

    def test_serialize_alias(self):
        account = stored_account()
        assert account.serialize(include=["age"]) == {"age": 30}


class TestPackageImports:
    """Test that every public module imports first in a fresh interpreter."""

    @pytest.mark.parametrize("module", [
        "docmachine",
        "docmachine.models",
        "docmachine.models.base",
        "docmachine.embedded",
        "docmachine.embedded.model",
        "docmachine.query",
        "docmachine.mixins",
        "docmachine.testing",
        "docmachine.transaction",
        "docmachine.scaffold",
    ])
    def test_import_order(self, module):
        result = subprocess.run(
            [sys.executable, "-c", f"import {module}"], capture_output=True, text=True
        )
        assert result.returncode == 0, result.stderr
