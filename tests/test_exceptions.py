"""
Tests for the exception taxonomy and driver error translation.
"""

import pytest
from pymongo import errors as driver_errors

from docmachine import (
    DatabaseConnectionError,
    DocMachineError,
    DuplicateKeyError,
    InvalidQueryError,
    MultipleResultsError,
    NotFoundError,
    OperationError,
    SchemaError,
    TransactionError,
    ValidationError,
)
from docmachine.exceptions import (
    TRANSIENT_TRANSACTION_ERROR,
    error_labels_of,
    translate_driver_error,
    wrap_driver_errors,
)


class TestTaxonomy:
    """Test the exception hierarchy."""

    @pytest.mark.parametrize("error_class", [
        NotFoundError, ValidationError, DatabaseConnectionError, OperationError,
        TransactionError, SchemaError, MultipleResultsError,
    ])
    def test_everything_is_a_docmachine_error(self, error_class):
        assert issubclass(error_class, DocMachineError)

    def test_operation_error_subclasses(self):
        assert issubclass(DuplicateKeyError, OperationError)
        assert issubclass(InvalidQueryError, OperationError)

    def test_not_found_message(self):
        error = NotFoundError("User", {"_id": 1})
        assert error.model_name == "User"
        assert error.criteria == {"_id": 1}
        assert "User not found" in str(error)

    def test_validation_error_attributes(self):
        error = ValidationError("age", 10, {"ge": 18}, violated={"type": "greater_than_equal", "msg": "too small"})
        assert error.field == "age"
        assert error.value == 10
        assert error.rules == {"ge": 18}
        assert "too small" in str(error)

    def test_transaction_error_labels(self):
        error = TransactionError("commit", "failed", error_labels={TRANSIENT_TRANSACTION_ERROR})
        assert error.phase == "commit"
        assert error.is_transient
        assert not error.is_unknown_commit_result
        assert str(error) == "Transaction commit failed: failed"


class TestTranslation:
    """Test mapping pymongo exceptions onto docmachine exceptions."""

    def test_duplicate_key(self):
        error = translate_driver_error(driver_errors.DuplicateKeyError("E11000 duplicate key", 11000))
        assert isinstance(error, DuplicateKeyError)
        assert error.code == 11000

    def test_bulk_write_duplicate(self):
        exc = driver_errors.BulkWriteError({"writeErrors": [{"code": 11000, "errmsg": "dup"}]})
        assert isinstance(translate_driver_error(exc), DuplicateKeyError)

    def test_bulk_write_other(self):
        exc = driver_errors.BulkWriteError({"writeErrors": [{"code": 121, "errmsg": "invalid"}]})
        error = translate_driver_error(exc)
        assert type(error) is OperationError

    @pytest.mark.parametrize("exc", [
        driver_errors.ServerSelectionTimeoutError("no servers"),
        driver_errors.AutoReconnect("reconnect"),
        driver_errors.NetworkTimeout("timeout"),
        driver_errors.OperationFailure("auth failed", code=18),
    ])
    def test_connection_errors(self, exc):
        error = translate_driver_error(exc, "primary")
        assert isinstance(error, DatabaseConnectionError)
        assert error.connection_name == "primary"

    def test_operation_failure(self):
        exc = driver_errors.OperationFailure(
            "write conflict", code=112, details={"errorLabels": [TRANSIENT_TRANSACTION_ERROR]}
        )
        error = translate_driver_error(exc)
        assert type(error) is OperationError
        assert error.code == 112
        assert error.is_transient
        assert error.has_error_label(TRANSIENT_TRANSACTION_ERROR)

    def test_labels_of_plain_exception(self):
        assert error_labels_of(ValueError("x")) == set()

    def test_wrap_translates_and_chains(self):
        original = driver_errors.DuplicateKeyError("dup", 11000)
        with pytest.raises(DuplicateKeyError) as exc_info:
            with wrap_driver_errors("primary"):
                raise original
        assert exc_info.value.__cause__ is original

    def test_wrap_passes_other_errors_through(self):
        with pytest.raises(NotFoundError):
            with wrap_driver_errors():
                raise NotFoundError("User", {})
        with pytest.raises(KeyError):
            with wrap_driver_errors():
                raise KeyError("x")
