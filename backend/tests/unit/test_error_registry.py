"""
tests/unit/test_error_registry.py — AppError, ErrorCode and store failure classification.
"""

from __future__ import annotations

import pytest

from backend.tripshare.errors import AppError, ErrorCode, is_registered_code
from backend.tripshare.services import store_errors
from backend.tripshare.store.base import StoreFailure


class TestAppError:

    def test_to_dict_minimal(self):
        err = AppError(ErrorCode.FORBIDDEN, "Not allowed.", 403)

        assert err.to_dict() == {"error": {"code": "FORBIDDEN", "message": "Not allowed."}}

    def test_to_dict_with_field_and_details(self):
        err = AppError(
            ErrorCode.COMPENSATION_FAILED,
            "Rollback failed.",
            500,
            field="splits",
            details={"orphaned_expense_id": "exp-1"},
        )

        body = err.to_dict()["error"]
        assert body["field"] == "splits"
        assert body["details"] == {"orphaned_expense_id": "exp-1"}

    def test_retry_safe_defaults_to_false(self):
        assert AppError(ErrorCode.STORE_ERROR, "x", 502).retry_safe is False
        assert AppError(ErrorCode.SPLIT_INSERT_FAILED, "x", 500, details={"retry_safe": True}).retry_safe

    def test_no_rows_affected_reads_as_permission_problem(self):
        err = AppError(ErrorCode.NO_ROWS_AFFECTED, "0 rows", 403)
        assert "permission" in err.user_message

    def test_unmapped_codes_get_generic_message(self):
        err = AppError(ErrorCode.SPLIT_DELETE_FAILED, "x", 500)
        assert "try again" in err.user_message

    def test_registered_codes(self):
        assert is_registered_code("SPLIT_SUM_MISMATCH")
        assert not is_registered_code("Amount must be greater than zero.")
        assert not is_registered_code(None)


class TestClassify:

    @pytest.mark.parametrize("store_code, code, status", [
        (StoreFailure.TABLE_NOT_FOUND, ErrorCode.SCHEMA_MISSING, 503),
        (StoreFailure.PERMISSION_DENIED, ErrorCode.FORBIDDEN, 403),
        (StoreFailure.CONSTRAINT_VIOLATION, ErrorCode.INVALID_FIELD, 400),
        (StoreFailure.COLUMN_NOT_FOUND, ErrorCode.STORE_ERROR, 502),
        (StoreFailure.UNAVAILABLE, ErrorCode.STORE_ERROR, 502),
    ])
    def test_mapping(self, store_code, code, status):
        err = store_errors.classify(StoreFailure(store_code, "boom", "expenses"), "do it")

        assert err.code == code
        assert err.http_status == status
        assert err.details["store_code"] == store_code

    def test_schema_missing_names_the_table(self):
        err = store_errors.schema_missing(
            StoreFailure(StoreFailure.TABLE_NOT_FOUND, "missing", "invite_tokens")
        )
        assert "invite_tokens" in err.message
        assert err.details["table"] == "invite_tokens"
