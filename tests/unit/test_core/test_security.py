"""Tests for user context enforcement and record ownership."""

import pytest

from brokerledger.core.exceptions import UserContextError, UserNotFoundError
from brokerledger.core.security import (
    UserContext,
    ensure_user_exists,
    require_user_context,
    validate_user_owns_record,
)


@require_user_context
def whoami(user_id: int, note: str = ""):
    return user_id


class TestRequireUserContext:

    def setup_method(self):
        UserContext.clear()

    def teardown_method(self):
        UserContext.clear()

    def test_explicit_keyword(self):
        assert whoami(user_id=7) == 7

    def test_explicit_positional(self):
        assert whoami(7, "x") == 7

    def test_falls_back_to_context(self):
        UserContext.set_current(3)
        assert whoami() == 3

    def test_scoped_context_restores_previous(self):
        UserContext.set_current(1)
        with UserContext.set(2):
            assert whoami() == 2
        assert whoami() == 1

    def test_missing_user_rejected(self):
        with pytest.raises(UserContextError):
            whoami()

    @pytest.mark.parametrize("bad", [0, -1, "3", True, 1.5])
    def test_invalid_user_ids_rejected(self, bad):
        with pytest.raises(UserContextError):
            whoami(user_id=bad)

    def test_status_code(self):
        assert UserContextError().status_code == 403


class TestOwnership:

    def test_ensure_user_exists(self, db_connection, sample_user):
        ensure_user_exists(db_connection, sample_user["id"])
        with pytest.raises(UserNotFoundError):
            ensure_user_exists(db_connection, 999)

    def test_owner_check(self, db_connection, sample_user, other_user):
        cursor = db_connection.execute(
            "INSERT INTO banks (bank_name, account_number, user_id) VALUES ('HDFC', '1', ?)",
            (sample_user["id"],),
        )
        bank_id = cursor.lastrowid

        assert validate_user_owns_record(db_connection, sample_user["id"], "banks", bank_id)
        with pytest.raises(UserContextError):
            validate_user_owns_record(db_connection, other_user["id"], "banks", bank_id)

    def test_unknown_table_rejected(self, db_connection, sample_user):
        with pytest.raises(ValueError):
            validate_user_owns_record(db_connection, sample_user["id"], "users", 1)
