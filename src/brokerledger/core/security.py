"""
User isolation helpers for brokerledger.

Every ledger, statement, advance and expense row belongs to one user; these
helpers enforce that a valid user_id is always supplied and that a user only
touches their own records.
"""

import functools
import inspect
from typing import Callable, ParamSpec, TypeVar

from brokerledger.core.exceptions import UserContextError, UserNotFoundError


class UserContext:
    """
    Process-wide current user, for CLI style callers.

    Usage:
        with UserContext.set(user_id=3):
            aggregator.post(year="2024", month="march", delta=Decimal("10"), ...)
    """

    _current_user_id: int | None = None

    @classmethod
    def set_current(cls, user_id: int) -> None:
        if user_id is None:
            raise UserContextError("user_id cannot be None")
        cls._current_user_id = user_id

    @classmethod
    def get_current(cls) -> int | None:
        return cls._current_user_id

    @classmethod
    def clear(cls) -> None:
        cls._current_user_id = None

    @classmethod
    def set(cls, user_id: int) -> "_ScopedUser":
        return _ScopedUser(user_id)


class _ScopedUser:
    def __init__(self, user_id: int):
        self.user_id = user_id
        self.previous_user_id: int | None = None

    def __enter__(self) -> "_ScopedUser":
        self.previous_user_id = UserContext._current_user_id
        UserContext._current_user_id = self.user_id
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        UserContext._current_user_id = self.previous_user_id


P = ParamSpec("P")
T = TypeVar("T")


def require_user_context(func: Callable[P, T]) -> Callable[P, T]:
    """
    Decorator that enforces a positive integer user_id.

    The user_id comes from the call's arguments, or from UserContext when the
    caller left it out.
    """
    sig = inspect.signature(func)

    @functools.wraps(func)
    def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
        bound = sig.bind_partial(*args, **kwargs)
        user_id = bound.arguments.get("user_id")

        passed_positionally = "user_id" in bound.arguments and "user_id" not in kwargs
        if user_id is None and not passed_positionally:
            user_id = UserContext.get_current()
            if user_id is not None:
                kwargs["user_id"] = user_id

        if user_id is None:
            raise UserContextError(
                f"user_id is required for {func.__qualname__}. "
                "Pass user_id or set UserContext.set_current(user_id)"
            )
        if isinstance(user_id, bool) or not isinstance(user_id, int):
            raise UserContextError(f"user_id must be an integer, got {type(user_id).__name__}")
        if user_id <= 0:
            raise UserContextError(f"user_id must be positive, got {user_id}")

        return func(*args, **kwargs)

    return wrapper


def ensure_user_exists(conn, user_id: int) -> None:
    """Raise UserNotFoundError unless the users table holds user_id."""
    row = conn.execute("SELECT 1 FROM users WHERE id = ?", (user_id,)).fetchone()
    if row is None:
        raise UserNotFoundError(user_id)


OWNED_TABLES = {"statements", "advances", "expenses", "banks"}


def validate_user_owns_record(conn, user_id: int, table: str, record_id: int) -> bool:
    """
    Check that record_id in table belongs to user_id.

    Raises:
        ValueError: For a table outside OWNED_TABLES
        UserContextError: If the record is missing or owned by someone else
    """
    if table not in OWNED_TABLES:
        raise ValueError(f"Invalid table: {table}")

    row = conn.execute(f"SELECT user_id FROM {table} WHERE id = ?", (record_id,)).fetchone()
    if row is None:
        raise UserContextError(f"Record {record_id} not found in {table}")
    if row[0] != user_id:
        raise UserContextError(
            f"User {user_id} does not have access to record {record_id} in {table}"
        )
    return True
