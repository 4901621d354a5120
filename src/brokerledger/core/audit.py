"""
Audit trail for brokerledger.

Ledger and statement changes are captured automatically by schema triggers;
AuditLogger adds explicit entries (schedule replacements, advance and expense
transitions) and reads the history back.

Entries are keyed by (table_name, record_id). Schedules use a synthetic
table name of the form "slabs:<owner type>".
"""

import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
import sqlite3


class AuditAction(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


def _encode(values: Optional[Dict[str, Any]]) -> Optional[str]:
    # Decimals and dates end up as their string form
    return json.dumps(values, default=str) if values else None


def _decode(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    return json.loads(raw) if raw else None


@dataclass(frozen=True)
class AuditLogEntry:
    id: int
    table_name: str
    record_id: int
    action: AuditAction
    old_values: Optional[Dict[str, Any]]
    new_values: Optional[Dict[str, Any]]
    user_id: Optional[int]
    timestamp: datetime

    @property
    def changed_fields(self) -> List[str]:
        """Keys whose value differs between old_values and new_values."""
        old = self.old_values or {}
        new = self.new_values or {}
        return sorted(k for k in set(old) | set(new) if old.get(k) != new.get(k))

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "AuditLogEntry":
        stamp = row["timestamp"]
        return cls(
            id=row["id"],
            table_name=row["table_name"],
            record_id=row["record_id"],
            action=AuditAction(row["action"]),
            old_values=_decode(row["old_values"]),
            new_values=_decode(row["new_values"]),
            user_id=row["user_id"],
            timestamp=datetime.fromisoformat(stamp) if isinstance(stamp, str) else stamp,
        )


class AuditLogger:
    """
    Writes and reads audit_log rows.

    log_change() never commits: it is meant to run inside the caller's
    atomic() block so the audit row shares the fate of the change it records.
    """

    def __init__(self, db_connection: sqlite3.Connection, user_id: int = None):
        self.conn = db_connection
        self.user_id = user_id

    def log_change(
        self,
        table_name: str,
        record_id: int,
        action: str,
        old_values: Dict[str, Any] = None,
        new_values: Dict[str, Any] = None,
        user_id: int = None,
    ) -> int:
        """
        Append one audit entry and return its id.

        Raises:
            ValueError: action is not INSERT, UPDATE or DELETE
        """
        action = AuditAction(action)
        cursor = self.conn.execute(
            "INSERT INTO audit_log (table_name, record_id, action, old_values, new_values, user_id) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                table_name,
                record_id,
                action.value,
                _encode(old_values),
                _encode(new_values),
                user_id if user_id is not None else self.user_id,
            ),
        )
        return cursor.lastrowid

    def log_update(self, table_name: str, record_id: int, old_values: Dict[str, Any],
                   new_values: Dict[str, Any], user_id: int = None) -> int:
        return self.log_change(table_name, record_id, AuditAction.UPDATE,
                               old_values, new_values, user_id)

    def _entries(self, where: str, params: Tuple, order: str = "ASC", limit: int = -1) -> List[AuditLogEntry]:
        rows = self.conn.execute(
            f"SELECT * FROM audit_log WHERE {where} ORDER BY id {order} LIMIT ?",
            (*params, limit),
        ).fetchall()
        return [AuditLogEntry.from_row(row) for row in rows]

    def get_record_history(self, table_name: str, record_id: int) -> List[AuditLogEntry]:
        """All audit entries for one record, oldest first."""
        return self._entries("table_name = ? AND record_id = ?", (table_name, record_id))

    def get_user_activity(self, user_id: int, limit: int = 100) -> List[AuditLogEntry]:
        """Most recent audit entries attributed to a user."""
        return self._entries("user_id = ?", (user_id,), order="DESC", limit=limit)
