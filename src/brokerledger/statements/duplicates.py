"""
Duplicate detection for statement transactions.

A transaction is a duplicate when a processed statement of the same user
already holds one with equal date, companyName, creditAmount and accountNo
(bankName is ignored). Any duplicate rejects the whole batch.

The fingerprint index (transaction_fingerprints) makes the check a keyed
lookup instead of a scan over the user's statement history. Fingerprints are
written only for processed statements, in the same transaction that marks the
statement processed.
"""

import hashlib
import logging
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Union
import sqlite3

from brokerledger.core.exceptions import ValidationError
from brokerledger.core.models import Transaction, canonical_amount, parse_amount

logger = logging.getLogger(__name__)

TransactionLike = Union[Transaction, Mapping[str, Any]]


def _identity(txn: TransactionLike) -> tuple:
    """(date, companyName, creditAmount, accountNo) with amounts canonicalized."""
    if isinstance(txn, Transaction):
        return (txn.date, txn.company_name, canonical_amount(txn.credit_amount), txn.account_no)

    if not isinstance(txn, Mapping):
        raise ValidationError(f"Transaction must be an object, got {type(txn).__name__}")

    raw_amount = txn.get("creditAmount")
    amount = parse_amount(raw_amount)
    return (
        str(txn.get("date", "")).strip(),
        str(txn.get("companyName", "")),
        canonical_amount(amount) if amount is not None else str(raw_amount),
        str(txn.get("accountNo", "")),
    )


def transaction_fingerprint(txn: TransactionLike) -> str:
    """Stable sha256 over the identity fields of a transaction."""
    content = "\x1f".join(_identity(txn))
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def is_duplicate(new_txn: TransactionLike, history: Iterable[TransactionLike]) -> bool:
    """True if any transaction of history has the same identity as new_txn."""
    key = _identity(new_txn)
    return any(_identity(existing) == key for existing in history)


class FingerprintIndex:
    """
    Per-user fingerprint index over processed statements.

    Usage:
        index = FingerprintIndex(conn)
        dupes = index.find_duplicates(user_id, payload["transactions"])
        ...
        index.record(user_id, statement_id, transactions)   # inside atomic()
    """

    # SQLite's default bound-parameter limit is 999 on older builds
    LOOKUP_CHUNK = 500

    def __init__(self, db_connection: sqlite3.Connection):
        self.conn = db_connection

    def find_duplicates(self, user_id: int, transactions: Sequence[TransactionLike]) -> List[int]:
        """
        Positions (0-based) of transactions already seen for this user.

        Only previously processed statements count; duplicates within the
        batch itself are allowed.
        """
        fingerprints = [transaction_fingerprint(t) for t in transactions]
        known = set()
        unique = list(dict.fromkeys(fingerprints))
        for start in range(0, len(unique), self.LOOKUP_CHUNK):
            chunk = unique[start:start + self.LOOKUP_CHUNK]
            placeholders = ",".join("?" for _ in chunk)
            cursor = self.conn.execute(
                f"""
                SELECT fingerprint FROM transaction_fingerprints
                WHERE user_id = ? AND fingerprint IN ({placeholders})
                """,
                (user_id, *chunk),
            )
            known.update(row[0] for row in cursor.fetchall())

        return [i for i, fp in enumerate(fingerprints) if fp in known]

    def record(self, user_id: int, statement_id: int, transactions: Iterable[TransactionLike]) -> int:
        """Index the transactions of a processed statement. Does not commit."""
        rows = [(user_id, transaction_fingerprint(t), statement_id) for t in transactions]
        self.conn.executemany(
            """
            INSERT OR IGNORE INTO transaction_fingerprints (user_id, fingerprint, statement_id)
            VALUES (?, ?, ?)
            """,
            rows,
        )
        logger.debug(f"Indexed {len(rows)} fingerprints for statement {statement_id}")
        return len(rows)

    def history(self, user_id: int) -> List[Dict[str, Any]]:
        """Original transactions of every processed statement of the user."""
        cursor = self.conn.execute(
            """
            SELECT t.date, t.company_name, t.bank_name, t.account_no, t.credit_amount
            FROM statement_transactions t
            JOIN statements s ON s.id = t.statement_id
            WHERE s.user_id = ? AND s.status = 'processed'
            ORDER BY t.statement_id, t.position
            """,
            (user_id,),
        )
        return [
            {
                "date": row["date"],
                "companyName": row["company_name"],
                "bankName": row["bank_name"],
                "accountNo": row["account_no"],
                "creditAmount": row["credit_amount"],
            }
            for row in cursor.fetchall()
        ]

    def rebuild(self, user_id: int) -> int:
        """Re-derive the index of a user from statement history. Does not commit."""
        cursor = self.conn.execute(
            """
            SELECT t.statement_id, t.date, t.company_name, t.bank_name, t.account_no, t.credit_amount
            FROM statement_transactions t
            JOIN statements s ON s.id = t.statement_id
            WHERE s.user_id = ? AND s.status = 'processed'
            """,
            (user_id,),
        )
        count = 0
        for row in cursor.fetchall():
            txn = {
                "date": row["date"],
                "companyName": row["company_name"],
                "accountNo": row["account_no"],
                "creditAmount": row["credit_amount"],
            }
            count += self.record(user_id, row["statement_id"], [txn])
        logger.info(f"Rebuilt fingerprint index for user {user_id} ({count} transactions)")
        return count
