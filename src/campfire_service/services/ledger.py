"""Credit ledger: per-user balances and the append-only transaction log."""

from __future__ import annotations

import sqlite3
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from campfire_service.core.exceptions import ServiceError
from campfire_service.logging import get_logger
from campfire_service.services.money import MAX_MINOR_UNITS, from_minor_units

if TYPE_CHECKING:
    from campfire_service.services.database import Database

TX_PURCHASE = "purchase"
TX_ADMIN_GRANT = "admin_grant"
TX_TASK_HOLD = "task_hold"
TX_TASK_DEDUCT = "task_deduct"
TX_TASK_RELEASE = "task_release"

_TX_COLUMNS = (
    "tx_id",
    "user_id",
    "type",
    "amount",
    "balance_after",
    "task_id",
    "pack_id",
    "reference",
    "description",
    "created_by",
    "created_at",
)
_TX_COLUMNS_SQL = ", ".join(_TX_COLUMNS)


class Ledger:
    """
    Credit balances and their transaction log.

    Amounts are integer minor units (hundredths of a credit). Every
    mutation updates one balance row and appends one transaction row in
    the same database transaction; callers that already hold a
    transaction (task creation, transitions) are joined rather than
    committed separately.

    Balance columns obey ``total == available + held`` and are all
    non-negative. ``lifetime`` counts everything ever purchased or granted.
    """

    def __init__(self, db: Database) -> None:
        self._db = db
        self._logger = get_logger(__name__)
        self._init_schema()

    def _init_schema(self) -> None:
        """Create tables if they don't exist."""
        self._db.executescript(
            """
            CREATE TABLE IF NOT EXISTS credit_balances (
                user_id TEXT PRIMARY KEY,
                total INTEGER NOT NULL DEFAULT 0 CHECK (total >= 0),
                available INTEGER NOT NULL DEFAULT 0 CHECK (available >= 0),
                held INTEGER NOT NULL DEFAULT 0 CHECK (held >= 0),
                lifetime INTEGER NOT NULL DEFAULT 0 CHECK (lifetime >= 0),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                CHECK (total = available + held)
            );

            CREATE TABLE IF NOT EXISTS credit_transactions (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                tx_id TEXT NOT NULL UNIQUE,
                user_id TEXT NOT NULL REFERENCES credit_balances(user_id),
                type TEXT NOT NULL,
                amount INTEGER NOT NULL,
                balance_after INTEGER NOT NULL,
                task_id TEXT,
                pack_id TEXT,
                reference TEXT,
                description TEXT NOT NULL,
                created_by TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE UNIQUE INDEX IF NOT EXISTS ux_task_transaction_type
                ON credit_transactions(task_id, type)
                WHERE task_id IS NOT NULL;

            CREATE UNIQUE INDEX IF NOT EXISTS ux_purchase_reference
                ON credit_transactions(user_id, reference)
                WHERE type = 'purchase' AND reference IS NOT NULL;

            CREATE INDEX IF NOT EXISTS ix_credit_transactions_user_seq
                ON credit_transactions(user_id, seq);
            """
        )

    def _now(self) -> str:
        """Current UTC timestamp in ISO 8601 format."""
        return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")

    def _new_tx_id(self) -> str:
        """Generate a new transaction ID."""
        return f"tx-{uuid.uuid4()}"

    @staticmethod
    def _require_positive(amount: int) -> None:
        if (
            isinstance(amount, bool)
            or not isinstance(amount, int)
            or amount <= 0
            or amount > MAX_MINOR_UNITS
        ):
            raise ServiceError(
                "VALIDATION_ERROR",
                "Amount must be a positive number of credits",
                400,
                {"field": "amount"},
            )

    def _ensure_balance(self, conn: sqlite3.Connection, user_id: str) -> None:
        now = self._now()
        conn.execute(
            "INSERT OR IGNORE INTO credit_balances (user_id, created_at, updated_at) "
            "VALUES (?, ?, ?)",
            (user_id, now, now),
        )

    def _read_balance(self, conn: sqlite3.Connection, user_id: str) -> dict[str, Any]:
        row = conn.execute(
            "SELECT user_id, total, available, held, lifetime, updated_at "
            "FROM credit_balances WHERE user_id = ?",
            (user_id,),
        ).fetchone()
        return {
            "user_id": row["user_id"],
            "total_credits": row["total"],
            "available_credits": row["available"],
            "held_credits": row["held"],
            "lifetime_credits": row["lifetime"],
            "updated_at": row["updated_at"],
        }

    def _find_task_transaction(
        self, conn: sqlite3.Connection, task_id: str, tx_type: str
    ) -> str | None:
        row = conn.execute(
            "SELECT tx_id FROM credit_transactions WHERE task_id = ? AND type = ?",
            (task_id, tx_type),
        ).fetchone()
        return None if row is None else str(row["tx_id"])

    def _append(
        self,
        conn: sqlite3.Connection,
        *,
        user_id: str,
        tx_type: str,
        amount: int,
        balance_after: int,
        description: str,
        created_by: str,
        task_id: str | None = None,
        pack_id: str | None = None,
        reference: str | None = None,
    ) -> str:
        tx_id = self._new_tx_id()
        conn.execute(
            "INSERT INTO credit_transactions (" + _TX_COLUMNS_SQL + ") "  # nosec B608
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                tx_id,
                user_id,
                tx_type,
                amount,
                balance_after,
                task_id,
                pack_id,
                reference,
                description,
                created_by,
                self._now(),
            ),
        )
        return tx_id

    def get_balance(self, user_id: str) -> dict[str, Any]:
        """Return the user's balance, creating an all-zero row on first reference."""
        with self._db.transaction() as conn:
            self._ensure_balance(conn, user_id)
            return self._read_balance(conn, user_id)

    def hold(
        self,
        user_id: str,
        amount: int,
        task_id: str,
        created_by: str,
        description: str | None = None,
    ) -> dict[str, Any]:
        """
        Move ``amount`` from available to held against a task.

        The funds check and the debit are one conditional UPDATE, so two
        concurrent holds cannot both pass against the same stale balance.
        A second hold for the same task is a no-op.

        Raises:
            ServiceError: INSUFFICIENT_CREDITS with available/needed details.
        """
        self._require_positive(amount)

        with self._db.transaction() as conn:
            self._ensure_balance(conn, user_id)
            if self._find_task_transaction(conn, task_id, TX_TASK_HOLD) is not None:
                return self._read_balance(conn, user_id)

            cursor = conn.execute(
                "UPDATE credit_balances "
                "SET available = available - ?, held = held + ?, updated_at = ? "
                "WHERE user_id = ? AND available >= ?",
                (amount, amount, self._now(), user_id, amount),
            )
            if cursor.rowcount == 0:
                available = self._read_balance(conn, user_id)["available_credits"]
                raise ServiceError(
                    "INSUFFICIENT_CREDITS",
                    f"Insufficient credits. Need {from_minor_units(amount)}, "
                    f"have {from_minor_units(available)} available.",
                    402,
                    {
                        "available": from_minor_units(available),
                        "needed": from_minor_units(amount),
                    },
                )

            balance = self._read_balance(conn, user_id)
            tx_id = self._append(
                conn,
                user_id=user_id,
                tx_type=TX_TASK_HOLD,
                amount=-amount,
                balance_after=balance["available_credits"],
                description=description or "Credits held for task",
                created_by=created_by,
                task_id=task_id,
            )

        self._logger.info(
            "Credits held",
            extra={"tx_id": tx_id, "user_id": user_id, "task_id": task_id, "amount": amount},
        )
        return balance

    def finalize(
        self,
        user_id: str,
        amount: int,
        task_id: str,
        created_by: str,
    ) -> dict[str, Any]:
        """
        Consume a task's hold as a permanent deduction.

        Held (and therefore total) drops by ``amount`` clamped to what is
        held; available is untouched. Idempotent per task.
        """
        self._require_positive(amount)

        with self._db.transaction() as conn:
            self._ensure_balance(conn, user_id)
            if self._find_task_transaction(conn, task_id, TX_TASK_DEDUCT) is not None:
                return self._read_balance(conn, user_id)

            held = self._read_balance(conn, user_id)["held_credits"]
            deducted = min(amount, held)
            conn.execute(
                "UPDATE credit_balances "
                "SET held = held - ?, total = total - ?, updated_at = ? "
                "WHERE user_id = ?",
                (deducted, deducted, self._now(), user_id),
            )
            balance = self._read_balance(conn, user_id)
            tx_id = self._append(
                conn,
                user_id=user_id,
                tx_type=TX_TASK_DEDUCT,
                amount=-deducted,
                balance_after=balance["available_credits"],
                description="Task completed, credits deducted",
                created_by=created_by,
                task_id=task_id,
            )

        if deducted < amount:
            self._logger.warning(
                "Finalize clamped to held credits",
                extra={"user_id": user_id, "task_id": task_id, "requested": amount, "held": held},
            )
        self._logger.info(
            "Credits finalized",
            extra={"tx_id": tx_id, "user_id": user_id, "task_id": task_id, "amount": deducted},
        )
        return balance

    def release(
        self,
        user_id: str,
        amount: int,
        task_id: str,
        created_by: str,
        description: str | None = None,
    ) -> dict[str, Any]:
        """Return a task's hold to available, clamped to what is held. Idempotent per task."""
        self._require_positive(amount)

        with self._db.transaction() as conn:
            self._ensure_balance(conn, user_id)
            if self._find_task_transaction(conn, task_id, TX_TASK_RELEASE) is not None:
                return self._read_balance(conn, user_id)

            held = self._read_balance(conn, user_id)["held_credits"]
            moved = min(amount, held)
            conn.execute(
                "UPDATE credit_balances "
                "SET held = held - ?, available = available + ?, updated_at = ? "
                "WHERE user_id = ?",
                (moved, moved, self._now(), user_id),
            )
            balance = self._read_balance(conn, user_id)
            tx_id = self._append(
                conn,
                user_id=user_id,
                tx_type=TX_TASK_RELEASE,
                amount=moved,
                balance_after=balance["available_credits"],
                description=description or "Task cancelled, credits released",
                created_by=created_by,
                task_id=task_id,
            )

        self._logger.info(
            "Credits released",
            extra={"tx_id": tx_id, "user_id": user_id, "task_id": task_id, "amount": moved},
        )
        return balance

    def _add_credits(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        amount: int,
    ) -> dict[str, Any]:
        self._ensure_balance(conn, user_id)
        # total <= lifetime, so this bound covers every balance column
        if self._read_balance(conn, user_id)["lifetime_credits"] + amount > MAX_MINOR_UNITS:
            raise ServiceError(
                "VALIDATION_ERROR",
                "amount would exceed the maximum balance",
                400,
                {"field": "amount", "max": from_minor_units(MAX_MINOR_UNITS)},
            )
        conn.execute(
            "UPDATE credit_balances "
            "SET total = total + ?, available = available + ?, lifetime = lifetime + ?, "
            "updated_at = ? WHERE user_id = ?",
            (amount, amount, amount, self._now(), user_id),
        )
        return self._read_balance(conn, user_id)

    def grant(
        self,
        user_id: str,
        amount: int,
        description: str,
        created_by: str,
    ) -> dict[str, Any]:
        """Add credits to a user's balance as an admin grant."""
        self._require_positive(amount)

        with self._db.transaction() as conn:
            balance = self._add_credits(conn, user_id, amount)
            tx_id = self._append(
                conn,
                user_id=user_id,
                tx_type=TX_ADMIN_GRANT,
                amount=amount,
                balance_after=balance["available_credits"],
                description=description,
                created_by=created_by,
            )

        self._logger.info(
            "Credits granted",
            extra={"tx_id": tx_id, "user_id": user_id, "amount": amount, "granted_by": created_by},
        )
        return balance

    def purchase(
        self,
        user_id: str,
        pack_id: str,
        amount: int,
        description: str,
        payment_reference: str | None = None,
    ) -> tuple[dict[str, Any], dict[str, Any] | None]:
        """
        Record a credit-pack purchase.

        Returns ``(balance, original)``. A repeated ``payment_reference``
        for the same user records nothing and returns the earlier purchase
        transaction as ``original``; otherwise ``original`` is None.
        """
        self._require_positive(amount)

        with self._db.transaction() as conn:
            if payment_reference is not None:
                existing = conn.execute(
                    "SELECT " + _TX_COLUMNS_SQL + " FROM credit_transactions "  # nosec B608
                    "WHERE user_id = ? AND type = ? AND reference = ?",
                    (user_id, TX_PURCHASE, payment_reference),
                ).fetchone()
                if existing is not None:
                    self._logger.info(
                        "Duplicate purchase ignored",
                        extra={"user_id": user_id, "reference": payment_reference},
                    )
                    original = {column: existing[column] for column in _TX_COLUMNS}
                    return self._read_balance(conn, user_id), original

            balance = self._add_credits(conn, user_id, amount)
            tx_id = self._append(
                conn,
                user_id=user_id,
                tx_type=TX_PURCHASE,
                amount=amount,
                balance_after=balance["available_credits"],
                description=description,
                created_by=user_id,
                pack_id=pack_id,
                reference=payment_reference,
            )

        self._logger.info(
            "Credits purchased",
            extra={"tx_id": tx_id, "user_id": user_id, "pack_id": pack_id, "amount": amount},
        )
        return balance, None

    def list_transactions(self, user_id: str, limit: int = 50) -> list[dict[str, Any]]:
        """Transactions for a user, newest first (reverse commit order)."""
        with self._db.lock:
            rows = self._db.connection.execute(
                "SELECT " + _TX_COLUMNS_SQL + " FROM credit_transactions "  # nosec B608
                "WHERE user_id = ? ORDER BY seq DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        return [{column: row[column] for column in _TX_COLUMNS} for row in rows]

    def replay(self, user_id: str) -> dict[str, int]:
        """
        Rebuild a balance from the transaction log in commit order.

        Holds and releases move credits between available and held;
        deductions consume held (and total); purchases and grants add to
        available, total and lifetime.
        """
        with self._db.lock:
            rows = self._db.connection.execute(
                "SELECT type, amount FROM credit_transactions WHERE user_id = ? ORDER BY seq",
                (user_id,),
            ).fetchall()

        available = held = total = lifetime = 0
        for row in rows:
            tx_type, amount = row["type"], row["amount"]
            if tx_type in (TX_PURCHASE, TX_ADMIN_GRANT):
                available += amount
                total += amount
                lifetime += amount
            elif tx_type in (TX_TASK_HOLD, TX_TASK_RELEASE):
                available += amount
                held -= amount
            elif tx_type == TX_TASK_DEDUCT:
                held += amount
                total += amount

        return {
            "available_credits": available,
            "held_credits": held,
            "total_credits": total,
            "lifetime_credits": lifetime,
        }
