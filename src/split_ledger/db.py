"""SQLite database operations for split-ledger."""

import json
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from .models import (
    Budget,
    BudgetPeriod,
    Category,
    Group,
    MemberBalance,
    Transaction,
    from_cents,
    to_cents,
)


def _ts(value: datetime) -> str:
    """Serialize a datetime so that string order matches time order."""
    return value.isoformat(timespec="microseconds")


class Database:
    """SQLite database manager."""

    def __init__(self, db_path: Path, timeout: float = 30.0):
        """Initialize database connection."""
        self.db_path = db_path
        # Autocommit mode: multi-statement writes go through transaction()
        self.conn = sqlite3.connect(
            str(db_path), timeout=timeout, isolation_level=None
        )
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._depth = 0
        self._init_schema()

    def _init_schema(self):
        """Initialize database schema."""
        with self.transaction():
            cursor = self.conn.cursor()

            # Groups and membership
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS groups (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL UNIQUE,
                    description TEXT NOT NULL DEFAULT '',
                    created_by TEXT NOT NULL,
                    created_at TIMESTAMP NOT NULL,
                    settled_at TIMESTAMP
                )
            """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS group_members (
                    group_id INTEGER NOT NULL REFERENCES groups(id),
                    member_id TEXT NOT NULL,
                    joined_at TIMESTAMP NOT NULL,
                    PRIMARY KEY (group_id, member_id)
                )
            """
            )

            # One running balance per (group, member)
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS member_balances (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    group_id INTEGER NOT NULL REFERENCES groups(id),
                    member_id TEXT NOT NULL,
                    balance_cents INTEGER NOT NULL DEFAULT 0,
                    updated_at TIMESTAMP NOT NULL,
                    UNIQUE (group_id, member_id)
                )
            """
            )

            # Transactions
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS transactions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    group_id INTEGER NOT NULL REFERENCES groups(id),
                    amount_cents INTEGER NOT NULL CHECK (amount_cents > 0),
                    description TEXT NOT NULL DEFAULT '',
                    notes TEXT,
                    paid_by TEXT NOT NULL,
                    category TEXT NOT NULL,
                    owed_to_purchaser INTEGER NOT NULL DEFAULT 0,
                    is_settlement INTEGER NOT NULL DEFAULT 0,
                    has_been_settled INTEGER NOT NULL DEFAULT 0,
                    split_member_ids TEXT NOT NULL,
                    date TIMESTAMP NOT NULL,
                    created_at TIMESTAMP NOT NULL
                )
            """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_transactions_group_category_date
                ON transactions (group_id, category, date)
            """
            )

            # Budgets
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS budgets (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    group_id INTEGER NOT NULL REFERENCES groups(id),
                    category TEXT NOT NULL,
                    amount_cents INTEGER NOT NULL CHECK (amount_cents >= 0),
                    period TEXT NOT NULL,
                    is_repeating INTEGER NOT NULL DEFAULT 1,
                    created_by TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    current_period_start TIMESTAMP NOT NULL,
                    current_period_end TIMESTAMP NOT NULL,
                    alert_at INTEGER NOT NULL DEFAULT 80,
                    created_at TIMESTAMP NOT NULL
                )
            """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_budgets_group_category_active
                ON budgets (group_id, category, is_active)
            """
            )

    def close(self):
        """Close database connection."""
        self.conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a block inside one write transaction.

        BEGIN IMMEDIATE takes the database write lock up front, so a block
        that reads then writes cannot interleave with another writer. Nested
        blocks join the outermost transaction.
        """
        if self._depth:
            self._depth += 1
            try:
                yield self.conn
            finally:
                self._depth -= 1
            return

        self.conn.execute("BEGIN IMMEDIATE")
        self._depth = 1
        try:
            yield self.conn
        except BaseException:
            self.conn.execute("ROLLBACK")
            raise
        else:
            self.conn.execute("COMMIT")
        finally:
            self._depth = 0

    # ========================================================================
    # Group operations
    # ========================================================================

    def create_group(self, group: Group) -> int:
        """Save a new group with its initial members."""
        with self.transaction():
            cursor = self.conn.cursor()
            cursor.execute(
                """
                INSERT INTO groups (name, description, created_by, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (group.name, group.description, group.created_by, _ts(group.created_at)),
            )
            group_id = cursor.lastrowid
            if group_id is None:
                raise RuntimeError("Failed to insert group")
            for member_id in group.member_ids:
                self.add_group_member(group_id, member_id, group.created_at)
        return group_id

    def add_group_member(
        self, group_id: int, member_id: str, joined_at: datetime | None = None
    ):
        """Add a member to a group and give them a zero balance."""
        joined = _ts(joined_at or datetime.now())
        with self.transaction():
            self.conn.execute(
                """
                INSERT OR IGNORE INTO group_members (group_id, member_id, joined_at)
                VALUES (?, ?, ?)
                """,
                (group_id, member_id, joined),
            )
            self.conn.execute(
                """
                INSERT OR IGNORE INTO member_balances
                    (group_id, member_id, balance_cents, updated_at)
                VALUES (?, ?, 0, ?)
                """,
                (group_id, member_id, joined),
            )

    def get_group(self, group_id: int) -> Group | None:
        """Get a group by ID."""
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM groups WHERE id = ?", (group_id,))
        row = cursor.fetchone()
        return self._row_to_group(row) if row else None

    def get_group_by_name(self, name: str) -> Group | None:
        """Get a group by its unique name."""
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM groups WHERE name = ?", (name,))
        row = cursor.fetchone()
        return self._row_to_group(row) if row else None

    def set_group_settled_at(self, group_id: int, settled_at: datetime):
        """Stamp the time of a group's latest settlement."""
        self.conn.execute(
            "UPDATE groups SET settled_at = ? WHERE id = ?",
            (_ts(settled_at), group_id),
        )

    def _row_to_group(self, row: sqlite3.Row) -> Group:
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT member_id FROM group_members
            WHERE group_id = ?
            ORDER BY joined_at, member_id
            """,
            (row["id"],),
        )
        return Group(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            created_by=row["created_by"],
            member_ids=[member["member_id"] for member in cursor.fetchall()],
            created_at=datetime.fromisoformat(row["created_at"]),
            settled_at=(
                datetime.fromisoformat(row["settled_at"]) if row["settled_at"] else None
            ),
        )

    # ========================================================================
    # Member balance operations
    # ========================================================================

    def increment_balances(self, group_id: int, deltas: dict[str, int]):
        """
        Add signed cent deltas to member balances.

        Each row is an atomic upsert-increment; a missing row is created with
        the delta as its balance.
        """
        now = _ts(datetime.now())
        with self.transaction():
            for member_id, delta in deltas.items():
                self.conn.execute(
                    """
                    INSERT INTO member_balances
                        (group_id, member_id, balance_cents, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(group_id, member_id) DO UPDATE SET
                        balance_cents = balance_cents + excluded.balance_cents,
                        updated_at = excluded.updated_at
                    """,
                    (group_id, member_id, delta, now),
                )

    def reset_balances(self, group_id: int, member_ids: Iterable[str] = ()):
        """Force every balance of a group to zero in one bulk update."""
        now = _ts(datetime.now())
        with self.transaction():
            self.conn.execute(
                """
                UPDATE member_balances SET balance_cents = 0, updated_at = ?
                WHERE group_id = ?
                """,
                (now, group_id),
            )
            for member_id in member_ids:
                self.conn.execute(
                    """
                    INSERT OR IGNORE INTO member_balances
                        (group_id, member_id, balance_cents, updated_at)
                    VALUES (?, ?, 0, ?)
                    """,
                    (group_id, member_id, now),
                )

    def get_member_balances(self, group_id: int) -> list[MemberBalance]:
        """Get all member balances of a group."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT group_id, member_id, balance_cents
            FROM member_balances
            WHERE group_id = ?
            ORDER BY member_id
            """,
            (group_id,),
        )
        return [
            MemberBalance(
                group_id=row["group_id"],
                member_id=row["member_id"],
                balance=from_cents(row["balance_cents"]),
            )
            for row in cursor.fetchall()
        ]

    # ========================================================================
    # Transaction operations
    # ========================================================================

    def save_transaction(self, transaction: Transaction) -> int:
        """Insert a transaction record."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO transactions (
                group_id, amount_cents, description, notes, paid_by, category,
                owed_to_purchaser, is_settlement, has_been_settled,
                split_member_ids, date, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                transaction.group_id,
                to_cents(transaction.amount),
                transaction.description,
                transaction.notes,
                transaction.paid_by,
                transaction.category.value,
                int(transaction.owed_to_purchaser),
                int(transaction.is_settlement),
                int(transaction.has_been_settled),
                json.dumps(transaction.split_member_ids),
                _ts(transaction.date),
                _ts(transaction.created_at),
            ),
        )
        row_id = cursor.lastrowid
        if row_id is None:
            raise RuntimeError("Failed to insert transaction")
        return row_id

    def update_transaction(self, transaction: Transaction):
        """Persist the editable fields of a transaction."""
        self.conn.execute(
            """
            UPDATE transactions SET
                amount_cents = ?, description = ?, notes = ?, category = ?,
                has_been_settled = ?
            WHERE id = ?
            """,
            (
                to_cents(transaction.amount),
                transaction.description,
                transaction.notes,
                transaction.category.value,
                int(transaction.has_been_settled),
                transaction.id,
            ),
        )

    def delete_transaction(self, transaction_id: int):
        """Delete a transaction record."""
        self.conn.execute("DELETE FROM transactions WHERE id = ?", (transaction_id,))

    def get_transaction(self, transaction_id: int) -> Transaction | None:
        """Get a transaction by ID."""
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM transactions WHERE id = ?", (transaction_id,))
        row = cursor.fetchone()
        return self._row_to_transaction(row) if row else None

    def list_transactions(
        self, group_id: int, newest_first: bool = True
    ) -> list[Transaction]:
        """Get all transactions of a group in creation order."""
        order = "DESC" if newest_first else "ASC"
        cursor = self.conn.cursor()
        cursor.execute(
            f"SELECT * FROM transactions WHERE group_id = ? ORDER BY id {order}",
            (group_id,),
        )
        return [self._row_to_transaction(row) for row in cursor.fetchall()]

    def mark_transactions_settled(self, transaction_ids: list[int]):
        """Flag transactions as covered by a settlement."""
        self.conn.executemany(
            "UPDATE transactions SET has_been_settled = 1 WHERE id = ?",
            [(transaction_id,) for transaction_id in transaction_ids],
        )

    def find_spending_transactions(
        self,
        group_ids: Iterable[int],
        categories: Iterable[Category],
        start: datetime,
        end: datetime,
    ) -> list[Transaction]:
        """
        Range query for budget spending.

        Returns non-settlement transactions in any of the given groups and
        categories dated within [start, end].
        """
        group_list = sorted(set(group_ids))
        category_list = sorted({category.value for category in categories})
        if not group_list or not category_list:
            return []

        group_marks = ", ".join("?" for _ in group_list)
        category_marks = ", ".join("?" for _ in category_list)
        cursor = self.conn.cursor()
        cursor.execute(
            f"""
            SELECT * FROM transactions
            WHERE group_id IN ({group_marks})
              AND category IN ({category_marks})
              AND is_settlement = 0
              AND date >= ? AND date <= ?
            ORDER BY date
            """,
            (*group_list, *category_list, _ts(start), _ts(end)),
        )
        return [self._row_to_transaction(row) for row in cursor.fetchall()]

    def _row_to_transaction(self, row: sqlite3.Row) -> Transaction:
        return Transaction(
            id=row["id"],
            group_id=row["group_id"],
            amount=from_cents(row["amount_cents"]),
            description=row["description"],
            notes=row["notes"],
            paid_by=row["paid_by"],
            category=Category(row["category"]),
            owed_to_purchaser=bool(row["owed_to_purchaser"]),
            is_settlement=bool(row["is_settlement"]),
            has_been_settled=bool(row["has_been_settled"]),
            split_member_ids=json.loads(row["split_member_ids"]),
            date=datetime.fromisoformat(row["date"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    # ========================================================================
    # Budget operations
    # ========================================================================

    def save_budget(self, budget: Budget) -> int:
        """Insert a budget record."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO budgets (
                group_id, category, amount_cents, period, is_repeating,
                created_by, is_active, current_period_start,
                current_period_end, alert_at, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                budget.group_id,
                budget.category.value,
                to_cents(budget.amount),
                budget.period.value,
                int(budget.is_repeating),
                budget.created_by,
                int(budget.is_active),
                _ts(budget.current_period_start),
                _ts(budget.current_period_end),
                budget.alert_at,
                _ts(budget.created_at),
            ),
        )
        row_id = cursor.lastrowid
        if row_id is None:
            raise RuntimeError("Failed to insert budget")
        return row_id

    def update_budget(self, budget: Budget):
        """Persist a budget's mutable fields."""
        self.conn.execute(
            """
            UPDATE budgets SET
                amount_cents = ?, period = ?, is_repeating = ?, is_active = ?,
                current_period_start = ?, current_period_end = ?, alert_at = ?
            WHERE id = ?
            """,
            (
                to_cents(budget.amount),
                budget.period.value,
                int(budget.is_repeating),
                int(budget.is_active),
                _ts(budget.current_period_start),
                _ts(budget.current_period_end),
                budget.alert_at,
                budget.id,
            ),
        )

    def delete_budget(self, budget_id: int):
        """Delete a budget record."""
        self.conn.execute("DELETE FROM budgets WHERE id = ?", (budget_id,))

    def get_budget(self, budget_id: int) -> Budget | None:
        """Get a budget by ID."""
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM budgets WHERE id = ?", (budget_id,))
        row = cursor.fetchone()
        return self._row_to_budget(row) if row else None

    def find_active_budget(self, group_id: int, category: Category) -> Budget | None:
        """Get the active budget of a group for a category, if any."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            SELECT * FROM budgets
            WHERE group_id = ? AND category = ? AND is_active = 1
            ORDER BY id DESC
            LIMIT 1
            """,
            (group_id, category.value),
        )
        row = cursor.fetchone()
        return self._row_to_budget(row) if row else None

    def list_budgets(
        self, group_id: int | None = None, active_only: bool = True
    ) -> list[Budget]:
        """Get budgets, optionally restricted to one group and/or active ones."""
        clauses = []
        params: list[int] = []
        if group_id is not None:
            clauses.append("group_id = ?")
            params.append(group_id)
        if active_only:
            clauses.append("is_active = 1")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        cursor = self.conn.cursor()
        cursor.execute(
            f"SELECT * FROM budgets {where} ORDER BY created_at DESC, id DESC",
            params,
        )
        return [self._row_to_budget(row) for row in cursor.fetchall()]

    def _row_to_budget(self, row: sqlite3.Row) -> Budget:
        return Budget(
            id=row["id"],
            group_id=row["group_id"],
            category=Category(row["category"]),
            amount=from_cents(row["amount_cents"]),
            period=BudgetPeriod(row["period"]),
            is_repeating=bool(row["is_repeating"]),
            created_by=row["created_by"],
            is_active=bool(row["is_active"]),
            current_period_start=datetime.fromisoformat(row["current_period_start"]),
            current_period_end=datetime.fromisoformat(row["current_period_end"]),
            alert_at=row["alert_at"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )
