"""SQLite ledger store for split-ledger."""

import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path

from .exceptions import StoreUnavailableError
from .models import (
    Expense,
    Group,
    MemberSplitDefault,
    Participant,
    Payment,
    PaymentReversal,
    SplitType,
)
from .money import Money
from .store import LedgerStore

logger = logging.getLogger(__name__)


def _decimal_or_none(value: str | None) -> Decimal | None:
    return Decimal(value) if value is not None else None


def _str_or_none(value: Decimal | None) -> str | None:
    return str(value) if value is not None else None


class Database(LedgerStore):
    """SQLite ledger store.

    Each thread gets its own connection and the database runs in WAL mode, so
    reads never wait for a writer and see a snapshot. Units of work take a
    re-entrant lock keyed by scope, acquired with a bounded timeout, and run
    as BEGIN IMMEDIATE transactions. SQLite's busy timeout bounds the wait
    for the single database writer.
    """

    def __init__(self, db_path: Path, timeout: float = 5.0):
        """Initialize database connection."""
        self.db_path = db_path
        self.timeout = timeout
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._registry_lock = threading.Lock()
        self._scope_locks: dict[str, threading.RLock] = {}
        self.conn.execute("PRAGMA journal_mode = WAL")
        self._init_schema()

    @property
    def conn(self) -> sqlite3.Connection:
        """Connection owned by the calling thread."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.timeout,
                check_same_thread=False,  # close() may run on another thread
                isolation_level=None,  # transactions are managed explicitly
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            self._local.conn = conn
            self._local.depth = 0
            with self._registry_lock:
                self._connections.append(conn)
        return conn

    def _init_schema(self):
        """Initialize database schema."""
        cursor = self.conn.cursor()

        # Groups and their ordered members
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS ledger_groups (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                owner_id TEXT NOT NULL,
                currency TEXT NOT NULL,
                default_split_type TEXT NOT NULL,
                created_at TIMESTAMP NOT NULL
            )
        """
        )
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS group_members (
                group_id TEXT NOT NULL REFERENCES ledger_groups(id) ON DELETE CASCADE,
                user_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                default_percentage TEXT,
                default_shares INTEGER,
                PRIMARY KEY (group_id, user_id)
            )
        """
        )

        # Expenses and participant rows
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS expenses (
                id TEXT PRIMARY KEY,
                group_id TEXT NOT NULL REFERENCES ledger_groups(id),
                payer_id TEXT NOT NULL,
                description TEXT NOT NULL,
                category_id TEXT,
                amount_minor INTEGER NOT NULL,
                currency TEXT NOT NULL,
                split_type TEXT NOT NULL,
                expense_date DATE NOT NULL,
                created_at TIMESTAMP NOT NULL
            )
        """
        )
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS participants (
                expense_id TEXT NOT NULL REFERENCES expenses(id) ON DELETE CASCADE,
                user_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                amount_minor INTEGER NOT NULL,
                percentage TEXT,
                shares INTEGER,
                is_paid INTEGER NOT NULL DEFAULT 0,
                paid_at TIMESTAMP,
                linked_payment_id TEXT,
                linked_transfer_id TEXT,
                PRIMARY KEY (expense_id, user_id)
            )
        """
        )

        # Payments are append-only; expense links survive expense deletion
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS payments (
                id TEXT PRIMARY KEY,
                group_id TEXT NOT NULL REFERENCES ledger_groups(id),
                from_user_id TEXT NOT NULL,
                to_user_id TEXT NOT NULL,
                amount_minor INTEGER NOT NULL,
                currency TEXT NOT NULL,
                linked_transfer_id TEXT,
                created_at TIMESTAMP NOT NULL
            )
        """
        )
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS payment_expenses (
                payment_id TEXT NOT NULL REFERENCES payments(id),
                expense_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                PRIMARY KEY (payment_id, expense_id)
            )
        """
        )
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS payment_reversals (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                payment_id TEXT NOT NULL REFERENCES payments(id),
                expense_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                reversed_by TEXT NOT NULL,
                reversed_at TIMESTAMP NOT NULL
            )
        """
        )

    def close(self):
        """Close every connection opened by this store."""
        with self._registry_lock:
            connections, self._connections = self._connections, []
        for conn in connections:
            conn.close()
        self._local = threading.local()

    # ========================================================================
    # Locking and transactions
    # ========================================================================

    @contextmanager
    def scope_lock(self, scope: str) -> Iterator[None]:
        """Hold the lock for one scope; other scopes are not blocked."""
        with self._registry_lock:
            lock = self._scope_locks.setdefault(scope, threading.RLock())
        if not lock.acquire(timeout=self.timeout):
            raise StoreUnavailableError(
                f"Timed out after {self.timeout}s waiting for the ledger ({scope})"
            )
        try:
            yield
        finally:
            lock.release()

    @contextmanager
    def _snapshot(self) -> Iterator[None]:
        """Run several reads against one snapshot, without any lock."""
        conn = self.conn
        if self._local.depth > 0 or conn.in_transaction:
            yield
            return
        try:
            conn.execute("BEGIN")
            yield
        except sqlite3.OperationalError as e:
            raise StoreUnavailableError(f"Cannot read the ledger: {e}") from e
        finally:
            if conn.in_transaction:
                conn.execute("COMMIT")

    @contextmanager
    def transaction(self, scope: str = "ledger") -> Iterator[None]:
        """Run the block as one BEGIN IMMEDIATE transaction."""
        conn = self.conn
        if self._local.depth > 0:
            self._local.depth += 1
            try:
                yield
            finally:
                self._local.depth -= 1
            return

        with self.scope_lock(scope):
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as e:
                raise StoreUnavailableError(
                    f"Cannot start transaction ({scope}): {e}"
                ) from e

            self._local.depth = 1
            logger.debug(f"Began transaction ({scope})")
            try:
                yield
            except sqlite3.OperationalError as e:
                conn.execute("ROLLBACK")
                raise StoreUnavailableError(f"Transaction failed ({scope}): {e}") from e
            except BaseException:
                conn.execute("ROLLBACK")
                logger.debug(f"Rolled back transaction ({scope})")
                raise
            else:
                try:
                    conn.execute("COMMIT")
                except sqlite3.OperationalError as e:
                    conn.execute("ROLLBACK")
                    raise StoreUnavailableError(
                        f"Cannot commit transaction ({scope}): {e}"
                    ) from e
                logger.debug(f"Committed transaction ({scope})")
            finally:
                self._local.depth = 0

    # ========================================================================
    # Group operations
    # ========================================================================

    def load_group(self, group_id: str) -> Group | None:
        """Load a group with its ordered members and default splits."""
        with self._snapshot():
            cursor = self.conn.cursor()
            cursor.execute(
                """
                SELECT id, name, owner_id, currency, default_split_type, created_at
                FROM ledger_groups
                WHERE id = ?
                """,
                (group_id,),
            )
            row = cursor.fetchone()
            if not row:
                return None

            cursor.execute(
                """
                SELECT user_id, default_percentage, default_shares
                FROM group_members
                WHERE group_id = ?
                ORDER BY position
                """,
                (group_id,),
            )
            member_rows = cursor.fetchall()

        defaults = [
            MemberSplitDefault(
                user_id=m["user_id"],
                percentage=_decimal_or_none(m["default_percentage"]),
                shares=m["default_shares"],
            )
            for m in member_rows
            if m["default_percentage"] is not None or m["default_shares"] is not None
        ]
        return Group(
            id=row["id"],
            name=row["name"],
            owner_id=row["owner_id"],
            currency=row["currency"],
            members=[m["user_id"] for m in member_rows],
            default_split_type=SplitType(row["default_split_type"]),
            default_splits=defaults,
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def save_group(self, group: Group) -> None:
        """Insert or replace a group, including members and default splits."""
        defaults = {d.user_id: d for d in group.default_splits}
        with self.transaction(f"group:{group.id}"):
            cursor = self.conn.cursor()
            cursor.execute(
                """
                INSERT INTO ledger_groups (
                    id, name, owner_id, currency, default_split_type, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    owner_id = excluded.owner_id,
                    currency = excluded.currency,
                    default_split_type = excluded.default_split_type
                """,
                (
                    group.id,
                    group.name,
                    group.owner_id,
                    group.currency,
                    group.default_split_type.value,
                    group.created_at.isoformat(),
                ),
            )
            cursor.execute("DELETE FROM group_members WHERE group_id = ?", (group.id,))
            for position, user_id in enumerate(group.members):
                default = defaults.get(user_id)
                cursor.execute(
                    """
                    INSERT INTO group_members (
                        group_id, user_id, position, default_percentage, default_shares
                    ) VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        group.id,
                        user_id,
                        position,
                        _str_or_none(default.percentage) if default else None,
                        default.shares if default else None,
                    ),
                )

    # ========================================================================
    # Expense operations
    # ========================================================================

    def _row_to_participant(self, row: sqlite3.Row, currency: str) -> Participant:
        return Participant(
            expense_id=row["expense_id"],
            user_id=row["user_id"],
            amount_owed=Money(amount=row["amount_minor"], currency=currency),
            percentage=_decimal_or_none(row["percentage"]),
            shares=row["shares"],
            is_paid=bool(row["is_paid"]),
            paid_at=datetime.fromisoformat(row["paid_at"]) if row["paid_at"] else None,
            linked_payment_id=row["linked_payment_id"],
            linked_transfer_id=row["linked_transfer_id"],
        )

    def _row_to_expense(
        self, row: sqlite3.Row, participant_rows: list[sqlite3.Row]
    ) -> Expense:
        return Expense(
            id=row["id"],
            group_id=row["group_id"],
            payer_id=row["payer_id"],
            description=row["description"],
            category_id=row["category_id"],
            total=Money(amount=row["amount_minor"], currency=row["currency"]),
            split_type=SplitType(row["split_type"]),
            expense_date=date.fromisoformat(row["expense_date"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            participants=[
                self._row_to_participant(p, row["currency"]) for p in participant_rows
            ],
        )

    def load_expense(self, expense_id: str) -> Expense | None:
        """Load an expense with its participant rows."""
        with self._snapshot():
            cursor = self.conn.cursor()
            cursor.execute("SELECT * FROM expenses WHERE id = ?", (expense_id,))
            row = cursor.fetchone()
            if not row:
                return None
            cursor.execute(
                "SELECT * FROM participants WHERE expense_id = ? ORDER BY position",
                (expense_id,),
            )
            participant_rows = cursor.fetchall()
        return self._row_to_expense(row, participant_rows)

    def save_expense(self, expense: Expense) -> None:
        """Insert or replace an expense and all of its participant rows."""
        with self.transaction(f"expense:{expense.id}"):
            cursor = self.conn.cursor()
            cursor.execute(
                """
                INSERT INTO expenses (
                    id, group_id, payer_id, description, category_id,
                    amount_minor, currency, split_type, expense_date, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    payer_id = excluded.payer_id,
                    description = excluded.description,
                    category_id = excluded.category_id,
                    amount_minor = excluded.amount_minor,
                    currency = excluded.currency,
                    split_type = excluded.split_type,
                    expense_date = excluded.expense_date
                """,
                (
                    expense.id,
                    expense.group_id,
                    expense.payer_id,
                    expense.description,
                    expense.category_id,
                    expense.total.amount,
                    expense.total.currency,
                    expense.split_type.value,
                    expense.expense_date.isoformat(),
                    expense.created_at.isoformat(),
                ),
            )
            cursor.execute(
                "DELETE FROM participants WHERE expense_id = ?", (expense.id,)
            )
            for position, participant in enumerate(expense.participants):
                cursor.execute(
                    """
                    INSERT INTO participants (
                        expense_id, user_id, position, amount_minor, percentage,
                        shares, is_paid, paid_at, linked_payment_id, linked_transfer_id
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        expense.id,
                        participant.user_id,
                        position,
                        participant.amount_owed.amount,
                        _str_or_none(participant.percentage),
                        participant.shares,
                        int(participant.is_paid),
                        (
                            participant.paid_at.isoformat()
                            if participant.paid_at
                            else None
                        ),
                        participant.linked_payment_id,
                        participant.linked_transfer_id,
                    ),
                )

    def delete_expense(self, expense_id: str) -> bool:
        """Delete an expense and its participant rows."""
        with self.transaction(f"expense:{expense_id}"):
            cursor = self.conn.cursor()
            cursor.execute("DELETE FROM expenses WHERE id = ?", (expense_id,))
            return cursor.rowcount > 0

    def load_participant(self, expense_id: str, user_id: str) -> Participant | None:
        """Load a single participant row."""
        with self._snapshot():
            cursor = self.conn.cursor()
            cursor.execute(
                """
                SELECT p.*, e.currency AS currency
                FROM participants p
                JOIN expenses e ON e.id = p.expense_id
                WHERE p.expense_id = ? AND p.user_id = ?
                """,
                (expense_id, user_id),
            )
            row = cursor.fetchone()
        if not row:
            return None
        return self._row_to_participant(row, row["currency"])

    def save_participant(
        self, participant: Participant, expected_is_paid: bool
    ) -> None:
        """Compare-and-swap a participant's payment state."""
        scope = f"expense:{participant.expense_id}:{participant.user_id}"
        with self.transaction(scope):
            cursor = self.conn.cursor()
            cursor.execute(
                """
                UPDATE participants SET
                    is_paid = ?,
                    paid_at = ?,
                    linked_payment_id = ?,
                    linked_transfer_id = ?
                WHERE expense_id = ? AND user_id = ? AND is_paid = ?
                """,
                (
                    int(participant.is_paid),
                    participant.paid_at.isoformat() if participant.paid_at else None,
                    participant.linked_payment_id,
                    participant.linked_transfer_id,
                    participant.expense_id,
                    participant.user_id,
                    int(expected_is_paid),
                ),
            )
            if cursor.rowcount != 1:
                raise StoreUnavailableError(
                    f"Concurrent update of participant {participant.user_id} "
                    f"on expense {participant.expense_id}"
                )

    def load_group_expenses(self, group_id: str) -> list[Expense]:
        """Load every expense of a group, oldest first."""
        with self._snapshot():
            cursor = self.conn.cursor()
            cursor.execute(
                """
                SELECT * FROM expenses
                WHERE group_id = ?
                ORDER BY expense_date, created_at, id
                """,
                (group_id,),
            )
            expense_rows = cursor.fetchall()
            cursor.execute(
                """
                SELECT p.* FROM participants p
                JOIN expenses e ON e.id = p.expense_id
                WHERE e.group_id = ?
                ORDER BY p.expense_id, p.position
                """,
                (group_id,),
            )
            participant_rows = cursor.fetchall()

        by_expense: dict[str, list[sqlite3.Row]] = {}
        for row in participant_rows:
            by_expense.setdefault(row["expense_id"], []).append(row)

        return [
            self._row_to_expense(row, by_expense.get(row["id"], []))
            for row in expense_rows
        ]

    # ========================================================================
    # Payment operations
    # ========================================================================

    def append_payment(self, payment: Payment) -> None:
        """Append a payment and its closed-expense set."""
        with self.transaction(f"payment:{payment.id}"):
            cursor = self.conn.cursor()
            cursor.execute(
                """
                INSERT INTO payments (
                    id, group_id, from_user_id, to_user_id, amount_minor,
                    currency, linked_transfer_id, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    payment.id,
                    payment.group_id,
                    payment.from_user_id,
                    payment.to_user_id,
                    payment.amount.amount,
                    payment.amount.currency,
                    payment.linked_transfer_id,
                    payment.created_at.isoformat(),
                ),
            )
            cursor.executemany(
                """
                INSERT INTO payment_expenses (payment_id, expense_id, position)
                VALUES (?, ?, ?)
                """,
                [
                    (payment.id, expense_id, position)
                    for position, expense_id in enumerate(payment.expense_ids)
                ],
            )

    def _load_payments(self, where: str, key: str) -> list[Payment]:
        with self._snapshot():
            cursor = self.conn.cursor()
            cursor.execute(
                f"SELECT * FROM payments WHERE {where} = ? ORDER BY created_at, id",
                (key,),
            )
            payment_rows = cursor.fetchall()
            ids = [row["id"] for row in payment_rows]
            placeholders = ",".join("?" * len(ids))
            link_rows: list[sqlite3.Row] = []
            reversal_rows: list[sqlite3.Row] = []
            if ids:
                cursor.execute(
                    f"""
                    SELECT payment_id, expense_id FROM payment_expenses
                    WHERE payment_id IN ({placeholders})
                    ORDER BY position
                    """,
                    ids,
                )
                link_rows = cursor.fetchall()
                cursor.execute(
                    f"""
                    SELECT * FROM payment_reversals
                    WHERE payment_id IN ({placeholders})
                    ORDER BY id
                    """,
                    ids,
                )
                reversal_rows = cursor.fetchall()

        expense_ids: dict[str, list[str]] = {}
        for row in link_rows:
            expense_ids.setdefault(row["payment_id"], []).append(row["expense_id"])
        reversals: dict[str, list[PaymentReversal]] = {}
        for row in reversal_rows:
            reversals.setdefault(row["payment_id"], []).append(
                PaymentReversal(
                    payment_id=row["payment_id"],
                    expense_id=row["expense_id"],
                    user_id=row["user_id"],
                    reversed_by=row["reversed_by"],
                    reversed_at=datetime.fromisoformat(row["reversed_at"]),
                )
            )

        return [
            Payment(
                id=row["id"],
                group_id=row["group_id"],
                from_user_id=row["from_user_id"],
                to_user_id=row["to_user_id"],
                amount=Money(amount=row["amount_minor"], currency=row["currency"]),
                expense_ids=expense_ids.get(row["id"], []),
                linked_transfer_id=row["linked_transfer_id"],
                created_at=datetime.fromisoformat(row["created_at"]),
                reversals=reversals.get(row["id"], []),
            )
            for row in payment_rows
        ]

    def load_payment(self, payment_id: str) -> Payment | None:
        """Load a payment with its closed-expense set and reversals."""
        payments = self._load_payments("id", payment_id)
        return payments[0] if payments else None

    def load_group_payments(self, group_id: str) -> list[Payment]:
        """Load every payment of a group, oldest first."""
        return self._load_payments("group_id", group_id)

    def remove_payment_expense(self, payment_id: str, expense_id: str) -> None:
        """Remove one expense from a payment's closed-expense set."""
        with self.transaction(f"payment:{payment_id}"):
            self.conn.execute(
                "DELETE FROM payment_expenses WHERE payment_id = ? AND expense_id = ?",
                (payment_id, expense_id),
            )

    def append_payment_reversal(self, reversal: PaymentReversal) -> None:
        """Record that a participant closed by a payment was reverted."""
        with self.transaction(f"payment:{reversal.payment_id}"):
            self.conn.execute(
                """
                INSERT INTO payment_reversals (
                    payment_id, expense_id, user_id, reversed_by, reversed_at
                ) VALUES (?, ?, ?, ?, ?)
                """,
                (
                    reversal.payment_id,
                    reversal.expense_id,
                    reversal.user_id,
                    reversal.reversed_by,
                    reversal.reversed_at.isoformat(),
                ),
            )
