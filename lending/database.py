import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator, Optional, TypeVar

from lending.config import settings
from lending.errors import ConflictError, InventoryError, NotFoundError, StorageError
from lending.models import Borrowing, BorrowingStatus, Edition, Member, ensure_utc
from lending.repository import Repository, empty_stats, new_id

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


def _ts(value: Optional[datetime]) -> Optional[str]:
    # Fixed width so SQL text comparison orders timestamps correctly.
    if value is None:
        return None
    return ensure_utc(value).strftime(_TIMESTAMP_FORMAT)


def get_db_connection(db_file: str) -> sqlite3.Connection:
    """Open a SQLite connection with row access by column name.

    Autocommit mode: transactions are opened explicitly by run_atomic.
    """
    conn = sqlite3.connect(db_file, timeout=30, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    return conn


def create_tables(conn: sqlite3.Connection) -> None:
    """Create the lending tables if they do not exist yet."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS members (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            email TEXT UNIQUE NOT NULL,
            active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS editions (
            id TEXT PRIMARY KEY,
            book_title TEXT NOT NULL,
            format TEXT,
            price REAL CHECK(price IS NULL OR price >= 0),
            stock_quantity INTEGER NOT NULL CHECK(stock_quantity >= 0),
            available_quantity INTEGER NOT NULL,
            CHECK(available_quantity >= 0 AND available_quantity <= stock_quantity)
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS borrowings (
            id TEXT PRIMARY KEY,
            member_id TEXT NOT NULL REFERENCES members(id),
            edition_id TEXT NOT NULL REFERENCES editions(id),
            borrowed_at TEXT NOT NULL,
            due_date TEXT NOT NULL,
            returned_at TEXT,
            fine_amount REAL,
            status TEXT NOT NULL DEFAULT 'BORROWED'
                CHECK(status IN ('BORROWED', 'RETURNED', 'LOST')),
            notes TEXT
        )
    """)
    conn.execute("CREATE INDEX IF NOT EXISTS idx_borrowings_member_status ON borrowings(member_id, status)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_borrowings_status_due ON borrowings(status, due_date)")


def initialize_database(db_file: Optional[str] = None) -> str:
    """Create the schema in ``db_file`` (defaults to the configured file)."""
    path = db_file or settings.db_file
    conn = get_db_connection(path)
    try:
        create_tables(conn)
    finally:
        conn.close()
    logger.debug("Lending database initialised at %s", path)
    return path


class SQLiteRepository(Repository):
    """Repository persisted in a SQLite file.

    Each unit of work runs on one connection inside ``BEGIN IMMEDIATE``: the
    write lock is taken on entry, so a concurrent borrower waits and then
    re-reads the edition row after the first transaction commits.
    """

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = initialize_database(db_file)
        self._local = threading.local()

    # ------------------------- Connections ------------------------- #
    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        active = getattr(self._local, "conn", None)
        if active is not None:
            yield active
            return
        conn = get_db_connection(self.db_file)
        try:
            yield conn
        except sqlite3.Error as exc:
            logger.error("SQLite operation failed on %s: %s", self.db_file, exc)
            raise StorageError(str(exc)) from exc
        finally:
            conn.close()

    def run_atomic(self, unit_of_work: Callable[[], T]) -> T:
        if getattr(self._local, "conn", None) is not None:
            return unit_of_work()
        try:
            conn = get_db_connection(self.db_file)
        except sqlite3.Error as exc:
            logger.error("Could not open %s: %s", self.db_file, exc)
            raise StorageError(str(exc)) from exc
        self._local.conn = conn
        try:
            conn.execute("BEGIN IMMEDIATE")
            result = unit_of_work()
            conn.execute("COMMIT")
            return result
        except sqlite3.Error as exc:
            self._rollback(conn)
            logger.error("Unit of work rolled back after storage fault: %s", exc)
            raise StorageError(str(exc)) from exc
        except BaseException:
            self._rollback(conn)
            raise
        finally:
            self._local.conn = None
            conn.close()

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            try:
                conn.execute("ROLLBACK")
            except sqlite3.Error as exc:
                logger.warning("Rollback failed: %s", exc)

    # ------------------------- Members ------------------------- #
    def add_member(self, name, email, active=True, created_at=None):
        member = Member(new_id("mbr"), name, email, active=active, created_at=created_at)
        with self._connection() as conn:
            try:
                conn.execute(
                    "INSERT INTO members (id, name, email, active, created_at) VALUES (?, ?, ?, ?, ?)",
                    (member.id, member.name, member.email, int(member.active), _ts(member.created_at)),
                )
            except sqlite3.IntegrityError as exc:
                raise ConflictError("Email already exists") from exc
        return member

    def get_member(self, member_id):
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM members WHERE id = ?", (member_id,)).fetchone()
        return Member.from_dict(dict(row)) if row else None

    def find_member_by_email(self, email):
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM members WHERE email = ?", (email.strip().lower(),)
            ).fetchone()
        return Member.from_dict(dict(row)) if row else None

    def update_member(self, member):
        with self._connection() as conn:
            cursor = conn.execute(
                "UPDATE members SET name = ?, email = ?, active = ? WHERE id = ?",
                (member.name, member.email, int(member.active), member.id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("Member", member.id)
        return member

    def list_members(self):
        with self._connection() as conn:
            rows = conn.execute("SELECT * FROM members ORDER BY name").fetchall()
        return [Member.from_dict(dict(r)) for r in rows]

    # ------------------------- Editions ------------------------- #
    def add_edition(self, book_title, stock_quantity, price=None, format=None):
        edition = Edition(new_id("edn"), book_title, stock_quantity, price=price, format=format)
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO editions (id, book_title, format, price, stock_quantity, available_quantity)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (edition.id, edition.book_title, edition.format, edition.price,
                 edition.stock_quantity, edition.available_quantity),
            )
        return edition

    def get_edition(self, edition_id):
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM editions WHERE id = ?", (edition_id,)).fetchone()
        return Edition.from_dict(dict(row)) if row else None

    def list_editions(self):
        with self._connection() as conn:
            rows = conn.execute("SELECT * FROM editions ORDER BY book_title").fetchall()
        return [Edition.from_dict(dict(r)) for r in rows]

    def adjust_edition_availability(self, edition_id, delta):
        with self._connection() as conn:
            cursor = conn.execute(
                """
                UPDATE editions SET available_quantity = available_quantity + ?
                WHERE id = ? AND available_quantity + ? BETWEEN 0 AND stock_quantity
                """,
                (delta, edition_id, delta),
            )
            row = conn.execute("SELECT * FROM editions WHERE id = ?", (edition_id,)).fetchone()
        if row is None:
            raise NotFoundError("Edition", edition_id)
        if cursor.rowcount == 0:
            raise InventoryError(
                f"Edition {edition_id} availability would become "
                f"{row['available_quantity'] + delta} (stock {row['stock_quantity']})"
            )
        return Edition.from_dict(dict(row))

    # ------------------------- Borrowings ------------------------- #
    def create_borrowing(self, member_id, edition_id, borrowed_at, due_date, notes=None):
        borrowing = Borrowing(new_id("brw"), member_id, edition_id, borrowed_at, due_date, notes=notes)
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO borrowings (id, member_id, edition_id, borrowed_at, due_date, status, notes)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (borrowing.id, member_id, edition_id, _ts(borrowing.borrowed_at),
                 _ts(borrowing.due_date), borrowing.status.value, notes),
            )
        return borrowing

    def get_borrowing(self, borrowing_id):
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM borrowings WHERE id = ?", (borrowing_id,)).fetchone()
        return Borrowing.from_dict(dict(row)) if row else None

    def update_borrowing(self, borrowing):
        with self._connection() as conn:
            cursor = conn.execute(
                """
                UPDATE borrowings
                SET due_date = ?, returned_at = ?, fine_amount = ?, status = ?, notes = ?
                WHERE id = ?
                """,
                (_ts(borrowing.due_date), _ts(borrowing.returned_at), borrowing.fine_amount,
                 borrowing.status.value, borrowing.notes, borrowing.id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("Borrowing", borrowing.id)
        return borrowing

    def list_borrowings(self, member_id=None, status=None):
        clauses, params = [], []
        if member_id is not None:
            clauses.append("member_id = ?")
            params.append(member_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(BorrowingStatus(status).value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM borrowings {where} ORDER BY borrowed_at DESC, rowid DESC", params
            ).fetchall()
        return [Borrowing.from_dict(dict(r)) for r in rows]

    def list_overdue(self, as_of):
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM borrowings WHERE status = 'BORROWED' AND due_date < ? ORDER BY due_date",
                (_ts(as_of),),
            ).fetchall()
        return [Borrowing.from_dict(dict(r)) for r in rows]

    def count_active_borrowings(self, member_id):
        with self._connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM borrowings WHERE member_id = ? AND status = 'BORROWED'",
                (member_id,),
            ).fetchone()
        return int(row[0])

    def count_overdue_borrowings(self, member_id, as_of):
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) FROM borrowings
                WHERE member_id = ? AND status = 'BORROWED' AND due_date < ?
                """,
                (member_id, _ts(as_of)),
            ).fetchone()
        return int(row[0])

    def borrowing_stats(self, as_of):
        stats = empty_stats()
        with self._connection() as conn:
            for row in conn.execute("SELECT status, COUNT(*) AS n FROM borrowings GROUP BY status"):
                key = {
                    "BORROWED": "active_borrowings",
                    "RETURNED": "returned_borrowings",
                    "LOST": "lost_borrowings",
                }[row["status"]]
                stats[key] = int(row["n"])
                stats["total_borrowings"] += int(row["n"])
            stats["overdue_borrowings"] = int(conn.execute(
                "SELECT COUNT(*) FROM borrowings WHERE status = 'BORROWED' AND due_date < ?",
                (_ts(as_of),),
            ).fetchone()[0])
            total = conn.execute(
                "SELECT SUM(fine_amount) FROM borrowings WHERE fine_amount IS NOT NULL"
            ).fetchone()[0]
        stats["total_fines"] = round(total or 0.0, 2)
        return stats
