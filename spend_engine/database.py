import logging
import re
import sqlite3
from collections import Counter
from contextlib import contextmanager
from datetime import date
from pathlib import Path
from typing import Iterable, List, Optional, Set, Tuple

from spend_engine.config import DEFAULT_CONFIG
from spend_engine.core.categorizer import match_rule, order_rules
from spend_engine.core.models import Bank, Category, CategoryRule, Transaction
from spend_engine.errors import (
    ConflictError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from spend_engine.utils import DedupKey, dedup_key, dedupe_drafts

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
RESERVED_CATEGORY_NAMES = ("Uncategorized", "Income")
_COLOR = re.compile(r"^#[0-9a-fA-F]{6}$")
_NOW = "strftime('%Y-%m-%d %H:%M:%f', 'now')"


def _init_db(conn: sqlite3.Connection, default_categories=None) -> None:
    banks = ", ".join(f"'{b.value}'" for b in Bank)
    conn.executescript(
        f"""
        CREATE TABLE IF NOT EXISTS categories (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL UNIQUE COLLATE NOCASE,
            color TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS transactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            date TEXT NOT NULL,
            amount REAL NOT NULL,
            description TEXT NOT NULL,
            bank TEXT NOT NULL CHECK (bank IN ({banks})),
            category_id INTEGER,
            original_amount REAL,
            original_currency TEXT,
            conversion_rate REAL NOT NULL DEFAULT 1.0,
            created_at TEXT NOT NULL DEFAULT ({_NOW}),
            FOREIGN KEY (category_id) REFERENCES categories(id) ON DELETE SET NULL
        );

        CREATE TABLE IF NOT EXISTS category_rules (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            keyword TEXT NOT NULL,
            category_id INTEGER NOT NULL,
            created_at TEXT NOT NULL DEFAULT ({_NOW}),
            FOREIGN KEY (category_id) REFERENCES categories(id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS upload_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            filename TEXT NOT NULL,
            bank TEXT NOT NULL CHECK (bank IN ({banks})),
            transaction_count INTEGER NOT NULL,
            upload_date TEXT NOT NULL DEFAULT ({_NOW})
        );

        CREATE INDEX IF NOT EXISTS idx_transactions_date ON transactions(date);
        CREATE INDEX IF NOT EXISTS idx_transactions_category_id ON transactions(category_id);
        CREATE INDEX IF NOT EXISTS idx_transactions_date_bank ON transactions(date, bank);
        """
    )
    if conn.execute("PRAGMA user_version").fetchone()[0] >= SCHEMA_VERSION:
        return
    cats = default_categories
    if cats is None:
        cats = DEFAULT_CONFIG["default_categories"]
    with write_transaction(conn):
        conn.executemany(
            "INSERT OR IGNORE INTO categories (name, color) VALUES (?, ?)",
            [(c["name"], c["color"]) for c in cats],
        )
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")


@contextmanager
def connect(db_path: str, default_categories=None):
    """Open the database, creating schema and seed categories on first use.

    The connection runs in autocommit mode; writes go through
    :func:`write_transaction`.
    """
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        conn = sqlite3.connect(path, timeout=30, isolation_level=None)
    except sqlite3.Error as exc:
        raise PersistenceError(f"Could not open database {db_path}: {exc}") from exc
    try:
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        _init_db(conn, default_categories)
        yield conn
    except sqlite3.Error as exc:
        raise PersistenceError(f"Database error on {db_path}: {exc}") from exc
    finally:
        conn.close()


@contextmanager
def write_transaction(conn: sqlite3.Connection):
    """Run the block inside BEGIN IMMEDIATE ... COMMIT.

    The write lock is taken up front so reads made inside the block (such as
    the duplicate lookup) cannot be invalidated by a concurrent writer. Any
    failure rolls the whole block back.
    """
    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.execute("COMMIT")
    except sqlite3.Error as exc:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise PersistenceError(f"Database write failed: {exc}") from exc
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise


# -- transactions --------------------------------------------------------------


def existing_keys(conn: sqlite3.Connection, drafts, base_currency: str) -> Set[DedupKey]:
    """Dedup keys of persisted rows that could collide with *drafts*.

    One query bounded by the batch's banks and date span.
    """
    if not drafts:
        return set()
    banks = sorted({d.bank for d in drafts})
    dates = [d.date.isoformat() for d in drafts]
    placeholders = ", ".join("?" for _ in banks)
    rows = conn.execute(
        f"""
        SELECT date, amount, original_amount, original_currency, description, bank
        FROM transactions
        WHERE bank IN ({placeholders}) AND date BETWEEN ? AND ?
        """,
        [*banks, min(dates), max(dates)],
    ).fetchall()
    keys = set()
    for r in rows:
        if r["original_amount"] is not None:
            amount, currency = r["original_amount"], r["original_currency"] or base_currency
        else:
            amount, currency = r["amount"], base_currency
        keys.add(dedup_key(r["date"], amount, r["description"], r["bank"], currency))
    return keys


def load_ordered_rules(conn: sqlite3.Connection) -> List[CategoryRule]:
    rows = conn.execute("SELECT id, keyword, category_id, created_at FROM category_rules").fetchall()
    return order_rules(
        CategoryRule(r["id"], r["keyword"], r["category_id"], r["created_at"]) for r in rows
    )


def commit_drafts(db_path: str, drafts, base_currency: str) -> Tuple[List, int]:
    """Persist converted drafts that are not already stored.

    The duplicate lookup, rule matching and the insert share one write
    transaction, so two concurrent commits of the same rows insert them at
    most once. Each new row gets the category of the best matching rule, and
    every source file with new rows gets an ``upload_log`` entry.
    Returns (inserted_drafts, duplicate_count).
    """
    drafts = list(drafts)
    with connect(db_path) as conn:
        with write_transaction(conn):
            keys = existing_keys(conn, drafts, base_currency)
            survivors, duplicates = dedupe_drafts(drafts, keys, base_currency)
            rules = load_ordered_rules(conn)
            for d in survivors:
                rule = match_rule(d.description, rules)
                d.category_id = rule.category_id if rule else None
            conn.executemany(
                """
                INSERT INTO transactions
                (date, amount, description, bank, category_id,
                 original_amount, original_currency, conversion_rate)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        d.date.isoformat(),
                        float(d.amount),
                        d.description,
                        d.bank,
                        d.category_id,
                        float(d.original_amount) if d.original_amount is not None else None,
                        d.original_currency,
                        float(d.conversion_rate),
                    )
                    for d in survivors
                ],
            )
            uploads = Counter((d.source, d.bank) for d in survivors if d.source)
            conn.executemany(
                "INSERT INTO upload_log (filename, bank, transaction_count) VALUES (?, ?, ?)",
                [(name, bank, count) for (name, bank), count in sorted(uploads.items())],
            )
    categorized = sum(1 for d in survivors if d.category_id is not None)
    logger.info(
        "Stored %d transaction(s) (%d categorized by rules), skipped %d duplicate(s)",
        len(survivors), categorized, duplicates,
    )
    return survivors, duplicates


def list_uploads(db_path: str, limit: int = 50) -> List[dict]:
    """Most recent upload log entries first."""
    with connect(db_path) as conn:
        rows = conn.execute(
            """
            SELECT id, filename, bank, transaction_count, upload_date
            FROM upload_log
            ORDER BY upload_date DESC, id DESC
            LIMIT ?
            """,
            (int(limit),),
        ).fetchall()
    return [
        {
            "id": r["id"],
            "filename": r["filename"],
            "bank": r["bank"],
            "transactionCount": r["transaction_count"],
            "uploadDate": r["upload_date"],
        }
        for r in rows
    ]


def build_filters(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    bank: Optional[str] = None,
    category_id: Optional[int] = None,
    uncategorized: bool = False,
    search: Optional[str] = None,
) -> Tuple[str, list]:
    conditions: List[str] = []
    params: list = []
    if start_date:
        conditions.append("t.date >= ?")
        params.append(start_date.isoformat())
    if end_date:
        conditions.append("t.date <= ?")
        params.append(end_date.isoformat())
    if bank:
        conditions.append("t.bank = ?")
        params.append(bank)
    if category_id is not None:
        conditions.append("t.category_id = ?")
        params.append(category_id)
    if uncategorized:
        conditions.append("t.category_id IS NULL")
    if search:
        conditions.append("t.description LIKE ?")
        params.append(f"%{search}%")
    where = " WHERE " + " AND ".join(conditions) if conditions else ""
    return where, params


def _row_to_transaction(r: sqlite3.Row) -> Transaction:
    return Transaction(
        id=r["id"],
        date=date.fromisoformat(r["date"]),
        amount=float(r["amount"]),
        description=r["description"],
        bank=r["bank"],
        category_id=r["category_id"],
        original_amount=r["original_amount"],
        original_currency=r["original_currency"],
        conversion_rate=float(r["conversion_rate"]),
        created_at=r["created_at"],
        category_name=r["category_name"],
        category_color=r["category_color"],
    )


_TX_SELECT = """
    SELECT t.id, t.date, t.amount, t.description, t.bank, t.category_id,
           t.original_amount, t.original_currency, t.conversion_rate, t.created_at,
           c.name AS category_name, c.color AS category_color
    FROM transactions t
    LEFT JOIN categories c ON t.category_id = c.id
"""


def fetch_transactions(
    db_path: str,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    bank: Optional[str] = None,
    category_id: Optional[int] = None,
    uncategorized: bool = False,
    search: Optional[str] = None,
    limit: Optional[int] = None,
    offset: int = 0,
) -> List[Transaction]:
    """Retrieve transactions, newest first.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.
    start_date, end_date:
        Optional inclusive date bounds.
    bank:
        Only transactions imported from this bank.
    category_id:
        Only transactions in this category.
    uncategorized:
        Only transactions without a category.
    search:
        Substring of the description (case-insensitive for ASCII).
    limit, offset:
        Optional paging.
    """
    where, params = build_filters(start_date, end_date, bank, category_id, uncategorized, search)
    query = _TX_SELECT + where + " ORDER BY t.date DESC, t.id DESC"
    if limit is not None:
        query += " LIMIT ? OFFSET ?"
        params += [int(limit), int(offset)]
    with connect(db_path) as conn:
        rows = conn.execute(query, params).fetchall()
    return [_row_to_transaction(r) for r in rows]


def get_transaction(db_path: str, tx_id: int) -> Transaction:
    with connect(db_path) as conn:
        row = conn.execute(_TX_SELECT + " WHERE t.id = ?", (tx_id,)).fetchone()
    if row is None:
        raise NotFoundError("Transaction", tx_id)
    return _row_to_transaction(row)


# -- categories ----------------------------------------------------------------


def _validate_category(name: Optional[str], color: Optional[str]) -> None:
    if name is not None:
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Category name is required")
        if name.strip().lower() in (n.lower() for n in RESERVED_CATEGORY_NAMES):
            raise ValidationError(f"'{name.strip()}' is a reserved category name")
    if color is not None and not (isinstance(color, str) and _COLOR.match(color)):
        raise ValidationError(f"Color must look like #RRGGBB, got '{color}'")


def list_categories(db_path: str) -> List[Category]:
    """Return all categories with the number of transactions in each."""
    with connect(db_path) as conn:
        rows = conn.execute(
            """
            SELECT c.id, c.name, c.color, COUNT(t.id) AS transaction_count
            FROM categories c
            LEFT JOIN transactions t ON t.category_id = c.id
            GROUP BY c.id
            ORDER BY c.name COLLATE NOCASE
            """
        ).fetchall()
    return [Category(r["id"], r["name"], r["color"], int(r["transaction_count"])) for r in rows]


def get_category(conn: sqlite3.Connection, category_id: int) -> sqlite3.Row:
    row = conn.execute("SELECT id, name, color FROM categories WHERE id = ?", (category_id,)).fetchone()
    if row is None:
        raise NotFoundError("Category", category_id)
    return row


def create_category(db_path: str, name: str, color: str) -> Category:
    if name is None:
        raise ValidationError("Category name is required")
    if not color:
        raise ValidationError("Color is required")
    _validate_category(name, color)
    with connect(db_path) as conn:
        with write_transaction(conn):
            clash = conn.execute(
                "SELECT id FROM categories WHERE name = ? COLLATE NOCASE", (name.strip(),)
            ).fetchone()
            if clash:
                raise ConflictError(f"Category '{name.strip()}' already exists", {"id": clash["id"]})
            cur = conn.execute(
                "INSERT INTO categories (name, color) VALUES (?, ?)", (name.strip(), color)
            )
            new_id = cur.lastrowid
    return Category(new_id, name.strip(), color)


def update_category(
    db_path: str, category_id: int, name: Optional[str] = None, color: Optional[str] = None
) -> Category:
    if name is None and color is None:
        raise ValidationError("Nothing to update")
    _validate_category(name, color)
    with connect(db_path) as conn:
        with write_transaction(conn):
            current = get_category(conn, category_id)
            if name is not None:
                clash = conn.execute(
                    "SELECT id FROM categories WHERE name = ? COLLATE NOCASE AND id != ?",
                    (name.strip(), category_id),
                ).fetchone()
                if clash:
                    raise ConflictError(f"Category '{name.strip()}' already exists", {"id": clash["id"]})
            new_name = name.strip() if name is not None else current["name"]
            new_color = color if color is not None else current["color"]
            conn.execute(
                "UPDATE categories SET name = ?, color = ? WHERE id = ?",
                (new_name, new_color, category_id),
            )
    return Category(category_id, new_name, new_color)


def delete_category(db_path: str, category_id: int) -> None:
    """Delete a category; its rules go with it and its transactions become uncategorized."""
    with connect(db_path) as conn:
        with write_transaction(conn):
            get_category(conn, category_id)
            conn.execute("DELETE FROM categories WHERE id = ?", (category_id,))


def iter_rows(cursor: sqlite3.Cursor, size: int) -> Iterable[List[sqlite3.Row]]:
    """Yield *cursor* results in chunks of *size* rows."""
    while True:
        chunk = cursor.fetchmany(size)
        if not chunk:
            return
        yield chunk
