"""Keyword rules and their batch application to uncategorized transactions."""
from __future__ import annotations

import logging
import sqlite3
from typing import Dict, List, Optional

from spend_engine.core.categorizer import extract_keyword, match_rule
from spend_engine.core.models import CategoryRule, Transaction
from spend_engine.database import (
    connect,
    get_category,
    get_transaction,
    iter_rows,
    load_ordered_rules,
    write_transaction,
)
from spend_engine.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

_RULE_SELECT = """
    SELECT r.id, r.keyword, r.category_id, r.created_at, c.name AS category_name
    FROM category_rules r
    JOIN categories c ON r.category_id = c.id
"""


def _row_to_rule(r: sqlite3.Row) -> CategoryRule:
    return CategoryRule(
        id=r["id"],
        keyword=r["keyword"],
        category_id=r["category_id"],
        created_at=r["created_at"],
        category_name=r["category_name"],
    )


def _clean_keyword(keyword: Optional[str]) -> str:
    if keyword is None or not str(keyword).strip():
        raise ValidationError("Keyword is required")
    return str(keyword).strip()


def _get_rule(conn: sqlite3.Connection, rule_id: int) -> CategoryRule:
    row = conn.execute(_RULE_SELECT + " WHERE r.id = ?", (rule_id,)).fetchone()
    if row is None:
        raise NotFoundError("Rule", rule_id)
    return _row_to_rule(row)


def list_rules(db_path: str) -> List[CategoryRule]:
    with connect(db_path) as conn:
        rows = conn.execute(_RULE_SELECT + " ORDER BY LOWER(r.keyword), r.id").fetchall()
    return [_row_to_rule(r) for r in rows]


def create_rule(db_path: str, keyword: str, category_id: int) -> CategoryRule:
    kw = _clean_keyword(keyword)
    with connect(db_path) as conn:
        with write_transaction(conn):
            get_category(conn, category_id)
            cur = conn.execute(
                "INSERT INTO category_rules (keyword, category_id) VALUES (?, ?)",
                (kw, category_id),
            )
            rule = _get_rule(conn, cur.lastrowid)
    logger.info("Created rule %d: '%s' -> category %d", rule.id, kw, category_id)
    return rule


def update_rule(
    db_path: str,
    rule_id: int,
    keyword: Optional[str] = None,
    category_id: Optional[int] = None,
) -> CategoryRule:
    if keyword is None and category_id is None:
        raise ValidationError("No fields to update", {"id": rule_id})
    with connect(db_path) as conn:
        with write_transaction(conn):
            current = _get_rule(conn, rule_id)
            kw = _clean_keyword(keyword) if keyword is not None else current.keyword
            if category_id is not None:
                get_category(conn, category_id)
            else:
                category_id = current.category_id
            conn.execute(
                "UPDATE category_rules SET keyword = ?, category_id = ? WHERE id = ?",
                (kw, category_id, rule_id),
            )
            return _get_rule(conn, rule_id)


def delete_rule(db_path: str, rule_id: int) -> None:
    with connect(db_path) as conn:
        with write_transaction(conn):
            cur = conn.execute("DELETE FROM category_rules WHERE id = ?", (rule_id,))
            if cur.rowcount == 0:
                raise NotFoundError("Rule", rule_id)


def apply_rules(db_path: str, chunk_size: int = 500) -> Dict[str, int]:
    """Categorize every uncategorized transaction that matches a rule.

    The whole pass runs in a single write transaction, walking the
    uncategorized rows *chunk_size* at a time. Rows that already have a
    category are never touched, so re-running after a failure is safe.
    """
    if chunk_size <= 0:
        raise ValidationError("chunk_size must be positive")
    categorized = 0
    total = 0
    with connect(db_path) as conn:
        with write_transaction(conn):
            rules = load_ordered_rules(conn)
            cursor = conn.execute(
                "SELECT id, description FROM transactions WHERE category_id IS NULL ORDER BY id"
            )
            updates = []
            for chunk in iter_rows(cursor, chunk_size):
                total += len(chunk)
                if not rules:
                    continue
                for row in chunk:
                    rule = match_rule(row["description"], rules)
                    if rule is not None:
                        updates.append((rule.category_id, row["id"]))
            # Apply after the scan so the open SELECT cursor never sees its own writes.
            for start in range(0, len(updates), chunk_size):
                cur = conn.executemany(
                    "UPDATE transactions SET category_id = ? WHERE id = ? AND category_id IS NULL",
                    updates[start:start + chunk_size],
                )
                categorized += cur.rowcount
    logger.info("Rule pass categorized %d of %d uncategorized transaction(s)", categorized, total)
    return {"categorized": categorized, "total_uncategorized": total}


def set_transaction_category(
    db_path: str,
    tx_id: int,
    category_id: Optional[int],
    learn: bool = True,
) -> Transaction:
    """Manually set (or clear) a transaction's category.

    With *learn*, a keyword taken from the description becomes a new rule
    unless a rule with that keyword already exists.
    """
    with connect(db_path) as conn:
        with write_transaction(conn):
            row = conn.execute(
                "SELECT id, description FROM transactions WHERE id = ?", (tx_id,)
            ).fetchone()
            if row is None:
                raise NotFoundError("Transaction", tx_id)
            if category_id is not None:
                get_category(conn, category_id)
            conn.execute(
                "UPDATE transactions SET category_id = ? WHERE id = ?", (category_id, tx_id)
            )
            keyword = extract_keyword(row["description"]) if learn and category_id is not None else None
            if keyword:
                exists = conn.execute(
                    "SELECT 1 FROM category_rules WHERE LOWER(keyword) = ?", (keyword,)
                ).fetchone()
                if not exists:
                    conn.execute(
                        "INSERT INTO category_rules (keyword, category_id) VALUES (?, ?)",
                        (keyword, category_id),
                    )
                    logger.info("Learned rule '%s' -> category %d", keyword, category_id)
    return get_transaction(db_path, tx_id)
