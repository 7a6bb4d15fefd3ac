"""Dashboard rollups over persisted transactions."""
from __future__ import annotations

from datetime import date
from typing import Dict, List, Optional

from spend_engine.currency import quantize
from spend_engine.database import build_filters, connect
from spend_engine.errors import ValidationError

UNCATEGORIZED = "Uncategorized"
INCOME = "Income"

# Null-category rows split into two synthetic buckets by sign.
_CATEGORY_BUCKET = f"""
    CASE
        WHEN t.category_id IS NULL AND t.amount > 0 THEN '{INCOME}'
        WHEN t.category_id IS NULL THEN '{UNCATEGORIZED}'
        ELSE c.name
    END
"""


def _money(value, currency: str) -> float:
    return float(quantize(value or 0.0, currency))


def get_stats(
    db_path: str,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    base_currency: str = "CZK",
) -> Dict[str, object]:
    """Aggregate totals for the dashboard between two inclusive dates.

    Amounts keep their sign: expenses stay negative and income positive,
    in every grouping.
    """
    if start_date and end_date and start_date > end_date:
        raise ValidationError(
            "start_date must be on or before end_date",
            {"start_date": start_date.isoformat(), "end_date": end_date.isoformat()},
        )

    where, params = build_filters(start_date, end_date)
    with connect(db_path) as conn:
        totals = conn.execute(
            f"""
            SELECT COUNT(*) AS total_count,
                   COALESCE(SUM(t.amount), 0.0) AS total_amount,
                   MIN(t.date) AS min_date,
                   MAX(t.date) AS max_date
            FROM transactions t
            {where}
            """,
            params,
        ).fetchone()

        category_rows = conn.execute(
            f"""
            SELECT {_CATEGORY_BUCKET} AS bucket,
                   t.category_id AS category_id,
                   c.color AS color,
                   COUNT(*) AS count,
                   SUM(t.amount) AS total
            FROM transactions t
            LEFT JOIN categories c ON t.category_id = c.id
            {where}
            GROUP BY bucket, t.category_id
            ORDER BY total ASC, bucket
            """,
            params,
        ).fetchall()

        bank_rows = conn.execute(
            f"""
            SELECT t.bank AS name, COUNT(*) AS count, SUM(t.amount) AS total
            FROM transactions t
            {where}
            GROUP BY t.bank
            ORDER BY total ASC
            """,
            params,
        ).fetchall()

        month_rows = conn.execute(
            f"""
            SELECT strftime('%Y-%m', t.date) AS month,
                   SUM(CASE WHEN t.amount < 0 THEN 1 ELSE 0 END) AS expense_count,
                   SUM(CASE WHEN t.amount < 0 THEN t.amount ELSE 0 END) AS expense_sum,
                   SUM(CASE WHEN t.amount > 0 THEN 1 ELSE 0 END) AS income_count,
                   SUM(CASE WHEN t.amount > 0 THEN t.amount ELSE 0 END) AS income_sum
            FROM transactions t
            {where}
            GROUP BY month
            ORDER BY month ASC
            """,
            params,
        ).fetchall()

    by_month: List[Dict[str, object]] = []
    income_by_month: List[Dict[str, object]] = []
    for r in month_rows:
        if r["expense_count"]:
            by_month.append({
                "month": r["month"],
                "count": int(r["expense_count"]),
                "sum": _money(r["expense_sum"], base_currency),
            })
        if r["income_count"]:
            income_by_month.append({
                "month": r["month"],
                "count": int(r["income_count"]),
                "sum": _money(r["income_sum"], base_currency),
            })

    return {
        "total_count": int(totals["total_count"]),
        "total_amount": _money(totals["total_amount"], base_currency),
        "by_category": [
            {
                "name": r["bucket"],
                "category_id": r["category_id"],
                "color": r["color"],
                "count": int(r["count"]),
                "sum": _money(r["total"], base_currency),
            }
            for r in category_rows
        ],
        "by_bank": [
            {"name": r["name"], "count": int(r["count"]), "sum": _money(r["total"], base_currency)}
            for r in bank_rows
        ],
        "by_month": by_month,
        "income_by_month": income_by_month,
        "date_range": {"min": totals["min_date"], "max": totals["max_date"]},
    }
