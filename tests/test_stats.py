from datetime import date
from decimal import Decimal

import pytest

from spend_engine.core.models import TransactionDraft
from spend_engine.database import commit_drafts, create_category, fetch_transactions
from spend_engine.errors import ValidationError
from spend_engine.rules import set_transaction_category
from spend_engine.stats import get_stats


def _draft(d, amount, desc, bank="CSOB"):
    return TransactionDraft(d, Decimal(amount), desc, bank)


@pytest.fixture
def db(tmp_path):
    path = str(tmp_path / "spend.db")
    commit_drafts(
        path,
        [
            _draft(date(2025, 1, 5), "-100.10", "Tesco"),
            _draft(date(2025, 1, 6), "-50.20", "Albert", "Raiffeisen"),
            _draft(date(2025, 1, 31), "30000", "Salary"),
            _draft(date(2025, 2, 1), "-19.99", "Spotify", "Revolut"),
            _draft(date(2025, 2, 2), "-5", "Coffee"),
            _draft(date(2025, 3, 3), "200", "Refund"),
        ],
        "CZK",
    )
    food = create_category(path, "Groceries", "#00ff00")
    ids = {t.description: t.id for t in fetch_transactions(path)}
    set_transaction_category(path, ids["Tesco"], food.id, learn=False)
    set_transaction_category(path, ids["Albert"], food.id, learn=False)
    set_transaction_category(path, ids["Refund"], food.id, learn=False)
    return path


def test_stats_buckets_and_signs(db):
    stats = get_stats(db)

    assert stats["total_count"] == 6
    assert stats["total_amount"] == pytest.approx(30024.71)
    assert stats["date_range"] == {"min": "2025-01-05", "max": "2025-03-03"}

    buckets = {item["name"]: item for item in stats["by_category"]}
    assert set(buckets) == {"Groceries", "Uncategorized", "Income"}
    assert buckets["Groceries"]["sum"] == pytest.approx(49.70)
    assert buckets["Groceries"]["count"] == 3
    assert buckets["Groceries"]["color"] == "#00ff00"
    assert buckets["Uncategorized"] == {
        "name": "Uncategorized", "category_id": None, "color": None, "count": 2, "sum": -24.99,
    }
    assert buckets["Income"]["sum"] == pytest.approx(30000.0)
    assert buckets["Income"]["category_id"] is None

    banks = {item["name"]: item for item in stats["by_bank"]}
    assert banks["Revolut"] == {"name": "Revolut", "count": 1, "sum": -19.99}
    assert banks["CSOB"]["count"] == 4

    assert stats["by_month"] == [
        {"month": "2025-01", "count": 2, "sum": -150.30},
        {"month": "2025-02", "count": 2, "sum": -24.99},
    ]
    assert stats["income_by_month"] == [
        {"month": "2025-01", "count": 1, "sum": 30000.0},
        {"month": "2025-03", "count": 1, "sum": 200.0},
    ]


def test_stats_date_bounds_are_inclusive(db):
    stats = get_stats(db, start_date=date(2025, 1, 6), end_date=date(2025, 2, 1))
    assert stats["total_count"] == 3
    assert [m["month"] for m in stats["by_month"]] == ["2025-01", "2025-02"]


def test_stats_empty_database(tmp_path):
    stats = get_stats(str(tmp_path / "empty.db"))
    assert stats == {
        "total_count": 0,
        "total_amount": 0.0,
        "by_category": [],
        "by_bank": [],
        "by_month": [],
        "income_by_month": [],
        "date_range": {"min": None, "max": None},
    }


def test_stats_rejects_inverted_range(db):
    with pytest.raises(ValidationError):
        get_stats(db, start_date=date(2025, 2, 1), end_date=date(2025, 1, 1))
