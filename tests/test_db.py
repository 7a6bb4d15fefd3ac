import sqlite3
from datetime import date
from decimal import Decimal

import pytest

from spend_engine.core.models import TransactionDraft
from spend_engine.database import (
    commit_drafts,
    connect,
    create_category,
    delete_category,
    fetch_transactions,
    get_transaction,
    list_categories,
    update_category,
    write_transaction,
)
from spend_engine.errors import ConflictError, NotFoundError, PersistenceError, ValidationError
from spend_engine.rules import create_rule, list_rules, set_transaction_category


def _draft(day, amount, desc, bank="CSOB"):
    return TransactionDraft(date(2025, 1, day), Decimal(amount), desc, bank)


def _category_id(db_path, name):
    return next(c.id for c in list_categories(db_path) if c.name == name)


def test_default_categories_are_seeded_once(tmp_path):
    db = str(tmp_path / "spend.db")
    names = sorted(c.name for c in list_categories(db))
    assert names == sorted(
        ["Food", "Transport", "Shopping", "Entertainment", "Health", "Utilities", "Finance", "Other"]
    )
    delete_category(db, _category_id(db, "Other"))
    assert "Other" not in [c.name for c in list_categories(db)]


def test_commit_drafts_dedupes_and_inserts(tmp_path):
    db = str(tmp_path / "spend.db")
    survivors, dupes = commit_drafts(db, [_draft(1, "-10", "A"), _draft(2, "-20", "B")], "CZK")
    assert (len(survivors), dupes) == (2, 0)
    survivors, dupes = commit_drafts(db, [_draft(1, "-10", "a "), _draft(3, "-30", "C")], "CZK")
    assert [d.description for d in survivors] == ["C"]
    assert dupes == 1


def test_write_transaction_rolls_back(tmp_path):
    db = str(tmp_path / "spend.db")
    with connect(db) as conn:
        with pytest.raises(PersistenceError):
            with write_transaction(conn):
                conn.execute(
                    "INSERT INTO transactions (date, amount, description, bank) VALUES (?, ?, ?, ?)",
                    ("2025-01-01", -1.0, "ok", "CSOB"),
                )
                conn.execute(
                    "INSERT INTO transactions (date, amount, description, bank) VALUES (?, ?, ?, ?)",
                    ("2025-01-01", -1.0, "bad bank", "Fio"),
                )
    assert fetch_transactions(db) == []


def test_fetch_transactions_filters(tmp_path):
    db = str(tmp_path / "spend.db")
    commit_drafts(
        db,
        [
            _draft(1, "-10", "Tesco"),
            _draft(2, "-20", "Albert", bank="Raiffeisen"),
            _draft(3, "500", "Salary"),
        ],
        "CZK",
    )
    assert [t.description for t in fetch_transactions(db)] == ["Salary", "Albert", "Tesco"]
    assert [t.description for t in fetch_transactions(db, bank="Raiffeisen")] == ["Albert"]
    assert [t.description for t in fetch_transactions(db, search="tes")] == ["Tesco"]
    assert [t.description for t in fetch_transactions(
        db, start_date=date(2025, 1, 2), end_date=date(2025, 1, 2))] == ["Albert"]
    assert [t.description for t in fetch_transactions(db, limit=1, offset=1)] == ["Albert"]

    food = _category_id(db, "Food")
    tesco = fetch_transactions(db, search="Tesco")[0]
    set_transaction_category(db, tesco.id, food, learn=False)
    assert [t.description for t in fetch_transactions(db, category_id=food)] == ["Tesco"]
    assert [t.description for t in fetch_transactions(db, uncategorized=True)] == ["Salary", "Albert"]
    assert get_transaction(db, tesco.id).category_name == "Food"
    with pytest.raises(NotFoundError):
        get_transaction(db, 999)


def test_category_crud(tmp_path):
    db = str(tmp_path / "spend.db")
    pets = create_category(db, " Pets ", "#aabbcc")
    assert pets.name == "Pets"
    with pytest.raises(ConflictError):
        create_category(db, "pets", "#000000")
    for name in ("Uncategorized", "income", "  "):
        with pytest.raises(ValidationError):
            create_category(db, name, "#000000")
    with pytest.raises(ValidationError):
        create_category(db, "Kids", "red")

    renamed = update_category(db, pets.id, name="Animals")
    assert (renamed.name, renamed.color) == ("Animals", "#aabbcc")
    with pytest.raises(ConflictError):
        update_category(db, pets.id, name="food")
    with pytest.raises(NotFoundError):
        update_category(db, 999, color="#000000")
    with pytest.raises(ValidationError):
        update_category(db, pets.id)


def test_delete_category_uncategorizes_and_drops_rules(tmp_path):
    db = str(tmp_path / "spend.db")
    commit_drafts(db, [_draft(1, "-10", "Vet clinic")], "CZK")
    pets = create_category(db, "Pets", "#aabbcc")
    tx = fetch_transactions(db)[0]
    set_transaction_category(db, tx.id, pets.id)
    assert [r.keyword for r in list_rules(db)] == ["vet"]
    assert next(c for c in list_categories(db) if c.id == pets.id).transaction_count == 1

    delete_category(db, pets.id)

    assert get_transaction(db, tx.id).category_id is None
    assert list_rules(db) == []
    with pytest.raises(NotFoundError):
        delete_category(db, pets.id)
    with pytest.raises(NotFoundError):
        create_rule(db, "vet", pets.id)


def test_schema_rejects_unknown_bank(tmp_path):
    db = str(tmp_path / "spend.db")
    with connect(db) as conn:
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute(
                "INSERT INTO transactions (date, amount, description, bank) VALUES (?, ?, ?, ?)",
                ("2025-01-01", 1.0, "x", "Fio"),
            )


def test_storage_errors_surface_as_persistence_errors(tmp_path):
    broken = tmp_path / "broken.db"
    broken.write_bytes(b"definitely not sqlite" * 50)
    with pytest.raises(PersistenceError):
        list_categories(str(broken))
    with pytest.raises(PersistenceError):
        commit_drafts(str(broken), [_draft(1, "-10", "A")], "CZK")

    db = str(tmp_path / "spend.db")
    with pytest.raises(PersistenceError):
        with connect(db) as conn:
            conn.execute("SELECT nope FROM transactions")


def test_commit_drafts_assigns_rule_categories_and_logs_sources(tmp_path):
    db = str(tmp_path / "spend.db")
    vet = create_category(db, "Pets", "#aa5500")
    create_rule(db, "vet", vet.id)
    drafts = [_draft(1, "-10", "Vet clinic"), _draft(2, "-20", "Bakery"), _draft(3, "-5", "Kiosk")]
    drafts[0].source = drafts[1].source = "jan.csv"

    survivors, _ = commit_drafts(db, drafts, "CZK")

    assert [d.category_id for d in survivors] == [vet.id, None, None]
    assert get_transaction(db, 1).category_name == "Pets"
    with connect(db) as conn:
        logged = conn.execute("SELECT filename, bank, transaction_count FROM upload_log").fetchall()
    assert [tuple(r) for r in logged] == [("jan.csv", "CSOB", 2)]
