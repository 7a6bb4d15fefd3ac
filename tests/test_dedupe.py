from datetime import date
from decimal import Decimal

from spend_engine.core.models import TransactionDraft
from spend_engine.utils import dedup_key, dedupe_drafts, draft_key, normalize_description


def _draft(desc="Tesco  Praha", amount="-100", **kw):
    return TransactionDraft(date(2025, 1, 2), Decimal(amount), desc, "CSOB", **kw)


def test_normalize_description():
    assert normalize_description("  TESCO \t Express\nPraha ") == "tesco express praha"
    assert normalize_description(None) == ""


def test_dedup_key_ignores_cosmetic_differences():
    a = dedup_key(date(2025, 1, 2), Decimal("-100"), "TESCO PRAHA", "CSOB", "CZK")
    b = dedup_key("2025-01-02", -100.0, " tesco   praha", "CSOB", "CZK")
    assert a == b == ("2025-01-02", "-100.00", "tesco praha", "CSOB")


def test_foreign_drafts_key_on_statement_amount():
    draft = _draft(amount="-250", original_amount=Decimal("-10"), original_currency="EUR",
                   conversion_rate=Decimal("25"))
    assert draft_key(draft, "CZK")[1] == "-10.00"


def test_dedupe_against_existing_and_within_batch():
    existing = {draft_key(_draft("Rent", "-9000"), "CZK")}
    batch = [_draft("Rent", "-9000"), _draft(), _draft("TESCO PRAHA"), _draft(amount="-101")]

    unique, duplicates = dedupe_drafts(batch, existing, "CZK")

    assert duplicates == 2
    assert [(d.description, d.amount) for d in unique] == [
        ("Tesco  Praha", Decimal("-100")),
        ("Tesco  Praha", Decimal("-101")),
    ]
    assert len(existing) == 1
