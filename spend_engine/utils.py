# spend_engine/utils.py
import re
from datetime import date
from typing import Iterable, List, Set, Tuple

from spend_engine.currency import quantize

_WHITESPACE = re.compile(r"\s+")

DedupKey = Tuple[str, str, str, str]


def normalize_description(description):
    """Lowercase and collapse whitespace so cosmetic differences don't matter."""
    return _WHITESPACE.sub(" ", str(description or "")).strip().lower()


def dedup_key(tx_date, amount, description, bank, currency) -> DedupKey:
    """
    Identity of a statement row: (date, amount at minor unit, description, bank).
    *amount* is the amount printed on the statement, in *currency*.
    """
    if isinstance(tx_date, date):
        tx_date = tx_date.isoformat()
    return (
        str(tx_date),
        str(quantize(amount, currency)),
        normalize_description(description),
        str(bank),
    )


def draft_key(draft, base_currency) -> DedupKey:
    currency = draft.original_currency or base_currency
    return dedup_key(draft.date, draft.statement_amount, draft.description, draft.bank, currency)


def dedupe_drafts(drafts: Iterable, existing: Set[DedupKey], base_currency) -> Tuple[List, int]:
    """
    Drop drafts whose key is already persisted or already seen in this batch.
    Returns (survivors, duplicate_count); *existing* is not modified.
    """
    seen = set(existing)
    unique = []
    duplicates = 0
    for draft in drafts:
        key = draft_key(draft, base_currency)
        if key in seen:
            duplicates += 1
            continue
        seen.add(key)
        unique.append(draft)
    return unique, duplicates
