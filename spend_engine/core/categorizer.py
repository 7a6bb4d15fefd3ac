# spend_engine/core/categorizer.py
import re

STOP_WORDS = frozenset([
    # transaction boilerplate
    'payment', 'transfer', 'card', 'debit', 'credit', 'pos', 'atm', 'fee',
    'charge', 'transaction', 'purchase', 'withdrawal', 'deposit', 'balance',
    'account', 'ref', 'reference', 'number', 'date',
    # articles and prepositions
    'from', 'to', 'the', 'a', 'an', 'and', 'or', 'for', 'of', 'in', 'on',
    'at', 'with', 'by', 'as', 'is', 'was', 'be', 'been', 'being',
    # currencies and company suffixes
    'cz', 'czk', 'eur', 'usd', 'gbp', 'sro', 'spol', 'international',
    'service', 'services', 'company', 'group', 'inc', 'ltd', 'llc', 'corp',
])

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")


def rule_priority(rule):
    """Longest keyword first; ties go to the earliest created rule."""
    return (-len(rule.keyword.strip()), rule.created_at, rule.id)


def order_rules(rules):
    return sorted(rules, key=rule_priority)


def match_rule(description, ordered_rules):
    """Return the first rule of *ordered_rules* whose keyword occurs in *description*."""
    text = (description or '').lower()
    for rule in ordered_rules:
        kw = rule.keyword.strip().lower()
        if kw and kw in text:
            return rule
    return None


def extract_keyword(description):
    """
    Pick a significant word from a description to seed a new rule:
    the first word of 3+ characters that is neither a stop word nor a number.
    """
    cleaned = _NON_ALNUM.sub(' ', (description or '').lower())
    for word in cleaned.split():
        if len(word) < 3 or word in STOP_WORDS or word.isdigit():
            continue
        return word
    return None
