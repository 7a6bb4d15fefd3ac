from spend_engine.core.categorizer import extract_keyword, match_rule, order_rules
from spend_engine.core.models import CategoryRule


def _rule(rule_id, keyword, category_id, created_at="2025-01-01 00:00:00.000"):
    return CategoryRule(rule_id, keyword, category_id, created_at)


def _category_for(description, rules):
    rule = match_rule(description, order_rules(rules))
    return rule.category_id if rule else None


def test_longest_keyword_wins_regardless_of_order():
    rules = [_rule(1, "TESCO", 1), _rule(2, "tesco express", 2)]
    assert _category_for("TESCO EXPRESS PRAHA", rules) == 2
    assert _category_for("TESCO EXPRESS PRAHA", list(reversed(rules))) == 2
    assert _category_for("Tesco Hypermarket", rules) == 1
    assert _category_for("Albert", rules) is None


def test_equal_length_ties_go_to_earliest_rule():
    rules = [
        _rule(5, "bolt", 7, "2025-01-02 00:00:00.000"),
        _rule(9, "uber", 8, "2025-01-01 00:00:00.000"),
    ]
    assert [r.id for r in order_rules(rules)] == [9, 5]
    assert _category_for("UBER vs BOLT", rules) == 8
    same_time = [_rule(4, "bolt", 7), _rule(3, "uber", 8)]
    assert _category_for("UBER vs BOLT", same_time) == 8


def test_blank_keywords_and_descriptions_never_match():
    rules = order_rules([_rule(1, "   ", 1), _rule(2, "kiosk", 2)])
    assert match_rule("", rules) is None
    assert match_rule(None, rules) is None
    assert match_rule("Trafika KIOSK 12", rules).id == 2


def test_extract_keyword():
    assert extract_keyword("Card payment: ALBERT Vinohrady 1234") == "albert"
    assert extract_keyword("POS 4455 to the ATM") is None
    assert extract_keyword("") is None
