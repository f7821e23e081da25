import pytest

from mesflow.core.process.validation import evaluate_rule, rule_error, validate_value, values_match


@pytest.mark.parametrize(
    "actual, expected",
    [("1", 1), (1.0, "1"), (True, "1"), ("true", 1), (" OK ", "OK"), ("0", False)],
)
def test_values_match_leniently(actual, expected):
    assert values_match(actual, expected)


@pytest.mark.parametrize("actual, expected", [("1", "0"), ("OK", "NG"), (None, "1"), ("2", True)])
def test_values_do_not_match(actual, expected):
    assert not values_match(actual, expected)


def test_no_expectation_means_no_validation():
    assert validate_value("anything") == (None, None)
    assert validate_value("anything", expected="", rule={}) == (None, None)


def test_expected_value_without_rule():
    assert validate_value("1", expected="1") == (True, None)
    passed, message = validate_value("0", expected="1")
    assert passed is False
    assert message == "Expected 1, got 0"


def test_range_rule():
    rule = {"type": "range", "min": 0.5, "max": 1.5}
    assert evaluate_rule("1.2", rule) == (True, None)
    passed, message = evaluate_rule(2, rule)
    assert not passed
    assert "not in range" in message
    assert evaluate_rule("abc", rule)[0] is False


def test_open_ended_range():
    assert evaluate_rule(1000, {"type": "range", "min": 10})[0]
    assert not evaluate_rule(5, {"type": "range", "min": 10})[0]


def test_regex_rule_falls_back_to_expected_value():
    assert evaluate_rule("SN123456", {"type": "regex", "pattern": r"^SN\d{6}$"})[0]
    assert not evaluate_rule("XX1", {"type": "regex"}, expected=r"^SN")[0]


def test_in_rule():
    rule = {"type": "in", "values": ["OK", "PASS", 1]}
    assert evaluate_rule("PASS", rule)[0]
    assert evaluate_rule("1", rule)[0]
    assert not evaluate_rule("NG", rule)[0]


def test_rule_supplied_as_json_string():
    assert validate_value("7", rule='{"type": "range", "min": 5, "max": 10}') == (True, None)
    assert validate_value("7", rule="7") == (True, None)


def test_unknown_rule_type_fails():
    passed, message = evaluate_rule("1", {"type": "checksum"})
    assert not passed
    assert "checksum" in message


@pytest.mark.parametrize(
    "rule",
    [
        {"type": "regex", "pattern": "(["},
        {"type": "range", "min": "low", "max": 10},
        {"type": "range", "min": [1]},
    ],
)
def test_malformed_rule_fails_instead_of_raising(rule):
    passed, message = evaluate_rule("5", rule)
    assert passed is False
    assert message.startswith("Invalid validation rule")
    assert rule_error(rule) is not None


def test_rule_error_accepts_usable_rules():
    assert rule_error(None) is None
    assert rule_error({"type": "range", "min": "0.5", "max": 1.5}) is None
    assert rule_error({"type": "regex", "pattern": r"^SN\d+$"}) is None
    assert rule_error('{"type": "in", "values": ["OK"]}') is None
    assert rule_error("7") is None


def test_rule_error_checks_fallback_pattern_and_type():
    assert rule_error({"type": "regex"}, expected="([") is not None
    assert rule_error({"type": "in", "values": "OK"}) is not None
    assert "checksum" in rule_error({"type": "checksum"})
