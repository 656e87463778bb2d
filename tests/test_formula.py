"""Tests for the formula parser and evaluator."""

from datetime import datetime, timedelta

import pytest

from formula import FormulaError, evaluate_formula, parse_formula


def test_numeric_strings_add_as_numbers():
    assert evaluate_formula("parent0 + parent1", ["3", "4"]) == 7


def test_non_numeric_strings_concatenate():
    assert evaluate_formula("parent0 + ' ' + parent1", ["Ada", "Lovelace"]) == "Ada Lovelace"


def test_operator_precedence_and_parentheses():
    assert evaluate_formula("2 + 3 * 4", []) == 14
    assert evaluate_formula("(2 + 3) * 4", []) == 20
    assert evaluate_formula("-parent0 + 10", ["4"]) == 6
    assert evaluate_formula("parent0 / 4", [10]) == 2.5
    assert evaluate_formula("7 % 3", []) == 1


def test_helpers():
    assert evaluate_formula("floor(parent0 / 3)", ["10"]) == 3
    assert evaluate_formula("Math.floor(7.9)", []) == 7
    assert evaluate_formula("round(2.345, 2)", []) == 2.35
    assert evaluate_formula("max(parent0, parent1, 2)", ["1", "5"]) == 5
    assert evaluate_formula("upper(parent0)", ["abc"]) == "ABC"
    assert evaluate_formula("length(parent0)", ["hello"]) == 5


def test_age_from_date_of_birth():
    born = (datetime.now() - timedelta(days=365 * 30 + 20)).date().isoformat()
    age = evaluate_formula("floor((now() - date(parent0)) / (365.25*24*60*60*1000))", [born])
    assert age == 30


def test_date_parts():
    assert evaluate_formula("year(parent0)", ["2001-07-15"]) == 2001
    assert evaluate_formula("month(parent0) * 100 + day(parent0)", ["2001-07-15"]) == 715


def test_unknown_helper_fails_at_parse_time():
    with pytest.raises(FormulaError):
        parse_formula("alert(parent0)")


def test_no_access_to_python_names():
    for source in ["__import__('os')", "open('x')", "parent0.__class__", "globals()", "eval('1')"]:
        with pytest.raises(FormulaError):
            evaluate_formula(source, ["x"])


def test_malformed_formulas():
    for source in ["parent0 +", "(1 + 2", "1 2", "parent0 ** 2", "", "   "]:
        with pytest.raises(FormulaError):
            parse_formula(source)


def test_runtime_errors():
    with pytest.raises(FormulaError):
        evaluate_formula("parent0 / 0", ["1"])
    with pytest.raises(FormulaError):
        evaluate_formula("parent0 * 2", ["abc"])
    with pytest.raises(FormulaError):
        evaluate_formula("parent3", ["a"])
    with pytest.raises(FormulaError):
        evaluate_formula("date(parent0)", ["not a date"])


def test_depth_and_length_limits():
    with pytest.raises(FormulaError):
        parse_formula("(" * 250 + "1" + ")" * 250)
    with pytest.raises(FormulaError):
        parse_formula("floor(" * 120 + "1" + ")" * 120)
    with pytest.raises(FormulaError):
        parse_formula("1+" * 600 + "1")


def test_parent_refs_are_recorded():
    assert parse_formula("parent0 + parent2 * parent0").parent_refs == {0, 2}


def test_bare_year_is_a_year_not_milliseconds():
    assert evaluate_formula("year(parent0)", ["2000"]) == 2000
    assert evaluate_formula("year(date(parent0))", [400 * 86400000]) == 1971


def test_only_whitelisted_syntax_is_accepted():
    for source in ["parent0 == 1", "parent0 if 1 else 2", "[parent0]", "'x'.upper()",
                   "parent0[0]", "lambda: 1", "True", "round(parent0, digits=2)", "parent0 // 2"]:
        with pytest.raises(FormulaError):
            parse_formula(source)


def test_long_unary_chains_are_rejected():
    with pytest.raises(FormulaError):
        parse_formula("-" * 150 + "1")
