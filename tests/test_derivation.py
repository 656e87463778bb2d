"""Tests for derived field recomputation and the preview session."""

import pytest

from derivation import DerivationEngine, normalize_parent_value
from preview import DerivedFieldError, PreviewSession
from schemas import FormField, FormSchema, ValidationRule


def plain(id_, type_="text", **kwargs):
    return FormField(id=id_, type=type_, label=id_, **kwargs)


def derived(id_, parents, formula, **kwargs):
    return FormField(id=id_, type="text", label=id_, derived=True, parentFields=parents, formula=formula, **kwargs)


def test_normalize_parent_value():
    assert normalize_parent_value(None) == ""
    assert normalize_parent_value("  hi ") == "hi"
    assert normalize_parent_value(5) == 5


def test_sum_of_two_parents():
    engine = DerivationEngine([plain("a"), plain("b"), derived("c", [0, 1], "parent0 + parent1")])
    assert engine.recompute(["3", "4", None]) == ["3", "4", 7]
    assert engine.recompute(["3", "10", 7]) == ["3", "10", 13]


def test_failing_formula_yields_blank_and_records_error():
    engine = DerivationEngine([plain("a"), derived("b", [0], "explode(parent0)"), derived("c", [0], "parent0 * 2")])
    values = engine.recompute(["21", "stale", None])
    assert values == ["21", "", 42]
    assert 1 in engine.errors
    assert 2 not in engine.errors


def test_runtime_failure_does_not_stop_other_fields():
    engine = DerivationEngine([plain("a"), derived("b", [0], "parent0 / 0"), derived("c", [0], "parent0 + 1")])
    assert engine.recompute(["1", None, None]) == ["1", "", 2]


def test_invalid_parent_graphs_are_not_registered():
    fields = [
        derived("self", [0], "parent0"),
        plain("a"),
        derived("forward", [3], "parent0"),
        plain("b"),
        derived("later_parent", [5], "parent0"),
        derived("ok", [1], "upper(parent0)"),
    ]
    engine = DerivationEngine(fields)
    assert engine.derived_indices == [5]
    assert set(engine.rejected) == {0, 2, 4}
    assert engine.recompute([None, "x", None, None, None, None])[5] == "X"


def test_parent_pointing_at_derived_field_is_rejected():
    engine = DerivationEngine([plain("a"), derived("b", [0], "parent0"), derived("c", [1], "parent0")])
    assert engine.derived_indices == [1]
    assert engine.rejected[2] == ["parent 1 is a derived field"]


def test_incomplete_derived_fields_are_ignored():
    engine = DerivationEngine([plain("a"), derived("b", [], "parent0"), derived("c", [0], "  ")])
    assert engine.derived_indices == []
    assert engine.recompute(["1", "x", "y"]) == ["1", "x", "y"]


def test_preview_session_seeds_defaults_and_recomputes():
    schema = FormSchema(id="1", name="Order", fields=[
        plain("qty", "number", defaultValue=2),
        plain("price", "number", defaultValue="5"),
        derived("total", [0, 1], "parent0 * parent1"),
        plain("tags", "checkbox", options=["a", "b"]),
    ])
    session = PreviewSession(schema)
    assert session.values == [2, "5", 10, []]
    session.set_value(0, "3")
    assert session.values[2] == 15


def test_preview_session_rejects_direct_edits_to_derived_fields():
    schema = FormSchema(id="1", name="F", fields=[plain("a"), derived("b", [0], "parent0")])
    session = PreviewSession(schema)
    with pytest.raises(DerivedFieldError):
        session.set_value(1, "typed")
    session.update(["x", "typed"])
    assert session.values == ["x", "x"]


def test_preview_session_does_not_mutate_schema():
    schema = FormSchema(id="1", name="F", fields=[plain("a"), derived("b", [0], "parent0")])
    session = PreviewSession(schema)
    session.fields[0].label = "changed"
    assert schema.fields[0].label == "a"


def test_submit_with_broken_formula_is_still_accepted():
    schema = FormSchema(id="1", name="F", fields=[
        plain("name", required=True),
        derived("greeting", [0], "nope(parent0)"),
    ])
    result = PreviewSession(schema).submit(["Ada"])
    assert result.accepted
    assert result.values == ["Ada", None]


def test_submit_reports_validation_errors():
    schema = FormSchema(id="1", name="F", fields=[
        plain("email", validations=[ValidationRule(type="email", message="Invalid email format")]),
    ])
    result = PreviewSession(schema).submit(["nope"])
    assert not result.accepted
    assert result.errors == {0: ["Invalid email format"]}
