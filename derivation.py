"""
Derived-field evaluation.

DerivationEngine keeps derived fields in sync with their parents: on every
recompute() each registered derived field is evaluated exactly once, in field
order, from the current values of its parents.
"""

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Sequence

from formula import Expression, FormulaError, parse_formula
from schemas import FormField

logger = logging.getLogger(__name__)


def normalize_parent_value(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    return value


def _render(value: Any) -> Any:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def parent_problems(index: int, field: FormField, fields: Sequence[FormField]) -> List[str]:
    """Reasons a derived field at `index` cannot be registered; empty when it can."""
    problems = []
    for parent in field.parentFields:
        if parent == index:
            problems.append(f"references itself as parent {parent}")
        elif parent < 0 or parent >= len(fields):
            problems.append(f"parent {parent} does not exist")
        elif parent > index:
            problems.append(f"parent {parent} comes after the field")
        elif fields[parent].derived:
            problems.append(f"parent {parent} is a derived field")
    return problems


class DerivedField:
    def __init__(self, index: int, field: FormField):
        self.index = index
        self.field_id = field.id
        self.parents = list(field.parentFields)
        self.expression: Expression = None
        self.parse_error: str = None
        try:
            self.expression = parse_formula(field.formula)
        except FormulaError as e:
            self.parse_error = str(e)

    def evaluate(self, values: Sequence[Any]) -> Any:
        if self.parse_error:
            raise FormulaError(self.parse_error)
        parents = [normalize_parent_value(values[p] if p < len(values) else None) for p in self.parents]
        return _render(self.expression.evaluate(parents))


class DerivationEngine:
    def __init__(self, fields: Sequence[FormField]):
        self.derived: List[DerivedField] = []
        self.rejected: Dict[int, List[str]] = {}
        self.errors: Dict[int, str] = {}

        for index, field in enumerate(fields):
            if not (field.derived and field.parentFields and (field.formula or "").strip()):
                continue
            problems = parent_problems(index, field, fields)
            if problems:
                logger.warning("Not registering derived field %s at %d: %s", field.id, index, "; ".join(problems))
                self.rejected[index] = problems
                continue
            self.derived.append(DerivedField(index, field))

    @property
    def derived_indices(self) -> List[int]:
        return [d.index for d in self.derived]

    def recompute(self, values: Sequence[Any]) -> List[Any]:
        """Return a copy of `values` with every derived field recomputed once."""
        updated = list(values)
        self.errors = {}
        for derived in self.derived:
            while len(updated) <= derived.index:
                updated.append(None)
            try:
                updated[derived.index] = derived.evaluate(updated)
            except FormulaError as e:
                logger.warning("Formula error in field %s: %s", derived.field_id, e)
                self.errors[derived.index] = str(e)
                updated[derived.index] = ""
        return updated
