"""Live preview of a form: current values, derived fields and submission."""

from typing import Any, Dict, List, Optional, Sequence

from derivation import DerivationEngine
from schemas import FormField, FormSchema
from validation import compile_validators, validate_values


class DerivedFieldError(ValueError):
    """Raised on an attempt to type into a derived field."""


class SubmissionResult:
    def __init__(self, accepted: bool, values: List[Any], errors: Dict[int, List[str]]):
        self.accepted = accepted
        self.values = values
        self.errors = errors


def initial_value(field: FormField) -> Any:
    if field.defaultValue is not None:
        return field.defaultValue
    if field.type == "checkbox" and field.options:
        return []
    return None


class PreviewSession:
    def __init__(self, schema: FormSchema):
        self.schema = schema.model_copy(deep=True)
        self.fields = self.schema.fields
        self.validators = compile_validators(self.fields)
        self.engine = DerivationEngine(self.fields)
        self.values = self.engine.recompute([initial_value(f) for f in self.fields])

    @property
    def formula_errors(self) -> Dict[int, str]:
        return self.engine.errors

    def set_value(self, index: int, value: Any) -> List[Any]:
        if index < 0 or index >= len(self.fields):
            raise IndexError(f"no field at position {index}")
        if self.fields[index].derived:
            raise DerivedFieldError(f"field {index} is calculated from other fields")
        values = list(self.values)
        values[index] = value
        self.values = self.engine.recompute(values)
        return self.values

    def update(self, values: Sequence[Any]) -> List[Any]:
        """Apply a batch of live values; entries for derived fields are ignored."""
        merged = list(self.values)
        for index, value in enumerate(values[:len(self.fields)]):
            if not self.fields[index].derived:
                merged[index] = value
        self.values = self.engine.recompute(merged)
        return self.values

    def submit(self, values: Optional[Sequence[Any]] = None) -> SubmissionResult:
        if values is not None:
            self.update(values)
        else:
            self.values = self.engine.recompute(self.values)
        cleaned, errors = validate_values(self.validators, self.values)
        return SubmissionResult(not errors, cleaned, errors)
