"""
Validator compilation for form fields.

compile_validators() turns an ordered field list into one validator per field
position. A validator coerces the raw value to the field's base type (number
or string) and then runs a chain of (predicate, message) checks built from the
field's `required` flag and its validation rules.
"""

import logging
import math
import re
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from email_validator import EmailNotValidError, validate_email

from schemas import FormField

logger = logging.getLogger(__name__)

DEFAULT_REQUIRED_MESSAGE = "This field is required"
NUMBER_MESSAGE = "Must be a number"
PASSWORD_PATTERN = re.compile(r"^(?=.*\d).{8,}$")

Check = Tuple[Callable[[Any], bool], str]


class ValidationResult:
    """Result of validating one field value"""

    def __init__(self, is_valid: bool = True, cleaned_value: Any = None, errors: List[str] = None):
        self.is_valid = is_valid
        self.cleaned_value = cleaned_value
        self.errors = errors or []

    def add_error(self, error: str):
        self.is_valid = False
        self.errors.append(error)


def is_absent(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    if isinstance(value, (list, tuple)) and len(value) == 0:
        return True
    return False


def coerce_number(value: Any):
    if isinstance(value, bool):
        raise ValueError(NUMBER_MESSAGE)
    if isinstance(value, (int, float)):
        number = value
    else:
        try:
            number = float(str(value).strip())
        except ValueError:
            raise ValueError(NUMBER_MESSAGE)
    try:
        finite = math.isfinite(number)
    except OverflowError:
        finite = False
    if not finite:
        raise ValueError(NUMBER_MESSAGE)
    if isinstance(number, float) and number.is_integer():
        return int(number)
    return number


def coerce_string(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ", ".join(coerce_string(item) for item in value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _is_email(value: str) -> bool:
    try:
        validate_email(value, check_deliverability=False)
    except EmailNotValidError:
        return False
    return True


def _length_bound(field: FormField, rule) -> Optional[int]:
    try:
        return int(rule.value)
    except (TypeError, ValueError, OverflowError):
        logger.warning("Ignoring %s rule without a numeric value on field %s", rule.type, field.id)
        return None


class FieldValidator:
    """Validates values for one field: base coercion, presence, then rule checks."""

    def __init__(self, field: FormField):
        self.field_id = field.id
        self.numeric = field.type == "number"
        self.coerce = coerce_number if self.numeric else coerce_string
        self.required_message = None
        if field.required:
            rule = next((v for v in field.validations if v.type == "required"), None)
            self.required_message = rule.message if rule else DEFAULT_REQUIRED_MESSAGE
        self.checks = [] if self.numeric else self._string_checks(field)

    @staticmethod
    def _string_checks(field: FormField) -> List[Check]:
        checks = []
        for rule in field.validations:
            if rule.type == "minLength":
                bound = _length_bound(field, rule)
                if bound is not None:
                    checks.append((lambda v, n=bound: len(v) >= n, rule.message))
            elif rule.type == "maxLength":
                bound = _length_bound(field, rule)
                if bound is not None:
                    checks.append((lambda v, n=bound: len(v) <= n, rule.message))
            elif rule.type == "email":
                checks.append((_is_email, rule.message))
            elif rule.type == "password":
                checks.append((lambda v: PASSWORD_PATTERN.match(v) is not None, rule.message))
        return checks

    def __call__(self, value: Any) -> ValidationResult:
        result = ValidationResult(cleaned_value=value)

        if is_absent(value):
            result.cleaned_value = None
            if self.required_message:
                result.add_error(self.required_message)
            return result

        try:
            result.cleaned_value = self.coerce(value)
        except ValueError as e:
            result.add_error(str(e))
            return result

        for predicate, message in self.checks:
            if not predicate(result.cleaned_value):
                result.add_error(message)
        return result


def compile_validators(fields: Sequence[FormField]) -> List[FieldValidator]:
    """Build one validator per field position. Pure: same fields, same validators."""
    return [FieldValidator(field) for field in fields]


def validate_values(validators: Sequence[FieldValidator], values: Sequence[Any]) -> Tuple[List[Any], Dict[int, List[str]]]:
    cleaned = []
    errors = {}
    for index, validator in enumerate(validators):
        value = values[index] if index < len(values) else None
        result = validator(value)
        cleaned.append(result.cleaned_value)
        if not result.is_valid:
            errors[index] = result.errors
    return cleaned, errors
