"""
Schemas for the Form Builder

Each Pydantic model describes one piece of a form definition:
- FormField -> one configurable input
- ValidationRule -> a named constraint attached to a field
- FormSchema -> the ordered field list being edited or previewed
- SavedForm -> an immutable, named, timestamped snapshot of a FormSchema
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import List, Optional, Union, Literal

FieldType = Literal["text", "number", "textarea", "select", "radio", "checkbox", "date"]
RuleType = Literal["required", "minLength", "maxLength", "email", "password"]

FIELD_TYPES = ("text", "number", "textarea", "select", "radio", "checkbox", "date")
OPTION_FIELD_TYPES = ("select", "radio", "checkbox")
RULE_TYPES = ("required", "minLength", "maxLength", "email", "password")


class ValidationRule(BaseModel):
    type: RuleType
    value: Optional[Union[int, float, str]] = Field(None, description="threshold for minLength/maxLength")
    message: str


class FormField(BaseModel):
    id: str
    type: FieldType
    label: str = ""
    required: bool = False
    defaultValue: Optional[Union[bool, int, float, str, List[str]]] = None
    options: Optional[List[str]] = None
    validations: List[ValidationRule] = []
    derived: bool = False
    parentFields: List[int] = Field(default_factory=list, description="indices of parent fields")
    formula: Optional[str] = Field(None, description="expression over parent0, parent1, ...")

    @field_validator("validations")
    @classmethod
    def unique_rule_types(cls, rules: List[ValidationRule]) -> List[ValidationRule]:
        seen = set()
        for rule in rules:
            if rule.type in seen:
                raise ValueError(f"duplicate validation rule: {rule.type}")
            seen.add(rule.type)
        return rules


class FormSchema(BaseModel):
    id: str = ""
    name: str = ""
    fields: List[FormField] = []

    @property
    def is_loaded(self) -> bool:
        return bool(self.name.strip())


class SavedForm(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    createdAt: str
    form_schema: FormSchema = Field(..., alias="schema")


RULE_PRESETS = [
    ValidationRule(type="required", message="This field is required"),
    ValidationRule(type="minLength", value=5, message="Minimum 5 characters"),
    ValidationRule(type="maxLength", value=20, message="Maximum 20 characters"),
    ValidationRule(type="email", message="Invalid email format"),
    ValidationRule(type="password", message="Min 8 chars with number"),
]


def field_config_errors(field: FormField, index: int, fields: List[FormField]) -> List[str]:
    """Save-time checks for a field about to be committed at position `index`."""
    errors = []
    if not field.label.strip():
        errors.append("Label is required")
    if field.type in OPTION_FIELD_TYPES and not [o for o in (field.options or []) if o.strip()]:
        errors.append(f"At least one option is required for {field.type} fields")
    if field.derived:
        if not field.parentFields:
            errors.append("Derived fields need at least one parent field")
        if not (field.formula or "").strip():
            errors.append("Derived fields need a formula")
        for parent in field.parentFields:
            if parent == index:
                errors.append("A derived field cannot be its own parent")
            elif parent < 0 or parent >= len(fields):
                errors.append(f"Parent field {parent} does not exist")
            elif parent > index:
                errors.append(f"Parent field {parent} must come before this field")
            elif fields[parent].derived:
                errors.append(f"Parent field {parent} is itself derived")
    return errors
