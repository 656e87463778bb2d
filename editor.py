"""
Schema editing operations.

FormEditor owns the live FormSchema being edited and the collection of saved
forms read from the key/value store. Structural edits (delete, reorder) keep
every derived field's parentFields pointing at the same logical fields.
"""

import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from database import SAVED_FORMS_KEY, KeyValueStore, get_documents, replace_documents
from schemas import FIELD_TYPES, FormField, FormSchema, SavedForm, ValidationRule, field_config_errors

logger = logging.getLogger(__name__)


class FieldIndexError(IndexError):
    pass


class FieldConfigError(ValueError):
    """Raised when a field edit fails save-time validation."""

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__("; ".join(errors))


class ReorderError(ValueError):
    pass


def empty_form() -> FormSchema:
    return FormSchema(id="", name="", fields=[])


class FormEditor:
    def __init__(self, store: KeyValueStore, key: str = SAVED_FORMS_KEY):
        self.store = store
        self.key = key
        self.current_form = empty_form()
        self.saved_forms: List[SavedForm] = get_documents(store, key)
        logger.info("Loaded %d saved forms", len(self.saved_forms))

    # --- Field edits ---

    def _check_index(self, index: int):
        if index < 0 or index >= len(self.current_form.fields):
            raise FieldIndexError(f"no field at position {index}")

    def add_field(self, field_type: str) -> FormField:
        if field_type not in FIELD_TYPES:
            raise ValueError(f"unknown field type: {field_type}")
        field = FormField(id=uuid.uuid4().hex, type=field_type, label="", required=False, validations=[])
        self.current_form.fields.append(field)
        return field

    def update_field(self, index: int, partial: Dict[str, Any]) -> FormField:
        """Overwrite the named attributes of the field at `index`; `id` is kept."""
        self._check_index(index)
        current = self.current_form.fields[index]
        data = current.model_dump()
        data.update({k: v for k, v in partial.items() if k != "id"})
        field = FormField.model_validate(data)
        self.current_form.fields[index] = field
        return field

    def commit_field(self, index: int, config: Dict[str, Any]) -> FormField:
        """Validate an in-progress field configuration, then apply it in one step."""
        self._check_index(index)
        data = self.current_form.fields[index].model_dump()
        data.update({k: v for k, v in config.items() if k != "id"})
        candidate = FormField.model_validate(data)
        errors = field_config_errors(candidate, index, self.current_form.fields)
        if errors:
            raise FieldConfigError(errors)
        self.current_form.fields[index] = candidate
        return candidate

    def add_validation(self, index: int, rule: ValidationRule) -> FormField:
        self._check_index(index)
        rules = [r for r in self.current_form.fields[index].validations if r.type != rule.type]
        rules.append(rule)
        return self.update_field(index, {"validations": [r.model_dump() for r in rules]})

    def remove_validation(self, index: int, rule_type: str) -> FormField:
        self._check_index(index)
        rules = [r.model_dump() for r in self.current_form.fields[index].validations if r.type != rule_type]
        return self.update_field(index, {"validations": rules})

    def delete_field(self, index: int) -> FormField:
        self._check_index(index)
        removed = self.current_form.fields.pop(index)
        for field in self.current_form.fields:
            if field.parentFields:
                field.parentFields = [p - 1 if p > index else p for p in field.parentFields if p != index]
        return removed

    def reorder_fields(self, old_index: int, new_index: int) -> List[FormField]:
        fields = self.current_form.fields
        self._check_index(old_index)
        self._check_index(new_index)
        if old_index == new_index:
            return fields

        order = list(range(len(fields)))
        order.insert(new_index, order.pop(old_index))
        position = {old: new for new, old in enumerate(order)}

        # a move may not put a parent at or after a derived field it used to precede
        for old_pos, field in enumerate(fields):
            if not field.derived:
                continue
            if any(position[p] >= position[old_pos] for p in field.parentFields if 0 <= p < old_pos):
                raise ReorderError(f"field {position[old_pos]} would come before one of its parent fields")

        moved = [fields[old] for old in order]
        remapped = [[position[p] if 0 <= p < len(fields) else p for p in f.parentFields] for f in moved]
        for field, parents in zip(moved, remapped):
            field.parentFields = parents
        self.current_form.fields = moved
        return moved

    def reset_current_form(self):
        self.current_form = empty_form()

    # --- Saved forms ---

    def _next_form_id(self) -> str:
        candidate = time.time_ns() // 1_000_000
        taken = [int(f.id) for f in self.saved_forms if f.id.isdigit()]
        if taken and candidate <= max(taken):
            candidate = max(taken) + 1
        return str(candidate)

    def save_form(self, name: str) -> Optional[SavedForm]:
        if not name or not name.strip():
            logger.debug("Ignoring save with a blank name")
            return None
        form_id = self._next_form_id()
        snapshot = self.current_form.model_copy(deep=True)
        snapshot.id = form_id
        snapshot.name = name
        saved = SavedForm(
            id=form_id,
            name=name,
            createdAt=datetime.now(timezone.utc).isoformat(),
            form_schema=snapshot,
        )
        forms = self.saved_forms + [saved]
        replace_documents(self.store, forms, self.key)
        self.saved_forms = forms
        self.reset_current_form()
        logger.info("Saved form %s (%s) with %d fields", form_id, name, len(snapshot.fields))
        return saved

    def get_saved_form(self, form_id: str) -> Optional[SavedForm]:
        for form in self.saved_forms:
            if form.id == form_id:
                return form.model_copy(deep=True)
        return None

    def list_saved_forms(self) -> List[SavedForm]:
        return [form.model_copy(deep=True) for form in self.saved_forms]

    def load_form_for_preview(self, form_id: str) -> Optional[FormSchema]:
        saved = self.get_saved_form(form_id)
        if saved is None:
            logger.info("Saved form %s not found", form_id)
            return None
        self.current_form = saved.form_schema
        return self.current_form
