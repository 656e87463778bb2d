"""
Local persistent key/value area for saved forms.

Keys live as documents of one TinyDB table in FORMS_DATA_DIR/store.json,
guarded by a file lock. The saved form collection is stored under
SAVED_FORMS_KEY as a JSON list, rewritten in full on every save.
"""

import logging
import os
from contextlib import contextmanager
from typing import Any, Iterator, List

from filelock import FileLock
from pydantic import TypeAdapter, ValidationError
from tinydb import Query, TinyDB

from schemas import SavedForm

logger = logging.getLogger(__name__)

FORMS_DATA_DIR = os.getenv("FORMS_DATA_DIR", ".formdata")
SAVED_FORMS_KEY = os.getenv("SAVED_FORMS_KEY", "savedForms")

_saved_forms_adapter = TypeAdapter(List[SavedForm])


class KeyValueStore:
    def __init__(self, directory: str = FORMS_DATA_DIR):
        self.directory = directory
        self.path = os.path.join(directory, "store.json")
        self._lock = FileLock(f"{self.path}.lock")

    @contextmanager
    def _db(self) -> Iterator[TinyDB]:
        os.makedirs(self.directory, exist_ok=True)
        with self._lock:
            db = TinyDB(self.path)
            try:
                yield db
            finally:
                db.close()

    def get(self, key: str) -> Any:
        """Value stored under `key`, or None when the key was never written."""
        with self._db() as db:
            item = db.table("kv").get(Query().key == key)
        return item["value"] if item else None

    def set(self, key: str, value: Any) -> None:
        with self._db() as db:
            db.table("kv").upsert({"key": key, "value": value}, Query().key == key)


def get_documents(store: KeyValueStore, key: str = SAVED_FORMS_KEY) -> List[SavedForm]:
    try:
        raw = store.get(key)
    except ValueError as e:
        logger.warning("Ignoring unreadable store at %s: %s", store.path, e)
        return []
    if raw is None:
        return []
    try:
        return _saved_forms_adapter.validate_python(raw)
    except ValidationError as e:
        logger.warning("Ignoring malformed saved forms under %r: %s", key, e)
        return []


def replace_documents(store: KeyValueStore, forms: List[SavedForm], key: str = SAVED_FORMS_KEY) -> None:
    store.set(key, [form.model_dump(mode="json", by_alias=True) for form in forms])
