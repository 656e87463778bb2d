"""Tests for the local key/value store."""

from database import KeyValueStore, get_documents, replace_documents
from schemas import FormSchema, SavedForm


def saved_form(id_="1"):
    return SavedForm(id=id_, name="Form", createdAt="2024-01-01T00:00:00+00:00",
                     form_schema=FormSchema(id=id_, name="Form", fields=[]))


def test_missing_key_reads_as_empty(store):
    assert store.get("savedForms") is None
    assert get_documents(store, "savedForms") == []


def test_malformed_content_reads_as_empty(store):
    store.set("savedForms", {"not": "a list"})
    assert get_documents(store, "savedForms") == []
    store.set("savedForms", [{"id": "1"}])
    assert get_documents(store, "savedForms") == []


def test_unreadable_store_file_reads_as_empty(tmp_path):
    store = KeyValueStore(str(tmp_path))
    (tmp_path / "store.json").write_text("{not json")
    assert get_documents(store, "savedForms") == []


def test_documents_are_stored_under_the_schema_key(store):
    replace_documents(store, [saved_form()], "savedForms")
    raw = store.get("savedForms")
    assert raw[0]["schema"] == {"id": "1", "name": "Form", "fields": []}
    assert get_documents(store, "savedForms")[0].form_schema.name == "Form"


def test_set_replaces_value_and_survives_reopen(tmp_path):
    store = KeyValueStore(str(tmp_path))
    store.set("k", "one")
    store.set("k", "two")
    store.set("other", [1, 2])
    reopened = KeyValueStore(str(tmp_path))
    assert reopened.get("k") == "two"
    assert reopened.get("other") == [1, 2]
