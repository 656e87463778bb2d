"""Shared fixtures for the form builder tests."""

import pytest

from database import KeyValueStore
from editor import FormEditor


@pytest.fixture
def store(tmp_path):
    return KeyValueStore(str(tmp_path / "data"))


@pytest.fixture
def editor(store):
    return FormEditor(store, "savedForms")
