import os

import pytest

from runflow.utils.ids import new_thread_id
from runflow.utils.imports import load_object


def test_load_object_resolves_module_attribute():
    assert load_object("runflow.utils.ids:new_thread_id") is new_thread_id


def test_load_object_follows_dotted_attributes():
    assert load_object("os:path.join") is os.path.join


@pytest.mark.parametrize("path", ["runflow.utils.ids", ":new_thread_id", "runflow.utils.ids:", ""])
def test_load_object_rejects_malformed_paths(path):
    with pytest.raises(ValueError):
        load_object(path)


def test_load_object_surfaces_import_errors():
    with pytest.raises(ModuleNotFoundError):
        load_object("runflow.no_such_module:thing")
    with pytest.raises(AttributeError):
        load_object("runflow.utils.ids:no_such_attr")
