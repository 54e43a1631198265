from __future__ import annotations

import pytest

from analysismgr.params import ConfigStore


def test_lookup_is_case_insensitive_and_keeps_first_spelling():
    store = ConfigStore({"WorkDir": "/work"})
    store["WORKDIR"] = "/other"

    assert store["workdir"] == "/other"
    assert list(store) == ["WorkDir"]
    assert len(store) == 1
    assert "WORKdir" in store


def test_values_are_stored_as_strings():
    store = ConfigStore()
    store.set_param("MgrActive_Local", True)
    store.set_param("DebugLevel", 2)
    store.set_param("Empty", None)

    assert store["mgractive_local"] == "True"
    assert store["DebugLevel"] == "2"
    assert store["Empty"] == ""


def test_entries_cannot_be_removed():
    store = ConfigStore({"MgrName": "Pub-10"})

    with pytest.raises(TypeError):
        del store["MgrName"]
    with pytest.raises(TypeError):
        store.pop("MgrName")
    with pytest.raises(TypeError):
        store.clear()

    assert store["MgrName"] == "Pub-10"


def test_get_helpers():
    store = ConfigStore({"Flag": "yes", "Off": "False", "Level": "3", "Blank": "  ", "Junk": "x"})

    assert store.get_bool("flag") is True
    assert store.get_bool("OFF", True) is False
    assert store.get_bool("Junk", True) is True
    assert store.get_int("level") == 3
    assert store.get_int("Junk", 7) == 7
    assert store.get_param("Blank", "fallback") == "fallback"
    assert store.get_param("Missing") == ""
    assert store.has_param("LEVEL")
    assert not store.has_param("Missing")


def test_merge_without_overwrite_keeps_existing_values():
    store = ConfigStore({"WorkDir": "/mgr"})

    applied = store.merge([("workdir", "/group"), ("Extra", "1")], overwrite=False)

    assert applied == ["Extra"]
    assert store["WorkDir"] == "/mgr"
    assert store["extra"] == "1"


def test_merge_with_overwrite_replaces_values():
    store = ConfigStore({"WorkDir": "/mgr"})

    applied = store.merge({"WORKDIR": "/new", "": "ignored"})

    assert applied == ["WORKDIR"]
    assert store["WorkDir"] == "/new"
    assert len(store) == 1


def test_equality_ignores_key_case():
    assert ConfigStore({"A": "1", "b": "2"}) == ConfigStore({"a": "1", "B": "2"})
    assert ConfigStore({"A": "1"}) == {"a": "1"}
    assert ConfigStore({"A": "1"}) != ConfigStore({"A": "2"})
