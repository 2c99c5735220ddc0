from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from web_llm_bridge.utils.persistence import JsonFileStore, YamlFileStore

if TYPE_CHECKING:
    from pathlib import Path


def test_yaml_file_store_load_returns_default_when_missing(tmp_path: Path) -> None:
    store = YamlFileStore(tmp_path / "missing.yaml")
    assert store.load(default={"ok": True}) == {"ok": True}


def test_yaml_file_store_keeps_key_order(tmp_path: Path) -> None:
    path = tmp_path / "bridge.profile.yaml"
    store = YamlFileStore(path)
    store.write({"providers": [{"name": "p", "url": "http://p.test"}]})

    assert store.load(default={}) == {"providers": [{"name": "p", "url": "http://p.test"}]}
    assert path.read_text(encoding="utf-8").index("name") < path.read_text(
        encoding="utf-8"
    ).index("url")


def test_json_file_store_treats_blank_file_as_missing(tmp_path: Path) -> None:
    path = tmp_path / "acct.json"
    path.write_text("  \n", encoding="utf-8")

    assert JsonFileStore(path).load(default={}) == {}


def test_json_file_store_atomic_write_leaves_no_temp_files(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "acct.json"
    store = JsonFileStore(path)
    store.write({"email": "alice@example.com", "token": {"access_token": "at"}})
    store.write({"email": "alice@example.com", "token": {"access_token": "at-2"}})

    assert store.load()["token"]["access_token"] == "at-2"
    assert [entry.name for entry in path.parent.iterdir()] == ["acct.json"]


def test_json_file_store_failed_write_keeps_previous_content(tmp_path: Path) -> None:
    path = tmp_path / "acct.json"
    store = JsonFileStore(path)
    store.write({"email": "alice@example.com"})

    with pytest.raises(TypeError):
        store.write({"email": object()})

    assert store.load() == {"email": "alice@example.com"}
    assert [entry.name for entry in tmp_path.iterdir()] == ["acct.json"]
