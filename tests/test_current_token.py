import json
from pathlib import Path

import pytest

from code_remote.current_token import CurrentTokenStore


def test_set_get_clear(tmp_path: Path) -> None:
    store = CurrentTokenStore(tmp_path / "current.json")

    assert store.get_token("telegram:1") is None
    assert store.set_token("telegram:1", "abcd1234") == "ABCD1234"
    store.set_token("telegram:2", "ZZZZ9999")

    assert store.get_token("telegram:1") == "ABCD1234"
    payload = json.loads((tmp_path / "current.json").read_text())
    assert payload["chats"]["telegram:1"]["token"] == "ABCD1234"
    assert payload["chats"]["telegram:1"]["updatedAt"].endswith("Z")

    assert store.clear_token("telegram:1") is True
    assert store.clear_token("telegram:1") is False
    assert store.get_token("telegram:1") is None
    assert store.get_token("telegram:2") == "ZZZZ9999"


def test_rejects_invalid_token(tmp_path: Path) -> None:
    store = CurrentTokenStore(tmp_path / "current.json")
    with pytest.raises(ValueError):
        store.set_token("telegram:1", "nope")


def test_corrupt_file_reads_empty(tmp_path: Path) -> None:
    path = tmp_path / "current.json"
    path.write_text("][", encoding="utf-8")
    store = CurrentTokenStore(path)
    assert store.get_token("telegram:1") is None
    store.set_token("telegram:1", "ABCD1234")
    assert store.get_token("telegram:1") == "ABCD1234"
