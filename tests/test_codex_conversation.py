import json
import os
from pathlib import Path

from code_remote.codex_conversation import (
    CodexConversationReader,
    extract_conversation,
    find_session_file,
    load_session_meta,
    looks_like_instructions,
)


def _message(role: str, text: str) -> dict:
    key = "input_text" if role == "user" else "output_text"
    return {
        "type": "response_item",
        "payload": {"type": "message", "role": role, "content": [{"type": key, key: text}]},
    }


def _write_rollout(path: Path, entries: list) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = [json.dumps(entry) if isinstance(entry, dict) else entry for entry in entries]
    path.write_text("\n".join(lines), encoding="utf-8")
    return path


def test_instruction_detection() -> None:
    assert looks_like_instructions("# AGENTS.md instructions for /repo")
    assert looks_like_instructions("< instructions >do things")
    assert not looks_like_instructions("please refactor the parser")


def test_extract_skips_instructions_and_slash_commands(tmp_path: Path) -> None:
    path = _write_rollout(
        tmp_path / "rollout.jsonl",
        [
            {"type": "session_meta", "payload": {"id": "abc"}},
            _message("user", "<environment_context>cwd</environment_context>"),
            _message("user", "/status"),
            _message("user", "first real prompt"),
            "not json",
            _message("assistant", "working on it"),
            _message("user", "second prompt"),
            _message("assistant", "finished"),
        ],
    )

    conversation = extract_conversation(path)

    assert conversation.initial_message == "first real prompt"
    assert conversation.last_message == "second prompt"
    assert conversation.last_assistant == "finished"


def test_missing_file_is_empty(tmp_path: Path) -> None:
    assert extract_conversation(tmp_path / "nope.jsonl").empty


def test_reader_finds_nested_files_and_caches_by_mtime(tmp_path: Path) -> None:
    path = _write_rollout(
        tmp_path / "2024" / "05" / "rollout-abc-123.jsonl",
        [_message("user", "hello")],
    )
    reader = CodexConversationReader(tmp_path)

    assert find_session_file("abc-123", tmp_path) == path
    assert find_session_file("missing", tmp_path) is None
    assert reader.conversation("abc-123").initial_message == "hello"

    _write_rollout(path, [_message("user", "changed")])
    stat = path.stat()
    os.utime(path, (stat.st_atime, stat.st_mtime + 10))
    assert reader.conversation("abc-123").initial_message == "changed"
    assert reader.conversation("").empty


def test_invalid_utf8_is_replaced_not_raised(tmp_path: Path) -> None:
    path = tmp_path / "rollout-cx-1.jsonl"
    good = json.dumps(_message("user", "still readable")).encode("utf-8")
    path.write_bytes(good + b"\n" + b'{"type": "response_item", "payload": "\xff\xfe')

    conversation = extract_conversation(path)

    assert conversation.initial_message == "still readable"


def test_reader_caches_resolved_path(tmp_path: Path) -> None:
    path = _write_rollout(tmp_path / "rollout-abc.jsonl", [_message("user", "hi")])
    reader = CodexConversationReader(tmp_path)

    assert reader.find_file("abc") == path
    moved = _write_rollout(tmp_path / "later" / "rollout-abc.jsonl", [_message("user", "hi")])
    # The cached location wins while it still exists.
    assert reader.find_file("abc") == path

    path.unlink()
    assert reader.find_file("abc") == moved


def test_session_meta_and_listing(tmp_path: Path) -> None:
    meta_entry = {
        "type": "session_meta",
        "payload": {
            "id": "cx-42",
            "cwd": "/work/demo",
            "timestamp": "2025-01-02T03:04:05Z",
            "model_provider": "openai",
            "cli_version": "0.40.0",
        },
    }
    path = _write_rollout(
        tmp_path / "2025" / "rollout-cx-42.jsonl", [meta_entry, _message("user", "go")]
    )
    _write_rollout(tmp_path / "rollout-headless.jsonl", [_message("user", "no meta")])

    meta = load_session_meta(path)
    assert meta is not None
    assert (meta.id, meta.cwd, meta.model_provider, meta.cli_version) == (
        "cx-42",
        "/work/demo",
        "openai",
        "0.40.0",
    )
    assert load_session_meta(tmp_path / "rollout-headless.jsonl") is None

    reader = CodexConversationReader(tmp_path)
    assert [m.id for m in reader.list_sessions()] == ["cx-42"]
    assert reader.find_meta("cx-42") == meta
    assert reader.find_meta("missing") is None
