import json
import re
from pathlib import Path

import pytest
from typer.testing import CliRunner

from code_remote.cli import app

runner = CliRunner()


@pytest.fixture()
def home(tmp_path: Path) -> Path:
    path = tmp_path / "home"
    path.mkdir()
    return path


def _invoke(home: Path, *args: str):
    return runner.invoke(app, [*args, "--home", str(home)])


def _new_token(home: Path, repo: str = "demo") -> str:
    result = _invoke(home, "sessions", "new", "--repo", repo)
    assert result.exit_code == 0, result.output
    match = re.search(r"Token: ([A-Z0-9]{8})", result.output)
    assert match
    return match.group(1)


def test_repo_add_list_remove(home: Path, workspace: Path) -> None:
    result = _invoke(home, "repo", "list")
    assert result.exit_code == 0
    assert "No repos registered." in result.output

    result = _invoke(home, "repo", "add", "demo", str(workspace))
    assert result.exit_code == 0, result.output
    assert f"Added repo: demo -> {workspace.resolve()}" in result.output

    result = _invoke(home, "repo", "add", "demo", str(workspace))
    assert result.exit_code == 1
    assert "Repo name already exists: demo" in result.output

    result = _invoke(home, "repo", "list")
    assert f"demo -> {workspace.resolve()}" in result.output

    result = _invoke(home, "repo", "remove", "demo")
    assert result.exit_code == 0
    result = _invoke(home, "repo", "remove", "demo")
    assert result.exit_code == 1
    assert "Repo not found: demo" in result.output


def test_repo_add_rejects_missing_path(home: Path, tmp_path: Path) -> None:
    result = _invoke(home, "repo", "add", "ghost", str(tmp_path / "missing"))
    assert result.exit_code == 1
    assert "Path does not exist" in result.output


def test_repo_init_uses_cwd(
    home: Path, workspace: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(workspace)
    result = _invoke(home, "repo", "init")
    assert result.exit_code == 0, result.output
    assert "Added repo: demo ->" in result.output


def test_sessions_new_list_reindex_remove(home: Path, workspace: Path) -> None:
    assert _invoke(home, "repo", "add", "demo", str(workspace)).exit_code == 0
    token = _new_token(home)

    result = _invoke(home, "sessions", "list", "--debug")
    assert result.exit_code == 0, result.output
    assert token in result.output
    assert "demo" in result.output

    (home / "tokens.json").unlink()
    result = _invoke(home, "sessions", "reindex")
    assert result.exit_code == 0
    assert "1 sessions across 1 repos" in result.output
    tokens = json.loads((home / "tokens.json").read_text())["tokens"]
    session_id = tokens[token]["sessionId"]

    result = _invoke(home, "sessions", "remove", session_id, "--repo", "demo")
    assert result.exit_code == 0
    assert f"Removed session: {session_id}" in result.output
    result = _invoke(home, "sessions", "list")
    assert "No active sessions." in result.output


def test_sessions_new_requires_registered_repo(home: Path) -> None:
    result = _invoke(home, "sessions", "new", "--repo", "ghost")
    assert result.exit_code == 1
    assert "Repo not registered: ghost" in result.output


def test_codex_clear(home: Path) -> None:
    (home / "codex-session-map.json").write_text(
        json.dumps({"sessions": {"ABCD1234": "t-1", "OTHER999": "t-2"}})
    )

    result = _invoke(home, "codex", "clear", "--key", "abcd1234")
    assert result.exit_code == 0
    assert "Cleared Codex session for ABCD1234" in result.output
    sessions = json.loads((home / "codex-session-map.json").read_text())["sessions"]
    assert sessions == {"OTHER999": "t-2"}

    result = _invoke(home, "codex", "clear")
    assert result.exit_code == 0
    sessions = json.loads((home / "codex-session-map.json").read_text())["sessions"]
    assert sessions == {}


def test_run_rejects_unknown_token(home: Path) -> None:
    result = _invoke(home, "run", "ZZZZ9999", "hello")
    assert result.exit_code == 1
    assert "Invalid token: ZZZZ9999" in result.output


def test_run_reports_runner_failure(home: Path, workspace: Path) -> None:
    assert _invoke(home, "repo", "add", "demo", str(workspace)).exit_code == 0
    token = _new_token(home)

    # The default injection runner needs a tmux session, which manual sessions lack.
    result = _invoke(home, "run", token, "hello")

    assert result.exit_code == 1
    assert "Command execution failed" in result.output


def test_invalid_config_is_reported(home: Path) -> None:
    (home / "config.yml").write_text("runner:\n  name: robot\n")
    result = _invoke(home, "repo", "list")
    assert result.exit_code == 1
    assert "runner.name must be one of" in result.output


def test_repo_init_refuses_registered_path(
    home: Path, workspace: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    assert _invoke(home, "repo", "add", "first", str(workspace)).exit_code == 0
    monkeypatch.chdir(workspace)

    result = _invoke(home, "repo", "init")

    assert result.exit_code == 1
    assert "Path already registered as first" in result.output


def _write_rollout(path: Path, session_id: str, cwd: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    meta = {
        "type": "session_meta",
        "payload": {"id": session_id, "cwd": str(cwd), "timestamp": "2025-01-01T00:00:00Z"},
    }
    path.write_text(json.dumps(meta) + "\n", encoding="utf-8")
    return path


def test_codex_list_and_import(home: Path, workspace: Path, tmp_path: Path) -> None:
    sessions_dir = tmp_path / "codex-sessions"
    (home / "config.yml").write_text(f"codex:\n  sessions_dir: {sessions_dir}\n")
    assert _invoke(home, "repo", "add", "demo", str(workspace)).exit_code == 0

    result = _invoke(home, "codex", "list")
    assert "No Codex sessions found." in result.output

    _write_rollout(sessions_dir / "2025" / "rollout-cx-1.jsonl", "cx-1", workspace)
    orphan = tmp_path / "orphan"
    orphan.mkdir()
    _write_rollout(sessions_dir / "rollout-cx-2.jsonl", "cx-2", orphan)

    result = _invoke(home, "codex", "list")
    assert "Found 2 Codex sessions:" in result.output
    assert f"- cx-1 | 2025-01-01T00:00:00Z | {workspace}" in result.output

    result = _invoke(home, "codex", "import", "--all")
    assert result.exit_code == 0, result.output
    assert "Skipping cx-2: Repo not registered" in result.output
    assert "Imported 1 of 2 Codex sessions" in result.output
    token = re.search(r"Imported cx-1 -> repo demo, token ([A-Z0-9]{8})", result.output)
    assert token

    mapping = json.loads((home / "codex-session-map.json").read_text())["sessions"]
    assert mapping == {token.group(1): "cx-1"}

    result = _invoke(
        home, "codex", "import", "--id", "cx-2", "--repo", "demo", "--session-key", "chat-9"
    )
    assert result.exit_code == 0, result.output
    mapping = json.loads((home / "codex-session-map.json").read_text())["sessions"]
    assert mapping["chat-9"] == "cx-2"


def test_codex_import_argument_errors(home: Path, tmp_path: Path) -> None:
    result = _invoke(home, "codex", "import")
    assert result.exit_code == 1
    assert "exactly one of --id, --file or --all" in result.output

    empty = tmp_path / "empty.jsonl"
    empty.write_text("{}\n")
    result = _invoke(home, "codex", "import", "--file", str(empty))
    assert result.exit_code == 1
    assert "No session_meta found" in result.output


def test_run_reports_unexecutable_codex_binary(home: Path, workspace: Path) -> None:
    binary = home / "codex"
    binary.write_text("#!/bin/sh\necho hi\n")
    binary.chmod(0o644)
    (home / "config.yml").write_text(
        f"runner:\n  name: codex\ncodex:\n  binary: {binary}\n"
    )
    assert _invoke(home, "repo", "add", "demo", str(workspace)).exit_code == 0
    token = _new_token(home)

    result = _invoke(home, "run", token, "hello")

    assert result.exit_code == 1
    assert "Command execution failed" in result.output
    assert isinstance(result.exception, SystemExit)
