"""Test harness configuration.

This repo uses a `src/` layout. In some developer environments an older
installed `code_remote` package can shadow the local sources.

Ensure tests always import the in-repo code.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest


def pytest_configure() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    src_dir = repo_root / "src"
    src_path = str(src_dir)
    if sys.path[:1] != [src_path] and src_path not in sys.path:
        sys.path.insert(0, src_path)


@pytest.fixture()
def data_root(tmp_path: Path) -> Path:
    root = tmp_path / "data"
    root.mkdir()
    return root


@pytest.fixture()
def workspace(tmp_path: Path) -> Path:
    path = tmp_path / "workspace" / "demo"
    path.mkdir(parents=True)
    return path


@pytest.fixture()
def codex_home(tmp_path: Path) -> Path:
    path = tmp_path / "codex-sessions"
    path.mkdir()
    return path


@pytest.fixture()
def store(data_root: Path, workspace: Path, codex_home: Path):
    """
    A SessionStore with one registered repo named `demo`.

    Imported lazily so `pytest_configure()` can prepend the local src/
    directory before any `code_remote` modules are loaded.
    """
    from code_remote.codex_conversation import CodexConversationReader
    from code_remote.session_store import SessionStore

    session_store = SessionStore(
        data_root, conversation_reader=CodexConversationReader(codex_home)
    )
    session_store.registry.add("demo", str(workspace))
    return session_store


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"
