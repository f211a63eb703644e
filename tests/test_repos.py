import json
from pathlib import Path

import pytest

from code_remote.repos import (
    RepoExistsError,
    RepoNotFoundError,
    RepoPathError,
    RepoRegistry,
    RepoRegistryError,
    validate_repo_name,
)


def test_registry_roundtrip(tmp_path: Path, workspace: Path) -> None:
    registry = RepoRegistry(tmp_path / "repos.json")
    repo = registry.add("demo", str(workspace))

    assert repo.path == str(workspace.resolve())
    assert repo.added_at and repo.added_at.endswith("Z")
    assert registry.get("demo") == repo
    assert registry.find_by_path(str(workspace)) == repo
    payload = json.loads((tmp_path / "repos.json").read_text())
    assert payload["repos"][0]["addedAt"] == repo.added_at

    assert registry.remove("demo").name == "demo"
    assert registry.list() == []


def test_registry_rejects_bad_input(tmp_path: Path, workspace: Path) -> None:
    registry = RepoRegistry(tmp_path / "repos.json")
    registry.add("demo", str(workspace))

    with pytest.raises(RepoExistsError):
        registry.add("demo", str(workspace))
    with pytest.raises(RepoPathError):
        registry.add("ghost", str(tmp_path / "missing"))
    with pytest.raises(RepoNotFoundError):
        registry.remove("ghost")


@pytest.mark.parametrize("name", ["", "..", "a/b", "a\\b"])
def test_repo_names_must_be_directory_safe(name: str) -> None:
    with pytest.raises(RepoRegistryError):
        validate_repo_name(name)


def test_corrupt_registry_reads_empty(tmp_path: Path) -> None:
    path = tmp_path / "repos.json"
    path.write_text("{broken", encoding="utf-8")
    assert RepoRegistry(path).list() == []
