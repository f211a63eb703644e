import dataclasses
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from .logging_utils import log_event
from .utils import canonicalize_path, now_iso, read_json_safe, write_json_atomic


class RepoRegistryError(Exception):
    pass


class RepoExistsError(RepoRegistryError):
    pass


class RepoNotFoundError(RepoRegistryError):
    pass


class RepoPathError(RepoRegistryError):
    pass


@dataclasses.dataclass
class Repo:
    name: str
    path: str
    added_at: Optional[str] = None

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> Optional["Repo"]:
        name = payload.get("name")
        path = payload.get("path")
        if not isinstance(name, str) or not name:
            return None
        if not isinstance(path, str) or not path:
            return None
        added_at = payload.get("addedAt") or payload.get("added_at")
        return cls(
            name=name,
            path=path,
            added_at=added_at if isinstance(added_at, str) else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "path": self.path, "addedAt": self.added_at}


def normalize_repo_path(raw: str) -> Path:
    if not raw:
        raise RepoPathError("Repo path is required")
    return canonicalize_path(Path(raw))


def validate_repo_name(name: str) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise RepoRegistryError("Repo name is required")
    # Repo names become directory names under the data root.
    if cleaned in (".", "..") or "/" in cleaned or "\\" in cleaned:
        raise RepoRegistryError(f"Invalid repo name: {name}")
    return cleaned


class RepoRegistry:
    """Registered workspaces, persisted as `{"repos": [{name, path, addedAt}]}`."""

    def __init__(self, path: Path, *, logger: Optional[logging.Logger] = None) -> None:
        self._path = path
        self._logger = logger or logging.getLogger(__name__)

    @property
    def path(self) -> Path:
        return self._path

    def list(self) -> List[Repo]:
        data = read_json_safe(self._path, {"repos": []}, logger=self._logger)
        repos_raw = data.get("repos")
        if not isinstance(repos_raw, list):
            return []
        repos: List[Repo] = []
        for entry in repos_raw:
            if not isinstance(entry, dict):
                continue
            repo = Repo.from_dict(entry)
            if repo is not None:
                repos.append(repo)
        return repos

    def get(self, name: str) -> Optional[Repo]:
        for repo in self.list():
            if repo.name == name:
                return repo
        return None

    def find_by_path(self, workdir: str) -> Optional[Repo]:
        if not workdir:
            return None
        target = canonicalize_path(Path(workdir))
        for repo in self.list():
            if canonicalize_path(Path(repo.path)) == target:
                return repo
        return None

    def add(self, name: str, raw_path: str) -> Repo:
        name = validate_repo_name(name)
        path = normalize_repo_path(raw_path)
        if not path.exists():
            raise RepoPathError(f"Path does not exist: {path}")
        repos = self.list()
        if any(repo.name == name for repo in repos):
            raise RepoExistsError(f"Repo name already exists: {name}")
        repo = Repo(name=name, path=str(path), added_at=now_iso())
        repos.append(repo)
        self._save(repos)
        log_event(self._logger, logging.INFO, "repo.added", name=name, path=str(path))
        return repo

    def remove(self, name: str) -> Repo:
        repos = self.list()
        remaining = [repo for repo in repos if repo.name != name]
        if len(remaining) == len(repos):
            raise RepoNotFoundError(f"Repo not found: {name}")
        removed = next(repo for repo in repos if repo.name == name)
        self._save(remaining)
        log_event(self._logger, logging.INFO, "repo.removed", name=name)
        return removed

    def _save(self, repos: List[Repo]) -> None:
        write_json_atomic(self._path, {"repos": [repo.to_dict() for repo in repos]})
