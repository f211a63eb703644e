"""
Token/session directory.

Layout under the data root:

    repos.json                      {"repos": [{name, path, addedAt}]}
    tokens.json                     {"tokens": {TOKEN: {repoName, sessionId}}}
    sessions.json                   {"sessions": {sessionId: {repoName}}}
    <repoName>/sessions/<id>.json   full SessionRecord (source of truth)

`tokens.json` and `sessions.json` are derived indexes. Every write goes through
`atomic_write`, so a crash never leaves a half-written file, but the three
files are not updated transactionally: a concurrent writer can drop another
writer's index entry. `reindex_sessions()` rebuilds both indexes from the
per-repo record files.
"""

import dataclasses
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

from .codex_conversation import CodexConversationReader, CodexSessionMeta
from .logging_utils import log_event
from .repos import Repo, RepoRegistry, RepoRegistryError, validate_repo_name
from .session_records import (
    CodexMetadata,
    SessionRecord,
    new_codex_record,
    new_manual_record,
    new_notification_record,
)
from .sessions_format import format_conversation
from .tokens import (
    TokenGenerationError,
    TokenGenerator,
    generate_token,
    generate_unique_token,
    normalize_token,
)
from .utils import now_iso, read_json_safe, write_json_atomic

if TYPE_CHECKING:
    from .config import RemoteConfig

SESSION_FILE_SUFFIX = ".json"
DEFAULT_LIST_LIMIT = 10
NO_CONVERSATION_PLACEHOLDER = "(no conversation recorded)"

# Most specific first; the record file mtime is the final fallback.
LAST_ACCESS_FIELDS = (
    "lastAccess",
    "lastCommand",
    "updatedAt",
    "updated",
    "created",
    "createdAt",
)


class SessionStoreError(Exception):
    """Base error for session directory failures."""


class TokenConflictError(SessionStoreError):
    """Raised when a token is already bound to a different session."""

    def __init__(self, token: str, existing_session_id: str) -> None:
        super().__init__(f"Token already exists: {token}")
        self.token = token
        self.existing_session_id = existing_session_id


class RepoNotRegisteredError(SessionStoreError):
    """Raised when a session references a repo that is not registered."""

    def __init__(self, repo_name: str) -> None:
        super().__init__(f"Repo not registered: {repo_name}")
        self.repo_name = repo_name


class InvalidSessionError(SessionStoreError):
    """Raised when a record lacks the fields required to index it."""


@dataclasses.dataclass(frozen=True)
class TokenEntry:
    repo_name: str
    session_id: str

    def to_dict(self) -> Dict[str, str]:
        return {"repoName": self.repo_name, "sessionId": self.session_id}


@dataclasses.dataclass(frozen=True)
class ManualSession:
    token: str
    session_id: str


@dataclasses.dataclass(frozen=True)
class IssuedSession:
    token: str
    session_id: str
    repo_name: str


@dataclasses.dataclass(frozen=True)
class ReindexResult:
    repos: int
    sessions: int
    skipped: int


@dataclasses.dataclass
class SessionListEntry:
    token: str
    repo_name: str
    session_id: str
    record: Optional[SessionRecord]
    last_access: float
    session_path: Optional[Path]
    initial_message: str
    last_message: str


def parse_timestamp(value: Any) -> Optional[float]:
    """Epoch seconds from an ISO string, epoch seconds, or epoch milliseconds."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if value <= 0:
            return None
        return float(value) / 1000.0 if value >= 1e12 else float(value)
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.timestamp()
    return None


def _validate_session_id(session_id: str) -> str:
    if not isinstance(session_id, str) or not session_id.strip():
        raise InvalidSessionError("Session id is required")
    if "/" in session_id or "\\" in session_id or session_id in (".", ".."):
        raise InvalidSessionError(f"Invalid session id: {session_id}")
    return session_id


class SessionStore:
    """The only writer of the repo registry, token directory and session index."""

    def __init__(
        self,
        root: Path,
        *,
        registry: Optional[RepoRegistry] = None,
        conversation_reader: Optional[CodexConversationReader] = None,
        token_generator: TokenGenerator = generate_token,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._root = root
        self._logger = logger or logging.getLogger(__name__)
        self._registry = registry or RepoRegistry(
            root / "repos.json", logger=self._logger
        )
        self._conversations = conversation_reader or CodexConversationReader(
            Path.home() / ".codex" / "sessions"
        )
        self._token_generator = token_generator

    @classmethod
    def from_config(
        cls, config: "RemoteConfig", *, logger: Optional[logging.Logger] = None
    ) -> "SessionStore":
        return cls(
            config.root,
            registry=RepoRegistry(config.repos_path, logger=logger),
            conversation_reader=CodexConversationReader(config.codex.sessions_dir),
            logger=logger,
        )

    @property
    def root(self) -> Path:
        return self._root

    @property
    def registry(self) -> RepoRegistry:
        return self._registry

    @property
    def tokens_path(self) -> Path:
        return self._root / "tokens.json"

    @property
    def sessions_index_path(self) -> Path:
        return self._root / "sessions.json"

    def repo_sessions_dir(self, repo_name: str) -> Path:
        return self._root / validate_repo_name(repo_name) / "sessions"

    def session_path(self, repo_name: str, session_id: str) -> Path:
        session_id = _validate_session_id(session_id)
        return self.repo_sessions_dir(repo_name) / f"{session_id}{SESSION_FILE_SUFFIX}"

    # Index files

    def _read_tokens(self) -> Dict[str, TokenEntry]:
        data = read_json_safe(self.tokens_path, {"tokens": {}}, logger=self._logger)
        raw = data.get("tokens")
        tokens: Dict[str, TokenEntry] = {}
        if not isinstance(raw, dict):
            return tokens
        for token, entry in raw.items():
            if not isinstance(token, str) or not isinstance(entry, dict):
                continue
            repo_name = entry.get("repoName")
            session_id = entry.get("sessionId")
            if isinstance(repo_name, str) and isinstance(session_id, str):
                tokens[token] = TokenEntry(repo_name=repo_name, session_id=session_id)
        return tokens

    def _write_tokens(self, tokens: Dict[str, TokenEntry]) -> None:
        write_json_atomic(
            self.tokens_path,
            {"tokens": {token: entry.to_dict() for token, entry in tokens.items()}},
        )

    def _read_sessions_index(self) -> Dict[str, str]:
        data = read_json_safe(
            self.sessions_index_path, {"sessions": {}}, logger=self._logger
        )
        raw = data.get("sessions")
        index: Dict[str, str] = {}
        if not isinstance(raw, dict):
            return index
        for session_id, entry in raw.items():
            if not isinstance(entry, dict):
                continue
            repo_name = entry.get("repoName")
            if isinstance(session_id, str) and isinstance(repo_name, str):
                index[session_id] = repo_name
        return index

    def _write_sessions_index(self, index: Dict[str, str]) -> None:
        write_json_atomic(
            self.sessions_index_path,
            {
                "sessions": {
                    session_id: {"repoName": repo_name}
                    for session_id, repo_name in index.items()
                }
            },
        )

    # Records

    def _require_repo(self, repo_name: str) -> Repo:
        repo = self._registry.get(repo_name)
        if repo is None:
            raise RepoNotRegisteredError(repo_name)
        return repo

    def _load_record(self, repo_name: str, session_id: str) -> Optional[SessionRecord]:
        try:
            path = self.session_path(repo_name, session_id)
        except (InvalidSessionError, RepoRegistryError) as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "session.path.invalid",
                repo=repo_name,
                session_id=session_id,
                exc=exc,
            )
            return None
        data = read_json_safe(path, None, logger=self._logger)
        if not isinstance(data, dict):
            return None
        return SessionRecord.from_dict(data)

    def _hydrate(self, record: SessionRecord, repo_name: str) -> SessionRecord:
        repo = self._require_repo(repo_name)
        record.repo_name = repo_name
        record.workdir = repo.path
        return record

    def _write_record(self, repo_name: str, record: SessionRecord) -> Path:
        path = self.session_path(repo_name, record.id)
        record.repo_name = repo_name
        write_json_atomic(path, record.to_dict())
        return path

    def save_session(self, repo_name: str, record: SessionRecord) -> Path:
        self._require_repo(repo_name)
        if not record.id or not record.token:
            raise InvalidSessionError("Session must include id and token")
        _validate_session_id(record.id)
        token = normalize_token(record.token)
        if token is None:
            raise InvalidSessionError(f"Invalid token: {record.token}")
        record.token = token

        tokens = self._read_tokens()
        existing = tokens.get(token)
        if existing is not None and existing.session_id != record.id:
            raise TokenConflictError(token, existing.session_id)

        path = self._write_record(repo_name, record)

        # A re-saved record may have been issued a new token; drop the old one.
        for stale in [
            t for t, entry in tokens.items() if entry.session_id == record.id and t != token
        ]:
            del tokens[stale]
        tokens[token] = TokenEntry(repo_name=repo_name, session_id=record.id)
        index = self._read_sessions_index()
        index[record.id] = repo_name
        self._write_tokens(tokens)
        self._write_sessions_index(index)
        log_event(
            self._logger,
            logging.INFO,
            "session.saved",
            repo=repo_name,
            session_id=record.id,
            token=token,
            type=record.type,
        )
        return path

    def update_session(self, repo_name: str, record: SessionRecord) -> Path:
        """Rewrite a record in place. The indexes are left untouched."""
        if not record.id:
            raise InvalidSessionError("Session id required")
        self._require_repo(repo_name)
        return self._write_record(repo_name, record)

    def touch_session(self, record: SessionRecord) -> None:
        if not record.repo_name:
            raise InvalidSessionError("Session has no repo")
        record.last_access = now_iso()
        self.update_session(record.repo_name, record)

    def find_session_by_token(self, token: str) -> Optional[SessionRecord]:
        canonical = normalize_token(token)
        if canonical is None:
            return None
        entry = self._read_tokens().get(canonical)
        if entry is None:
            return None
        record = self._load_record(entry.repo_name, entry.session_id)
        if record is None:
            return None
        return self._hydrate(record, entry.repo_name)

    def get_session_by_id(self, session_id: str) -> Optional[SessionRecord]:
        repo_name = self._read_sessions_index().get(session_id)
        if repo_name is None:
            return None
        record = self._load_record(repo_name, session_id)
        if record is None:
            return None
        return self._hydrate(record, repo_name)

    def remove_session(self, repo_name: str, session_id: str) -> bool:
        path = self.session_path(repo_name, session_id)
        removed = False
        if path.exists():
            path.unlink()
            removed = True

        tokens = self._read_tokens()
        tokens = {t: e for t, e in tokens.items() if e.session_id != session_id}
        index = self._read_sessions_index()
        index.pop(session_id, None)
        self._write_tokens(tokens)
        self._write_sessions_index(index)
        log_event(
            self._logger,
            logging.INFO,
            "session.removed",
            repo=repo_name,
            session_id=session_id,
            file_removed=removed,
        )
        return removed

    def reindex_sessions(self) -> ReindexResult:
        tokens: Dict[str, TokenEntry] = {}
        index: Dict[str, str] = {}
        repos = self._registry.list()
        skipped = 0
        for repo in repos:
            sessions_dir = self.repo_sessions_dir(repo.name)
            if not sessions_dir.is_dir():
                continue
            for path in sorted(sessions_dir.glob(f"*{SESSION_FILE_SUFFIX}")):
                data = read_json_safe(path, None, logger=self._logger)
                record = SessionRecord.from_dict(data) if isinstance(data, dict) else None
                token = normalize_token(record.token) if record is not None else None
                if record is None or token is None:
                    skipped += 1
                    log_event(
                        self._logger,
                        logging.WARNING,
                        "session.reindex.skipped",
                        path=str(path),
                    )
                    continue
                if token in tokens and tokens[token].session_id != record.id:
                    log_event(
                        self._logger,
                        logging.WARNING,
                        "session.reindex.duplicate_token",
                        token=token,
                        kept=record.id,
                        dropped=tokens[token].session_id,
                    )
                tokens[token] = TokenEntry(repo_name=repo.name, session_id=record.id)
                index[record.id] = repo.name
        self._write_tokens(tokens)
        self._write_sessions_index(index)
        result = ReindexResult(repos=len(repos), sessions=len(index), skipped=skipped)
        log_event(
            self._logger,
            logging.INFO,
            "session.reindexed",
            repos=result.repos,
            sessions=result.sessions,
            skipped=result.skipped,
        )
        return result

    def create_manual_session(self, repo_name: str) -> ManualSession:
        repo = self._require_repo(repo_name)
        token = self._issue_token()
        session_id = str(uuid.uuid4())
        record = new_manual_record(session_id, token, repo_name, repo.path)
        self.save_session(repo_name, record)
        return ManualSession(token=token, session_id=session_id)

    def list_tokens(self, repo_name: Optional[str] = None) -> List[Tuple[str, TokenEntry]]:
        entries = list(self._read_tokens().items())
        if repo_name is None:
            return entries
        return [(token, entry) for token, entry in entries if entry.repo_name == repo_name]

    def _issue_token(self) -> str:
        return generate_unique_token(
            lambda: self._read_tokens(), generator=self._token_generator
        )

    def create_notification_session(
        self,
        workdir: str,
        session_type: str,
        notification: Dict[str, Any],
        *,
        tmux_session: Optional[str] = None,
    ) -> IssuedSession:
        """
        Bind a fresh token to the repo registered at `workdir`.

        Channels call this before announcing a task; if the announcement cannot
        be delivered they hand the result to `remove_session` so no unreachable
        token stays live.
        """
        repo = self._registry.find_by_path(workdir)
        if repo is None:
            raise RepoNotRegisteredError(workdir)
        token = self._issue_token()
        session_id = str(uuid.uuid4())
        record = new_notification_record(
            session_id,
            token,
            session_type,
            repo.name,
            repo.path,
            notification,
            tmux_session=tmux_session,
        )
        self.save_session(repo.name, record)
        return IssuedSession(token=token, session_id=session_id, repo_name=repo.name)

    def import_codex_session(
        self,
        meta: CodexSessionMeta,
        *,
        repo_name: Optional[str] = None,
        token: Optional[str] = None,
    ) -> IssuedSession:
        """
        Record a Codex CLI session as a `codex` session.

        The repo is `repo_name` when given, otherwise the registered repo whose
        path matches the session's cwd. Importing the same Codex session again
        keeps its token unless a new one is requested.
        """
        if repo_name is not None:
            repo = self._require_repo(repo_name)
        else:
            repo = self._registry.find_by_path(meta.cwd or "")
            if repo is None:
                raise RepoNotRegisteredError(meta.cwd or "(unknown cwd)")
        canonical: Optional[str] = None
        if token is not None:
            canonical = normalize_token(token)
            if canonical is None:
                raise InvalidSessionError(f"Invalid token: {token}")
            bound = self._read_tokens().get(canonical)
            if bound is not None and bound.session_id != meta.id:
                raise TokenConflictError(canonical, bound.session_id)
        previous_repo = self._read_sessions_index().get(meta.id)
        if previous_repo is not None:
            previous = self._load_record(previous_repo, meta.id)
            if canonical is None and previous is not None:
                canonical = normalize_token(previous.token)
            if previous_repo != repo.name:
                self.remove_session(previous_repo, meta.id)
        if canonical is None:
            canonical = self._issue_token()
        record = new_codex_record(
            meta.id,
            canonical,
            repo.name,
            meta.cwd or repo.path,
            CodexMetadata(
                session_id=meta.id,
                model_provider=meta.model_provider,
                cli_version=meta.cli_version,
            ),
        )
        self.save_session(repo.name, record)
        return IssuedSession(token=canonical, session_id=meta.id, repo_name=repo.name)

    # Read views

    def _last_access(self, record: Optional[SessionRecord], path: Optional[Path]) -> float:
        if record is not None:
            payload = record.to_dict()
            for key in LAST_ACCESS_FIELDS:
                ts = parse_timestamp(payload.get(key))
                if ts:
                    return ts
        if path is not None:
            try:
                return path.stat().st_mtime
            except OSError as exc:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "session.stat.failed",
                    path=str(path),
                    exc=exc,
                )
        return 0.0

    def session_messages(self, record: Optional[SessionRecord]) -> Tuple[str, str, str]:
        """(initial, last user, last assistant) text for list and summary views."""
        if record is None:
            return "", "", ""
        if record.codex is not None:
            conversation = self._conversations.conversation(record.codex.session_id)
            if not conversation.empty:
                return (
                    conversation.initial_message,
                    conversation.last_message,
                    conversation.last_assistant,
                )
        notification = record.notification or {}
        metadata = notification.get("metadata")
        if not isinstance(metadata, dict):
            metadata = {}

        def first_text(*candidates: Any) -> str:
            for candidate in candidates:
                if isinstance(candidate, str) and candidate.strip():
                    return candidate
            return ""

        initial = first_text(
            metadata.get("userQuestion"),
            notification.get("message"),
            metadata.get("claudeResponse"),
        )
        last = first_text(
            metadata.get("claudeResponse"),
            metadata.get("userQuestion"),
            notification.get("message"),
        )
        return initial, last, ""

    def get_session_summary(self, record: Optional[SessionRecord]) -> str:
        if record is None:
            return NO_CONVERSATION_PLACEHOLDER
        _initial, last, last_assistant = self.session_messages(record)
        return format_conversation(last, last_assistant, float("inf"))

    def list_sessions(
        self,
        *,
        repo_name: Optional[str] = None,
        filter: Optional[str] = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> List[SessionListEntry]:
        needle = filter.lower() if filter else None
        results: List[SessionListEntry] = []
        for token, info in self.list_tokens(repo_name):
            record = self._load_record(info.repo_name, info.session_id)
            local_path: Optional[Path] = None
            if record is not None:
                local_path = self.session_path(info.repo_name, info.session_id)
                repo = self._registry.get(info.repo_name)
                if repo is not None:
                    record.repo_name = info.repo_name
                    record.workdir = repo.path
            session_path = local_path
            if record is not None and record.codex is not None:
                codex_path = self._conversations.find_file(record.codex.session_id)
                if codex_path is not None:
                    session_path = codex_path
            initial, last, _ = self.session_messages(record)
            if needle is not None:
                if needle not in initial.lower() and needle not in last.lower():
                    continue
            results.append(
                SessionListEntry(
                    token=token,
                    repo_name=info.repo_name,
                    session_id=info.session_id,
                    record=record,
                    last_access=self._last_access(record, session_path or local_path),
                    session_path=session_path,
                    initial_message=initial,
                    last_message=last,
                )
            )
        results.sort(key=lambda entry: entry.last_access, reverse=True)
        if limit >= 0:
            return results[:limit]
        return results


__all__ = [
    "InvalidSessionError",
    "IssuedSession",
    "ManualSession",
    "ReindexResult",
    "RepoNotRegisteredError",
    "SessionListEntry",
    "SessionStore",
    "SessionStoreError",
    "TokenConflictError",
    "TokenEntry",
    "TokenGenerationError",
    "parse_timestamp",
]
