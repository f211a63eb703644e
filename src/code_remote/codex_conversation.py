"""Read Codex CLI rollout transcripts (`~/.codex/sessions/**/*.jsonl`)."""

import dataclasses
import json
import os
from pathlib import Path
from typing import Any, Iterator, Optional


@dataclasses.dataclass(frozen=True)
class Conversation:
    initial_message: str = ""
    last_message: str = ""
    last_assistant: str = ""

    @property
    def empty(self) -> bool:
        return not (self.initial_message or self.last_message or self.last_assistant)


EMPTY_CONVERSATION = Conversation()


def looks_like_instructions(text: str) -> bool:
    lowered = str(text).lower()
    compact = "".join(lowered.split())
    if "<instructions>" in compact:
        return True
    if "agents.md instructions" in lowered:
        return True
    if "<environment_context>" in compact:
        return True
    return False


def looks_like_slash_command(text: str) -> bool:
    return str(text).strip().startswith("/")


def extract_text(content: Any) -> str:
    if not isinstance(content, list):
        return ""
    parts: list[str] = []
    for item in content:
        if not isinstance(item, dict):
            continue
        for key in ("text", "input_text", "output_text"):
            value = item.get(key)
            if isinstance(value, str):
                parts.append(value)
                break
    return " ".join(parts).strip()


def list_session_files(base_dir: Path) -> list[Path]:
    if not base_dir.is_dir():
        return []
    files: list[Path] = []
    for dirpath, _dirnames, filenames in os.walk(base_dir):
        for filename in filenames:
            if filename.endswith(".jsonl"):
                files.append(Path(dirpath) / filename)
    return sorted(files)


def find_session_file(session_id: str, base_dir: Path) -> Optional[Path]:
    if not session_id or not base_dir.is_dir():
        return None
    for dirpath, _dirnames, filenames in os.walk(base_dir):
        for filename in filenames:
            if filename.endswith(".jsonl") and session_id in filename:
                return Path(dirpath) / filename
    return None


def _read_transcript(path: Path) -> Optional[str]:
    # Codex may be mid-write; a split multi-byte character must not abort a read.
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None


def _iter_entries(raw: str) -> Iterator[dict[str, Any]]:
    for line in raw.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(entry, dict):
            yield entry


@dataclasses.dataclass(frozen=True)
class CodexSessionMeta:
    """The `session_meta` header Codex writes at the top of each rollout."""

    id: str
    path: Path
    cwd: Optional[str] = None
    timestamp: Optional[str] = None
    model_provider: Optional[str] = None
    cli_version: Optional[str] = None


def load_session_meta(path: Path) -> Optional[CodexSessionMeta]:
    raw = _read_transcript(path)
    if raw is None:
        return None
    meta: Optional[dict[str, Any]] = None
    for entry in _iter_entries(raw):
        payload = entry.get("payload")
        if entry.get("type") != "session_meta" or not isinstance(payload, dict):
            continue
        if isinstance(payload.get("id"), str) and payload["id"]:
            meta = payload
    if meta is None:
        return None

    def text(key: str) -> Optional[str]:
        value = meta.get(key)
        return value if isinstance(value, str) and value else None

    return CodexSessionMeta(
        id=meta["id"],
        path=path,
        cwd=text("cwd"),
        timestamp=text("timestamp"),
        model_provider=text("model_provider"),
        cli_version=text("cli_version"),
    )


def extract_conversation(path: Path) -> Conversation:
    raw = _read_transcript(path)
    if raw is None:
        return EMPTY_CONVERSATION
    first_user = ""
    last_user = ""
    last_assistant = ""
    last_non_instruction = ""
    last_message = ""
    for entry in _iter_entries(raw):
        if entry.get("type") != "response_item":
            continue
        payload = entry.get("payload")
        if not isinstance(payload, dict) or payload.get("type") != "message":
            continue
        text = extract_text(payload.get("content"))
        if not text:
            continue
        role = payload.get("role")
        is_instruction = looks_like_instructions(text)
        if role == "user" and not is_instruction and not looks_like_slash_command(text):
            last_user = text
            if not first_user:
                first_user = text
        if role == "assistant":
            last_assistant = text
        last_message = text
        if not is_instruction:
            last_non_instruction = text
    return Conversation(
        initial_message=first_user,
        last_message=last_user or last_non_instruction or last_message,
        last_assistant=last_assistant,
    )


class CodexConversationReader:
    """Locates rollout files by Codex session id and caches parses by mtime."""

    def __init__(self, sessions_dir: Path) -> None:
        self._sessions_dir = sessions_dir
        self._cache: dict[str, tuple[float, Conversation]] = {}
        self._paths: dict[str, Path] = {}

    @property
    def sessions_dir(self) -> Path:
        return self._sessions_dir

    def find_file(self, session_id: str) -> Optional[Path]:
        if not session_id:
            return None
        cached = self._paths.get(session_id)
        if cached is not None:
            if cached.is_file():
                return cached
            del self._paths[session_id]
        path = find_session_file(session_id, self._sessions_dir)
        if path is not None:
            self._paths[session_id] = path
        return path

    def list_sessions(self) -> list[CodexSessionMeta]:
        metas = []
        for path in list_session_files(self._sessions_dir):
            meta = load_session_meta(path)
            if meta is not None:
                metas.append(meta)
        return metas

    def find_meta(self, session_id: str) -> Optional[CodexSessionMeta]:
        path = self.find_file(session_id)
        if path is None:
            return None
        return load_session_meta(path)

    def conversation(self, session_id: str) -> Conversation:
        if not session_id:
            return EMPTY_CONVERSATION
        path = self.find_file(session_id)
        if path is None:
            return EMPTY_CONVERSATION
        try:
            mtime = path.stat().st_mtime
        except OSError:
            mtime = 0.0
        cached = self._cache.get(session_id)
        if cached is not None and cached[0] == mtime:
            return cached[1]
        conversation = extract_conversation(path)
        self._cache[session_id] = (mtime, conversation)
        return conversation
