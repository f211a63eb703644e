import dataclasses
import math
import time
from typing import Any, Dict, Optional

from .utils import now_iso

SESSION_TYPE_MANUAL = "manual"
SESSION_TYPE_CODEX = "codex"
SESSION_TYPE_TELEGRAM = "telegram"

# Keys owned by SessionRecord; anything else on disk round-trips via `extra`.
_KNOWN_KEYS = {
    "id",
    "token",
    "type",
    "created",
    "createdAt",
    "workdir",
    "project",
    "repoName",
    "notification",
    "tmuxSession",
    "codex",
    "lastAccess",
}


def _str_or_none(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


@dataclasses.dataclass
class CodexMetadata:
    session_id: str
    model_provider: Optional[str] = None
    cli_version: Optional[str] = None

    @classmethod
    def from_dict(cls, payload: Any) -> Optional["CodexMetadata"]:
        if not isinstance(payload, dict):
            return None
        session_id = _str_or_none(payload.get("sessionId") or payload.get("session_id"))
        if session_id is None:
            return None
        return cls(
            session_id=session_id,
            model_provider=_str_or_none(
                payload.get("modelProvider") or payload.get("model_provider")
            ),
            cli_version=_str_or_none(
                payload.get("cliVersion") or payload.get("cli_version")
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "modelProvider": self.model_provider,
            "cliVersion": self.cli_version,
        }


@dataclasses.dataclass
class SessionRecord:
    """
    A bound conversation between a channel identity and a registered repo.

    The common subset (id, token, type, repo_name, created, workdir) is always
    present. The per-type extension is carried by `notification` (the payload
    the channel announced the session with) and `codex` (continuation metadata
    for sessions imported from, or resumed through, the Codex CLI).
    """

    id: str
    token: str
    type: str = SESSION_TYPE_MANUAL
    repo_name: Optional[str] = None
    created: Optional[str] = None
    created_at: Optional[int] = None
    workdir: Optional[str] = None
    notification: Dict[str, Any] = dataclasses.field(default_factory=dict)
    tmux_session: Optional[str] = None
    codex: Optional[CodexMetadata] = None
    last_access: Optional[str] = None
    extra: Dict[str, Any] = dataclasses.field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> Optional["SessionRecord"]:
        session_id = _str_or_none(payload.get("id"))
        token = _str_or_none(payload.get("token"))
        if session_id is None or token is None:
            return None
        session_type = payload.get("type")
        if not isinstance(session_type, str) or not session_type:
            session_type = SESSION_TYPE_MANUAL
        created_at = payload.get("createdAt")
        if isinstance(created_at, bool) or not isinstance(created_at, (int, float)):
            created_at = None
        elif not math.isfinite(created_at):
            created_at = None
        notification = payload.get("notification")
        return cls(
            id=session_id,
            token=token,
            type=session_type,
            repo_name=_str_or_none(payload.get("repoName") or payload.get("project")),
            created=_str_or_none(payload.get("created")),
            created_at=int(created_at) if created_at is not None else None,
            workdir=_str_or_none(payload.get("workdir")),
            notification=notification if isinstance(notification, dict) else {},
            tmux_session=_str_or_none(payload.get("tmuxSession")),
            codex=CodexMetadata.from_dict(payload.get("codex")),
            last_access=_str_or_none(payload.get("lastAccess")),
            extra={k: v for k, v in payload.items() if k not in _KNOWN_KEYS},
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(self.extra)
        payload.update(
            {
                "id": self.id,
                "token": self.token,
                "type": self.type,
                "created": self.created,
                "createdAt": self.created_at,
                "workdir": self.workdir,
                "project": self.repo_name,
                "repoName": self.repo_name,
                "notification": self.notification,
            }
        )
        if self.tmux_session:
            payload["tmuxSession"] = self.tmux_session
        if self.codex is not None:
            payload["codex"] = self.codex.to_dict()
        if self.last_access:
            payload["lastAccess"] = self.last_access
        return payload

    def get(self, key: str) -> Any:
        """Look up an on-disk key, including ones preserved in `extra`."""
        return self.to_dict().get(key)


def new_manual_record(
    session_id: str, token: str, repo_name: str, workdir: str
) -> SessionRecord:
    return SessionRecord(
        id=session_id,
        token=token,
        type=SESSION_TYPE_MANUAL,
        repo_name=repo_name,
        created=now_iso(),
        created_at=int(time.time()),
        workdir=workdir,
        notification={
            "type": SESSION_TYPE_MANUAL,
            "project": repo_name,
            "message": "Manual session",
        },
    )


def new_codex_record(
    session_id: str,
    token: str,
    repo_name: str,
    workdir: str,
    codex: CodexMetadata,
) -> SessionRecord:
    return SessionRecord(
        id=session_id,
        token=token,
        type=SESSION_TYPE_CODEX,
        repo_name=repo_name,
        created=now_iso(),
        created_at=int(time.time()),
        workdir=workdir,
        codex=codex,
        notification={
            "type": SESSION_TYPE_CODEX,
            "project": repo_name,
            "message": "Imported Codex session",
        },
    )


def new_notification_record(
    session_id: str,
    token: str,
    session_type: str,
    repo_name: str,
    workdir: str,
    notification: Dict[str, Any],
    tmux_session: Optional[str] = None,
) -> SessionRecord:
    return SessionRecord(
        id=session_id,
        token=token,
        type=session_type,
        repo_name=repo_name,
        created=now_iso(),
        created_at=int(time.time()),
        workdir=workdir,
        notification=dict(notification),
        tmux_session=tmux_session or "default",
    )
