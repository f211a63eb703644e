"""Task notifications that issue a token the recipient can reply with."""

import dataclasses
from typing import Any, Callable, Dict, Optional

NOTIFY_COMPLETED = "completed"
NOTIFY_WAITING = "waiting"
NOTIFICATION_TYPES = {NOTIFY_COMPLETED, NOTIFY_WAITING}

QUESTION_PREVIEW_CHARS = 200
RESPONSE_PREVIEW_CHARS = 300


@dataclasses.dataclass
class Notification:
    type: str
    project: str
    message: str
    user_question: Optional[str] = None
    assistant_response: Optional[str] = None
    tmux_session: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "type": self.type,
            "project": self.project,
            "message": self.message,
        }
        metadata: Dict[str, Any] = {}
        if self.user_question:
            metadata["userQuestion"] = self.user_question
        if self.assistant_response:
            metadata["claudeResponse"] = self.assistant_response
        if self.tmux_session:
            metadata["tmuxSession"] = self.tmux_session
        if metadata:
            payload["metadata"] = metadata
        return payload


def _preview(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def format_notification(
    notification: Notification,
    token: str,
    *,
    formatter: Optional[Callable[[str], str]] = None,
) -> str:
    redact = formatter or (lambda text: text)
    if notification.type == NOTIFY_COMPLETED:
        lines = ["✅ Task completed"]
    else:
        lines = ["⏳ Waiting for input"]
    lines.append(f"Project: {redact(notification.project)}")
    lines.append(f"Token: {token}")
    lines.append("")
    if notification.user_question:
        question = _preview(redact(notification.user_question), QUESTION_PREVIEW_CHARS)
        lines.extend(["📝 Question:", question, ""])
    if notification.assistant_response:
        response = _preview(
            redact(notification.assistant_response), RESPONSE_PREVIEW_CHARS
        )
        lines.extend(["🤖 Response:", response, ""])
    elif notification.message and not notification.user_question:
        lines.extend([redact(notification.message), ""])
    lines.append("💬 Reply with:")
    lines.append(f"/cmd {token} <command>")
    return "\n".join(lines)
