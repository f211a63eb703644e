import math
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, Optional

if TYPE_CHECKING:
    from .session_store import SessionListEntry

DEFAULT_MAX_CONVERSATION_LENGTH = 120
NO_PROMPT_PLACEHOLDER = "(no user prompt captured)"


def _format_unit(value: int, unit: str) -> str:
    label = unit if value == 1 else f"{unit}s"
    return f"{value} {label} ago"


def format_relative_time(timestamp: Optional[float], *, now: Optional[float] = None) -> str:
    """Render an epoch-seconds timestamp as `N units ago`."""
    if not timestamp:
        return "unknown"
    current = time.time() if now is None else now
    diff = current - timestamp
    if diff < 0:
        return "0 seconds ago"
    seconds = int(diff)
    if seconds < 60:
        return _format_unit(seconds, "second")
    minutes = seconds // 60
    if minutes < 60:
        return _format_unit(minutes, "minute")
    hours = minutes // 60
    if hours < 24:
        return _format_unit(hours, "hour")
    return _format_unit(hours // 24, "day")


def format_conversation(
    initial_message: Optional[str],
    last_message: Optional[str],
    max_length: float = DEFAULT_MAX_CONVERSATION_LENGTH,
) -> str:
    parts: list[str] = []
    initial = (initial_message or "").strip()
    last = (last_message or "").strip()
    if initial:
        parts.append(initial)
    if last and last != initial:
        parts.append(last)
    combined = " | ".join(parts)
    if not combined:
        return NO_PROMPT_PLACEHOLDER
    single_line = " ".join(combined.split())
    if math.isinf(max_length) or len(single_line) <= max_length:
        return single_line
    limit = int(max_length)
    return single_line[: max(limit - 3, 0)] + "..."


@dataclass(frozen=True)
class ListFormatOptions:
    include_header: bool = True
    token_column: bool = True
    session_id_column: bool = False
    repo_column: bool = False
    pad_token: bool = False
    updated_label: str = "Updated"
    token_label: str = "Token"
    session_id_label: str = "Session"
    repo_label: str = "Repo"
    conversation_label: str = "Conversation"
    max_length: float = DEFAULT_MAX_CONVERSATION_LENGTH


def _format_row(
    entry: "SessionListEntry", options: ListFormatOptions, now: Optional[float]
) -> str:
    updated = format_relative_time(entry.last_access, now=now)
    conversation = format_conversation(
        entry.initial_message, entry.last_message, options.max_length
    )
    if not options.token_column:
        return f"{updated} {conversation}"
    if options.pad_token:
        session_part = f"{entry.session_id.ljust(38)} " if options.session_id_column else ""
        repo_part = f"{entry.repo_name.ljust(14)} " if options.repo_column else ""
        return f"{updated.ljust(15)} {entry.token.ljust(9)} {session_part}{repo_part}{conversation}"
    session_part = f" {entry.session_id}" if options.session_id_column else ""
    repo_part = f" {entry.repo_name}" if options.repo_column else ""
    return f"{updated} {entry.token}{session_part}{repo_part} {conversation}"


def _format_header(options: ListFormatOptions) -> str:
    if not options.token_column:
        return f"{options.updated_label} {options.conversation_label}"
    gap = "         " if options.pad_token else " "
    session_part = f" {options.session_id_label}" if options.session_id_column else ""
    repo_part = f" {options.repo_label}" if options.repo_column else ""
    return (
        f"{options.updated_label}{gap} {options.token_label}"
        f"{session_part}{repo_part} {options.conversation_label}"
    )


def format_sessions_list(
    entries: Iterable["SessionListEntry"],
    options: Optional[ListFormatOptions] = None,
    *,
    now: Optional[float] = None,
) -> str:
    options = options or ListFormatOptions()
    lines = [_format_row(entry, options, now) for entry in entries]
    if not options.include_header:
        return "\n".join(lines)
    return "\n".join([_format_header(options), *lines])
