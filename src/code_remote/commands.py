"""
Chat command routing.

A channel hands every inbound text to `CommandRouter.handle(chat_key, text)`
and sends back the strings it returns. Token resolution, the per-chat working
token and runner dispatch happen here; transport concerns (allowlists,
chunking, HTTP) stay in the channel.
"""

from __future__ import annotations

import dataclasses
import logging
import re
from typing import Callable, List, Optional, Protocol

from .current_token import CurrentTokenStore
from .logging_utils import log_event
from .repos import RepoRegistryError
from .runners import Runner, RunnerContext, RunnerError
from .session_store import SessionStore, SessionStoreError
from .sessions_format import ListFormatOptions, format_sessions_list
from .tokens import normalize_token

DEFAULT_TMUX_SESSION = "default"
DEFAULT_RATE_LIMIT = 60
DEFAULT_RATE_WINDOW_MS = 300_000
DEFAULT_COMMAND_MAX_LENGTH = 1000
SESSIONS_LIST_LIMIT = 10

INVALID_TOKEN_REPLY = "❌ Invalid token. Please wait for a new task notification."
INVALID_FORMAT_REPLY = (
    "❌ Invalid format. Use:\n/cmd <TOKEN> <command>\n\n"
    "Example:\n/cmd ABC12345 analyze this code"
)
RATE_LIMITED_REPLY = "⏳ Rate limit exceeded. Please try again later."
UNSAFE_COMMAND_REPLY = "⚠️ Command rejected by safety checks."
SLASH_IGNORED_REPLY = "ℹ️ Found a slash command and ignored other text in your message."

_CMD_RE = re.compile(r"^/cmd\s+([A-Z0-9]{8})\s+(.+)$", re.IGNORECASE | re.DOTALL)
_DIRECT_RE = re.compile(r"^([A-Z0-9]{8})\s+(.+)$", re.DOTALL)
_WORK_ON_RE = re.compile(r"^/work-on\s+([A-Z0-9]{8})$", re.IGNORECASE)
_REPO_WORK_ON_RE = re.compile(r"^/repo work-on\s+--repo\s+(\S+)$", re.IGNORECASE)
_SESSIONS_NEW_RE = re.compile(r"^/sessions new\s+--repo\s+(\S+)$", re.IGNORECASE)


@dataclasses.dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_ms: Optional[int] = None


class RateLimiter(Protocol):
    def check(self, key: str, limit: int, window_ms: int) -> RateLimitDecision: ...


CommandSafety = Callable[[str, int], bool]
Formatter = Callable[[str], str]


@dataclasses.dataclass(frozen=True)
class SlashCommand:
    command: Optional[str]
    ignored: bool = False


def extract_slash_command(text: Optional[str]) -> SlashCommand:
    """Pick the first line starting with `/`; report whether other lines were dropped."""
    if not text:
        return SlashCommand(None)
    lines = [line.strip() for line in text.splitlines()]
    lines = [line for line in lines if line]
    command = next((line for line in lines if line.startswith("/")), None)
    if command is None:
        return SlashCommand(None)
    ignored = any(line != command for line in lines)
    return SlashCommand(command, ignored)


@dataclasses.dataclass(frozen=True)
class ParsedCommand:
    kind: str
    token: Optional[str] = None
    text: str = ""
    repo_name: Optional[str] = None
    filter: Optional[str] = None


COMMAND_START = "start"
COMMAND_HELP = "help"
COMMAND_WORK_ON = "work_on"
COMMAND_REPO_LIST = "repo_list"
COMMAND_REPO_WORK_ON = "repo_work_on"
COMMAND_SESSIONS_LIST = "sessions_list"
COMMAND_SESSIONS_NEW = "sessions_new"
COMMAND_RUN = "run"
COMMAND_TEXT = "text"


def _parse_sessions_list(text: str) -> ParsedCommand:
    parts = text.split()[2:]
    repo_name = None
    filter_text = None
    index = 0
    while index < len(parts):
        if parts[index] == "--repo" and index + 1 < len(parts):
            repo_name = parts[index + 1]
            index += 2
            continue
        if parts[index] == "--filter" and index + 1 < len(parts):
            filter_text = " ".join(parts[index + 1 :])
            break
        index += 1
    return ParsedCommand(COMMAND_SESSIONS_LIST, repo_name=repo_name, filter=filter_text)


def parse_command_message(text: str) -> ParsedCommand:
    """
    Classify one inbound message. Anything that is not a recognised command
    comes back as COMMAND_TEXT for the caller to route to the working token.
    """
    text = text.strip()
    if text == "/start":
        return ParsedCommand(COMMAND_START)
    if text == "/help":
        return ParsedCommand(COMMAND_HELP)
    if text.startswith("/work-on"):
        match = _WORK_ON_RE.match(text)
        return ParsedCommand(
            COMMAND_WORK_ON, token=match.group(1).upper() if match else None
        )
    if text == "/repo list":
        return ParsedCommand(COMMAND_REPO_LIST)
    if text.startswith("/repo work-on"):
        match = _REPO_WORK_ON_RE.match(text)
        return ParsedCommand(
            COMMAND_REPO_WORK_ON, repo_name=match.group(1) if match else None
        )
    if text.startswith("/sessions list"):
        return _parse_sessions_list(text)
    if text.startswith("/sessions new"):
        match = _SESSIONS_NEW_RE.match(text)
        return ParsedCommand(
            COMMAND_SESSIONS_NEW, repo_name=match.group(1) if match else None
        )
    match = _CMD_RE.match(text)
    if match:
        return ParsedCommand(COMMAND_RUN, token=match.group(1).upper(), text=match.group(2))
    # Bare `TOKEN text` must be typed in uppercase to avoid eating ordinary words.
    match = _DIRECT_RE.match(text)
    if match:
        return ParsedCommand(COMMAND_RUN, token=match.group(1), text=match.group(2))
    return ParsedCommand(COMMAND_TEXT, text=text)


def help_text() -> str:
    return "\n".join(
        [
            "Commands:",
            "/start - welcome message",
            "/help - show this message",
            "/cmd <TOKEN> <command> - send a command to the assistant",
            "/work-on <TOKEN> - set the working token for this chat",
            "/repo list - list registered repos",
            "/repo work-on --repo <name> - create a token and work on it",
            "/sessions list [--repo <name>] [--filter <text>] - list recent sessions",
            "/sessions new --repo <name> - create a new token",
        ]
    )


def welcome_text() -> str:
    return (
        "🤖 Welcome to Code Remote!\n\n"
        "Send commands to a session with:\n/cmd <TOKEN> <your command>\n\n"
        "Type /help for more information."
    )


class CommandRouter:
    def __init__(
        self,
        store: SessionStore,
        runner: Runner,
        current_tokens: CurrentTokenStore,
        *,
        rate_limiter: Optional[RateLimiter] = None,
        command_safety: Optional[CommandSafety] = None,
        formatter: Optional[Formatter] = None,
        rate_limit: int = DEFAULT_RATE_LIMIT,
        rate_window_ms: int = DEFAULT_RATE_WINDOW_MS,
        command_max_length: int = DEFAULT_COMMAND_MAX_LENGTH,
        list_options: Optional[ListFormatOptions] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._store = store
        self._runner = runner
        self._current = current_tokens
        self._rate_limiter = rate_limiter
        self._command_safety = command_safety
        self._formatter = formatter
        self._rate_limit = rate_limit
        self._rate_window_ms = rate_window_ms
        self._command_max_length = command_max_length
        self._list_options = list_options or ListFormatOptions()
        self._logger = logger or logging.getLogger(__name__)

    async def handle(self, chat_key: str, text: str) -> List[str]:
        text = (text or "").strip()
        if not text:
            return []
        replies: List[str] = []
        slash = extract_slash_command(text)
        if slash.command:
            if slash.ignored:
                replies.append(SLASH_IGNORED_REPLY)
            text = slash.command

        if self._rate_limiter is not None:
            decision = self._rate_limiter.check(
                chat_key, self._rate_limit, self._rate_window_ms
            )
            if not decision.allowed:
                log_event(
                    self._logger,
                    logging.INFO,
                    "command.rate_limited",
                    chat_key=chat_key,
                    retry_after_ms=decision.retry_after_ms,
                )
                return [*replies, RATE_LIMITED_REPLY]

        parsed = parse_command_message(text)
        log_event(
            self._logger,
            logging.INFO,
            "command.received",
            chat_key=chat_key,
            kind=parsed.kind,
            token=parsed.token,
        )
        replies.extend(await self._route(chat_key, parsed))
        return replies

    async def _route(self, chat_key: str, parsed: ParsedCommand) -> List[str]:
        if parsed.kind == COMMAND_START:
            return [welcome_text()]
        if parsed.kind == COMMAND_HELP:
            return [help_text()]
        if parsed.kind == COMMAND_WORK_ON:
            return [self._work_on(chat_key, parsed.token)]
        if parsed.kind == COMMAND_REPO_LIST:
            return [self._repo_list()]
        if parsed.kind == COMMAND_REPO_WORK_ON:
            return [self._repo_work_on(chat_key, parsed.repo_name)]
        if parsed.kind == COMMAND_SESSIONS_LIST:
            return [self._sessions_list(parsed.repo_name, parsed.filter)]
        if parsed.kind == COMMAND_SESSIONS_NEW:
            return [self._sessions_new(parsed.repo_name)]
        if parsed.kind == COMMAND_RUN and parsed.token:
            return await self._run(chat_key, parsed.token, parsed.text)
        working = self._current.get_token(chat_key)
        if working:
            return await self._run(chat_key, working, parsed.text)
        return [INVALID_FORMAT_REPLY]

    def _summary_reply(self, token: str) -> str:
        record = self._store.find_session_by_token(token)
        summary = self._store.get_session_summary(record)
        return f"✅ Working token set: {token}\nSummary: {summary}"

    def _work_on(self, chat_key: str, token: Optional[str]) -> str:
        if not token:
            return "Usage: /work-on <TOKEN>"
        try:
            record = self._store.find_session_by_token(token)
        except SessionStoreError as exc:
            return f"❌ {exc}"
        if record is None:
            return "❌ Invalid token."
        self._current.set_token(chat_key, token)
        summary = self._store.get_session_summary(record)
        return f"✅ Working token set: {record.token}\nSummary: {summary}"

    def _repo_list(self) -> str:
        repos = self._store.registry.list()
        if not repos:
            return "No repos registered."
        lines = [f"• {repo.name} -> {repo.path}" for repo in repos]
        return "📁 Repos:\n" + "\n".join(lines)

    def _repo_work_on(self, chat_key: str, repo_name: Optional[str]) -> str:
        if not repo_name:
            return "Usage: /repo work-on --repo <name>"
        try:
            created = self._store.create_manual_session(repo_name)
            self._current.set_token(chat_key, created.token)
            return self._summary_reply(created.token)
        except (SessionStoreError, RepoRegistryError) as exc:
            return f"❌ Failed to set work token: {exc}"

    def _sessions_list(self, repo_name: Optional[str], filter_text: Optional[str]) -> str:
        try:
            entries = self._store.list_sessions(
                repo_name=repo_name, filter=filter_text, limit=SESSIONS_LIST_LIMIT
            )
        except (SessionStoreError, RepoRegistryError) as exc:
            return f"❌ Failed to list sessions: {exc}"
        if not entries:
            return "No active sessions."
        return "🧾 Sessions:\n" + format_sessions_list(entries, self._list_options)

    def _sessions_new(self, repo_name: Optional[str]) -> str:
        if not repo_name:
            return "Usage: /sessions new --repo <name>"
        try:
            created = self._store.create_manual_session(repo_name)
        except (SessionStoreError, RepoRegistryError) as exc:
            return f"❌ Failed to create token: {exc}"
        return f"✅ Token created: {created.token}"

    async def _run(self, chat_key: str, token: str, command: str) -> List[str]:
        if self._command_safety is not None and not self._command_safety(
            command, self._command_max_length
        ):
            log_event(
                self._logger, logging.WARNING, "command.rejected", chat_key=chat_key
            )
            return [UNSAFE_COMMAND_REPLY]
        canonical = normalize_token(token)
        try:
            record = self._store.find_session_by_token(canonical) if canonical else None
        except SessionStoreError as exc:
            return [f"❌ {exc}"]
        if record is None or canonical is None:
            return [INVALID_TOKEN_REPLY]

        tmux_session = record.tmux_session or DEFAULT_TMUX_SESSION
        context = RunnerContext(
            session_key=canonical,
            workdir=record.workdir,
            tmux_session=tmux_session,
        )
        try:
            self._store.touch_session(record)
            result = await self._runner.dispatch(command, context)
        except (RunnerError, SessionStoreError, OSError) as exc:
            log_event(
                self._logger,
                logging.ERROR,
                "command.failed",
                chat_key=chat_key,
                token=canonical,
                runner=self._runner.name,
                exc=exc,
            )
            return [f"❌ Command execution failed: {exc}"]

        log_event(
            self._logger,
            logging.INFO,
            "command.handled",
            chat_key=chat_key,
            token=canonical,
            runner=self._runner.name,
            queued=result.queued,
        )
        if not result.final_text:
            return [
                "✅ Command sent successfully\n\n"
                f"📝 Command: {command}\n"
                f"🖥️ Session: {tmux_session}"
            ]
        body = self._formatter(result.final_text) if self._formatter else result.final_text
        if self._current.get_token(chat_key) == canonical:
            return [body]
        return [f"📝 Reply on [{canonical}]:\n{body}"]
