"""
Resumable Codex CLI runner.

Every call spawns `codex exec --json ...` in the session's working directory.
The CLI reports its conversation id in the JSONL event stream; the runner
keeps the last id it sees per session key so the next call can pass
`resume <id>` and continue the same conversation.

An invocation moves through an explicit phase sequence:

    SPAWNED -> STREAMING -> EXITED -> RESOLVED | REJECTED

`settle_invocation()` turns an EXITED invocation into a final text or a
`CodexProcessError` without touching any process.
"""

from __future__ import annotations

import asyncio
import dataclasses
import enum
import json
import logging
import tempfile
import uuid
from pathlib import Path
from typing import Iterable, Optional, Protocol, Sequence

from ..logging_utils import log_event
from ..utils import resolve_executable, subprocess_env
from .base import DEFAULT_SESSION_KEY, Runner, RunnerContext, RunnerError, RunResult
from .session_map import RunnerSessionMap

CODEX_BIN_ENV = "CODEX_BIN"
CONTINUATION_ID_FIELDS = ("session_id", "sessionId", "thread_id", "threadId")
NO_RESPONSE_TEXT = "No response captured from Codex."
RESUME_FALLBACK_NOTE = (
    "No previous Codex session found for this chat. Starting a new task instead."
)
STDOUT_TAIL_CHARS = 4000
_READ_CHUNK_SIZE = 64 * 1024


class CodexBinaryNotFoundError(RunnerError):
    def __init__(self, binary: str) -> None:
        super().__init__(
            f"Codex CLI not found. Set {CODEX_BIN_ENV} or install codex CLI. ({binary})"
        )
        self.binary = binary


class CodexProcessError(RunnerError):
    def __init__(self, message: str, *, exit_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class ProcessHandle(Protocol):
    stdout: Optional[asyncio.StreamReader]
    stderr: Optional[asyncio.StreamReader]

    async def wait(self) -> int: ...


class ProcessSpawner(Protocol):
    async def __call__(
        self, binary: str, args: Sequence[str], cwd: str
    ) -> ProcessHandle: ...


async def spawn_process(binary: str, args: Sequence[str], cwd: str) -> ProcessHandle:
    return await asyncio.create_subprocess_exec(
        binary,
        *args,
        cwd=cwd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=subprocess_env(),
    )


class InvocationPhase(str, enum.Enum):
    SPAWNED = "spawned"
    STREAMING = "streaming"
    EXITED = "exited"
    RESOLVED = "resolved"
    REJECTED = "rejected"


@dataclasses.dataclass
class CodexInvocation:
    args: list[str]
    output_file: Path
    workdir: str
    phase: InvocationPhase = InvocationPhase.SPAWNED
    stdout: bytearray = dataclasses.field(default_factory=bytearray)
    stderr: bytearray = dataclasses.field(default_factory=bytearray)
    exit_code: Optional[int] = None
    continuation_id: Optional[str] = None

    @property
    def stdout_text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")

    @property
    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace")

    def observe_line(self, line: str) -> None:
        candidate = extract_continuation_id(line)
        if candidate:
            self.continuation_id = candidate


def extract_continuation_id(line: str) -> Optional[str]:
    trimmed = line.strip()
    if not trimmed.startswith("{"):
        return None
    try:
        event = json.loads(trimmed)
    except json.JSONDecodeError:
        return None
    if not isinstance(event, dict):
        return None
    for field in CONTINUATION_ID_FIELDS:
        value = event.get(field)
        if isinstance(value, str) and value:
            return value
    return None


def scan_continuation_ids(text: str) -> Optional[str]:
    found = None
    for line in text.splitlines():
        candidate = extract_continuation_id(line)
        if candidate:
            found = candidate
    return found


def _tail(text: str, limit: int = STDOUT_TAIL_CHARS) -> str:
    stripped = text.strip()
    if len(stripped) <= limit:
        return stripped
    return stripped[-limit:].lstrip()


def settle_invocation(invocation: CodexInvocation, captured: Optional[str]) -> str:
    """Resolve an exited invocation to its final text, or raise CodexProcessError."""
    if invocation.phase is not InvocationPhase.EXITED:
        raise RunnerError(f"Invocation cannot settle from phase {invocation.phase.value}")
    if invocation.exit_code != 0:
        invocation.phase = InvocationPhase.REJECTED
        message = (
            invocation.stderr_text.strip()
            or _tail(invocation.stdout_text)
            or f"Codex exited with code {invocation.exit_code}"
        )
        raise CodexProcessError(message, exit_code=invocation.exit_code)
    invocation.phase = InvocationPhase.RESOLVED
    if captured and captured.strip():
        return captured.strip()
    return _tail(invocation.stdout_text) or NO_RESPONSE_TEXT


def _has_flag(args: Iterable[str], flag: str) -> bool:
    return any(arg == flag or arg.startswith(f"{flag}=") for arg in args)


def build_codex_args(
    *,
    prompt: str,
    output_file: Path,
    sandbox: str,
    full_auto: bool = False,
    skip_git_check: bool = False,
    extra_args: Sequence[str] = (),
    continuation_id: Optional[str] = None,
) -> list[str]:
    args = ["exec", "--json", "--output-last-message", str(output_file)]
    if not _has_flag(extra_args, "--sandbox"):
        args.extend(["--sandbox", sandbox])
    if full_auto:
        args.append("--full-auto")
    if skip_git_check:
        args.append("--skip-git-repo-check")
    args.extend(extra_args)
    if continuation_id:
        args.extend(["resume", continuation_id, prompt])
    else:
        args.append(prompt)
    return args


class CodexRunner(Runner):
    name = "codex"
    supports_resume = True

    def __init__(
        self,
        *,
        session_map: RunnerSessionMap,
        binary: str = "codex",
        args: Sequence[str] = (),
        sandbox: str = "read-only",
        full_auto: bool = False,
        skip_git_check: bool = False,
        workdir: Optional[Path] = None,
        capture_dir: Optional[Path] = None,
        spawner: ProcessSpawner = spawn_process,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._session_map = session_map
        self._binary = binary
        self._args = list(args)
        self._sandbox = sandbox
        self._full_auto = full_auto
        self._skip_git_check = skip_git_check
        self._workdir = workdir or Path.cwd()
        self._capture_dir = capture_dir
        self._spawner = spawner
        self._logger = logger or logging.getLogger(__name__)

    @property
    def session_map(self) -> RunnerSessionMap:
        return self._session_map

    async def has_session(self, session_key: str) -> bool:
        return self._session_map.has(session_key)

    async def run(self, prompt: str, context: Optional[RunnerContext] = None) -> RunResult:
        return await self._execute(prompt, context or RunnerContext(), resume=False)

    async def resume(
        self, prompt: str, context: Optional[RunnerContext] = None
    ) -> RunResult:
        return await self._execute(prompt, context or RunnerContext(), resume=True)

    def clear_sessions(self) -> None:
        self._session_map.clear()

    def clear_session(self, session_key: str) -> bool:
        return self._session_map.clear_key(session_key)

    def _new_output_file(self) -> Path:
        directory = self._capture_dir or Path(tempfile.gettempdir())
        return directory / f"codex-last-{uuid.uuid4().hex}.txt"

    async def _execute(
        self, prompt: str, context: RunnerContext, *, resume: bool
    ) -> RunResult:
        session_key = context.session_key or DEFAULT_SESSION_KEY
        continuation_id: Optional[str] = None
        note = ""
        if resume:
            continuation_id = self._session_map.get(session_key)
            if not continuation_id:
                note = RESUME_FALLBACK_NOTE
                log_event(
                    self._logger,
                    logging.INFO,
                    "codex.resume.fallback",
                    session_key=session_key,
                )

        output_file = self._new_output_file()
        args = build_codex_args(
            prompt=prompt,
            output_file=output_file,
            sandbox=context.sandbox or self._sandbox,
            full_auto=self._full_auto,
            skip_git_check=self._skip_git_check,
            extra_args=self._args,
            continuation_id=continuation_id,
        )
        workdir = context.workdir or str(self._workdir)
        invocation = CodexInvocation(args=args, output_file=output_file, workdir=workdir)
        try:
            await self._spawn_and_stream(invocation)
            captured = self._read_capture(output_file)
            final_text = settle_invocation(invocation, captured)
        finally:
            self._discard_capture(output_file)

        if invocation.continuation_id:
            self._session_map.set(session_key, invocation.continuation_id)
        log_event(
            self._logger,
            logging.INFO,
            "codex.completed",
            session_key=session_key,
            resumed=bool(continuation_id),
            continuation_id=invocation.continuation_id,
            text_chars=len(final_text),
        )
        return RunResult(
            final_text=f"{note}\n\n{final_text}" if note else final_text,
            session_id=invocation.continuation_id or continuation_id,
            logs=invocation.stdout_text,
        )

    async def _spawn_and_stream(self, invocation: CodexInvocation) -> None:
        if not Path(invocation.workdir).is_dir():
            raise RunnerError(f"Working directory not found: {invocation.workdir}")
        binary = resolve_executable(self._binary) or self._binary
        log_event(
            self._logger,
            logging.INFO,
            "codex.spawned",
            binary=binary,
            args=invocation.args[:-1],
            prompt_chars=len(invocation.args[-1]),
            workdir=invocation.workdir,
        )
        try:
            process = await self._spawner(binary, invocation.args, invocation.workdir)
        except FileNotFoundError as exc:
            raise CodexBinaryNotFoundError(self._binary) from exc
        invocation.phase = InvocationPhase.STREAMING
        await asyncio.gather(
            self._pump_stdout(invocation, process.stdout),
            self._pump_stderr(invocation, process.stderr),
        )
        invocation.exit_code = await process.wait()
        invocation.phase = InvocationPhase.EXITED
        if not invocation.continuation_id and invocation.stdout:
            invocation.continuation_id = scan_continuation_ids(invocation.stdout_text)
        log_event(
            self._logger,
            logging.INFO,
            "codex.exited",
            exit_code=invocation.exit_code,
            stdout_bytes=len(invocation.stdout),
            stderr_bytes=len(invocation.stderr),
        )

    async def _pump_stdout(
        self, invocation: CodexInvocation, stream: Optional[asyncio.StreamReader]
    ) -> None:
        if stream is None:
            return
        buffer = bytearray()
        while True:
            chunk = await stream.read(_READ_CHUNK_SIZE)
            if not chunk:
                break
            invocation.stdout.extend(chunk)
            buffer.extend(chunk)
            while True:
                newline_index = buffer.find(b"\n")
                if newline_index == -1:
                    break
                line = bytes(buffer[:newline_index])
                del buffer[: newline_index + 1]
                invocation.observe_line(line.decode("utf-8", errors="ignore"))
        if buffer:
            invocation.observe_line(bytes(buffer).decode("utf-8", errors="ignore"))

    async def _pump_stderr(
        self, invocation: CodexInvocation, stream: Optional[asyncio.StreamReader]
    ) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(_READ_CHUNK_SIZE)
            if not chunk:
                break
            invocation.stderr.extend(chunk)

    def _read_capture(self, output_file: Path) -> Optional[str]:
        try:
            if output_file.exists():
                return output_file.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "codex.capture.read_failed",
                path=str(output_file),
                exc=exc,
            )
        return None

    def _discard_capture(self, output_file: Path) -> None:
        try:
            output_file.unlink(missing_ok=True)
        except OSError as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "codex.capture.cleanup_failed",
                path=str(output_file),
                exc=exc,
            )
