import asyncio
import json
from pathlib import Path
from typing import Optional, Sequence

import pytest

from code_remote.runners import (
    CodexBinaryNotFoundError,
    CodexProcessError,
    CodexRunner,
    InvocationPhase,
    RunnerContext,
    RunnerError,
    RunnerSessionMap,
    settle_invocation,
)
from code_remote.runners.codex import (
    NO_RESPONSE_TEXT,
    RESUME_FALLBACK_NOTE,
    CodexInvocation,
    build_codex_args,
    extract_continuation_id,
    scan_continuation_ids,
)


class FakeProcess:
    def __init__(self, stdout: bytes, stderr: bytes, exit_code: int) -> None:
        self.stdout = asyncio.StreamReader()
        self.stdout.feed_data(stdout)
        self.stdout.feed_eof()
        self.stderr = asyncio.StreamReader()
        self.stderr.feed_data(stderr)
        self.stderr.feed_eof()
        self._exit_code = exit_code

    async def wait(self) -> int:
        return self._exit_code


class FakeSpawner:
    def __init__(
        self,
        *,
        stdout: bytes = b"",
        stderr: bytes = b"",
        exit_code: int = 0,
        last_message: Optional[str] = None,
        missing: bool = False,
    ) -> None:
        self.stdout = stdout
        self.stderr = stderr
        self.exit_code = exit_code
        self.last_message = last_message
        self.missing = missing
        self.calls: list[dict[str, object]] = []
        self.capture_paths: list[Path] = []

    async def __call__(self, binary: str, args: Sequence[str], cwd: str) -> FakeProcess:
        self.calls.append({"binary": binary, "args": list(args), "cwd": cwd})
        if self.missing:
            raise FileNotFoundError(binary)
        capture = Path(args[list(args).index("--output-last-message") + 1])
        self.capture_paths.append(capture)
        if self.last_message is not None:
            capture.write_text(self.last_message, encoding="utf-8")
        return FakeProcess(self.stdout, self.stderr, self.exit_code)


def _jsonl(*events: dict) -> bytes:
    return "".join(json.dumps(event) + "\n" for event in events).encode("utf-8")


def _runner(tmp_path: Path, spawner: FakeSpawner, **kwargs) -> CodexRunner:
    return CodexRunner(
        session_map=RunnerSessionMap(tmp_path / "codex-session-map.json"),
        binary="codex-test",
        workdir=tmp_path,
        capture_dir=tmp_path,
        spawner=spawner,
        **kwargs,
    )


@pytest.mark.anyio
async def test_last_continuation_id_wins(tmp_path: Path) -> None:
    spawner = FakeSpawner(
        stdout=_jsonl(
            {"type": "thread.started", "thread_id": "a"},
            {"type": "turn.completed", "session_id": "b"},
        ),
        last_message="done",
    )
    runner = _runner(tmp_path, spawner)

    result = await runner.run("hello", RunnerContext(session_key="TOKEN123"))

    assert result.final_text == "done"
    assert result.session_id == "b"
    assert runner.session_map.get("TOKEN123") == "b"
    payload = json.loads((tmp_path / "codex-session-map.json").read_text())
    assert payload["sessions"] == {"TOKEN123": "b"}
    assert payload["lastUpdated"].endswith("Z")


@pytest.mark.anyio
async def test_unterminated_final_line_is_scanned(tmp_path: Path) -> None:
    spawner = FakeSpawner(stdout=b'{"threadId": "tail-id"}', last_message="ok")
    runner = _runner(tmp_path, spawner)

    await runner.run("hi", RunnerContext(session_key="K"))

    assert runner.session_map.get("K") == "tail-id"


@pytest.mark.anyio
async def test_nonzero_exit_rejects_with_stderr(tmp_path: Path) -> None:
    spawner = FakeSpawner(stderr=b"boom", exit_code=1)
    runner = _runner(tmp_path, spawner)

    with pytest.raises(CodexProcessError) as excinfo:
        await runner.run("hi", RunnerContext(session_key="K"))

    assert str(excinfo.value) == "boom"
    assert excinfo.value.exit_code == 1
    assert runner.session_map.get("K") is None
    assert not spawner.capture_paths[0].exists()


@pytest.mark.anyio
async def test_failed_run_does_not_persist_continuation(tmp_path: Path) -> None:
    spawner = FakeSpawner(stdout=_jsonl({"session_id": "never"}), exit_code=2)
    runner = _runner(tmp_path, spawner)

    with pytest.raises(CodexProcessError) as excinfo:
        await runner.run("hi", RunnerContext(session_key="K"))

    assert '"session_id": "never"' in str(excinfo.value)
    assert runner.session_map.get("K") is None


@pytest.mark.anyio
async def test_resume_without_continuation_starts_fresh(tmp_path: Path) -> None:
    spawner = FakeSpawner(stdout=_jsonl({"session_id": "new-id"}), last_message="answer")
    runner = _runner(tmp_path, spawner)

    result = await runner.resume("continue", RunnerContext(session_key="K"))

    assert result.final_text == f"{RESUME_FALLBACK_NOTE}\n\nanswer"
    args = spawner.calls[0]["args"]
    assert "resume" not in args
    assert args[-1] == "continue"
    assert runner.session_map.get("K") == "new-id"


@pytest.mark.anyio
async def test_dispatch_resumes_known_continuation(tmp_path: Path) -> None:
    spawner = FakeSpawner(last_message="again")
    runner = _runner(tmp_path, spawner, sandbox="workspace-write", full_auto=True)
    runner.session_map.set("K", "abc")

    result = await runner.dispatch("next step", RunnerContext(session_key="K"))

    assert result.final_text == "again"
    args = spawner.calls[0]["args"]
    assert args[:2] == ["exec", "--json"]
    assert args[-3:] == ["resume", "abc", "next step"]
    assert args[args.index("--sandbox") + 1] == "workspace-write"
    assert "--full-auto" in args
    # No new id in the stream: the existing mapping is kept.
    assert runner.session_map.get("K") == "abc"


@pytest.mark.anyio
async def test_capture_file_is_preferred_and_removed(tmp_path: Path) -> None:
    spawner = FakeSpawner(stdout=b"progress noise\n", last_message="  final answer \n")
    runner = _runner(tmp_path, spawner)

    result = await runner.run("hi")

    assert result.final_text == "final answer"
    assert spawner.calls[0]["cwd"] == str(tmp_path)
    assert not spawner.capture_paths[0].exists()


@pytest.mark.anyio
async def test_stdout_tail_and_sentinel(tmp_path: Path) -> None:
    runner = _runner(tmp_path, FakeSpawner(stdout=b"plain output\n"))
    assert (await runner.run("hi")).final_text == "plain output"

    runner = _runner(tmp_path, FakeSpawner())
    assert (await runner.run("hi")).final_text == NO_RESPONSE_TEXT


@pytest.mark.anyio
async def test_missing_binary(tmp_path: Path) -> None:
    runner = _runner(tmp_path, FakeSpawner(missing=True))

    with pytest.raises(CodexBinaryNotFoundError, match="CODEX_BIN"):
        await runner.run("hi")


@pytest.mark.anyio
async def test_missing_workdir(tmp_path: Path) -> None:
    spawner = FakeSpawner()
    runner = _runner(tmp_path, spawner)

    with pytest.raises(RunnerError, match="Working directory not found"):
        await runner.run("hi", RunnerContext(workdir=str(tmp_path / "gone")))
    assert spawner.calls == []


@pytest.mark.anyio
async def test_clear_session_forgets_one_key(tmp_path: Path) -> None:
    runner = _runner(tmp_path, FakeSpawner())
    runner.session_map.set("A", "id-a")
    runner.session_map.set("B", "id-b")

    assert runner.clear_session("A") is True
    assert runner.clear_session("A") is False
    assert await runner.has_session("A") is False
    assert await runner.has_session("B") is True

    runner.clear_sessions()
    assert runner.session_map.load() == {}


def test_settle_requires_exited_phase(tmp_path: Path) -> None:
    invocation = CodexInvocation(args=[], output_file=tmp_path / "x", workdir="/")
    with pytest.raises(RunnerError):
        settle_invocation(invocation, "text")


def test_settle_reports_exit_code_when_silent(tmp_path: Path) -> None:
    invocation = CodexInvocation(
        args=[], output_file=tmp_path / "x", workdir="/", phase=InvocationPhase.EXITED
    )
    invocation.exit_code = 2

    with pytest.raises(CodexProcessError, match="Codex exited with code 2"):
        settle_invocation(invocation, None)
    assert invocation.phase is InvocationPhase.REJECTED


def test_continuation_id_extraction() -> None:
    assert extract_continuation_id('{"sessionId": "x"}') == "x"
    assert extract_continuation_id("not json") is None
    assert extract_continuation_id('{"session_id": 5}') is None
    assert extract_continuation_id("[1, 2]") is None
    text = '{"thread_id": "one"}\nnoise\n{"threadId": "two"}\n'
    assert scan_continuation_ids(text) == "two"


def test_passthrough_sandbox_flag_is_not_duplicated(tmp_path: Path) -> None:
    args = build_codex_args(
        prompt="p",
        output_file=tmp_path / "out.txt",
        sandbox="read-only",
        skip_git_check=True,
        extra_args=["--sandbox=danger-full-access", "--model", "o3"],
    )
    assert "read-only" not in args
    assert args.count("--skip-git-repo-check") == 1
    assert args[-3:] == ["--model", "o3", "p"]


@pytest.mark.anyio
async def test_undecodable_capture_is_replaced(tmp_path: Path) -> None:
    class BinarySpawner(FakeSpawner):
        async def __call__(self, binary, args, cwd):
            process = await super().__call__(binary, args, cwd)
            self.capture_paths[-1].write_bytes(b"caf\xc3")
            return process

    result = await _runner(tmp_path, BinarySpawner()).run("hi")

    assert result.final_text == "caf�"
