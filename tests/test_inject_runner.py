from pathlib import Path

import pytest

from code_remote.config import load_config
from code_remote.runners import (
    CodexRunner,
    InjectRunner,
    RunnerContext,
    RunnerError,
    create_runner,
)


class FakeInjector:
    def __init__(self, ok: bool = True) -> None:
        self.ok = ok
        self.sent: list[tuple[str, str]] = []

    async def send(self, tmux_session: str, text: str) -> bool:
        self.sent.append((tmux_session, text))
        return self.ok


@pytest.mark.anyio
async def test_injects_into_tmux_session() -> None:
    injector = FakeInjector()
    runner = InjectRunner(injector=injector)

    result = await runner.dispatch("hello", RunnerContext(tmux_session="work"))

    assert result.queued is True
    assert result.final_text == ""
    assert injector.sent == [("work", "hello")]


@pytest.mark.anyio
async def test_send_command_callback_wins() -> None:
    injector = FakeInjector()
    delivered: list[str] = []

    async def send(text: str) -> bool:
        delivered.append(text)
        return True

    runner = InjectRunner(injector=injector)
    await runner.run("hi", RunnerContext(tmux_session="work", send_command=send))

    assert delivered == ["hi"]
    assert injector.sent == []


@pytest.mark.anyio
async def test_missing_sink_and_failed_delivery() -> None:
    with pytest.raises(RunnerError, match="needs a tmux session"):
        await InjectRunner(injector=FakeInjector()).run("hi", RunnerContext())
    with pytest.raises(RunnerError, match="Failed to deliver"):
        await InjectRunner(injector=FakeInjector(ok=False)).run(
            "hi", RunnerContext(tmux_session="work")
        )


def test_create_runner_follows_config(tmp_path: Path) -> None:
    claude = create_runner(load_config(tmp_path, env={}))
    assert isinstance(claude, InjectRunner)
    assert claude.name == "claude"

    codex = create_runner(load_config(tmp_path, env={"RUNNER": "codex"}))
    assert isinstance(codex, CodexRunner)
    assert codex.session_map.path == tmp_path / "codex-session-map.json"
