from __future__ import annotations

import asyncio
import logging
from typing import Optional

from ..logging_utils import log_event
from ..utils import resolve_executable, subprocess_env
from .base import Runner, RunnerContext, RunnerError, RunResult


class TmuxInjector:
    """Types a prompt into a tmux pane and presses Enter."""

    def __init__(
        self, *, binary: str = "tmux", logger: Optional[logging.Logger] = None
    ) -> None:
        self._binary = binary
        self._logger = logger or logging.getLogger(__name__)

    async def _tmux(self, *args: str) -> int:
        binary = resolve_executable(self._binary) or self._binary
        try:
            proc = await asyncio.create_subprocess_exec(
                binary,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                env=subprocess_env(),
            )
        except FileNotFoundError as exc:
            raise RunnerError(f"tmux not found ({self._binary})") from exc
        _, stderr = await proc.communicate()
        if proc.returncode != 0:
            log_event(
                self._logger,
                logging.WARNING,
                "tmux.command.failed",
                args=list(args),
                exit_code=proc.returncode,
                stderr=stderr.decode("utf-8", errors="replace").strip() or None,
            )
        return proc.returncode or 0

    async def send(self, tmux_session: str, text: str) -> bool:
        if await self._tmux("send-keys", "-t", tmux_session, "-l", text) != 0:
            return False
        return await self._tmux("send-keys", "-t", tmux_session, "Enter") == 0


class InjectRunner(Runner):
    """
    Delivers prompts to an interactive assistant already running in a
    terminal. There is no response to capture, so results are always
    `queued=True` with empty text.
    """

    supports_resume = False

    def __init__(
        self,
        *,
        name: str = "claude",
        injector: Optional[TmuxInjector] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.name = name
        self._injector = injector or TmuxInjector(logger=logger)
        self._logger = logger or logging.getLogger(__name__)

    async def run(self, prompt: str, context: Optional[RunnerContext] = None) -> RunResult:
        context = context or RunnerContext()
        if context.send_command is not None:
            delivered = await context.send_command(prompt)
            target = "callback"
        elif context.tmux_session:
            delivered = await self._injector.send(context.tmux_session, prompt)
            target = context.tmux_session
        else:
            raise RunnerError(
                f"{self.name} runner needs a tmux session or a send command"
            )
        if not delivered:
            raise RunnerError(f"Failed to deliver prompt to {target}")
        log_event(
            self._logger,
            logging.INFO,
            "inject.delivered",
            runner=self.name,
            target=target,
            session_key=context.session_key,
            prompt_chars=len(prompt),
        )
        return RunResult(queued=True)

    async def resume(
        self, prompt: str, context: Optional[RunnerContext] = None
    ) -> RunResult:
        return await self.run(prompt, context)
