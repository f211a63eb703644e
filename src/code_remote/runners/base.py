from __future__ import annotations

import abc
import dataclasses
from typing import Awaitable, Callable, Optional

DEFAULT_SESSION_KEY = "default"

SendCommand = Callable[[str], Awaitable[bool]]


class RunnerError(Exception):
    """Raised when a runner cannot deliver a prompt or produce a response."""


@dataclasses.dataclass
class RunnerContext:
    session_key: str = DEFAULT_SESSION_KEY
    workdir: Optional[str] = None
    sandbox: Optional[str] = None
    tmux_session: Optional[str] = None
    send_command: Optional[SendCommand] = None


@dataclasses.dataclass
class RunResult:
    final_text: str = ""
    session_id: Optional[str] = None
    logs: str = ""
    queued: bool = False


class Runner(abc.ABC):
    name: str = "runner"
    supports_resume: bool = False

    @abc.abstractmethod
    async def run(self, prompt: str, context: Optional[RunnerContext] = None) -> RunResult:
        """Start a fresh conversation with `prompt`."""

    @abc.abstractmethod
    async def resume(
        self, prompt: str, context: Optional[RunnerContext] = None
    ) -> RunResult:
        """Continue the conversation bound to `context.session_key`."""

    async def has_session(self, session_key: str) -> bool:
        return False

    async def dispatch(
        self, prompt: str, context: Optional[RunnerContext] = None
    ) -> RunResult:
        """Resume when a continuation exists for the context key, else run."""
        context = context or RunnerContext()
        if self.supports_resume and await self.has_session(context.session_key):
            return await self.resume(prompt, context)
        return await self.run(prompt, context)
