import logging
from typing import Optional

from ..config import RUNNER_CODEX, RemoteConfig
from .base import DEFAULT_SESSION_KEY, Runner, RunnerContext, RunnerError, RunResult
from .codex import (
    CodexBinaryNotFoundError,
    CodexProcessError,
    CodexRunner,
    InvocationPhase,
    settle_invocation,
)
from .inject import InjectRunner, TmuxInjector
from .session_map import RunnerSessionMap


def create_runner(
    config: RemoteConfig, *, logger: Optional[logging.Logger] = None
) -> Runner:
    if config.runner_name == RUNNER_CODEX:
        return CodexRunner(
            session_map=RunnerSessionMap(config.session_map_path, logger=logger),
            binary=config.codex.binary,
            args=config.codex.args,
            sandbox=config.codex.sandbox,
            full_auto=config.codex.full_auto,
            skip_git_check=config.codex.skip_git_check,
            workdir=config.codex.workdir,
            logger=logger,
        )
    return InjectRunner(name=config.runner_name, logger=logger)


__all__ = [
    "DEFAULT_SESSION_KEY",
    "CodexBinaryNotFoundError",
    "CodexProcessError",
    "CodexRunner",
    "InjectRunner",
    "InvocationPhase",
    "Runner",
    "RunnerContext",
    "RunnerError",
    "RunResult",
    "RunnerSessionMap",
    "TmuxInjector",
    "create_runner",
    "settle_invocation",
]
