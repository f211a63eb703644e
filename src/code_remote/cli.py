import asyncio
import logging
import os
from pathlib import Path
from typing import NoReturn, Optional

import typer

from .codex_conversation import CodexConversationReader, load_session_meta
from .commands import CommandRouter
from .config import HOME_ENV, ConfigError, RemoteConfig, load_config
from .current_token import CurrentTokenStore
from .logging_utils import setup_rotating_logger
from .notifications import NOTIFICATION_TYPES, NOTIFY_COMPLETED, Notification
from .repos import RepoRegistryError
from .runners import (
    CodexRunner,
    RunnerContext,
    RunnerError,
    RunnerSessionMap,
    create_runner,
)
from .session_store import SessionStore, SessionStoreError
from .sessions_format import ListFormatOptions, format_sessions_list
from .telegram_bot import TelegramBotConfigError, TelegramBotService
from .tokens import normalize_token
from .utils import parse_bool

app = typer.Typer(add_completion=False, help="Drive a local coding assistant remotely.")
repo_app = typer.Typer(add_completion=False, help="Manage registered repos.")
sessions_app = typer.Typer(add_completion=False, help="Manage session tokens.")
codex_app = typer.Typer(add_completion=False, help="Codex runner maintenance.")
telegram_app = typer.Typer(add_completion=False, help="Telegram channel.")

app.add_typer(repo_app, name="repo")
app.add_typer(sessions_app, name="sessions")
app.add_typer(codex_app, name="codex")
app.add_typer(telegram_app, name="telegram")


def _fail(message: str) -> NoReturn:
    typer.echo(message, err=True)
    raise typer.Exit(code=1)


def _load(home: Optional[Path]) -> tuple[RemoteConfig, logging.Logger]:
    try:
        config = load_config(home)
    except ConfigError as exc:
        _fail(str(exc))
    logger = setup_rotating_logger(f"code-remote[{config.root}]", config.log)
    return config, logger


def _store(home: Optional[Path]) -> tuple[RemoteConfig, SessionStore]:
    config, logger = _load(home)
    return config, SessionStore.from_config(config, logger=logger)


def _home_option():
    return typer.Option(
        None, "--home", envvar=HOME_ENV, help="Data root (default ~/.code-remote)"
    )


@repo_app.command("list")
def repo_list(home: Optional[Path] = _home_option()):
    """List registered repos."""
    _, store = _store(home)
    repos = store.registry.list()
    if not repos:
        typer.echo("No repos registered.")
        return
    for repo in repos:
        typer.echo(f"{repo.name} -> {repo.path}")


@repo_app.command("add")
def repo_add(
    name: str = typer.Argument(..., help="Repo name"),
    path: str = typer.Argument(..., help="Repo path"),
    home: Optional[Path] = _home_option(),
):
    """Register a repo under NAME."""
    _, store = _store(home)
    try:
        repo = store.registry.add(name, path)
    except RepoRegistryError as exc:
        _fail(str(exc))
    typer.echo(f"Added repo: {repo.name} -> {repo.path}")


@repo_app.command("remove")
def repo_remove(
    name: str = typer.Argument(..., help="Repo name"),
    home: Optional[Path] = _home_option(),
):
    """Deregister a repo. Its session files are left on disk."""
    _, store = _store(home)
    try:
        store.registry.remove(name)
    except RepoRegistryError as exc:
        _fail(str(exc))
    typer.echo(f"Removed repo: {name}")


@repo_app.command("init")
def repo_init(home: Optional[Path] = _home_option()):
    """Register the current directory under its basename."""
    _, store = _store(home)
    cwd = Path.cwd()
    existing = store.registry.find_by_path(str(cwd))
    if existing is not None:
        _fail(f"Path already registered as {existing.name}: {existing.path}")
    try:
        repo = store.registry.add(cwd.name, str(cwd))
    except RepoRegistryError as exc:
        _fail(str(exc))
    typer.echo(f"Added repo: {repo.name} -> {repo.path}")


@sessions_app.command("list")
def sessions_list(
    repo: Optional[str] = typer.Option(None, "--repo", help="Only this repo"),
    filter_text: Optional[str] = typer.Option(
        None, "--filter", help="Case-insensitive conversation filter"
    ),
    limit: Optional[int] = typer.Option(None, "--limit", help="Max rows; -1 for all"),
    debug: bool = typer.Option(False, "--debug", help="Show session id and repo"),
    home: Optional[Path] = _home_option(),
):
    """List sessions, most recently used first."""
    config, store = _store(home)
    entries = store.list_sessions(
        repo_name=repo,
        filter=filter_text,
        limit=config.list_limit if limit is None else limit,
    )
    if not entries:
        typer.echo("No active sessions.")
        return
    show_debug = debug or parse_bool(os.environ.get("DEBUG"))
    options = ListFormatOptions(
        pad_token=True,
        session_id_column=show_debug,
        repo_column=show_debug,
        max_length=config.max_conversation_chars,
    )
    typer.echo(format_sessions_list(entries, options))


@sessions_app.command("new")
def sessions_new(
    repo: str = typer.Option(..., "--repo", help="Registered repo name"),
    home: Optional[Path] = _home_option(),
):
    """Issue a new token bound to a fresh manual session."""
    _, store = _store(home)
    try:
        created = store.create_manual_session(repo)
    except (SessionStoreError, RepoRegistryError) as exc:
        _fail(str(exc))
    typer.echo(f"Token: {created.token}")


@sessions_app.command("reindex")
def sessions_reindex(home: Optional[Path] = _home_option()):
    """Rebuild tokens.json and sessions.json from the per-repo session files."""
    _, store = _store(home)
    result = store.reindex_sessions()
    typer.echo(
        f"✅ Sessions reindexed ({result.sessions} sessions across "
        f"{result.repos} repos, {result.skipped} skipped)"
    )


@sessions_app.command("remove")
def sessions_remove(
    session_id: str = typer.Argument(..., help="Session id"),
    repo: str = typer.Option(..., "--repo", help="Repo the session belongs to"),
    home: Optional[Path] = _home_option(),
):
    """Delete a session file and its index entries."""
    _, store = _store(home)
    try:
        removed = store.remove_session(repo, session_id)
    except (SessionStoreError, RepoRegistryError) as exc:
        _fail(str(exc))
    if removed:
        typer.echo(f"Removed session: {session_id}")
    else:
        typer.echo(f"Session file not found; index entries cleared: {session_id}")


@codex_app.command("clear")
def codex_clear(
    key: Optional[str] = typer.Option(None, "--key", help="Only this session key"),
    home: Optional[Path] = _home_option(),
):
    """Forget stored Codex continuations so the next command starts fresh."""
    config, logger = _load(home)
    session_map = RunnerSessionMap(config.session_map_path, logger=logger)
    if key is None:
        session_map.clear()
        typer.echo("Cleared all Codex sessions")
        return
    canonical = normalize_token(key) or key
    if session_map.clear_key(canonical):
        typer.echo(f"Cleared Codex session for {canonical}")
    else:
        typer.echo(f"No Codex session stored for {canonical}")


@codex_app.command("list")
def codex_list(home: Optional[Path] = _home_option()):
    """List Codex CLI sessions found under the Codex sessions directory."""
    config, _ = _load(home)
    reader = CodexConversationReader(config.codex.sessions_dir)
    metas = reader.list_sessions()
    if not metas:
        typer.echo("No Codex sessions found.")
        return
    typer.echo(f"Found {len(metas)} Codex sessions:")
    for meta in metas:
        typer.echo(
            f"- {meta.id} | {meta.timestamp or 'n/a'} | {meta.cwd or 'n/a'} | {meta.path.name}"
        )


@codex_app.command("import")
def codex_import(
    session_id: Optional[str] = typer.Option(None, "--id", help="Codex session id"),
    file: Optional[Path] = typer.Option(None, "--file", help="Codex rollout file"),
    import_all: bool = typer.Option(False, "--all", help="Import every session"),
    repo: Optional[str] = typer.Option(
        None, "--repo", help="Repo to bind (default: match the session cwd)"
    ),
    session_key: Optional[str] = typer.Option(
        None, "--session-key", help="Runner session key to resume from (default: token)"
    ),
    token: Optional[str] = typer.Option(None, "--token", help="Use this token"),
    home: Optional[Path] = _home_option(),
):
    """Bind Codex CLI sessions to tokens so chats can resume them."""
    if sum([session_id is not None, file is not None, import_all]) != 1:
        _fail("Pass exactly one of --id, --file or --all")
    if import_all and (session_key or token):
        _fail("--session-key and --token apply to a single session")
    config, logger = _load(home)
    store = SessionStore.from_config(config, logger=logger)
    reader = CodexConversationReader(config.codex.sessions_dir)
    session_map = RunnerSessionMap(config.session_map_path, logger=logger)

    if import_all:
        metas = reader.list_sessions()
        if not metas:
            typer.echo("No Codex sessions found.")
            return
    elif file is not None:
        meta = load_session_meta(file)
        if meta is None:
            _fail(f"No session_meta found in {file}")
        metas = [meta]
    else:
        meta = reader.find_meta(session_id or "")
        if meta is None:
            _fail(f"Codex session id not found: {session_id}")
        metas = [meta]

    imported = 0
    for meta in metas:
        try:
            issued = store.import_codex_session(meta, repo_name=repo, token=token)
        except (SessionStoreError, RepoRegistryError) as exc:
            if not import_all:
                _fail(str(exc))
            typer.echo(f"Skipping {meta.id}: {exc}")
            continue
        session_map.set(session_key or issued.token, meta.id)
        imported += 1
        typer.echo(
            f"Imported {meta.id} -> repo {issued.repo_name}, token {issued.token}"
        )
    if import_all:
        typer.echo(f"Imported {imported} of {len(metas)} Codex sessions")


@app.command()
def run(
    token: str = typer.Argument(..., help="Session token"),
    prompt: str = typer.Argument(..., help="Command to send"),
    home: Optional[Path] = _home_option(),
):
    """Send one command to the session bound to TOKEN."""
    config, logger = _load(home)
    store = SessionStore.from_config(config, logger=logger)
    canonical = normalize_token(token)
    try:
        record = store.find_session_by_token(canonical) if canonical else None
    except SessionStoreError as exc:
        _fail(str(exc))
    if record is None or canonical is None:
        _fail(f"Invalid token: {token}")
    runner = create_runner(config, logger=logger)
    context = RunnerContext(
        session_key=canonical,
        workdir=record.workdir,
        tmux_session=record.tmux_session,
    )
    try:
        store.touch_session(record)
        result = asyncio.run(runner.dispatch(prompt, context))
    except (RunnerError, SessionStoreError, OSError) as exc:
        _fail(f"Command execution failed: {exc}")
    if result.final_text:
        typer.echo(result.final_text)
    else:
        typer.echo(f"Command sent to {runner.name}")


def _telegram_service(
    config: RemoteConfig, logger: logging.Logger
) -> tuple[TelegramBotService, str]:
    store = SessionStore.from_config(config, logger=logger)
    runner = create_runner(config, logger=logger)
    router = CommandRouter(
        store,
        runner,
        CurrentTokenStore(config.current_path, logger=logger),
        list_options=ListFormatOptions(max_length=config.max_conversation_chars),
        logger=logger,
    )
    service = TelegramBotService(config.telegram, router, store=store, logger=logger)
    runner_label = runner.name
    if isinstance(runner, CodexRunner):
        runner_label = f"{runner.name} ({config.codex.binary})"
    return service, runner_label


@telegram_app.command("start")
def telegram_start(home: Optional[Path] = _home_option()):
    """Long-poll Telegram and route chat messages to sessions."""
    config, logger = _load(home)
    service, runner_label = _telegram_service(config, logger)
    try:
        service.validate()
    except TelegramBotConfigError as exc:
        _fail(str(exc))
    typer.echo(f"Telegram bot polling with runner {runner_label}")
    try:
        asyncio.run(service.run_polling())
    except KeyboardInterrupt:
        typer.echo("Stopped")


@telegram_app.command("notify")
def telegram_notify(
    message: str = typer.Argument(..., help="Notification text"),
    kind: str = typer.Option(
        NOTIFY_COMPLETED, "--type", help="completed or waiting"
    ),
    project: Optional[str] = typer.Option(None, "--project", help="Project label"),
    question: Optional[str] = typer.Option(None, "--question", help="What was asked"),
    response: Optional[str] = typer.Option(None, "--response", help="What came back"),
    tmux_session: Optional[str] = typer.Option(
        None, "--tmux-session", help="tmux session replies are injected into"
    ),
    workdir: Optional[str] = typer.Option(
        None, "--workdir", help="Registered repo path (default: WORKDIR or cwd)"
    ),
    home: Optional[Path] = _home_option(),
):
    """Send a task notification carrying a new reply token."""
    if kind not in NOTIFICATION_TYPES:
        _fail(f"--type must be one of {', '.join(sorted(NOTIFICATION_TYPES))}")
    config, logger = _load(home)
    service, _ = _telegram_service(config, logger)
    target = workdir or str(config.codex.workdir)
    notification = Notification(
        type=kind,
        project=project or Path(target).name,
        message=message,
        user_question=question,
        assistant_response=response,
        tmux_session=tmux_session,
    )
    try:
        issued = asyncio.run(service.notify(notification, workdir=target))
    except (TelegramBotConfigError, SessionStoreError) as exc:
        _fail(str(exc))
    if issued is None:
        _fail("Notification delivery failed; session rolled back")
    typer.echo(f"Notified with token {issued.token}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
