import dataclasses
import json
import os
import shlex
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from dotenv import load_dotenv

from .utils import parse_bool

HOME_ENV = "CODE_REMOTE_HOME"
DEFAULT_ROOT_DIRNAME = ".code-remote"
CONFIG_FILENAME = "config.yml"
CONFIG_VERSION = 1

RUNNER_CODEX = "codex"
RUNNER_CLAUDE = "claude"
RUNNER_NAMES = {RUNNER_CODEX, RUNNER_CLAUDE}

DEFAULT_CONFIG: Dict[str, Any] = {
    "version": CONFIG_VERSION,
    "runner": {
        "name": RUNNER_CLAUDE,
        "session_map": "codex-session-map.json",
    },
    "codex": {
        "binary": "codex",
        "args": [],
        "sandbox": "read-only",
        "full_auto": False,
        "skip_git_check": False,
        "workdir": None,
        "sessions_dir": None,
    },
    "sessions": {
        "list_limit": 10,
        "max_conversation_chars": 120,
    },
    "telegram": {
        "enabled": False,
        "bot_token_env": "TELEGRAM_BOT_TOKEN",
        "chat_id_env": "TELEGRAM_CHAT_ID",
        "allowed_chat_ids": [],
        "poll_timeout_seconds": 30,
        "max_message_chars": 4000,
    },
    "log": {
        "path": "logs/code-remote.log",
        "level": "info",
        "max_bytes": 10_000_000,
        "backup_count": 3,
    },
}

# Environment variables that override individual config keys.
ENV_OVERRIDES: Dict[str, tuple[str, str]] = {
    "RUNNER": ("runner", "name"),
    "CODEX_BIN": ("codex", "binary"),
    "CODEX_ARGS": ("codex", "args"),
    "CODEX_SANDBOX": ("codex", "sandbox"),
    "CODEX_FULL_AUTO": ("codex", "full_auto"),
    "CODEX_SKIP_GIT_CHECK": ("codex", "skip_git_check"),
    "WORKDIR": ("codex", "workdir"),
    "CODEX_SESSIONS_DIR": ("codex", "sessions_dir"),
    "TELEGRAM_ENABLED": ("telegram", "enabled"),
    "TELEGRAM_ALLOWED_CHAT_IDS": ("telegram", "allowed_chat_ids"),
}


class ConfigError(Exception):
    """Raised when configuration is invalid."""


@dataclasses.dataclass
class LogConfig:
    path: Path
    max_bytes: int
    backup_count: int
    level: str = "info"


@dataclasses.dataclass
class CodexConfig:
    binary: str
    args: List[str]
    sandbox: str
    full_auto: bool
    skip_git_check: bool
    workdir: Path
    sessions_dir: Path


@dataclasses.dataclass
class TelegramConfig:
    enabled: bool
    bot_token_env: str
    bot_token: Optional[str]
    allowed_chat_ids: set[int]
    poll_timeout_seconds: int
    max_message_chars: int
    chat_id_env: str = "TELEGRAM_CHAT_ID"
    notify_chat_id: Optional[int] = None


@dataclasses.dataclass
class RemoteConfig:
    raw: Dict[str, Any]
    root: Path
    version: int
    runner_name: str
    session_map_path: Path
    codex: CodexConfig
    list_limit: int
    max_conversation_chars: int
    telegram: TelegramConfig
    log: LogConfig

    @property
    def repos_path(self) -> Path:
        return self.root / "repos.json"

    @property
    def tokens_path(self) -> Path:
        return self.root / "tokens.json"

    @property
    def sessions_index_path(self) -> Path:
        return self.root / "sessions.json"

    @property
    def current_path(self) -> Path:
        return self.root / "current.json"


def default_root(env: Optional[Mapping[str, str]] = None) -> Path:
    env = env if env is not None else os.environ
    override = env.get(HOME_ENV)
    if override:
        return Path(override).expanduser().resolve()
    return Path.home() / DEFAULT_ROOT_DIRNAME


def _merge_defaults(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = json.loads(json.dumps(base))
    for key, value in overrides.items():
        if isinstance(value, dict) and key in merged and isinstance(merged[key], dict):
            merged[key] = _merge_defaults(merged[key], value)
        else:
            merged[key] = value
    return merged


def _parse_args(value: Any) -> List[str]:
    if isinstance(value, list):
        return [str(item) for item in value if str(item).strip()]
    if isinstance(value, str):
        try:
            return [part for part in shlex.split(value) if part]
        except ValueError:
            return [part for part in value.split() if part]
    return []


def _parse_int_list(value: Any) -> List[int]:
    if value is None:
        return []
    if isinstance(value, int):
        return [value]
    items: list[Any]
    if isinstance(value, str):
        items = [part for part in value.replace(",", " ").split() if part]
    elif isinstance(value, (list, tuple, set)):
        items = list(value)
    else:
        return []
    out: list[int] = []
    for item in items:
        try:
            out.append(int(item))
        except (TypeError, ValueError):
            continue
    return out


def _load_dotenv_for_root(root: Path) -> None:
    """
    Best-effort load of environment variables for this data root.

    The process CWD is checked first, then the data root, so a root-local
    .env wins over a stale shell export.
    """
    try:
        candidates = [Path.cwd() / ".env", root / ".env"]
        for candidate in candidates:
            if candidate.exists():
                load_dotenv(dotenv_path=candidate, override=True)
    except Exception:
        # Never fail config loading due to dotenv issues.
        pass


def _parse_chat_id(value: Optional[str], env_key: str) -> Optional[int]:
    if value is None or not value.strip():
        return None
    try:
        return int(value.strip())
    except ValueError as exc:
        raise ConfigError(f"{env_key} must be an integer chat id") from exc


def _apply_env_overrides(cfg: Dict[str, Any], env: Mapping[str, str]) -> None:
    for env_key, (section, key) in ENV_OVERRIDES.items():
        value = env.get(env_key)
        if value is None or value == "":
            continue
        cfg.setdefault(section, {})[key] = value


def load_config(
    root: Optional[Path] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
) -> RemoteConfig:
    """
    Build the effective config: defaults, then `<root>/config.yml`, then
    environment overrides. Missing config files are fine; malformed ones are not.
    """
    if env is None:
        resolved_root = root if root is not None else default_root()
        _load_dotenv_for_root(resolved_root)
        env = dict(os.environ)
    data_root = (root if root is not None else default_root(env)).expanduser()
    config_path = data_root / CONFIG_FILENAME
    data: Dict[str, Any] = {}
    if config_path.exists():
        try:
            with config_path.open("r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc
        if not isinstance(loaded, dict):
            raise ConfigError(f"{config_path} must contain a mapping")
        data = loaded
    merged = _merge_defaults(DEFAULT_CONFIG, data)
    _apply_env_overrides(merged, env)
    _validate_config(merged)
    return _build_config(data_root, merged, env)


def _resolve_path(root: Path, value: Any) -> Path:
    path = Path(str(value)).expanduser()
    if not path.is_absolute():
        path = root / path
    return path


def _build_config(
    root: Path, cfg: Dict[str, Any], env: Mapping[str, str]
) -> RemoteConfig:
    codex_cfg = cfg["codex"]
    workdir_raw = codex_cfg.get("workdir")
    workdir = (
        Path(str(workdir_raw)).expanduser() if workdir_raw else Path.cwd()
    )
    sessions_dir_raw = codex_cfg.get("sessions_dir")
    sessions_dir = (
        Path(str(sessions_dir_raw)).expanduser()
        if sessions_dir_raw
        else Path.home() / ".codex" / "sessions"
    )
    telegram_cfg = cfg["telegram"]
    bot_token_env = str(telegram_cfg.get("bot_token_env") or "TELEGRAM_BOT_TOKEN")
    chat_id_env = str(telegram_cfg.get("chat_id_env") or "TELEGRAM_CHAT_ID")
    notify_chat_id = _parse_chat_id(env.get(chat_id_env), chat_id_env)
    log_cfg = cfg["log"]
    return RemoteConfig(
        raw=cfg,
        root=root,
        version=int(cfg["version"]),
        runner_name=str(cfg["runner"]["name"]).strip().lower(),
        session_map_path=_resolve_path(root, cfg["runner"]["session_map"]),
        codex=CodexConfig(
            binary=str(codex_cfg["binary"]),
            args=_parse_args(codex_cfg.get("args")),
            sandbox=str(codex_cfg["sandbox"]),
            full_auto=parse_bool(codex_cfg.get("full_auto")),
            skip_git_check=parse_bool(codex_cfg.get("skip_git_check")),
            workdir=workdir,
            sessions_dir=sessions_dir,
        ),
        list_limit=int(cfg["sessions"]["list_limit"]),
        max_conversation_chars=int(cfg["sessions"]["max_conversation_chars"]),
        telegram=TelegramConfig(
            enabled=parse_bool(telegram_cfg.get("enabled")),
            bot_token_env=bot_token_env,
            bot_token=env.get(bot_token_env) or None,
            allowed_chat_ids=set(_parse_int_list(telegram_cfg.get("allowed_chat_ids"))),
            poll_timeout_seconds=int(telegram_cfg["poll_timeout_seconds"]),
            max_message_chars=int(telegram_cfg["max_message_chars"]),
            chat_id_env=chat_id_env,
            notify_chat_id=notify_chat_id,
        ),
        log=LogConfig(
            path=_resolve_path(root, log_cfg["path"]),
            max_bytes=int(log_cfg["max_bytes"]),
            backup_count=int(log_cfg["backup_count"]),
            level=str(log_cfg.get("level") or "info"),
        ),
    )


def _validate_config(cfg: Dict[str, Any]) -> None:
    if cfg.get("version") != CONFIG_VERSION:
        raise ConfigError(f"Unsupported config version; expected {CONFIG_VERSION}")
    runner = cfg.get("runner")
    if not isinstance(runner, dict):
        raise ConfigError("runner section must be a mapping")
    name = str(runner.get("name", "")).strip().lower()
    if name not in RUNNER_NAMES:
        raise ConfigError(
            f"runner.name must be one of {', '.join(sorted(RUNNER_NAMES))}"
        )
    if not isinstance(runner.get("session_map"), str) or not runner["session_map"]:
        raise ConfigError("runner.session_map must be a non-empty string path")
    codex = cfg.get("codex")
    if not isinstance(codex, dict):
        raise ConfigError("codex section must be a mapping")
    if not codex.get("binary"):
        raise ConfigError("codex.binary is required")
    if not isinstance(codex.get("args", []), (list, str)):
        raise ConfigError("codex.args must be a list or a string")
    if not isinstance(codex.get("sandbox"), str) or not codex["sandbox"]:
        raise ConfigError("codex.sandbox must be a non-empty string")
    sessions = cfg.get("sessions")
    if not isinstance(sessions, dict):
        raise ConfigError("sessions section must be a mapping")
    for key in ("list_limit", "max_conversation_chars"):
        if not isinstance(sessions.get(key), int):
            raise ConfigError(f"sessions.{key} must be an integer")
    telegram = cfg.get("telegram")
    if not isinstance(telegram, dict):
        raise ConfigError("telegram section must be a mapping")
    for key in ("poll_timeout_seconds", "max_message_chars"):
        value = telegram.get(key)
        if not isinstance(value, int) or value <= 0:
            raise ConfigError(f"telegram.{key} must be a positive integer")
    log_cfg = cfg.get("log")
    if not isinstance(log_cfg, dict):
        raise ConfigError("log section must be a mapping")
    if not isinstance(log_cfg.get("path", ""), str):
        raise ConfigError("log.path must be a string path")
    for key in ("max_bytes", "backup_count"):
        if not isinstance(log_cfg.get(key, 0), int):
            raise ConfigError(f"log.{key} must be an integer")
