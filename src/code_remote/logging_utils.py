import collections
import json
import logging
from logging.handlers import RotatingFileHandler
from typing import TYPE_CHECKING, Any, Optional, OrderedDict

if TYPE_CHECKING:
    from .config import LogConfig

_MAX_CACHED_LOGGERS = 64
_LOGGER_CACHE: "OrderedDict[str, logging.Logger]" = collections.OrderedDict()


def setup_rotating_logger(name: str, log_config: "LogConfig") -> logging.Logger:
    """
    Configure (or retrieve) an isolated rotating logger for the given name.
    Each logger owns a single handler so the bot and CLI never share files.
    """
    existing = _LOGGER_CACHE.get(name)
    if existing is not None:
        _LOGGER_CACHE.move_to_end(name)
        return existing

    log_path = log_config.path
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_path,
        maxBytes=log_config.max_bytes,
        backupCount=log_config.backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))

    logger = logging.getLogger(name)
    logger.handlers.clear()
    logger.setLevel(logging.getLevelName(log_config.level.upper()))
    logger.addHandler(handler)
    logger.propagate = False

    _LOGGER_CACHE[name] = logger
    _LOGGER_CACHE.move_to_end(name)
    while len(_LOGGER_CACHE) > _MAX_CACHED_LOGGERS:
        _, evicted = _LOGGER_CACHE.popitem(last=False)
        try:
            for h in list(evicted.handlers):
                try:
                    h.close()
                except Exception:
                    pass
            evicted.handlers.clear()
        except Exception:
            pass
    return logger


def _json_default(value: Any) -> str:
    return str(value)


def log_event(
    logger: logging.Logger,
    level: int,
    event: str,
    *,
    exc: Optional[BaseException] = None,
    **fields: Any,
) -> None:
    """Emit a single structured log line: {"event": ..., **fields}."""
    payload: dict[str, Any] = {"event": event}
    for key, value in fields.items():
        if value is None:
            continue
        payload[key] = value
    if exc is not None:
        payload["error"] = str(exc) or exc.__class__.__name__
        payload["error_type"] = exc.__class__.__name__
    try:
        logger.log(level, json.dumps(payload, default=_json_default))
    except Exception:
        pass

