import logging
from pathlib import Path
from typing import Any, Dict, Optional

from .logging_utils import log_event
from .tokens import normalize_token
from .utils import now_iso, read_json_safe, write_json_atomic


class CurrentTokenStore:
    """Per-chat working token, so a chat can send bare text to one session."""

    def __init__(self, path: Path, *, logger: Optional[logging.Logger] = None) -> None:
        self._path = path
        self._logger = logger or logging.getLogger(__name__)

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> Dict[str, Dict[str, Any]]:
        data = read_json_safe(self._path, {"chats": {}}, logger=self._logger)
        chats = data.get("chats")
        if not isinstance(chats, dict):
            return {}
        return {
            key: value
            for key, value in chats.items()
            if isinstance(key, str) and isinstance(value, dict)
        }

    def _save(self, chats: Dict[str, Dict[str, Any]]) -> None:
        write_json_atomic(self._path, {"chats": chats})

    def set_token(self, chat_key: str, token: str) -> str:
        canonical = normalize_token(token)
        if canonical is None:
            raise ValueError(f"Invalid token: {token}")
        chats = self._load()
        chats[chat_key] = {"token": canonical, "updatedAt": now_iso()}
        self._save(chats)
        log_event(
            self._logger,
            logging.INFO,
            "current_token.set",
            chat_key=chat_key,
            token=canonical,
        )
        return canonical

    def get_token(self, chat_key: str) -> Optional[str]:
        entry = self._load().get(chat_key)
        if entry is None:
            return None
        return normalize_token(entry.get("token"))

    def clear_token(self, chat_key: str) -> bool:
        chats = self._load()
        if chat_key not in chats:
            return False
        del chats[chat_key]
        self._save(chats)
        log_event(self._logger, logging.INFO, "current_token.cleared", chat_key=chat_key)
        return True
