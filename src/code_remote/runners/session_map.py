import logging
from pathlib import Path
from typing import Dict, Optional

from ..logging_utils import log_event
from ..utils import now_iso, read_json_safe, write_json_atomic


class RunnerSessionMap:
    """
    sessionKey -> continuation id, persisted as
    `{"sessions": {key: id}, "lastUpdated": iso}`.

    Updates are whole-file read-modify-write. Two concurrent writers can race
    and the later write wins; unlike the session indexes there is no rebuild
    source for this file.
    """

    def __init__(self, path: Path, *, logger: Optional[logging.Logger] = None) -> None:
        self._path = path
        self._logger = logger or logging.getLogger(__name__)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> Dict[str, str]:
        data = read_json_safe(self._path, {"sessions": {}}, logger=self._logger)
        raw = data.get("sessions")
        if not isinstance(raw, dict):
            return {}
        return {
            key: value
            for key, value in raw.items()
            if isinstance(key, str) and isinstance(value, str) and value
        }

    def get(self, session_key: str) -> Optional[str]:
        return self.load().get(session_key)

    def has(self, session_key: str) -> bool:
        return self.get(session_key) is not None

    def set(self, session_key: str, continuation_id: str) -> None:
        sessions = self.load()
        sessions[session_key] = continuation_id
        self._save(sessions)
        log_event(
            self._logger,
            logging.INFO,
            "runner.session_map.saved",
            session_key=session_key,
            continuation_id=continuation_id,
        )

    def clear(self) -> None:
        self._save({})
        log_event(self._logger, logging.INFO, "runner.session_map.cleared")

    def clear_key(self, session_key: str) -> bool:
        sessions = self.load()
        if session_key not in sessions:
            return False
        del sessions[session_key]
        self._save(sessions)
        log_event(
            self._logger,
            logging.INFO,
            "runner.session_map.key_cleared",
            session_key=session_key,
        )
        return True

    def _save(self, sessions: Dict[str, str]) -> None:
        write_json_atomic(self._path, {"sessions": sessions, "lastUpdated": now_iso()})
