from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Optional, Sequence

import httpx

from .commands import CommandRouter, Formatter
from .config import TelegramConfig
from .logging_utils import log_event
from .notifications import Notification, format_notification
from .session_records import SESSION_TYPE_TELEGRAM
from .session_store import IssuedSession, SessionStore

TELEGRAM_API_BASE = "https://api.telegram.org"
DEFAULT_ALLOWED_UPDATES = ("message", "edited_message")
DEFAULT_MAX_MESSAGE_CHARS = 4000
POLL_RETRY_DELAY_SECONDS = 1.0
REQUEST_TIMEOUT_SECONDS = 30.0
# Extra time on top of the long-poll window before the HTTP read gives up.
POLL_TIMEOUT_GRACE_SECONDS = 10.0


class TelegramBotConfigError(Exception):
    """Raised when the bot cannot start with the given configuration."""


class TelegramAPIError(Exception):
    """Raised when the Bot API answers `ok: false` or an HTTP error."""


@dataclass(frozen=True)
class TelegramMessage:
    update_id: int
    chat_id: int
    from_user_id: Optional[int]
    message_id: int
    text: Optional[str]


def parse_update(update: Any) -> Optional[TelegramMessage]:
    if not isinstance(update, dict):
        return None
    update_id = update.get("update_id")
    message = update.get("message") or update.get("edited_message")
    if not isinstance(update_id, int) or not isinstance(message, dict):
        return None
    chat = message.get("chat")
    if not isinstance(chat, dict) or not isinstance(chat.get("id"), int):
        return None
    sender = message.get("from")
    from_user_id = sender.get("id") if isinstance(sender, dict) else None
    text = message.get("text")
    return TelegramMessage(
        update_id=update_id,
        chat_id=chat["id"],
        from_user_id=from_user_id if isinstance(from_user_id, int) else None,
        message_id=int(message.get("message_id") or 0),
        text=text if isinstance(text, str) else None,
    )


def chunk_message(text: str, max_len: int = DEFAULT_MAX_MESSAGE_CHARS) -> list[str]:
    """Split on newlines where possible so chunks stay readable."""
    if max_len <= 0:
        raise ValueError("max_len must be positive")
    chunks: list[str] = []
    remaining = text
    while len(remaining) > max_len:
        cut = remaining.rfind("\n", 0, max_len)
        if cut <= 0:
            cut = max_len
        chunks.append(remaining[:cut])
        remaining = remaining[cut:].lstrip("\n")
    if remaining or not chunks:
        chunks.append(remaining)
    return chunks


def chat_key(chat_id: int) -> str:
    return f"telegram:{chat_id}"


class TelegramBotClient:
    def __init__(
        self,
        bot_token: str,
        *,
        api_base: str = TELEGRAM_API_BASE,
        client: Optional[httpx.AsyncClient] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._base_url = f"{api_base}/bot{bot_token}"
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(REQUEST_TIMEOUT_SECONDS)
        )
        self._logger = logger or logging.getLogger(__name__)

    async def close(self) -> None:
        await self._client.aclose()

    async def _call(
        self,
        method: str,
        payload: dict[str, Any],
        *,
        timeout: Optional[float] = None,
    ) -> Any:
        url = f"{self._base_url}/{method}"
        try:
            if timeout is None:
                response = await self._client.post(url, json=payload)
            else:
                response = await self._client.post(
                    url, json=payload, timeout=httpx.Timeout(timeout)
                )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise TelegramAPIError(f"Telegram {method} failed: {exc}") from exc
        if not isinstance(data, dict) or not data.get("ok"):
            description = data.get("description") if isinstance(data, dict) else None
            raise TelegramAPIError(
                f"Telegram {method} failed: {description or 'unknown error'}"
            )
        return data.get("result")

    async def get_me(self) -> Any:
        return await self._call("getMe", {})

    async def get_updates(
        self,
        *,
        offset: Optional[int] = None,
        timeout: int = 30,
        allowed_updates: Sequence[str] = DEFAULT_ALLOWED_UPDATES,
    ) -> list[Any]:
        payload: dict[str, Any] = {
            "timeout": timeout,
            "allowed_updates": list(allowed_updates),
        }
        if offset is not None:
            payload["offset"] = offset
        result = await self._call(
            "getUpdates", payload, timeout=timeout + POLL_TIMEOUT_GRACE_SECONDS
        )
        return result if isinstance(result, list) else []

    async def send_message(
        self,
        chat_id: int,
        text: str,
        *,
        reply_to_message_id: Optional[int] = None,
    ) -> Any:
        payload: dict[str, Any] = {
            "chat_id": chat_id,
            "text": text,
            "disable_web_page_preview": True,
        }
        if reply_to_message_id is not None:
            payload["reply_to_message_id"] = reply_to_message_id
        return await self._call("sendMessage", payload)

    async def send_message_chunks(
        self,
        chat_id: int,
        text: str,
        *,
        reply_to_message_id: Optional[int] = None,
        max_len: int = DEFAULT_MAX_MESSAGE_CHARS,
    ) -> list[Any]:
        results = []
        for index, chunk in enumerate(chunk_message(text, max_len)):
            results.append(
                await self.send_message(
                    chat_id,
                    chunk,
                    reply_to_message_id=reply_to_message_id if index == 0 else None,
                )
            )
        return results


class TelegramBotService:
    """Long-polls the Bot API and feeds allowed chats into a CommandRouter."""

    def __init__(
        self,
        config: TelegramConfig,
        router: CommandRouter,
        *,
        bot: Optional[TelegramBotClient] = None,
        store: Optional[SessionStore] = None,
        formatter: Optional[Formatter] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._config = config
        self._router = router
        self._store = store
        self._formatter = formatter
        self._logger = logger or logging.getLogger(__name__)
        self._bot = bot or TelegramBotClient(config.bot_token or "", logger=self._logger)
        self._offset: Optional[int] = None
        self._tasks: set[asyncio.Task] = set()

    def _require_bot(self) -> None:
        if not self._config.enabled:
            raise TelegramBotConfigError(
                "Telegram is disabled; set telegram.enabled: true or TELEGRAM_ENABLED=1"
            )
        if not self._config.bot_token:
            raise TelegramBotConfigError(
                f"Missing bot token; set {self._config.bot_token_env}"
            )

    def validate(self) -> None:
        self._require_bot()
        if not self._config.allowed_chat_ids:
            raise TelegramBotConfigError(
                "telegram.allowed_chat_ids is empty; refusing to answer every chat"
            )

    def is_allowed(self, message: TelegramMessage) -> bool:
        allowed = self._config.allowed_chat_ids
        return message.chat_id in allowed or (
            message.from_user_id is not None and message.from_user_id in allowed
        )

    async def run_polling(self) -> None:
        self.validate()
        log_event(
            self._logger,
            logging.INFO,
            "telegram.bot.started",
            poll_timeout=self._config.poll_timeout_seconds,
            allowed_chats=len(self._config.allowed_chat_ids),
        )
        try:
            while True:
                try:
                    await self.poll_once()
                except TelegramAPIError as exc:
                    log_event(
                        self._logger, logging.WARNING, "telegram.poll.failed", exc=exc
                    )
                    await asyncio.sleep(POLL_RETRY_DELAY_SECONDS)
        finally:
            await self._bot.close()

    async def poll_once(self) -> int:
        updates = await self._bot.get_updates(
            offset=self._offset, timeout=self._config.poll_timeout_seconds
        )
        for update in updates:
            update_id = update.get("update_id") if isinstance(update, dict) else None
            if isinstance(update_id, int) and (
                self._offset is None or update_id >= self._offset
            ):
                self._offset = update_id + 1
            message = parse_update(update)
            if message is not None:
                self._spawn_task(self.dispatch(message))
        return len(updates)

    def _spawn_task(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._log_task_result)

    def _log_task_result(self, task: asyncio.Future) -> None:
        self._tasks.discard(task)
        try:
            task.result()
        except asyncio.CancelledError:
            return
        except Exception as exc:
            log_event(self._logger, logging.WARNING, "telegram.task.failed", exc=exc)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def dispatch(self, message: TelegramMessage) -> None:
        log_event(
            self._logger,
            logging.INFO,
            "telegram.update.received",
            update_id=message.update_id,
            chat_id=message.chat_id,
            user_id=message.from_user_id,
            message_id=message.message_id,
        )
        if not self.is_allowed(message):
            log_event(
                self._logger,
                logging.INFO,
                "telegram.allowlist.denied",
                chat_id=message.chat_id,
                user_id=message.from_user_id,
            )
            await self._send_message(
                message.chat_id, "⚠️ You are not authorized to use this bot."
            )
            return
        text = (message.text or "").strip()
        if not text:
            return
        replies = await self._router.handle(chat_key(message.chat_id), text)
        for reply in replies:
            await self._send_message(
                message.chat_id, reply, reply_to=message.message_id
            )

    async def _send_message(
        self, chat_id: int, text: str, *, reply_to: Optional[int] = None
    ) -> None:
        await self._bot.send_message_chunks(
            chat_id,
            text,
            reply_to_message_id=reply_to,
            max_len=self._config.max_message_chars,
        )

    async def notify(
        self, notification: Notification, *, workdir: str
    ) -> Optional[IssuedSession]:
        """
        Announce a task and issue the token replies must carry.

        The session is saved before sending so the token is live by the time
        the message arrives. If delivery fails the session is removed again
        and None is returned.
        """
        self._require_bot()
        chat_id = self._config.notify_chat_id
        if chat_id is None:
            raise TelegramBotConfigError(
                f"Missing notification chat; set {self._config.chat_id_env}"
            )
        if self._store is None:
            raise TelegramBotConfigError("Notifications need a session store")
        issued = self._store.create_notification_session(
            workdir,
            SESSION_TYPE_TELEGRAM,
            notification.to_dict(),
            tmux_session=notification.tmux_session,
        )
        text = format_notification(
            notification, issued.token, formatter=self._formatter
        )
        try:
            await self._send_message(chat_id, text)
        except TelegramAPIError as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "telegram.notify.failed",
                chat_id=chat_id,
                session_id=issued.session_id,
                exc=exc,
            )
            self._store.remove_session(issued.repo_name, issued.session_id)
            return None
        log_event(
            self._logger,
            logging.INFO,
            "telegram.notify.sent",
            chat_id=chat_id,
            session_id=issued.session_id,
            token=issued.token,
        )
        return issued
