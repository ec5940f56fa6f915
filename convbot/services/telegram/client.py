"""
Telegram Bot API client on a sync httpx client.
Called from scheduler workers, the notifier thread and aggregator timers,
so there is no event loop anywhere on this path.
"""
import os
import time
import logging

import httpx

from convbot.core.config import settings
from convbot.utils.metrics import (
    telegram_requests_total,
    telegram_request_duration_seconds,
)


logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"
# Longest flood-control pause honoured inline; longer ones fail the call
MAX_RETRY_AFTER_SECONDS = 5
NOT_MODIFIED = "message is not modified"


class TelegramAPIError(Exception):
    def __init__(self, method: str, error_code: int, description: str, retry_after: int | None = None):
        super().__init__(f"{error_code}: {description}")
        self.method = method
        self.error_code = error_code
        self.description = description
        self.retry_after = retry_after


class TelegramClient:
    """Thread-safe: one httpx.Client shared by all callers."""

    def __init__(self, token: str | None = None, http_client: httpx.Client | None = None) -> None:
        self._token = token or settings.telegram_bot_token
        self._base_url = f"{TELEGRAM_API_BASE}/bot{self._token}"
        self._client = http_client

    @property
    def client(self) -> httpx.Client:
        """Lazy initialization of httpx client."""
        if self._client is None:
            self._client = httpx.Client(timeout=settings.telegram_request_timeout)
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def _post(self, method: str, data: dict, files: dict | None = None) -> dict:
        url = f"{self._base_url}/{method}"
        if files:
            resp = self.client.post(url, data=data, files=files)
        else:
            resp = self.client.post(url, json=data)
        result = resp.json()
        if not result.get("ok"):
            params = result.get("parameters") or {}
            raise TelegramAPIError(
                method,
                result.get("error_code", 0),
                result.get("description", "Unknown error"),
                retry_after=params.get("retry_after"),
            )
        return result

    def _call(self, method: str, data: dict, files: dict | None = None) -> dict:
        """POST one Bot API method, recording outcome and latency. One retry on short flood waits."""
        start = time.time()
        try:
            try:
                result = self._post(method, data, files)
            except TelegramAPIError as e:
                if e.error_code != 429 or not e.retry_after or e.retry_after > MAX_RETRY_AFTER_SECONDS or files:
                    raise
                logger.warning(f"Telegram flood wait {e.retry_after}s on {method}")
                time.sleep(e.retry_after)
                result = self._post(method, data, files)
        except (TelegramAPIError, httpx.HTTPError):
            # Callers decide how loud a failure is
            self._record_request(method, "error", time.time() - start)
            raise
        self._record_request(method, "success", time.time() - start)
        return result

    def _record_request(self, method: str, status: str, duration: float) -> None:
        telegram_requests_total.labels(method=method, status=status).inc()
        telegram_request_duration_seconds.labels(method=method).observe(duration)

    @staticmethod
    def _text_payload(chat_id: str, text: str, reply_markup: dict | None, parse_mode: str | None) -> dict:
        data = {"chat_id": int(chat_id), "text": text}
        if reply_markup:
            data["reply_markup"] = reply_markup
        if parse_mode:
            data["parse_mode"] = parse_mode
        return data

    def send_message(
        self,
        chat_id: str,
        text: str,
        reply_markup: dict | None = None,
        parse_mode: str | None = "HTML",
    ) -> dict:
        try:
            return self._call("sendMessage", self._text_payload(chat_id, text, reply_markup, parse_mode))
        except (httpx.HTTPError, TelegramAPIError, ValueError) as e:
            logger.error("Failed to send message", extra={"error": str(e), "chat_id": chat_id})
            raise

    def edit_message(
        self,
        chat_id: str,
        message_id: int,
        text: str,
        reply_markup: dict | None = None,
        parse_mode: str | None = "HTML",
    ) -> None:
        """Best effort: status edits race with deletes and with each other."""
        try:
            data = self._text_payload(chat_id, text, reply_markup, parse_mode)
            data["message_id"] = int(message_id)
            self._call("editMessageText", data)
        except TelegramAPIError as e:
            if NOT_MODIFIED in e.description:
                return
            logger.warning(f"Failed to edit message: {e} | chat={chat_id}, msg_id={message_id}")
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Failed to edit message: {e} | chat={chat_id}, msg_id={message_id}")

    def delete_message(self, chat_id: str, message_id: int) -> None:
        try:
            self._call("deleteMessage", {"chat_id": int(chat_id), "message_id": int(message_id)})
        except (httpx.HTTPError, TelegramAPIError, ValueError) as e:
            logger.warning("Failed to delete message", extra={"error": str(e), "chat_id": chat_id, "message_id": message_id})

    def send_document(
        self,
        chat_id: str,
        document_path: str,
        file_name: str | None = None,
        caption: str | None = None,
        parse_mode: str | None = "HTML",
    ) -> dict:
        """Upload a local file. result.document.file_id is the reference kept on the task."""
        try:
            data = {"chat_id": int(chat_id)}
            if caption:
                data["caption"] = caption
                if parse_mode:
                    data["parse_mode"] = parse_mode
            with open(document_path, "rb") as f:
                name = file_name or os.path.basename(document_path)
                return self._call("sendDocument", data, files={"document": (name, f, "application/octet-stream")})
        except (httpx.HTTPError, TelegramAPIError, OSError, ValueError) as e:
            logger.error("Failed to send document", extra={"error": str(e), "chat_id": chat_id, "path": document_path})
            raise

    @staticmethod
    def inline_keyboard(rows: list[list[tuple[str, str]]]) -> dict:
        """[[(text, callback_data), ...], ...] -> reply_markup"""
        return {
            "inline_keyboard": [
                [{"text": text, "callback_data": data} for text, data in row]
                for row in rows
            ]
        }
