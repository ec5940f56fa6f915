"""
Messaging transport used by the scheduler, aggregator and selection flow.
Callers pass template keys and parameters; rendering happens here.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

import httpx

from convbot.schemas.tasks import Task
from convbot.services.messages.catalog import render
from convbot.services.telegram.client import TelegramAPIError, TelegramClient


logger = logging.getLogger(__name__)

# Inline keyboard callback data
FORMAT_CALLBACK = "{fmt}_for_{task_id}"
BATCH_ALL_CALLBACK = "batch_all_{task_id}"
BATCH_SEPARATE_CALLBACK = "batch_sep_{task_id}"
FORMAT_BUTTONS_PER_ROW = 3


@dataclass(frozen=True)
class NotifyTarget:
    """A status message that can be edited or deleted later."""
    chat_id: str
    message_id: int


class DeliveryError(Exception):
    """Result or message could not be delivered to the user."""


class MessagingTransport(ABC):
    @abstractmethod
    def send_status(self, chat_id: str, key: str, locale: str, file_name: str | None = None, **params) -> NotifyTarget | None:
        """Send a status message. Returns None when it could not be sent."""
        pass

    @abstractmethod
    def edit_status(self, target: NotifyTarget, key: str, locale: str, file_name: str | None = None, suffix_key: str | None = None, **params) -> None:
        """Best effort; failures are logged, never raised."""
        pass

    @abstractmethod
    def delete_status(self, target: NotifyTarget) -> None:
        """Best effort; failures are logged, never raised."""
        pass

    @abstractmethod
    def send_notice(self, chat_id: str, key: str, locale: str, file_name: str | None = None, **params) -> None:
        """Raises DeliveryError."""
        pass

    @abstractmethod
    def send_result(self, chat_id: str, path: str, file_name: str, caption: str | None = None) -> str:
        """Upload a converted file. Returns the platform file reference. Raises DeliveryError."""
        pass

    @abstractmethod
    def prompt_format(self, task: Task, targets: list[str]) -> NotifyTarget | None:
        pass

    @abstractmethod
    def refresh_format_prompt(self, task: Task, targets: list[str], remaining: int | None = None) -> None:
        """
        Rewrite an open format prompt in place. remaining=None means unlimited:
        no credits line. Best effort, like edit_status.
        """
        pass

    @abstractmethod
    def prompt_batch_choice(self, task: Task) -> NotifyTarget | None:
        pass


_SEND_ERRORS = (httpx.HTTPError, TelegramAPIError, OSError, ValueError)


class TelegramTransport(MessagingTransport):
    def __init__(self, client: TelegramClient | None = None) -> None:
        self.client = client or TelegramClient()

    def _send(self, chat_id: str, text: str, reply_markup: dict | None = None) -> NotifyTarget | None:
        try:
            result = self.client.send_message(chat_id, text, reply_markup=reply_markup)
        except _SEND_ERRORS:
            return None
        message_id = (result.get("result") or {}).get("message_id")
        if message_id is None:
            return None
        return NotifyTarget(chat_id=str(chat_id), message_id=int(message_id))

    def send_status(self, chat_id, key, locale, file_name=None, **params):
        return self._send(chat_id, render(key, locale, file_name, **params))

    def edit_status(self, target, key, locale, file_name=None, suffix_key=None, **params):
        text = render(key, locale, file_name, **params)
        if suffix_key:
            text += render(suffix_key, locale)
        self.client.edit_message(target.chat_id, target.message_id, text)

    def delete_status(self, target):
        self.client.delete_message(target.chat_id, target.message_id)

    def send_notice(self, chat_id, key, locale, file_name=None, **params):
        try:
            self.client.send_message(chat_id, render(key, locale, file_name, **params))
        except _SEND_ERRORS as e:
            raise DeliveryError(str(e)) from e

    def send_result(self, chat_id, path, file_name, caption=None):
        try:
            result = self.client.send_document(chat_id, path, file_name=file_name, caption=caption)
        except _SEND_ERRORS as e:
            raise DeliveryError(f"send document failed: {e}") from e
        document = (result.get("result") or {}).get("document") or {}
        return document.get("file_id", "")

    @staticmethod
    def _format_keyboard(task: Task, targets: list[str]) -> dict:
        rows, row = [], []
        for fmt in targets:
            row.append((fmt, FORMAT_CALLBACK.format(fmt=fmt.lower(), task_id=task.id)))
            if len(row) == FORMAT_BUTTONS_PER_ROW:
                rows.append(row)
                row = []
        if row:
            rows.append(row)
        return TelegramClient.inline_keyboard(rows)

    @staticmethod
    def _format_prompt_text(task: Task) -> str:
        if task.is_group:
            return render("batch.choose_format", task.locale, count=len(task.batch_files), ext=task.source_format)
        return render("file.choose_format", task.locale, task.file_name)

    def prompt_format(self, task, targets):
        return self._send(task.chat_id, self._format_prompt_text(task), self._format_keyboard(task, targets))

    def refresh_format_prompt(self, task, targets, remaining=None):
        if not task.status_message_id:
            return
        text = self._format_prompt_text(task)
        if remaining is not None:
            text += "\n\n" + render("credits.remaining_line", task.locale, remaining=remaining)
            if remaining <= 0:
                text += "\n" + render("credits.no_credits_hint", task.locale)
        # An empty keyboard removes the buttons
        self.client.edit_message(
            task.chat_id, task.status_message_id, text, reply_markup=self._format_keyboard(task, targets)
        )

    def prompt_batch_choice(self, task):
        markup = TelegramClient.inline_keyboard([
            [(render("batch.button_all", task.locale), BATCH_ALL_CALLBACK.format(task_id=task.id))],
            [(render("batch.button_separate", task.locale), BATCH_SEPARATE_CALLBACK.format(task_id=task.id))],
        ])
        text = render("batch.choice", task.locale, count=len(task.batch_files), ext=task.source_format)
        return self._send(task.chat_id, text, markup)
