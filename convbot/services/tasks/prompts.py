"""
Turning received files into awaiting-format tasks with a format prompt.
Shared by the burst aggregator and the selection flow.
"""
import logging
import os
import time
from dataclasses import dataclass

from convbot.schemas.tasks import BatchFile, BatchMode, Task, TaskState
from convbot.services.formats import detect_format, target_formats
from convbot.services.notifications.transport import DeliveryError, MessagingTransport
from convbot.services.pricing import quote
from convbot.services.tasks.store import TaskStore, TaskStoreError


logger = logging.getLogger(__name__)

# Name the platform gives to every compressed photo
GENERIC_PHOTO_NAME = "photo.jpg"


@dataclass(frozen=True)
class Submitter:
    user_id: str
    chat_id: str
    locale: str = "en"


def unique_file_name(file_name: str) -> str:
    """Photos all arrive as photo.jpg; make them distinguishable in results."""
    if (file_name or "").strip().lower() != GENERIC_PHOTO_NAME:
        return file_name
    stem, ext = os.path.splitext(file_name.strip())
    return f"{stem}_{time.time_ns()}{ext}"


class FormatPrompter:
    def __init__(self, store: TaskStore, transport: MessagingTransport) -> None:
        self.store = store
        self.transport = transport

    def notify(self, owner: Submitter, key: str, file_name: str | None = None, **params) -> None:
        try:
            self.transport.send_notice(owner.chat_id, key, owner.locale, file_name, **params)
        except DeliveryError as e:
            logger.warning("Notice not delivered", extra={"user_id": owner.user_id, "error": str(e)})

    def prompt_file(self, owner: Submitter, file: BatchFile, batch_parent_id: str = "") -> Task | None:
        """
        Create an awaiting-format task for one file and ask for the target format.
        Files with no usable format get an explanatory notice and no task.
        """
        name = unique_file_name(file.file_name)
        ext = detect_format(name)
        if not ext:
            self.notify(owner, "error.cannot_detect_type", name)
            return None
        targets = target_formats(ext)
        if not targets:
            self.notify(owner, "error.no_conversion_options", name)
            return None

        task = Task(
            user_id=owner.user_id,
            chat_id=owner.chat_id,
            locale=owner.locale,
            file_id=file.file_id,
            file_name=name,
            file_size=file.file_size,
            source_format=ext,
            batch_parent_id=batch_parent_id,
        )
        self.store.create(task)
        self._attach_status(task, self.transport.prompt_format(task, targets))
        return task

    def prompt_group_format(self, task: Task) -> None:
        self._attach_status(task, self.transport.prompt_format(task, target_formats(task.source_format)))

    def prompt_group_choice(self, task: Task) -> None:
        self._attach_status(task, self.transport.prompt_batch_choice(task))

    def _attach_status(self, task: Task, target) -> None:
        if target is None:
            return
        task.status_message_id = target.message_id
        task.touch()
        self.store.update(task)

    def refresh_open_prompts(
        self,
        user_id: str,
        remaining: int,
        unlimited: bool = False,
        exclude_task_id: str = "",
    ) -> int:
        """
        Re-render the user's other open format prompts after a balance change:
        targets the user can no longer afford disappear and the remaining
        credits are shown. Returns the number of prompts edited.
        """
        try:
            tasks = self.store.list_user_tasks(user_id)
        except TaskStoreError as e:
            logger.warning("Open prompts not refreshed", extra={"user_id": user_id, "error": str(e)})
            return 0

        refreshed = 0
        for task in tasks:
            if task.id == exclude_task_id or not self._shows_format_prompt(task):
                continue
            targets = target_formats(task.source_format)
            if not unlimited:
                targets = [t for t in targets if self._price(task, t) <= max(remaining, 0)]
            self.transport.refresh_format_prompt(task, targets, None if unlimited else remaining)
            refreshed += 1
        return refreshed

    @staticmethod
    def _shows_format_prompt(task: Task) -> bool:
        if task.state != TaskState.AWAITING_FORMAT or not task.status_message_id or task.is_collector:
            return False
        # An undecided group shows the all/separate choice instead
        return not task.is_group or task.batch_mode == BatchMode.ALL

    @staticmethod
    def _price(task: Task, target: str) -> int:
        if task.is_group:
            return sum(quote(task.source_format, target, f.file_size).credits for f in task.batch_files)
        return quote(task.source_format, target, task.file_size).credits
