"""
Format selection: the step between an awaiting-format task and the scheduler.
Credits are consumed here, before anything is enqueued.
"""
import logging
from dataclasses import dataclass
from enum import Enum

from convbot.schemas.tasks import (
    BatchFile,
    BatchMode,
    ConversionOptions,
    ProfileOptions,
    Task,
    TaskState,
    VIDEO_OPTIONS,
    VideoGifOptions,
)
from convbot.services.credits.service import CreditLedger
from convbot.services.failure_types import FailureKind
from convbot.services.formats import is_supported_target, is_video, normalize_ext
from convbot.services.notifications.transport import MessagingTransport, NotifyTarget
from convbot.services.pricing import quote
from convbot.services.tasks.prompts import FormatPrompter, Submitter
from convbot.services.tasks.store import TaskStore
from convbot.utils.metrics import jobs_failed_total
from convbot.workers.scheduler import DUPLICATE_ENQUEUE, JobScheduler


logger = logging.getLogger(__name__)


class SelectionStatus(str, Enum):
    STARTED = "started"
    QUEUED = "queued"
    ALREADY_QUEUED = "already_queued"
    BATCH_STARTED = "batch_started"
    INSUFFICIENT_CREDITS = "insufficient_credits"


@dataclass(frozen=True)
class SelectionOutcome:
    status: SelectionStatus
    position: int | None = None
    remaining: int | None = None
    unlimited: bool = False
    task_ids: tuple[str, ...] = ()


class SelectionError(Exception):
    pass


class TaskNotOwned(SelectionError):
    pass


class UnsupportedTarget(SelectionError):
    pass


class InvalidAction(SelectionError):
    pass


class SelectionService:
    def __init__(
        self,
        store: TaskStore,
        ledger: CreditLedger,
        scheduler: JobScheduler,
        transport: MessagingTransport,
        prompter: FormatPrompter | None = None,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.scheduler = scheduler
        self.transport = transport
        self.prompter = prompter or FormatPrompter(store, transport)

    def submit_file(self, owner: Submitter, file: BatchFile) -> Task | None:
        """Single file outside any collection: prompt for a format right away."""
        return self.prompter.prompt_file(owner, file)

    def choose_batch_mode(self, user_id: str, task_id: str, mode: BatchMode) -> list[Task]:
        task = self._owned(user_id, task_id)
        if not task.is_group or task.state != TaskState.AWAITING_FORMAT or task.batch_mode != BatchMode.NONE:
            raise InvalidAction(f"task {task_id} is not an undecided group")
        self._drop_status(task)

        if mode == BatchMode.SEPARATE:
            self.store.delete(task.id)
            owner = Submitter(user_id=task.user_id, chat_id=task.chat_id, locale=task.locale)
            created = [self.prompter.prompt_file(owner, f) for f in task.batch_files]
            return [t for t in created if t is not None]

        if mode == BatchMode.ALL:
            task.batch_mode = BatchMode.ALL
            task.status_message_id = None
            task.touch()
            self.store.update(task)
            self.prompter.prompt_group_format(task)
            return [task]

        raise InvalidAction(f"unknown batch mode: {mode!r}")

    def choose_format(
        self,
        user_id: str,
        task_id: str,
        target_format: str,
        options: ConversionOptions | None = None,
    ) -> SelectionOutcome:
        task = self._owned(user_id, task_id)
        if task.state == TaskState.PROCESSING:
            return SelectionOutcome(status=SelectionStatus.ALREADY_QUEUED)
        if task.state != TaskState.AWAITING_FORMAT:
            raise InvalidAction(f"task {task_id} is {task.state.value}")

        target = normalize_ext(target_format)
        if isinstance(options, ProfileOptions):
            target = options.resolved["target"]
        if isinstance(options, VIDEO_OPTIONS) and not is_video(task.source_format):
            raise UnsupportedTarget(f"{options.kind} needs a video source, got {task.source_format}")
        if isinstance(options, VideoGifOptions):
            target = "gif"
        if not is_supported_target(task.source_format, target):
            raise UnsupportedTarget(f"{task.source_format} -> {target}")

        if task.is_group:
            if task.batch_mode != BatchMode.ALL:
                raise InvalidAction(f"group {task_id} has no batch mode yet")
            return self._start_group(task, target, options)
        return self._start_single(task, target, options)

    def _start_single(self, task: Task, target: str, options: ConversionOptions | None) -> SelectionOutcome:
        price = quote(task.source_format, target, task.file_size)
        charge = self.ledger.consume(task.user_id, price.credits)
        if charge.insufficient:
            return self._insufficient(task, price.credits, charge.remaining)
        self.prompter.refresh_open_prompts(task.user_id, charge.remaining, charge.unlimited, exclude_task_id=task.id)

        task.start_processing(target, options)
        task.unlimited = charge.unlimited
        task.priority = charge.unlimited
        task.heavy = price.heavy
        task.credits_remaining = None if charge.unlimited else charge.remaining
        self.store.update(task)

        status_target = None
        if task.status_message_id:
            status_target = NotifyTarget(chat_id=task.chat_id, message_id=task.status_message_id)
        position = self.scheduler.enqueue_task(task.id, status_target, task.file_name, task.locale, task.priority)

        if position == DUPLICATE_ENQUEUE:
            status = SelectionStatus.ALREADY_QUEUED
            key = "queue.already_queued"
        elif position == 0:
            status = SelectionStatus.STARTED
            key = "queue.started"
        else:
            status = SelectionStatus.QUEUED
            key = "queue.queued"
        if status_target is not None:
            self.transport.edit_status(
                status_target,
                key,
                task.locale,
                task.file_name,
                suffix_key="queue.priority_suffix" if task.priority else None,
                position=position,
            )
        return SelectionOutcome(
            status=status,
            position=position,
            remaining=task.credits_remaining,
            unlimited=charge.unlimited,
            task_ids=(task.id,),
        )

    def _start_group(self, group: Task, target: str, options: ConversionOptions | None) -> SelectionOutcome:
        quotes = [quote(group.source_format, target, f.file_size) for f in group.batch_files]
        total = sum(q.credits for q in quotes)
        charge = self.ledger.consume(group.user_id, total)
        if charge.insufficient:
            return self._insufficient(group, total, charge.remaining)

        task_ids = []
        for f, q in zip(group.batch_files, quotes):
            child = Task(
                user_id=group.user_id,
                chat_id=group.chat_id,
                locale=group.locale,
                file_id=f.file_id,
                file_name=f.file_name,
                file_size=f.file_size,
                source_format=group.source_format,
                batch_parent_id=group.id,
                unlimited=charge.unlimited,
                priority=charge.unlimited,
                heavy=q.heavy,
                credits_remaining=None if charge.unlimited else charge.remaining,
            )
            child.start_processing(target, options)
            self.store.create(child)
            self.scheduler.enqueue_task(child.id, None, child.file_name, child.locale, child.priority)
            task_ids.append(child.id)

        self._drop_status(group)
        self.store.delete(group.id)
        self.prompter.refresh_open_prompts(group.user_id, charge.remaining, charge.unlimited, exclude_task_id=group.id)
        owner = Submitter(user_id=group.user_id, chat_id=group.chat_id, locale=group.locale)
        self.prompter.notify(owner, "batch.started", count=len(task_ids))
        logger.info(
            "Batch started",
            extra={"task_id": group.id, "user_id": group.user_id, "files": len(task_ids), "credits": total},
        )
        return SelectionOutcome(
            status=SelectionStatus.BATCH_STARTED,
            remaining=None if charge.unlimited else charge.remaining,
            unlimited=charge.unlimited,
            task_ids=tuple(task_ids),
        )

    def _insufficient(self, task: Task, credits: int, remaining: int) -> SelectionOutcome:
        jobs_failed_total.labels(failure=FailureKind.INSUFFICIENT_CREDITS.value).inc()
        logger.info(
            "Selection rejected: insufficient credits",
            extra={"task_id": task.id, "user_id": task.user_id, "credits": credits, "remaining": remaining},
        )
        # The rejected prompt is refreshed too: it may offer targets the user can no longer pay for
        self.prompter.refresh_open_prompts(task.user_id, remaining)
        return SelectionOutcome(status=SelectionStatus.INSUFFICIENT_CREDITS, remaining=remaining)

    def _owned(self, user_id: str, task_id: str) -> Task:
        task = self.store.get(task_id)
        if task.user_id != str(user_id):
            raise TaskNotOwned(task_id)
        return task

    def _drop_status(self, task: Task) -> None:
        if task.status_message_id:
            self.transport.delete_status(NotifyTarget(chat_id=task.chat_id, message_id=task.status_message_id))
