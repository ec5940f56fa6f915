"""
In-process job scheduler.

N worker threads pull task ids from two bounded lanes (priority first).
Heavy jobs additionally pass a global gate of capacity 1. Every queued or
running job has an in-flight entry holding the status message to edit and
the queue position last shown to the user.

Positions shown to the user never go up. A waiting job reaches 0 only when
a worker picks it up; at that point it gets the "started" edit.
"""
import itertools
import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import dataclass

from convbot.core.config import settings
from convbot.schemas.tasks import Task
from convbot.services.conversion.base import (
    ConversionContext,
    ConversionError,
    ConversionRequest,
    ConversionResult,
    ConversionTimeout,
    Converter,
)
from convbot.services.failure_types import FailureKind, TERMINAL_FAILURES
from convbot.services.messages.catalog import render
from convbot.services.notifications.transport import DeliveryError, MessagingTransport, NotifyTarget
from convbot.services.pricing import is_heavy
from convbot.services.tasks.store import TaskStore, TaskStoreError
from convbot.utils.metrics import (
    active_jobs,
    heavy_gate_wait_seconds,
    inflight_jobs,
    job_duration_seconds,
    jobs_enqueued_total,
    jobs_failed_total,
    jobs_succeeded_total,
    queue_length,
)
from convbot.workers.lanes import LaneClosed, PriorityLanes, QueueItem


logger = logging.getLogger(__name__)

DUPLICATE_ENQUEUE = -1
# How often blocked workers and pushers re-check the stop flag
POLL_INTERVAL = 0.5


@dataclass
class InflightEntry:
    task_id: str
    target: NotifyTarget | None
    position: int
    display_name: str
    locale: str
    priority: bool
    seq: int
    running: bool = False


@dataclass(frozen=True)
class PositionUpdate:
    target: NotifyTarget
    display_name: str
    locale: str
    position: int


class JobScheduler:
    def __init__(
        self,
        store: TaskStore,
        converter: Converter,
        transport: MessagingTransport,
        workers: int | None = None,
        queue_size: int | None = None,
        conversion_timeout: float | None = None,
    ) -> None:
        self.store = store
        self.converter = converter
        self.transport = transport
        self.workers = workers or settings.scheduler_workers
        self.queue_size = queue_size or (settings.queue_size if workers is None else max(self.workers * 2, 10))
        self.conversion_timeout = conversion_timeout or settings.conversion_timeout_seconds

        self._lanes = PriorityLanes(self.queue_size)
        self._inflight: dict[str, InflightEntry] = {}
        self._lock = threading.Lock()
        self._heavy_gate = threading.Semaphore(1)
        self._stop = threading.Event()
        self._seq = itertools.count()
        self._threads: list[threading.Thread] = []
        # Position edits go through one thread so workers never wait on the messenger
        self._notifier = ThreadPoolExecutor(max_workers=1, thread_name_prefix="scheduler-notify")
        # Timed-out conversions keep their thread until the converter gives up; leave headroom
        self._conversions = ThreadPoolExecutor(max_workers=self.workers * 2, thread_name_prefix="scheduler-convert")

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    def start(self, recover: bool = True) -> None:
        if self._threads:
            return
        if recover:
            self.recover_processing_tasks()
        for i in range(self.workers):
            t = threading.Thread(target=self._worker_loop, args=(i,), name=f"scheduler-worker-{i}", daemon=True)
            t.start()
            self._threads.append(t)
        logger.info("Scheduler started", extra={"worker": self.workers})

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        self._lanes.close()
        for t in self._threads:
            t.join(timeout)
        self._notifier.shutdown(wait=True)
        self._conversions.shutdown(wait=False, cancel_futures=True)
        logger.info("Scheduler stopped")

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    # ------------------------------------------------------------------
    # enqueue
    # ------------------------------------------------------------------

    def enqueue_task(
        self,
        task_id: str,
        target: NotifyTarget | None,
        display_name: str,
        locale: str,
        priority: bool,
    ) -> int:
        """
        Register a job and queue it without blocking the caller.
        Returns the estimated position (0 = starts now) or DUPLICATE_ENQUEUE.
        """
        with self._lock:
            if task_id in self._inflight:
                jobs_failed_total.labels(failure=FailureKind.DUPLICATE_ENQUEUE.value).inc()
                return DUPLICATE_ENQUEUE
            position = self._estimate_position_locked(priority)
            self._inflight[task_id] = InflightEntry(
                task_id=task_id,
                target=target,
                position=position,
                display_name=display_name,
                locale=locale,
                priority=priority,
                seq=next(self._seq),
            )
            inflight_jobs.set(len(self._inflight))

        jobs_enqueued_total.labels(lane="priority" if priority else "normal").inc()
        logger.info(
            "Task enqueued",
            extra={"task_id": task_id, "position": position, "priority": priority},
        )
        pusher = threading.Thread(
            target=self._push,
            args=(QueueItem(task_id=task_id, priority=priority),),
            name=f"scheduler-enqueue-{task_id[:8]}",
            daemon=True,
        )
        pusher.start()
        return position

    def _estimate_position_locked(self, priority: bool) -> int:
        starting = sum(1 for e in self._inflight.values() if e.position == 0)
        if starting < self.workers:
            return 0
        # A priority job only waits behind other priority jobs
        ahead = sum(1 for e in self._inflight.values() if e.position > 0 and (e.priority or not priority))
        return ahead + 1

    def _push(self, item: QueueItem) -> None:
        while not self._stop.is_set():
            try:
                if self._lanes.put(item, timeout=POLL_INTERVAL):
                    self._update_queue_gauges()
                    return
            except LaneClosed:
                break
        with self._lock:
            self._inflight.pop(item.task_id, None)
            inflight_jobs.set(len(self._inflight))
        logger.info("Enqueue abandoned on shutdown", extra={"task_id": item.task_id})

    def recover_processing_tasks(self) -> int:
        """Re-enqueue tasks left in the processing state by a previous run."""
        try:
            tasks = self.store.list_processing()
        except TaskStoreError as e:
            jobs_failed_total.labels(failure=FailureKind.STORAGE_FAILURE.value).inc()
            logger.error("Recovery skipped: task store unavailable", extra={"error": str(e)})
            return 0
        recovered = 0
        for task in tasks:
            if not task.target_format:
                continue
            target = None
            if task.chat_id and task.status_message_id:
                target = NotifyTarget(chat_id=task.chat_id, message_id=task.status_message_id)
            if self.enqueue_task(task.id, target, task.file_name, task.locale, task.priority) != DUPLICATE_ENQUEUE:
                recovered += 1
        logger.info(f"Recovered {recovered} processing tasks")
        return recovered

    # ------------------------------------------------------------------
    # workers
    # ------------------------------------------------------------------

    def _worker_loop(self, worker_id: int) -> None:
        while not self._stop.is_set():
            try:
                item = self._lanes.get(timeout=POLL_INTERVAL)
            except LaneClosed:
                return
            if item is None:
                continue
            self._update_queue_gauges()
            try:
                self._run(item, worker_id)
            except Exception as e:
                # One broken job must not take the worker down
                logger.exception("Unexpected worker error", extra={"task_id": item.task_id, "worker": worker_id, "error": str(e)})

    def _run(self, item: QueueItem, worker_id: int) -> None:
        entry = self._mark_running(item.task_id)
        if entry is None:
            return
        keep_status = False
        try:
            try:
                task = self.store.get(item.task_id)
            except TaskStoreError as e:
                jobs_failed_total.labels(failure=FailureKind.STORAGE_FAILURE.value).inc()
                logger.error("Task not loadable, dropping", extra={"task_id": item.task_id, "error": str(e)})
                return

            heavy = task.heavy if task.heavy is not None else is_heavy(task.source_format, task.target_format, task.file_size)
            if heavy and not self._acquire_heavy():
                # Shutting down; the task stays in processing and is recovered on next start
                keep_status = True
                return
            try:
                self._process(task, worker_id, heavy)
            finally:
                if heavy:
                    self._heavy_gate.release()
        finally:
            self._finish(entry, delete_status=not keep_status)

    def _mark_running(self, task_id: str) -> InflightEntry | None:
        with self._lock:
            entry = self._inflight.get(task_id)
            if entry is None:
                return None
            started = entry.position != 0
            entry.position = 0
            entry.running = True
            if started and entry.target is not None:
                self._dispatch([PositionUpdate(entry.target, entry.display_name, entry.locale, 0)])
        return entry

    def _acquire_heavy(self) -> bool:
        start = time.time()
        while not self._stop.is_set():
            if self._heavy_gate.acquire(timeout=POLL_INTERVAL):
                heavy_gate_wait_seconds.observe(time.time() - start)
                return True
        return False

    def _process(self, task: Task, worker_id: int, heavy: bool) -> None:
        log_extra = {"task_id": task.id, "user_id": task.user_id, "worker": worker_id, "heavy": heavy}
        logger.info("Conversion started", extra={**log_extra, "target_format": task.target_format})
        start = time.time()
        active_jobs.inc()
        try:
            try:
                result = self._convert(task)
            except ConversionTimeout as e:
                self._fail(task, FailureKind.CONVERSION_TIMEOUT, e)
                return
            except ConversionError as e:
                self._fail(task, FailureKind.CONVERSION_FAILURE, e)
                return

            try:
                result_ref = self.transport.send_result(
                    task.chat_id, result.path, result.file_name, caption=self._result_caption(task),
                )
            except DeliveryError as e:
                self._fail(task, FailureKind.DELIVERY_FAILURE, e)
                return
            finally:
                _remove_file(result.path)

            try:
                self.store.set_ready(task.id, result_ref)
            except TaskStoreError as e:
                jobs_failed_total.labels(failure=FailureKind.STORAGE_FAILURE.value).inc()
                logger.error("Failed to mark task ready", extra={**log_extra, "error": str(e)})
            jobs_succeeded_total.inc()
            logger.info("Conversion finished", extra=log_extra)
        finally:
            active_jobs.dec()
            job_duration_seconds.labels(heavy=str(heavy).lower()).observe(time.time() - start)

    def _convert(self, task: Task) -> ConversionResult:
        ctx = ConversionContext(self.conversion_timeout)
        request = ConversionRequest(
            task_id=task.id,
            user_id=task.user_id,
            file_id=task.file_id,
            file_name=task.file_name,
            source_format=task.source_format,
            target_format=task.target_format,
            options=task.options,
            file_size=task.file_size,
        )
        future = self._conversions.submit(self.converter.convert, request, ctx)
        try:
            return future.result(timeout=self.conversion_timeout)
        except FuturesTimeout:
            ctx.cancel()
            future.cancel()
            raise ConversionTimeout(f"conversion timed out after {self.conversion_timeout:g}s")
        except ConversionError:
            raise
        except Exception as e:
            raise ConversionError(str(e) or e.__class__.__name__) from e

    def _result_caption(self, task: Task) -> str | None:
        if task.unlimited:
            return render("plan.unlimited_line", task.locale)
        if task.credits_remaining is not None:
            return render("credits.remaining_line", task.locale, remaining=task.credits_remaining)
        return None

    def _fail(self, task: Task, kind: FailureKind, exc: Exception) -> None:
        jobs_failed_total.labels(failure=kind.value).inc()
        logger.error(
            "Conversion failed",
            extra={"task_id": task.id, "user_id": task.user_id, "failure": kind.value, "error": str(exc)},
        )
        try:
            self.store.set_error(task.id, str(exc))
        except TaskStoreError as e:
            logger.error("Failed to mark task failed", extra={"task_id": task.id, "error": str(e)})
        if kind not in TERMINAL_FAILURES or not task.chat_id:
            return
        try:
            self.transport.send_notice(task.chat_id, "error.conversion_failed", task.locale, task.file_name, error=str(exc))
        except DeliveryError as e:
            logger.warning("Failure notice not delivered", extra={"task_id": task.id, "error": str(e)})

    # ------------------------------------------------------------------
    # completion and position rebroadcast
    # ------------------------------------------------------------------

    def _finish(self, entry: InflightEntry, delete_status: bool = True) -> None:
        if delete_status and entry.target is not None:
            try:
                self.transport.delete_status(entry.target)
            except Exception as e:
                logger.warning(
                    "Status delete failed",
                    extra={"task_id": entry.task_id, "chat_id": entry.target.chat_id, "error": str(e)},
                )
        with self._lock:
            self._inflight.pop(entry.task_id, None)
            inflight_jobs.set(len(self._inflight))
            self._dispatch(self._rebroadcast_locked())

    def _rebroadcast_locked(self) -> list[PositionUpdate]:
        running = sum(1 for e in self._inflight.values() if e.running)
        free = max(self.workers - running, 0)
        waiting = sorted(
            (e for e in self._inflight.values() if not e.running),
            key=lambda e: (not e.priority, e.seq),
        )
        updates = []
        for index, entry in enumerate(waiting):
            rank = max(index + 1 - free, 1)
            position = min(entry.position, rank)
            if position == entry.position:
                continue
            entry.position = position
            if entry.target is not None:
                updates.append(PositionUpdate(entry.target, entry.display_name, entry.locale, position))
        return updates

    def _dispatch(self, updates: list[PositionUpdate]) -> None:
        """Called with _lock held so updates reach the single notifier thread in order."""
        for update in updates:
            try:
                self._notifier.submit(self._notify, update)
            except RuntimeError:
                # notifier already shut down
                return

    def _notify(self, update: PositionUpdate) -> None:
        try:
            if update.position == 0:
                self.transport.edit_status(update.target, "queue.started", update.locale, update.display_name)
            else:
                self.transport.edit_status(
                    update.target, "queue.queued", update.locale, update.display_name, position=update.position,
                )
        except Exception as e:
            logger.warning(
                "Position update failed",
                extra={"chat_id": update.target.chat_id, "position": update.position, "error": str(e)},
            )

    # ------------------------------------------------------------------
    # introspection
    # ------------------------------------------------------------------

    def positions(self) -> dict[str, int]:
        with self._lock:
            return {task_id: e.position for task_id, e in self._inflight.items()}

    def stats(self) -> dict:
        priority, normal = self._lanes.sizes()
        with self._lock:
            running = sum(1 for e in self._inflight.values() if e.running)
            inflight = len(self._inflight)
        return {
            "workers": self.workers,
            "inflight": inflight,
            "running": running,
            "queued_priority": priority,
            "queued_normal": normal,
            "stopped": self.stopped,
        }

    def _update_queue_gauges(self) -> None:
        priority, normal = self._lanes.sizes()
        queue_length.labels(lane="priority").set(priority)
        queue_length.labels(lane="normal").set(normal)


def _remove_file(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Failed to remove result file", extra={"path": path, "error": str(e)})
