"""
Burst aggregation.

Files arriving close together for the same collection key are accumulated in
one collector task. Each arrival re-arms a debounce timer; when the timer
fires the collector is finalized into either one group task (same format,
2+ files) with a group-or-separate prompt, or independent per-file tasks.

Every armed timer carries a token. A timer whose token is no longer the
current one for its key does nothing when it fires.
"""
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable

from convbot.core.config import settings
from convbot.schemas.tasks import BatchFile, CollectionState, Task
from convbot.services.batching.keys import CollectionKey
from convbot.services.formats import UNKNOWN_FORMAT, detect_format, target_formats
from convbot.services.tasks.prompts import FormatPrompter, Submitter, unique_file_name
from convbot.services.tasks.store import TaskNotFound, TaskStore, TaskStoreError
from convbot.utils.metrics import batches_finalized_total


logger = logging.getLogger(__name__)

TimerFactory = Callable[[float, Callable, tuple], "threading.Timer"]
# Store I/O for one collection key is serialized on one of these; _lock only guards the maps
KEY_LOCK_STRIPES = 64


def _thread_timer(delay: float, fn: Callable, args: tuple) -> threading.Timer:
    timer = threading.Timer(delay, fn, args=args)
    timer.daemon = True
    return timer


@dataclass
class _Collector:
    task_id: str
    owner: Submitter
    token: object = field(default_factory=object)
    timer: object | None = None
    count: int = 0


class BurstAggregator:
    def __init__(
        self,
        store: TaskStore,
        prompter: FormatPrompter,
        timer_factory: TimerFactory | None = None,
    ) -> None:
        self.store = store
        self.prompter = prompter
        self._timer_factory = timer_factory or _thread_timer
        self._lock = threading.Lock()
        self._key_locks = [threading.Lock() for _ in range(KEY_LOCK_STRIPES)]
        self._collectors: dict[CollectionKey, _Collector] = {}
        # user_id -> expected file count of an open manual collection
        self._manual: dict[str, int] = {}

        self.first_window = settings.batch_first_file_window_seconds
        self.followup_window = settings.batch_followup_window_seconds
        self.album_window = settings.batch_album_window_seconds
        self.manual_timeout = settings.batch_manual_timeout_seconds

    # ------------------------------------------------------------------
    # keys and manual mode
    # ------------------------------------------------------------------

    def resolve_key(self, user_id: str, media_group_id: str | None = None) -> CollectionKey:
        with self._lock:
            manual = user_id in self._manual
        if manual:
            return CollectionKey.for_manual(user_id)
        if media_group_id:
            return CollectionKey.for_album(user_id, media_group_id)
        return CollectionKey.for_user(user_id)

    def begin_manual(self, owner: Submitter, expected: int) -> CollectionKey:
        """Open a manual collection; files from this user go to it until it is finalized."""
        if expected <= 0:
            raise ValueError("expected must be positive")
        with self._lock:
            self._manual[owner.user_id] = expected
        logger.info("Manual collection opened", extra={"user_id": owner.user_id, "expected": expected})
        self.prompter.notify(owner, "batch.count_accepted", count=expected)
        return CollectionKey.for_manual(owner.user_id)

    def cancel_manual(self, user_id: str) -> bool:
        key = CollectionKey.for_manual(user_id)
        with self._key_lock(key):
            with self._lock:
                opened = self._manual.pop(user_id, None) is not None
                collector = self._collectors.pop(key, None)
                if collector is not None and collector.timer is not None:
                    collector.timer.cancel()
            if collector is not None:
                self._delete_collector(collector.task_id)
        return opened or collector is not None

    def manual_expected(self, user_id: str) -> int:
        with self._lock:
            return self._manual.get(user_id, 0)

    # ------------------------------------------------------------------
    # accumulation
    # ------------------------------------------------------------------

    def window_for(self, key: CollectionKey, count: int) -> float:
        if key.is_manual:
            return self.manual_timeout
        if count <= 1:
            return self.first_window
        return self.album_window if key.is_album else self.followup_window

    def accept(self, key: CollectionKey, files: list[BatchFile], owner: Submitter) -> str:
        """
        Add files to the collection for `key` and re-arm its timer.
        Returns the collector task id. Task store errors propagate and leave
        no collector behind.
        """
        files = [f.model_copy(update={"file_name": unique_file_name(f.file_name)}) for f in files]
        finalize_token = None
        with self._key_lock(key):
            with self._lock:
                collector = self._collectors.get(key)
                expected = self._manual.get(owner.user_id, 0) if key.is_manual else 0
            task = self._load_collector(collector) if collector is not None else None
            fresh = None
            if task is None:
                task = Task(
                    user_id=owner.user_id,
                    chat_id=owner.chat_id,
                    locale=owner.locale,
                    collection=CollectionState(key=str(key), expected=expected),
                )
                self.store.create(task)
                fresh = _Collector(task_id=task.id, owner=owner)

            task.collection.files.extend(files)
            task.touch()
            self.store.update(task)

            with self._lock:
                if fresh is not None:
                    previous = self._collectors.get(key)
                    if previous is not None and previous.timer is not None:
                        previous.timer.cancel()
                    self._collectors[key] = collector = fresh
                collector.count = len(task.collection.files)
                expected = task.collection.expected
                if key.is_manual and expected and collector.count >= expected:
                    finalize_token = collector.token
                else:
                    self._arm_locked(key, collector, self.window_for(key, collector.count))

        logger.info(
            "Files collected",
            extra={"user_id": owner.user_id, "collection_key": str(key), "files": collector.count},
        )
        if finalize_token is not None:
            self.finalize(key, finalize_token)
        return task.id

    def _key_lock(self, key: CollectionKey) -> threading.Lock:
        return self._key_locks[hash(key) % KEY_LOCK_STRIPES]

    def _load_collector(self, collector: _Collector) -> Task | None:
        try:
            task = self.store.get(collector.task_id)
        except TaskNotFound:
            # Expired underneath us: start over
            return None
        return task if task.collection is not None else None

    def _arm_locked(self, key: CollectionKey, collector: _Collector, delay: float) -> None:
        if collector.timer is not None:
            collector.timer.cancel()
        collector.token = object()
        collector.timer = self._timer_factory(delay, self._on_timer, (key, collector.token))
        collector.timer.start()

    def _on_timer(self, key: CollectionKey, token: object) -> None:
        try:
            self.finalize(key, token, timed_out=True)
        except Exception as e:
            # Timer threads have nobody to report to
            logger.exception("Collection finalize failed", extra={"collection_key": str(key), "error": str(e)})

    # ------------------------------------------------------------------
    # finalization
    # ------------------------------------------------------------------

    def finalize(self, key: CollectionKey, token: object, timed_out: bool = False) -> list[Task]:
        """
        Close the collection if `token` is still the current one for `key`.
        Returns the tasks created (group tasks and per-file tasks).
        """
        with self._key_lock(key):
            with self._lock:
                collector = self._collectors.get(key)
                if collector is None or collector.token is not token:
                    logger.debug("Stale collection timer ignored", extra={"collection_key": str(key)})
                    return []
                del self._collectors[key]
                if collector.timer is not None:
                    collector.timer.cancel()
                if key.is_manual:
                    self._manual.pop(key.user_id, None)

            try:
                task = self.store.get(collector.task_id)
            except TaskNotFound:
                logger.warning("Collector task vanished", extra={"collection_key": str(key), "task_id": collector.task_id})
                return []
            self._delete_collector(task.id)
        files = list(task.collection.files) if task.collection else []
        owner = collector.owner

        expected = task.collection.expected if task.collection else 0
        if key.is_manual and timed_out and expected and len(files) < expected:
            batches_finalized_total.labels(domain=key.domain, outcome="timeout").inc()
            self.prompter.notify(owner, "batch.timeout", got=len(files), expected=expected)

        created = self._dispatch(key, owner, files)
        logger.info(
            "Collection finalized",
            extra={"user_id": owner.user_id, "collection_key": str(key), "files": len(files), "expected": expected or None},
        )
        return created

    def _dispatch(self, key: CollectionKey, owner: Submitter, files: list[BatchFile]) -> list[Task]:
        groups: dict[str, list[BatchFile]] = {}
        for f in files:
            groups.setdefault(detect_format(f.file_name) or UNKNOWN_FORMAT, []).append(f)

        created: list[Task] = []
        for ext, group in groups.items():
            if len(group) > 1 and ext != UNKNOWN_FORMAT and target_formats(ext):
                task = Task(
                    user_id=owner.user_id,
                    chat_id=owner.chat_id,
                    locale=owner.locale,
                    file_name=f"{len(group)} files.{ext}",
                    file_size=sum(f.file_size for f in group),
                    source_format=ext,
                    batch_files=group,
                )
                self.store.create(task)
                self.prompter.prompt_group_choice(task)
                batches_finalized_total.labels(domain=key.domain, outcome="grouped").inc()
                created.append(task)
                continue
            for f in group:
                task = self.prompter.prompt_file(owner, f)
                if task is not None:
                    created.append(task)
            batches_finalized_total.labels(domain=key.domain, outcome="separate").inc()
        return created

    def _delete_collector(self, task_id: str) -> None:
        try:
            self.store.delete(task_id)
        except TaskStoreError as e:
            logger.error("Failed to delete collector task", extra={"task_id": task_id, "error": str(e)})

    def pending_keys(self) -> list[CollectionKey]:
        with self._lock:
            return list(self._collectors)

    def shutdown(self) -> None:
        with self._lock:
            collectors = list(self._collectors.values())
            self._collectors.clear()
            self._manual.clear()
        for collector in collectors:
            if collector.timer is not None:
                collector.timer.cancel()
        logger.info(f"Aggregator stopped, {len(collectors)} pending collections dropped")
