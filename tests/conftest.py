"""Shared fakes: in-memory task store, recording transport, manually fired timers."""
import os
import threading
import time

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "123456:test-token")

import pytest

from convbot.schemas.tasks import Task, TaskState
from convbot.services.notifications.transport import DeliveryError, MessagingTransport, NotifyTarget
from convbot.services.tasks.store import TaskNotFound, TaskStore, TaskStoreError


class InMemoryTaskStore(TaskStore):
    def __init__(self):
        self.tasks: dict[str, Task] = {}
        self.lock = threading.Lock()
        self.fail_get = False
        self.fail_create = False

    def create(self, task):
        if self.fail_create:
            raise TaskStoreError("store down")
        with self.lock:
            self.tasks[task.id] = task.model_copy(deep=True)
        return task

    def update(self, task):
        with self.lock:
            self.tasks[task.id] = task.model_copy(deep=True)
        return task

    def get(self, task_id):
        if self.fail_get:
            raise TaskStoreError("store down")
        with self.lock:
            task = self.tasks.get(task_id)
            if task is None:
                raise TaskNotFound(task_id)
            return task.model_copy(deep=True)

    def delete(self, task_id):
        with self.lock:
            self.tasks.pop(task_id, None)

    def list_processing(self):
        with self.lock:
            return [t.model_copy(deep=True) for t in self.tasks.values() if t.state == TaskState.PROCESSING]

    def list_user_tasks(self, user_id):
        with self.lock:
            return [t.model_copy(deep=True) for t in self.tasks.values() if t.user_id == user_id]


class RecordingTransport(MessagingTransport):
    def __init__(self):
        self.events: list[tuple] = []
        self.lock = threading.Lock()
        self.fail_results = False
        self.fail_delete = False
        self._next_id = 100

    def _record(self, *event):
        with self.lock:
            self.events.append(event)

    def _new_target(self, chat_id):
        with self.lock:
            self._next_id += 1
            return NotifyTarget(chat_id=str(chat_id), message_id=self._next_id)

    def of(self, kind):
        with self.lock:
            return [e for e in self.events if e[0] == kind]

    def send_status(self, chat_id, key, locale, file_name=None, **params):
        self._record("status", chat_id, key, params)
        return self._new_target(chat_id)

    def edit_status(self, target, key, locale, file_name=None, suffix_key=None, **params):
        self._record("edit", target, key, params, suffix_key)

    def delete_status(self, target):
        if self.fail_delete:
            raise RuntimeError("transport closed")
        self._record("delete", target)

    def send_notice(self, chat_id, key, locale, file_name=None, **params):
        self._record("notice", chat_id, key, params)

    def send_result(self, chat_id, path, file_name, caption=None):
        if self.fail_results:
            raise DeliveryError("send document failed: 400: Bad Request")
        self._record("result", chat_id, path, file_name, caption)
        return f"ref-{os.path.basename(path)}"

    def prompt_format(self, task, targets):
        self._record("prompt_format", task.id, list(targets))
        return self._new_target(task.chat_id)

    def prompt_batch_choice(self, task):
        self._record("prompt_batch", task.id, len(task.batch_files))
        return self._new_target(task.chat_id)

    def refresh_format_prompt(self, task, targets, remaining=None):
        self._record("refresh", task.id, list(targets), remaining)


class ManualTimer:
    def __init__(self, delay, fn, args):
        self.delay = delay
        self.fn = fn
        self.args = args
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        # threading.Timer does not run a cancelled callback; a stale one can still race in
        self.fn(*self.args)


class ManualTimers:
    def __init__(self):
        self.created: list[ManualTimer] = []

    def __call__(self, delay, fn, args):
        timer = ManualTimer(delay, fn, args)
        self.created.append(timer)
        return timer

    @property
    def live(self):
        return [t for t in self.created if t.started and not t.cancelled]

    @property
    def last(self):
        return self.created[-1]


def wait_until(predicate, timeout=5.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def store():
    return InMemoryTaskStore()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def timers():
    return ManualTimers()


@pytest.fixture
def wait():
    return wait_until
