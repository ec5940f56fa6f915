"""
Task persistence.
TaskStore is the interface the scheduler, aggregator and selection flow use;
RedisTaskStore keeps tasks as JSON documents with a TTL.
"""
import logging
from abc import ABC, abstractmethod

import redis
from pydantic import ValidationError

from convbot.core.config import settings
from convbot.schemas.tasks import Task, TaskState


logger = logging.getLogger(__name__)


class TaskStoreError(Exception):
    """Task store unavailable or returned garbage."""


class TaskNotFound(TaskStoreError):
    pass


class TaskStore(ABC):
    @abstractmethod
    def create(self, task: Task) -> Task:
        pass

    @abstractmethod
    def get(self, task_id: str) -> Task:
        """Raises TaskNotFound when missing or expired."""
        pass

    @abstractmethod
    def update(self, task: Task) -> Task:
        pass

    @abstractmethod
    def delete(self, task_id: str) -> None:
        pass

    @abstractmethod
    def list_processing(self) -> list[Task]:
        pass

    @abstractmethod
    def list_user_tasks(self, user_id: str) -> list[Task]:
        pass

    def set_ready(self, task_id: str, result_ref: str) -> Task:
        task = self.get(task_id)
        task.state = TaskState.READY
        task.result_ref = result_ref
        task.error = ""
        task.touch()
        return self.update(task)

    def set_error(self, task_id: str, message: str) -> Task:
        task = self.get(task_id)
        task.state = TaskState.ERROR
        task.error = message
        task.touch()
        return self.update(task)


class RedisTaskStore(TaskStore):
    """
    tasks:<id>          JSON document, expires after task_ttl_hours
    user_tasks:<uid>    set of task ids per user
    tasks:processing    set of task ids currently in the processing state
    """

    PROCESSING_KEY = "tasks:processing"

    def __init__(self, client: redis.Redis | None = None, ttl_seconds: int | None = None) -> None:
        self.client = client or redis.Redis.from_url(settings.redis_url, decode_responses=True)
        self.ttl = ttl_seconds or settings.task_ttl_seconds

    def _key(self, task_id: str) -> str:
        return f"tasks:{task_id}"

    def _user_key(self, user_id: str) -> str:
        return f"user_tasks:{user_id}"

    def _load(self, raw: str | None) -> Task | None:
        if not raw:
            return None
        try:
            return Task.model_validate_json(raw)
        except ValidationError as e:
            logger.error("Corrupt task document", extra={"error": str(e)})
            return None

    def _save(self, task: Task) -> Task:
        try:
            pipe = self.client.pipeline()
            pipe.setex(self._key(task.id), self.ttl, task.model_dump_json())
            pipe.sadd(self._user_key(task.user_id), task.id)
            pipe.expire(self._user_key(task.user_id), self.ttl)
            if task.state == TaskState.PROCESSING:
                pipe.sadd(self.PROCESSING_KEY, task.id)
            else:
                pipe.srem(self.PROCESSING_KEY, task.id)
            pipe.execute()
        except redis.RedisError as e:
            logger.error("Failed to save task", extra={"task_id": task.id, "error": str(e)})
            raise TaskStoreError(str(e)) from e
        return task

    def create(self, task: Task) -> Task:
        return self._save(task)

    def update(self, task: Task) -> Task:
        return self._save(task)

    def get(self, task_id: str) -> Task:
        try:
            raw = self.client.get(self._key(task_id))
        except redis.RedisError as e:
            raise TaskStoreError(str(e)) from e
        task = self._load(raw)
        if task is None:
            raise TaskNotFound(task_id)
        return task

    def delete(self, task_id: str) -> None:
        try:
            raw = self.client.get(self._key(task_id))
            task = self._load(raw)
            pipe = self.client.pipeline()
            pipe.delete(self._key(task_id))
            pipe.srem(self.PROCESSING_KEY, task_id)
            if task is not None:
                pipe.srem(self._user_key(task.user_id), task_id)
            pipe.execute()
        except redis.RedisError as e:
            raise TaskStoreError(str(e)) from e

    def _load_many(self, ids: list[str]) -> tuple[list[Task], list[str]]:
        if not ids:
            return [], []
        raws = self.client.mget([self._key(i) for i in ids])
        tasks, missing = [], []
        for task_id, raw in zip(ids, raws):
            task = self._load(raw)
            if task is None:
                missing.append(task_id)
            else:
                tasks.append(task)
        return tasks, missing

    def list_processing(self) -> list[Task]:
        try:
            ids = sorted(self.client.smembers(self.PROCESSING_KEY))
            tasks, missing = self._load_many(ids)
            if missing:
                # Expired documents leave dangling ids behind
                self.client.srem(self.PROCESSING_KEY, *missing)
        except redis.RedisError as e:
            raise TaskStoreError(str(e)) from e
        processing = [t for t in tasks if t.state == TaskState.PROCESSING]
        return sorted(processing, key=lambda t: t.created_at)

    def list_user_tasks(self, user_id: str) -> list[Task]:
        try:
            ids = sorted(self.client.smembers(self._user_key(user_id)))
            tasks, missing = self._load_many(ids)
            if missing:
                self.client.srem(self._user_key(user_id), *missing)
        except redis.RedisError as e:
            raise TaskStoreError(str(e)) from e
        return sorted(tasks, key=lambda t: t.created_at)
