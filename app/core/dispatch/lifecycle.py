# app/core/dispatch/lifecycle.py
"""
Task lifecycle store: status rules on top of a ``TaskRepository``.

    pending ──(external scheduler)──> running ──> completed | failed
       │
       └── immediate sends are written once, already terminal

Only ``pending`` tasks may be edited.  Ownership checks live in
``TaskService``; this layer is principal-agnostic.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

from app.core.dispatch.domain import (
    CardContent,
    DispatchSummary,
    RichTextContent,
    Task,
    TaskFilter,
    TaskPatch,
    TaskStatus,
    TextImageContent,
)
from app.core.dispatch.errors import TaskNotFoundError, TaskStateError, ValidationError
from app.core.dispatch.ports import TaskRepository
from app.core.dispatch.resolver import normalize_selectors
from app.infra.logging_config import LogContext, get_logger
from app.infra.metrics import inc_counter

logger = get_logger(__name__)

_CONTENT_TYPES = (TextImageContent, RichTextContent, CardContent)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _check_content(task: Task) -> None:
    if not isinstance(task.content, _CONTENT_TYPES):
        raise ValidationError({"content": f"unsupported content {type(task.content).__name__}"})


class TaskLifecycleStore:
    def __init__(self, repo: TaskRepository, clock: Callable[[], datetime] = utc_now):
        self.repo = repo
        self.clock = clock

    async def create(self, task: Task) -> Task:
        """Insert a new task. The repository assigns ``id``."""
        _check_content(task)
        if task.id is not None:
            raise ValidationError({"id": "assigned by the store"})
        task.group_selectors = normalize_selectors(task.group_selectors)
        now = self.clock()
        task.created_at = task.created_at or now
        task.updated_at = now

        try:
            saved = await self.repo.insert(task)
        except Exception:
            inc_counter("task_writes", op="create", result="error")
            raise
        inc_counter("task_writes", op="create", result="ok")
        LogContext(logger, user_id=saved.owner_id, task_id=saved.id).info(
            f"Task created: type={saved.type.value}, status={saved.status.value}"
        )
        return saved

    async def get(self, task_id: str) -> Task:
        task = await self.repo.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    async def update(self, task_id: str, patch: TaskPatch) -> Task:
        """
        Replace content / schedule / selectors of a task not yet executed.

        Raises:
            TaskNotFoundError: unknown id
            TaskStateError: task is no longer pending
        """
        task = await self.get(task_id)
        if task.status is not TaskStatus.PENDING:
            raise TaskStateError(f"Task {task_id} is {task.status.value} and can no longer be edited")

        if patch.title is not None:
            task.title = patch.title
        if patch.content is not None:
            task.content = patch.content
            _check_content(task)
        if patch.scheduled_time is not None:
            task.scheduled_time = patch.scheduled_time
        if patch.group_selectors is not None:
            task.group_selectors = normalize_selectors(patch.group_selectors)
        task.updated_at = self.clock()

        return await self._write(task, op="update")

    async def record_outcome(self, task: Task, summary: DispatchSummary) -> Task:
        """Move an existing task to its terminal status after a send."""
        at = self.clock()
        task.apply_outcome(summary, at)
        task.updated_at = at
        return await self._write(task, op="update")

    async def delete(self, task_id: str) -> None:
        deleted = await self.repo.delete(task_id)
        if not deleted:
            raise TaskNotFoundError(task_id)
        inc_counter("task_writes", op="delete", result="ok")
        LogContext(logger, task_id=task_id).info("Task deleted")

    async def list(self, task_filter: TaskFilter) -> list[Task]:
        return await self.repo.select(task_filter)

    async def counts(self, owner_id: str | None = None) -> dict[str, int]:
        return await self.repo.count_by_status(owner_id)

    async def _write(self, task: Task, op: str) -> Task:
        try:
            saved = await self.repo.update(task)
        except Exception:
            inc_counter("task_writes", op=op, result="error")
            raise
        inc_counter("task_writes", op=op, result="ok")
        return saved
