# app/core/dispatch/service.py
"""
Task Service: the single orchestration point for submitting, re-sending
and managing broadcast tasks.

    immediate:  compose -> resolve -> dispatch -> persist (terminal status)
    scheduled:  compose -> resolve (must be non-empty) -> persist pending

The post-dispatch write is best effort.  If it fails the error is logged
and the already computed ``DispatchSummary`` is still returned.

The transport layer (http_app.py) stays a thin adapter:
    parse request -> call service -> map DispatchError -> return JSON.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional

from app.core.dispatch.composer import LocalImage, compose_and_validate
from app.core.dispatch.domain import (
    DispatchSummary,
    Principal,
    Task,
    TaskFilter,
    TaskPatch,
    TaskStatus,
    TaskType,
    content_to_dict,
)
from app.core.dispatch.engine import DispatchEngine
from app.core.dispatch.errors import (
    NoEndpointsError,
    PermissionDeniedError,
    PersistenceError,
    TaskStateError,
    ValidationError,
)
from app.core.dispatch.lifecycle import TaskLifecycleStore
from app.core.dispatch.ports import EndpointDirectory
from app.core.dispatch.resolver import normalize_selectors, resolve_targets
from app.infra.logging_config import LogContext, get_logger

logger = get_logger(__name__)

DEFAULT_LIST_LIMIT = 100


@dataclass
class SubmitResult:
    task: Task
    summary: Optional[DispatchSummary] = None  # None for scheduled tasks
    warnings: list[str] = field(default_factory=list)
    persisted: bool = True

    @property
    def message(self) -> str:
        if self.summary is None:
            if self.task.scheduled_time is None:
                return "saved"
            return f"scheduled for {self.task.scheduled_time.isoformat()}"
        text = self.summary.message()
        if not self.persisted:
            text += " (record not saved)"
        return text


def _as_utc(value: datetime) -> datetime:
    # Naive datetimes from forms are taken as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TaskService:
    """
    Orchestrates task submission and management for one principal at a time.

    Stateless apart from its collaborators; safe to share across requests.
    """

    def __init__(
        self,
        store: TaskLifecycleStore,
        directory: EndpointDirectory,
        engine: DispatchEngine,
        *,
        max_image_bytes: int | None = None,
        list_limit: int = DEFAULT_LIST_LIMIT,
    ) -> None:
        self.store = store
        self.directory = directory
        self.engine = engine
        self.max_image_bytes = max_image_bytes
        self.list_limit = list_limit

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(
        self,
        principal: Principal,
        *,
        title: str,
        task_type: TaskType | str,
        fields: Mapping[str, Any] | None,
        selectors: Iterable[str] | None = None,
        scheduled_time: datetime | None = None,
        image: LocalImage | None = None,
    ) -> SubmitResult:
        """
        Compose a task and either send it now or store it for the scheduler.

        Raises:
            ValidationError: bad fields or a scheduled time in the past
            NoEndpointsError: selectors match no active endpoint
        """
        title = (title or "").strip()
        if not title:
            raise ValidationError({"title": "required"})

        composed = compose_and_validate(task_type, fields, image, max_image_bytes=self.max_image_bytes)
        warnings = list(composed.warnings)
        selector_list = normalize_selectors(selectors)

        task = Task(
            title=title,
            content=composed.content,
            owner_id=principal.id,
            creator=principal.display_name,
            group_selectors=selector_list,
            scheduled_time=_as_utc(scheduled_time) if scheduled_time else None,
        )

        if task.scheduled_time is not None:
            if task.scheduled_time <= self.store.clock():
                raise ValidationError({"scheduled_time": "must be in the future"})
            endpoints = await resolve_targets(self.directory, principal, selector_list, warnings)
            if not endpoints:
                raise NoEndpointsError()
            saved = await self.store.create(task)
            return SubmitResult(task=saved, warnings=warnings)

        endpoints = await resolve_targets(self.directory, principal, selector_list, warnings)
        summary = await self.engine.dispatch(task.content, endpoints)

        task.apply_outcome(summary, self.store.clock())
        persisted = True
        try:
            task = await self.store.create(task)
        except PersistenceError as e:
            persisted = False
            LogContext(logger, user_id=principal.id).error(
                f"Dispatch finished ({summary.message()}) but the task record was not saved: {e}"
            )
        return SubmitResult(task=task, summary=summary, warnings=warnings, persisted=persisted)

    async def send_now(self, principal: Principal, task_id: str) -> SubmitResult:
        """
        Re-dispatch a saved task to its stored selectors and record the result.

        Selectors are resolved against the task owner's endpoints, also when
        an admin triggers the send.
        """
        task = await self._get_for(principal, task_id)
        if task.status is TaskStatus.RUNNING:
            raise TaskStateError(f"Task {task_id} is already running")

        warnings: list[str] = []
        owner = principal if principal.id == task.owner_id else Principal(id=task.owner_id)
        endpoints = await resolve_targets(self.directory, owner, task.group_selectors, warnings)
        summary = await self.engine.dispatch(task.content, endpoints, task_id=task.id)

        persisted = True
        try:
            task = await self.store.record_outcome(task, summary)
        except PersistenceError as e:
            persisted = False
            LogContext(logger, user_id=principal.id, task_id=task.id).error(
                f"Re-send finished ({summary.message()}) but the status was not saved: {e}"
            )
        return SubmitResult(task=task, summary=summary, warnings=warnings, persisted=persisted)

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------

    async def get_task(self, principal: Principal, task_id: str) -> Task:
        return await self._get_for(principal, task_id)

    async def list_tasks(
        self,
        principal: Principal,
        *,
        status: TaskStatus | str | None = None,
        task_type: TaskType | str | None = None,
        owner_id: str | None = None,
        limit: int | None = None,
    ) -> list[Task]:
        """Admins see every task (optionally one owner's); users only their own."""
        if not principal.is_admin:
            if owner_id is not None and owner_id != principal.id:
                raise PermissionDeniedError("Cannot list another user's tasks")
            owner_id = principal.id

        try:
            task_filter = TaskFilter(
                status=TaskStatus(status) if status else None,
                type=TaskType(task_type) if task_type else None,
                owner_id=owner_id,
                limit=min(limit or self.list_limit, self.list_limit),
            )
        except ValueError as e:
            raise ValidationError({"filter": str(e)})
        return await self.store.list(task_filter)

    async def edit_task(
        self,
        principal: Principal,
        task_id: str,
        *,
        title: str | None = None,
        task_type: TaskType | str | None = None,
        fields: Mapping[str, Any] | None = None,
        selectors: Iterable[str] | None = None,
        scheduled_time: datetime | None = None,
        image: LocalImage | None = None,
    ) -> SubmitResult:
        """
        Replace parts of a pending task. Content is recomposed when
        ``fields`` or ``image`` is given; without a type change the stored
        content is the starting point, so omitted fields are kept.
        An explicit ``None`` (e.g. ``{"image": None}``) clears a field.
        """
        task = await self._get_for(principal, task_id)
        if task.status is not TaskStatus.PENDING:
            raise TaskStateError(f"Task {task_id} is {task.status.value} and can no longer be edited")

        warnings: list[str] = []
        patch = TaskPatch()
        if title is not None:
            if not title.strip():
                raise ValidationError({"title": "required"})
            patch.title = title.strip()
        if fields is not None or image is not None or task_type is not None:
            try:
                new_type = TaskType(task_type) if task_type else task.type
            except ValueError:
                raise ValidationError({"type": f"unknown message type {task_type!r}"})
            merged: dict[str, Any] = {}
            if new_type is task.type:
                # Same type: fields left out keep their stored value
                merged.update(content_to_dict(task.content))
            merged.update(fields or {})
            composed = compose_and_validate(
                new_type, merged, image, max_image_bytes=self.max_image_bytes,
            )
            patch.content = composed.content
            warnings.extend(composed.warnings)
        if scheduled_time is not None:
            scheduled_time = _as_utc(scheduled_time)
            if scheduled_time <= self.store.clock():
                raise ValidationError({"scheduled_time": "must be in the future"})
            patch.scheduled_time = scheduled_time
        if selectors is not None:
            patch.group_selectors = normalize_selectors(selectors)

        if not patch.has_updates():
            return SubmitResult(task=task, warnings=warnings)

        saved = await self.store.update(task_id, patch)
        return SubmitResult(task=saved, warnings=warnings)

    async def delete_task(self, principal: Principal, task_id: str) -> None:
        await self._get_for(principal, task_id)
        await self.store.delete(task_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _get_for(self, principal: Principal, task_id: str) -> Task:
        task = await self.store.get(task_id)
        if not principal.is_admin and task.owner_id != principal.id:
            raise PermissionDeniedError(f"Task {task_id} belongs to another user")
        return task
