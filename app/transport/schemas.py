# app/transport/schemas.py
from __future__ import annotations

import base64
import binascii
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from app.core.dispatch.composer import LocalImage
from app.core.dispatch.domain import Task, content_to_dict
from app.core.dispatch.service import SubmitResult


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class ImageIn(BaseModel):
    """A locally selected image, base64 encoded by the client."""

    base64: str = Field(min_length=1)
    filename: str | None = Field(default=None, max_length=255)
    mime_type: str | None = Field(default=None, max_length=64)

    def to_local_image(self) -> LocalImage:
        """Raises ``ValueError`` when the base64 is corrupt."""
        raw = self.base64
        if raw.startswith("data:") and "," in raw:
            raw = raw.split(",", 1)[1]  # data URL prefix from browsers
        try:
            data = base64.b64decode(raw, validate=True)
        except binascii.Error as exc:
            raise ValueError(f"image is not valid base64: {exc}") from exc
        return LocalImage(data=data, filename=self.filename, mime_type=self.mime_type)


class TaskCreateIn(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    type: str
    content: dict[str, Any] = Field(default_factory=dict)
    group_selectors: list[str] = Field(default_factory=lambda: ["all"])
    scheduled_time: datetime | None = None
    image: ImageIn | None = None

    @field_validator("group_selectors")
    @classmethod
    def selectors_bounded(cls, v: list[str]) -> list[str]:
        if len(v) > 200:
            raise ValueError("too many group selectors")
        return v


class TaskUpdateIn(BaseModel):
    """Partial update of a pending task."""

    title: str | None = Field(default=None, max_length=200)
    type: str | None = None
    content: dict[str, Any] | None = None
    group_selectors: list[str] | None = None
    scheduled_time: datetime | None = None
    image: ImageIn | None = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------

class TaskOut(BaseModel):
    id: str
    title: str
    type: str
    status: str
    content: dict[str, Any]
    group_selectors: list[str]
    scheduled_time: datetime | None = None
    creator: str
    owner_id: str
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    execution_result: dict[str, Any] | None = None
    error_message: str | None = None

    @classmethod
    def from_task(cls, task: Task) -> "TaskOut":
        return cls(
            id=task.id or "",
            title=task.title,
            type=task.type.value,
            status=task.status.value,
            content=content_to_dict(task.content),
            group_selectors=list(task.group_selectors),
            scheduled_time=task.scheduled_time,
            creator=task.creator,
            owner_id=task.owner_id,
            created_at=task.created_at,
            updated_at=task.updated_at,
            completed_at=task.completed_at,
            failed_at=task.failed_at,
            execution_result=task.execution_result,
            error_message=task.error_message,
        )


class SubmitOut(BaseModel):
    task: TaskOut
    message: str
    success: bool | None = None  # None for scheduled tasks
    success_count: int = 0
    failure_count: int = 0
    first_error: str | None = None
    persisted: bool = True
    warnings: list[str] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result: SubmitResult) -> "SubmitOut":
        summary = result.summary
        return cls(
            task=TaskOut.from_task(result.task),
            message=result.message,
            success=summary.succeeded if summary else None,
            success_count=summary.success_count if summary else 0,
            failure_count=summary.failure_count if summary else 0,
            first_error=summary.first_error if summary else None,
            persisted=result.persisted,
            warnings=result.warnings,
        )
