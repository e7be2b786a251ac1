# app/core/dispatch/domain.py
from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Optional, Union


# ============================================================================
# ENUMS & SELECTORS
# ============================================================================

class TaskType(str, Enum):
    TEXT_IMAGE = "text_image"
    RICH_TEXT = "rich_text"
    CARD = "card"


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"      # set only by the external scheduler
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


ALL_GROUPS = "all"
UNGROUPED = "ungrouped"
RESERVED_SELECTORS = frozenset({ALL_GROUPS, UNGROUPED})

ADMIN_ROLES = frozenset({"admin", "super_admin"})


# ============================================================================
# CONTENT VARIANTS
# ============================================================================

@dataclass(frozen=True)
class EmbeddedImage:
    """A local image carried inside task content so scheduled sends survive restarts."""
    base64: str
    mime_type: str = "image/jpeg"
    filename: str = "image.jpg"
    size_bytes: int = 0

    def decode(self) -> bytes:
        """Raw image bytes. Raises ``ValueError`` on corrupt base64."""
        try:
            return base64.b64decode(self.base64, validate=True)
        except binascii.Error as exc:
            raise ValueError(f"Embedded image is not valid base64: {exc}") from exc

    def to_dict(self) -> dict[str, Any]:
        return {
            "base64": self.base64,
            "mime_type": self.mime_type,
            "filename": self.filename,
            "size_bytes": self.size_bytes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Optional["EmbeddedImage"]:
        """Accepts both current keys and legacy ``type``/``name``/``size`` keys."""
        if not data or not data.get("base64"):
            return None
        return cls(
            base64=data["base64"],
            mime_type=data.get("mime_type") or data.get("type") or "image/jpeg",
            filename=data.get("filename") or data.get("name") or "image.jpg",
            size_bytes=int(data.get("size_bytes") or data.get("size") or 0),
        )


@dataclass(frozen=True)
class TextImageContent:
    type: ClassVar[TaskType] = TaskType.TEXT_IMAGE

    text: str = ""
    image: Optional[EmbeddedImage] = None

    def has_text(self) -> bool:
        return bool(self.text and self.text.strip())

    def has_image(self) -> bool:
        return self.image is not None

    def is_empty(self) -> bool:
        return not self.has_text() and not self.has_image()


@dataclass(frozen=True)
class RichTextContent:
    type: ClassVar[TaskType] = TaskType.RICH_TEXT

    rich_text: str


@dataclass(frozen=True)
class CardContent:
    type: ClassVar[TaskType] = TaskType.CARD

    title: str
    url: str
    description: Optional[str] = None
    picture_url: Optional[str] = None


Content = Union[TextImageContent, RichTextContent, CardContent]


def content_to_dict(content: Content) -> dict[str, Any]:
    """Serialize content for the ``tasks.content`` JSON column."""
    if isinstance(content, TextImageContent):
        return {
            "text": content.text,
            "image": content.image.to_dict() if content.image else None,
        }
    if isinstance(content, RichTextContent):
        return {"rich_text": content.rich_text}
    if isinstance(content, CardContent):
        data: dict[str, Any] = {"title": content.title, "url": content.url}
        if content.description:
            data["description"] = content.description
        if content.picture_url:
            data["picture_url"] = content.picture_url
        return data
    raise TypeError(f"Unknown content variant: {type(content).__name__}")


def content_from_dict(task_type: TaskType | str, data: dict[str, Any] | None) -> Content:
    """
    Rebuild a content variant from its stored JSON.

    Rows written by the older web client use camelCase keys
    (``richText``, ``picurl``); both spellings are read.
    """
    task_type = TaskType(task_type)
    data = data or {}

    if task_type is TaskType.TEXT_IMAGE:
        image = EmbeddedImage.from_dict(data.get("image"))
        return TextImageContent(text=data.get("text") or "", image=image)
    if task_type is TaskType.RICH_TEXT:
        return RichTextContent(rich_text=data.get("rich_text") or data.get("richText") or "")
    if task_type is TaskType.CARD:
        return CardContent(
            title=data.get("title") or "",
            url=data.get("url") or "",
            description=data.get("description") or None,
            picture_url=data.get("picture_url") or data.get("picurl") or None,
        )
    raise ValueError(f"Unknown task type: {task_type}")  # pragma: no cover


# ============================================================================
# PRINCIPAL & ENDPOINTS
# ============================================================================

@dataclass(frozen=True)
class Principal:
    """The authenticated actor on whose behalf endpoints and tasks are scoped."""
    id: str
    role: str = "user"
    nickname: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    @property
    def display_name(self) -> str:
        return self.nickname or self.id


@dataclass(frozen=True)
class DeliveryEndpoint:
    """A group-bot webhook belonging to one principal."""
    id: str
    url: str
    owner_id: str
    group_id: Optional[str] = None   # None = ungrouped
    active: bool = True
    name: Optional[str] = None


# ============================================================================
# WIRE PAYLOADS (what the transport is asked to deliver)
# ============================================================================

@dataclass(frozen=True)
class CardPayload:
    title: str
    url: str
    description: Optional[str] = None
    picture_url: Optional[str] = None

    kind: ClassVar[str] = "card"


@dataclass(frozen=True)
class MarkdownPayload:
    text: str

    kind: ClassVar[str] = "markdown"


@dataclass(frozen=True)
class ImagePayload:
    data: bytes
    filename: str = "image.jpg"
    mime_type: str = "image/jpeg"

    kind: ClassVar[str] = "image"


Payload = Union[CardPayload, MarkdownPayload, ImagePayload]


@dataclass(frozen=True)
class SendResult:
    """Transport-level reply. ``errcode == 0`` in the bot API means success."""
    success: bool
    error_code: Optional[int] = None
    error_message: Optional[str] = None

    @classmethod
    def ok(cls) -> "SendResult":
        return cls(success=True, error_code=0)

    @classmethod
    def from_response(cls, body: Any, default_error: str = "unknown error") -> "SendResult":
        """Classify a JSON reply using the ``{errcode: 0}`` convention."""
        if isinstance(body, dict) and body.get("errcode") == 0:
            return cls.ok()
        if not isinstance(body, dict):
            return cls(success=False, error_code=None, error_message=default_error)
        code = body.get("errcode")
        message = body.get("errmsg") or body.get("error") or default_error
        return cls(success=False, error_code=code if isinstance(code, int) else None, error_message=message)


# ============================================================================
# DISPATCH RESULTS
# ============================================================================

@dataclass(frozen=True)
class DispatchOutcome:
    endpoint: DeliveryEndpoint
    success: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class DispatchSummary:
    success_count: int
    failure_count: int
    first_error: Optional[str] = None
    outcomes: tuple[DispatchOutcome, ...] = field(default=(), repr=False)

    @classmethod
    def from_outcomes(cls, outcomes: list[DispatchOutcome]) -> "DispatchSummary":
        successes = sum(1 for o in outcomes if o.success)
        first_error = next((o.error for o in outcomes if not o.success), None)
        return cls(
            success_count=successes,
            failure_count=len(outcomes) - successes,
            first_error=first_error,
            outcomes=tuple(outcomes),
        )

    @property
    def total(self) -> int:
        return self.success_count + self.failure_count

    @property
    def succeeded(self) -> bool:
        return self.failure_count == 0

    @property
    def terminal_status(self) -> TaskStatus:
        # No partial-success status: any failure fails the task.
        return TaskStatus.COMPLETED if self.succeeded else TaskStatus.FAILED

    def message(self) -> str:
        """The single user-facing line, e.g. ``"2/3: invalid webhook url"``."""
        ratio = f"{self.success_count}/{self.total}"
        if self.succeeded:
            return ratio
        return f"{ratio}: {self.first_error or 'unknown error'}"

    def execution_result(self, sent_at: datetime) -> dict[str, Any]:
        """Compact record stored on the task after an immediate send."""
        result: dict[str, Any] = {
            "success": self.succeeded,
            "webhook_count": self.total,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
        }
        if self.succeeded:
            result["sent_at"] = sent_at.isoformat()
        else:
            result["failed_at"] = sent_at.isoformat()
            result["error"] = self.first_error
        return result


# ============================================================================
# TASK
# ============================================================================

@dataclass
class Task:
    title: str
    content: Content
    owner_id: str
    creator: str = ""
    group_selectors: list[str] = field(default_factory=lambda: [ALL_GROUPS])
    scheduled_time: Optional[datetime] = None
    status: TaskStatus = TaskStatus.PENDING

    # Assigned by the store
    id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    # Execution bookkeeping
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    execution_result: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None

    @property
    def type(self) -> TaskType:
        return self.content.type

    @property
    def is_immediate(self) -> bool:
        return self.scheduled_time is None

    def apply_outcome(self, summary: DispatchSummary, at: datetime) -> None:
        """Move to the terminal status implied by ``summary``."""
        self.status = summary.terminal_status
        self.execution_result = summary.execution_result(at)
        if self.status is TaskStatus.COMPLETED:
            self.completed_at = at
            self.error_message = None
        else:
            self.failed_at = at
            self.error_message = summary.first_error


@dataclass
class TaskPatch:
    """Fields an owner may replace on a task that has not executed yet."""
    title: Optional[str] = None
    content: Optional[Content] = None
    scheduled_time: Optional[datetime] = None
    group_selectors: Optional[list[str]] = None

    def has_updates(self) -> bool:
        return any(
            v is not None for v in (self.title, self.content, self.scheduled_time, self.group_selectors)
        )


@dataclass
class TaskFilter:
    status: Optional[TaskStatus] = None
    type: Optional[TaskType] = None
    owner_id: Optional[str] = None
    limit: int = 100
