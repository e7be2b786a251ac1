# app/core/dispatch/errors.py
"""
Typed errors for composing, resolving, dispatching and storing tasks.

Fatal errors derive from ``DispatchError`` and carry the HTTP status the
transport layer answers with.  Per-endpoint and post-dispatch failures
(``TransportError``, ``PersistenceError``) are caught where they happen
and never abort a fan-out.
"""
from __future__ import annotations


class DispatchError(Exception):
    """Base class for task-service errors."""

    status_code: int = 500

    def __init__(self, detail: str = "Internal error"):
        self.detail = detail
        super().__init__(detail)


class ValidationError(DispatchError):
    """Missing or invalid content fields (400).

    ``fields`` maps each offending field to a short reason.
    """

    status_code = 400

    def __init__(self, fields: dict[str, str] | None = None, detail: str | None = None):
        self.fields = dict(fields or {})
        if detail is None:
            detail = "; ".join(f"{name}: {reason}" for name, reason in self.fields.items()) or "Invalid content"
        super().__init__(detail)


class NoEndpointsError(DispatchError):
    """Selectors resolved to zero active endpoints (422)."""

    status_code = 422

    def __init__(self, detail: str = "No active webhooks match the selected groups"):
        super().__init__(detail)


class PermissionDeniedError(DispatchError):
    """Principal may not touch this task (403)."""

    status_code = 403


class TaskNotFoundError(DispatchError):
    """Task id does not exist (404)."""

    status_code = 404

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task {task_id} not found")


class TaskStateError(DispatchError):
    """Task is no longer editable (409)."""

    status_code = 409


class TransportError(Exception):
    """One delivery call failed. Recorded into that endpoint's outcome."""

    def __init__(self, message: str, error_code: int | None = None):
        self.error_code = error_code
        super().__init__(message)


class PersistenceError(Exception):
    """The task store rejected a read or write."""


class CacheFetchError(Exception):
    """A cache fetch function raised; the previous entry is left in place."""

    def __init__(self, key: str, cause: BaseException):
        self.key = key
        self.cause = cause
        super().__init__(f"Fetch for cache key {key!r} failed: {cause}")


class ResolutionWarning(UserWarning):
    """A group selector token was not recognized and was dropped."""

    def __init__(self, token: str):
        self.token = token
        super().__init__(f"Unknown group selector dropped: {token!r}")
