# app/core/dispatch/ports.py
from __future__ import annotations
from typing import Protocol, Optional

from app.core.dispatch.domain import (
    DeliveryEndpoint,
    Payload,
    SendResult,
    Task,
    TaskFilter,
)


# ============================================================================
# DELIVERY
# ============================================================================

class DeliveryTransport(Protocol):
    async def send(self, endpoint: DeliveryEndpoint, payload: Payload) -> SendResult:
        """
        Deliver one payload to one endpoint.

        A non-zero application code comes back as ``SendResult(success=False)``.
        Network failures may either be returned the same way or raised;
        the engine records both as a failed outcome.
        """
        ...


# ============================================================================
# STORES
# ============================================================================

class EndpointDirectory(Protocol):
    async def list_active(self, owner_id: str) -> list[DeliveryEndpoint]:
        """Active endpoints owned by ``owner_id``, in stable (creation) order."""
        ...

    async def group_ids(self, owner_id: str) -> set[str]:
        """Ids of the groups ``owner_id`` may select."""
        ...

    async def count_by_status(self, owner_id: Optional[str] = None) -> dict[str, int]:
        """Endpoint counts keyed by ``active`` / ``inactive``. ``None`` counts every owner."""
        ...


class TaskRepository(Protocol):
    async def insert(self, task: Task) -> Task:
        """Persist a new task, assigning ``id`` and timestamps."""
        ...

    async def update(self, task: Task) -> Task: ...
    async def delete(self, task_id: str) -> bool: ...
    async def get(self, task_id: str) -> Optional[Task]: ...
    async def select(self, task_filter: TaskFilter) -> list[Task]:
        """Newest first, at most ``task_filter.limit`` rows."""
        ...

    async def count_by_status(self, owner_id: Optional[str] = None) -> dict[str, int]:
        """Task counts keyed by status. ``None`` counts every owner."""
        ...
