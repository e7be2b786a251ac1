# app/infra/memory_repos.py
"""
In-process implementations of the task and endpoint stores.

Used by ``storage_backend=memory`` (dev, demos) and by the test suite.
Nothing survives a restart.
"""
from __future__ import annotations

import asyncio
import copy
import json
import uuid
from typing import Optional

from app.core.dispatch.domain import DeliveryEndpoint, Task, TaskFilter
from app.core.dispatch.errors import PersistenceError
from app.infra.logging_config import get_logger

logger = get_logger(__name__)


class InMemoryTaskRepository:
    def __init__(self):
        self._tasks: dict[str, Task] = {}
        self._order: list[str] = []  # insertion order, oldest first
        self._lock = asyncio.Lock()

    async def insert(self, task: Task) -> Task:
        async with self._lock:
            stored = copy.deepcopy(task)
            stored.id = str(uuid.uuid4())
            self._tasks[stored.id] = stored
            self._order.append(stored.id)
            return copy.deepcopy(stored)

    async def update(self, task: Task) -> Task:
        async with self._lock:
            if task.id not in self._tasks:
                raise PersistenceError(f"Task {task.id} disappeared before update")
            self._tasks[task.id] = copy.deepcopy(task)
            return copy.deepcopy(task)

    async def delete(self, task_id: str) -> bool:
        async with self._lock:
            if self._tasks.pop(task_id, None) is None:
                return False
            self._order.remove(task_id)
            return True

    async def get(self, task_id: str) -> Optional[Task]:
        task = self._tasks.get(task_id)
        return copy.deepcopy(task) if task is not None else None

    async def select(self, task_filter: TaskFilter) -> list[Task]:
        result: list[Task] = []
        # Newest first; insertion order breaks created_at ties
        for task_id in reversed(self._order):
            task = self._tasks[task_id]
            if task_filter.status is not None and task.status is not task_filter.status:
                continue
            if task_filter.type is not None and task.type is not task_filter.type:
                continue
            if task_filter.owner_id is not None and task.owner_id != task_filter.owner_id:
                continue
            result.append(copy.deepcopy(task))
        result.sort(key=lambda t: t.created_at.timestamp() if t.created_at else 0.0, reverse=True)
        return result[:task_filter.limit]

    async def count_by_status(self, owner_id: Optional[str] = None) -> dict[str, int]:
        counts: dict[str, int] = {}
        for task in self._tasks.values():
            if owner_id is not None and task.owner_id != owner_id:
                continue
            counts[task.status.value] = counts.get(task.status.value, 0) + 1
        return counts

    def __len__(self) -> int:
        return len(self._tasks)


class InMemoryEndpointDirectory:
    def __init__(
        self,
        endpoints: list[DeliveryEndpoint] | None = None,
        groups: dict[str, str] | None = None,
    ):
        """
        Args:
            endpoints: initial webhooks, in creation order
            groups: group id -> owner id
        """
        self._endpoints: list[DeliveryEndpoint] = list(endpoints or [])
        self._groups: dict[str, str] = dict(groups or {})

    @classmethod
    def from_json_file(cls, path: str) -> "InMemoryEndpointDirectory":
        """
        Load rows shaped like the ``groups`` / ``webhooks`` tables:

            {"groups": [{"id", "user_id"}],
             "webhooks": [{"id", "webhook_url", "group_id", "user_id", "status", "name"}]}
        """
        with open(path, encoding="utf-8") as f:
            raw = json.load(f)

        groups = {str(g["id"]): g["user_id"] for g in raw.get("groups", [])}
        endpoints = [
            DeliveryEndpoint(
                id=str(w["id"]),
                url=w["webhook_url"],
                owner_id=w["user_id"],
                group_id=str(w["group_id"]) if w.get("group_id") else None,
                active=w.get("status", "active") == "active",
                name=w.get("name"),
            )
            for w in raw.get("webhooks", [])
        ]
        logger.info(f"Loaded {len(endpoints)} webhooks and {len(groups)} groups from {path}")
        return cls(endpoints, groups)

    def add_group(self, group_id: str, owner_id: str) -> None:
        self._groups[group_id] = owner_id

    def add_endpoint(self, endpoint: DeliveryEndpoint) -> None:
        self._endpoints.append(endpoint)

    async def list_active(self, owner_id: str) -> list[DeliveryEndpoint]:
        return [ep for ep in self._endpoints if ep.owner_id == owner_id and ep.active]

    async def group_ids(self, owner_id: str) -> set[str]:
        return {gid for gid, owner in self._groups.items() if owner == owner_id}

    async def count_by_status(self, owner_id: Optional[str] = None) -> dict[str, int]:
        counts = {"active": 0, "inactive": 0}
        for ep in self._endpoints:
            if owner_id is not None and ep.owner_id != owner_id:
                continue
            counts["active" if ep.active else "inactive"] += 1
        return counts
