# app/infra/pg_task_repo_async.py
"""
Async PostgreSQL task repository (asyncpg).

Table ``tasks`` (schema managed outside this service):

    id uuid, title text, type text, status text,
    content jsonb, group_category jsonb, scheduled_time timestamptz,
    creator text, user_id text, created_at / updated_at timestamptz,
    completed_at / failed_at timestamptz, execution_result jsonb,
    error_message text

Driver and connection errors are re-raised as ``PersistenceError``.
"""
from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import asyncpg

from app.core.dispatch.domain import (
    Task,
    TaskFilter,
    TaskStatus,
    content_from_dict,
    content_to_dict,
)
from app.core.dispatch.errors import PersistenceError
from app.infra.db_async import db_conn
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

_COLUMNS = (
    "id, title, type, status, content, group_category, scheduled_time, creator, user_id, "
    "created_at, updated_at, completed_at, failed_at, execution_result, error_message"
)


def _json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def _row_to_task(row) -> Task:
    """Convert an asyncpg Record to a Task."""
    selectors = _json(row["group_category"]) or []
    if isinstance(selectors, str):
        selectors = [selectors]
    return Task(
        id=str(row["id"]),
        title=row["title"],
        content=content_from_dict(row["type"], _json(row["content"])),
        owner_id=row["user_id"],
        creator=row["creator"] or "",
        group_selectors=list(selectors),
        scheduled_time=row["scheduled_time"],
        status=TaskStatus(row["status"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        completed_at=row["completed_at"],
        failed_at=row["failed_at"],
        execution_result=_json(row["execution_result"]),
        error_message=row["error_message"],
    )


@asynccontextmanager
async def _conn() -> AsyncIterator[asyncpg.Connection]:
    try:
        async with db_conn() as conn:
            yield conn
    except (asyncpg.PostgresError, OSError) as e:
        logger.error(f"Task store error: {type(e).__name__}: {e}")
        raise PersistenceError(str(e)) from e


class AsyncPostgresTaskRepository:
    async def insert(self, task: Task) -> Task:
        async with _conn() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO tasks (
                    title, type, status, content, group_category, scheduled_time,
                    creator, user_id, created_at, updated_at,
                    completed_at, failed_at, execution_result, error_message
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
                RETURNING {_COLUMNS}
                """,
                task.title,
                task.type.value,
                task.status.value,
                content_to_dict(task.content),
                task.group_selectors,
                task.scheduled_time,
                task.creator,
                task.owner_id,
                task.created_at,
                task.updated_at,
                task.completed_at,
                task.failed_at,
                task.execution_result,
                task.error_message,
            )
            saved = _row_to_task(row)
            logger.debug(
                f"Task inserted: id={saved.id[:8]}, type={saved.type.value}",
                extra={"task_id": saved.id},
            )
            return saved

    async def update(self, task: Task) -> Task:
        async with _conn() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE tasks
                SET title = $2, type = $3, status = $4, content = $5,
                    group_category = $6, scheduled_time = $7, updated_at = $8,
                    completed_at = $9, failed_at = $10,
                    execution_result = $11, error_message = $12
                WHERE id = $1
                RETURNING {_COLUMNS}
                """,
                task.id,
                task.title,
                task.type.value,
                task.status.value,
                content_to_dict(task.content),
                task.group_selectors,
                task.scheduled_time,
                task.updated_at,
                task.completed_at,
                task.failed_at,
                task.execution_result,
                task.error_message,
            )
            if row is None:
                raise PersistenceError(f"Task {task.id} disappeared before update")
            return _row_to_task(row)

    async def delete(self, task_id: str) -> bool:
        async with _conn() as conn:
            try:
                result = await conn.execute("DELETE FROM tasks WHERE id = $1", task_id)
            except asyncpg.DataError:
                return False
            return (int(result.split()[-1]) if result else 0) > 0

    async def get(self, task_id: str) -> Optional[Task]:
        async with _conn() as conn:
            try:
                row = await conn.fetchrow(f"SELECT {_COLUMNS} FROM tasks WHERE id = $1", task_id)
            except asyncpg.DataError:
                # Not a uuid
                return None
            return _row_to_task(row) if row else None

    async def select(self, task_filter: TaskFilter) -> list[Task]:
        conditions = []
        params: list[Any] = []
        idx = 1

        if task_filter.status:
            conditions.append(f"status = ${idx}")
            params.append(task_filter.status.value)
            idx += 1

        if task_filter.type:
            conditions.append(f"type = ${idx}")
            params.append(task_filter.type.value)
            idx += 1

        if task_filter.owner_id:
            conditions.append(f"user_id = ${idx}")
            params.append(task_filter.owner_id)
            idx += 1

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.append(task_filter.limit)

        async with _conn() as conn:
            rows = await conn.fetch(
                f"SELECT {_COLUMNS} FROM tasks {where} ORDER BY created_at DESC LIMIT ${idx}",
                *params,
            )
            return [_row_to_task(row) for row in rows]

    async def count_by_status(self, owner_id: str | None = None) -> dict[str, int]:
        """Return {status: count} for the dashboard."""
        async with _conn() as conn:
            if owner_id:
                rows = await conn.fetch(
                    "SELECT status, count(*)::int as cnt FROM tasks WHERE user_id = $1 GROUP BY status",
                    owner_id,
                )
            else:
                rows = await conn.fetch(
                    "SELECT status, count(*)::int as cnt FROM tasks GROUP BY status",
                )
            return {row["status"]: row["cnt"] for row in rows}
