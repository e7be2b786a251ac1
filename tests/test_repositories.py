# tests/test_repositories.py
"""Tests for the Postgres and in-memory task / endpoint stores."""
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import asyncpg
import pytest

from app.core.dispatch.domain import (
    CardContent,
    RichTextContent,
    Task,
    TaskFilter,
    TaskStatus,
    TaskType,
)
from app.core.dispatch.errors import PersistenceError
from app.infra.memory_repos import InMemoryEndpointDirectory
from app.infra.pg_endpoint_repo_async import AsyncPostgresEndpointDirectory
from app.infra.pg_task_repo_async import AsyncPostgresTaskRepository, _row_to_task

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _task_row(**overrides) -> dict:
    row = {
        "id": "0b6f3f8e-2d4c-4b8a-9a51-2f1f3b9a7c10",
        "title": "Release",
        "type": "card",
        "status": "pending",
        "content": {"title": "v2", "url": "https://example.com", "picurl": "https://example.com/p.png"},
        "group_category": ["g1"],
        "scheduled_time": NOW,
        "creator": "Alice",
        "user_id": "alice",
        "created_at": NOW,
        "updated_at": NOW,
        "completed_at": None,
        "failed_at": None,
        "execution_result": None,
        "error_message": None,
    }
    row.update(overrides)
    return row


def _mock_db(mock_ctx, conn):
    mock_ctx.return_value.__aenter__ = AsyncMock(return_value=conn)
    mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)


# ============================================================================
# Row mapping
# ============================================================================

class TestRowToTask:
    def test_maps_columns(self):
        task = _row_to_task(_task_row())
        assert task.id == "0b6f3f8e-2d4c-4b8a-9a51-2f1f3b9a7c10"
        assert task.type is TaskType.CARD
        assert task.content == CardContent(
            title="v2", url="https://example.com", picture_url="https://example.com/p.png",
        )
        assert task.owner_id == "alice"
        assert task.group_selectors == ["g1"]
        assert task.status is TaskStatus.PENDING

    def test_json_text_columns(self):
        task = _row_to_task(_task_row(
            type="rich_text",
            content=json.dumps({"richText": "hi"}),
            group_category='"all"',
            execution_result=json.dumps({"success": True}),
        ))
        assert task.content == RichTextContent("hi")
        assert task.group_selectors == ["all"]
        assert task.execution_result == {"success": True}


# ============================================================================
# AsyncPostgresTaskRepository
# ============================================================================

class TestPostgresTaskRepository:
    @pytest.mark.asyncio
    async def test_insert_returns_stored_row(self):
        conn = MagicMock()
        conn.fetchrow = AsyncMock(return_value=_task_row())
        task = Task(title="Release", content=CardContent(title="v2", url="https://example.com"), owner_id="alice")

        with patch("app.infra.pg_task_repo_async.db_conn") as mock_ctx:
            _mock_db(mock_ctx, conn)
            saved = await AsyncPostgresTaskRepository().insert(task)

        assert saved.id == "0b6f3f8e-2d4c-4b8a-9a51-2f1f3b9a7c10"
        args = conn.fetchrow.call_args[0]
        assert "INSERT INTO tasks" in args[0]
        assert args[1:4] == ("Release", "card", "pending")
        assert args[4] == {"title": "v2", "url": "https://example.com"}
        assert args[5] == ["all"]

    @pytest.mark.asyncio
    async def test_update_missing_row(self):
        conn = MagicMock()
        conn.fetchrow = AsyncMock(return_value=None)
        task = _row_to_task(_task_row())

        with patch("app.infra.pg_task_repo_async.db_conn") as mock_ctx:
            _mock_db(mock_ctx, conn)
            with pytest.raises(PersistenceError):
                await AsyncPostgresTaskRepository().update(task)

    @pytest.mark.asyncio
    async def test_driver_errors_become_persistence_errors(self):
        conn = MagicMock()
        conn.fetchrow = AsyncMock(side_effect=OSError("connection reset"))

        with patch("app.infra.pg_task_repo_async.db_conn") as mock_ctx:
            _mock_db(mock_ctx, conn)
            with pytest.raises(PersistenceError, match="connection reset"):
                await AsyncPostgresTaskRepository().get("0b6f3f8e-2d4c-4b8a-9a51-2f1f3b9a7c10")

    @pytest.mark.asyncio
    async def test_get_non_uuid_is_none(self):
        conn = MagicMock()
        conn.fetchrow = AsyncMock(side_effect=asyncpg.DataError("invalid input syntax for type uuid"))

        with patch("app.infra.pg_task_repo_async.db_conn") as mock_ctx:
            _mock_db(mock_ctx, conn)
            assert await AsyncPostgresTaskRepository().get("not-a-uuid") is None

    @pytest.mark.asyncio
    async def test_delete(self):
        conn = MagicMock()
        conn.execute = AsyncMock(side_effect=["DELETE 1", "DELETE 0"])

        with patch("app.infra.pg_task_repo_async.db_conn") as mock_ctx:
            _mock_db(mock_ctx, conn)
            repo = AsyncPostgresTaskRepository()
            assert await repo.delete("a") is True
            assert await repo.delete("b") is False

    @pytest.mark.asyncio
    async def test_select_builds_filters(self):
        conn = MagicMock()
        conn.fetch = AsyncMock(return_value=[_task_row()])

        with patch("app.infra.pg_task_repo_async.db_conn") as mock_ctx:
            _mock_db(mock_ctx, conn)
            tasks = await AsyncPostgresTaskRepository().select(
                TaskFilter(status=TaskStatus.PENDING, owner_id="alice", limit=5),
            )

        assert len(tasks) == 1
        sql, *params = conn.fetch.call_args[0]
        assert "status = $1" in sql
        assert "user_id = $2" in sql
        assert "ORDER BY created_at DESC LIMIT $3" in sql
        assert params == ["pending", "alice", 5]

    @pytest.mark.asyncio
    async def test_count_by_status(self):
        conn = MagicMock()
        conn.fetch = AsyncMock(return_value=[{"status": "pending", "cnt": 2}, {"status": "failed", "cnt": 1}])

        with patch("app.infra.pg_task_repo_async.db_conn") as mock_ctx:
            _mock_db(mock_ctx, conn)
            counts = await AsyncPostgresTaskRepository().count_by_status("alice")

        assert counts == {"pending": 2, "failed": 1}
        assert conn.fetch.call_args[0][1] == "alice"


# ============================================================================
# AsyncPostgresEndpointDirectory
# ============================================================================

class TestPostgresEndpointDirectory:
    @pytest.mark.asyncio
    async def test_list_active(self):
        conn = MagicMock()
        conn.fetch = AsyncMock(return_value=[
            {"id": 1, "webhook_url": "https://h/1", "group_id": 7, "user_id": "alice", "status": "active", "name": "ops"},
            {"id": 2, "webhook_url": "https://h/2", "group_id": None, "user_id": "alice", "status": "active", "name": None},
        ])

        with patch("app.infra.pg_endpoint_repo_async.db_conn") as mock_ctx:
            _mock_db(mock_ctx, conn)
            endpoints = await AsyncPostgresEndpointDirectory().list_active("alice")

        assert [(ep.id, ep.group_id) for ep in endpoints] == [("1", "7"), ("2", None)]
        assert conn.fetch.call_args[0][1] == "alice"

    @pytest.mark.asyncio
    async def test_group_ids(self):
        conn = MagicMock()
        conn.fetch = AsyncMock(return_value=[{"id": 7}, {"id": 9}])

        with patch("app.infra.pg_endpoint_repo_async.db_conn") as mock_ctx:
            _mock_db(mock_ctx, conn)
            assert await AsyncPostgresEndpointDirectory().group_ids("alice") == {"7", "9"}

    @pytest.mark.asyncio
    async def test_count_by_status_folds_unknown_statuses(self):
        conn = MagicMock()
        conn.fetch = AsyncMock(return_value=[
            {"status": "active", "cnt": 3}, {"status": "disabled", "cnt": 1}, {"status": "inactive", "cnt": 2},
        ])

        with patch("app.infra.pg_endpoint_repo_async.db_conn") as mock_ctx:
            _mock_db(mock_ctx, conn)
            assert await AsyncPostgresEndpointDirectory().count_by_status() == {"active": 3, "inactive": 3}

    @pytest.mark.asyncio
    async def test_lookup_failure(self):
        conn = MagicMock()
        conn.fetch = AsyncMock(side_effect=asyncpg.PostgresError("relation \"webhooks\" does not exist"))

        with patch("app.infra.pg_endpoint_repo_async.db_conn") as mock_ctx:
            _mock_db(mock_ctx, conn)
            with pytest.raises(PersistenceError):
                await AsyncPostgresEndpointDirectory().list_active("alice")


# ============================================================================
# InMemoryEndpointDirectory
# ============================================================================

class TestInMemoryEndpointDirectory:
    def test_from_json_file(self, tmp_path):
        seed = tmp_path / "seed.json"
        seed.write_text(json.dumps({
            "groups": [{"id": 1, "user_id": "alice"}],
            "webhooks": [
                {"id": 10, "webhook_url": "https://h/10", "group_id": 1, "user_id": "alice", "status": "active"},
                {"id": 11, "webhook_url": "https://h/11", "group_id": None, "user_id": "alice",
                 "status": "inactive", "name": "old"},
            ],
        }))

        directory = InMemoryEndpointDirectory.from_json_file(str(seed))

        endpoints = directory._endpoints
        assert [ep.id for ep in endpoints] == ["10", "11"]
        assert endpoints[0].group_id == "1"
        assert endpoints[1].active is False

    @pytest.mark.asyncio
    async def test_scoped_by_owner(self, directory):
        assert {ep.id for ep in await directory.list_active("bob")} == {"w5"}
        assert await directory.group_ids("alice") == {"g1"}
        assert await directory.count_by_status("alice") == {"active": 3, "inactive": 1}
        assert await directory.count_by_status() == {"active": 4, "inactive": 1}


class TestInMemoryTaskRepository:
    @pytest.mark.asyncio
    async def test_update_missing_row(self):
        from app.infra.memory_repos import InMemoryTaskRepository

        task = _row_to_task(_task_row())
        with pytest.raises(PersistenceError, match="disappeared"):
            await InMemoryTaskRepository().update(task)
