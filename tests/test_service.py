# tests/test_service.py
"""Tests for TaskService orchestration (app/core/dispatch/service.py)"""
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from app.core.dispatch.domain import SendResult, TaskStatus, TaskType
from app.core.dispatch.engine import DispatchEngine
from app.core.dispatch.errors import (
    NoEndpointsError,
    PermissionDeniedError,
    PersistenceError,
    TaskNotFoundError,
    TaskStateError,
    ValidationError,
)
from app.core.dispatch.lifecycle import TaskLifecycleStore
from app.core.dispatch.service import TaskService
from app.infra.memory_repos import InMemoryTaskRepository


@pytest.fixture
def repo():
    return InMemoryTaskRepository()


@pytest.fixture
def service(repo, directory, transport, fixed_now):
    store = TaskLifecycleStore(repo, clock=lambda: fixed_now)
    return TaskService(store, directory, DispatchEngine(transport), list_limit=50)


class TestSubmitImmediate:
    @pytest.mark.asyncio
    async def test_sends_and_persists_completed_task(self, service, transport, alice, fixed_now):
        result = await service.submit(
            alice, title="Release", task_type="card",
            fields={"title": "v2", "url": "https://example.com"},
        )

        assert result.summary.message() == "3/3"
        assert result.message == "3/3"
        assert result.persisted
        assert result.task.id
        assert result.task.status is TaskStatus.COMPLETED
        assert result.task.completed_at == fixed_now
        assert result.task.creator == "Alice"
        assert result.task.execution_result["webhook_count"] == 3
        assert len(transport.calls) == 3

    @pytest.mark.asyncio
    async def test_partial_failure_marks_task_failed(self, repo, directory, transport_factory, endpoints, alice):
        transport = transport_factory({
            endpoints[1].url: SendResult(success=False, error_code=93000, error_message="invalid webhook url"),
        })
        service = TaskService(TaskLifecycleStore(repo), directory, DispatchEngine(transport))

        result = await service.submit(alice, title="t", task_type="rich_text", fields={"rich_text": "x"})

        assert result.message == "2/3: invalid webhook url"
        assert result.task.status is TaskStatus.FAILED
        assert result.task.error_message == "invalid webhook url"
        stored = await repo.get(result.task.id)
        assert stored.status is TaskStatus.FAILED

    @pytest.mark.asyncio
    async def test_no_endpoints_aborts_without_saving(self, service, repo, transport, alice):
        with pytest.raises(NoEndpointsError):
            await service.submit(
                alice, title="t", task_type="rich_text", fields={"rich_text": "x"}, selectors=["ghost"],
            )
        assert transport.calls == []
        assert len(repo) == 0

    @pytest.mark.asyncio
    async def test_validation_error_before_any_send(self, service, transport, alice):
        with pytest.raises(ValidationError):
            await service.submit(alice, title="t", task_type="card", fields={"title": "x"})
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_title_required(self, service, alice):
        with pytest.raises(ValidationError) as exc_info:
            await service.submit(alice, title="  ", task_type="rich_text", fields={"rich_text": "x"})
        assert exc_info.value.fields == {"title": "required"}

    @pytest.mark.asyncio
    async def test_persistence_failure_still_reports_summary(self, service, repo, transport, alice):
        repo.insert = AsyncMock(side_effect=PersistenceError("db down"))

        result = await service.submit(alice, title="t", task_type="rich_text", fields={"rich_text": "x"})

        assert result.persisted is False
        assert result.summary.success_count == 3
        assert result.message == "3/3 (record not saved)"
        assert len(transport.calls) == 3

    @pytest.mark.asyncio
    async def test_unknown_selector_warning_returned(self, service, alice):
        result = await service.submit(
            alice, title="t", task_type="rich_text", fields={"rich_text": "x"}, selectors=["g1", "ghost"],
        )
        assert result.summary.total == 2
        assert any("ghost" in w for w in result.warnings)


class TestSubmitScheduled:
    @pytest.mark.asyncio
    async def test_saved_pending_without_sending(self, service, transport, alice, future_time):
        result = await service.submit(
            alice, title="later", task_type="rich_text", fields={"rich_text": "x"},
            scheduled_time=future_time,
        )
        assert result.summary is None
        assert result.task.status is TaskStatus.PENDING
        assert result.message == f"scheduled for {future_time.isoformat()}"
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_naive_time_taken_as_utc(self, service, alice, future_time):
        result = await service.submit(
            alice, title="later", task_type="rich_text", fields={"rich_text": "x"},
            scheduled_time=future_time.replace(tzinfo=None),
        )
        assert result.task.scheduled_time == future_time

    @pytest.mark.asyncio
    async def test_past_time_rejected(self, service, alice, fixed_now):
        with pytest.raises(ValidationError) as exc_info:
            await service.submit(
                alice, title="t", task_type="rich_text", fields={"rich_text": "x"},
                scheduled_time=fixed_now - timedelta(minutes=1),
            )
        assert "scheduled_time" in exc_info.value.fields

    @pytest.mark.asyncio
    async def test_scheduled_needs_endpoints(self, service, bob, future_time, repo):
        with pytest.raises(NoEndpointsError):
            await service.submit(
                bob, title="t", task_type="rich_text", fields={"rich_text": "x"},
                selectors=["ungrouped"], scheduled_time=future_time,
            )
        assert len(repo) == 0


class TestSendNow:
    @pytest.mark.asyncio
    async def test_sends_pending_task_and_records_outcome(self, service, transport, alice, future_time):
        created = await service.submit(
            alice, title="t", task_type="rich_text", fields={"rich_text": "x"},
            selectors=["ungrouped"], scheduled_time=future_time,
        )
        result = await service.send_now(alice, created.task.id)

        assert result.message == "1/1"
        assert result.task.status is TaskStatus.COMPLETED
        assert [ep.id for ep, _ in transport.calls] == ["w3"]

    @pytest.mark.asyncio
    async def test_admin_send_uses_owner_endpoints(self, service, transport, alice, admin, future_time):
        created = await service.submit(
            alice, title="t", task_type="rich_text", fields={"rich_text": "x"}, scheduled_time=future_time,
        )
        result = await service.send_now(admin, created.task.id)
        assert result.summary.total == 3
        assert {ep.owner_id for ep, _ in transport.calls} == {"alice"}

    @pytest.mark.asyncio
    async def test_running_task_rejected(self, service, repo, alice, future_time):
        created = await service.submit(
            alice, title="t", task_type="rich_text", fields={"rich_text": "x"}, scheduled_time=future_time,
        )
        task = await repo.get(created.task.id)
        task.status = TaskStatus.RUNNING
        await repo.update(task)

        with pytest.raises(TaskStateError):
            await service.send_now(alice, created.task.id)

    @pytest.mark.asyncio
    async def test_status_write_failure_keeps_summary(self, service, repo, transport, alice, future_time):
        created = await service.submit(
            alice, title="t", task_type="rich_text", fields={"rich_text": "x"}, scheduled_time=future_time,
        )
        original_send = transport.send

        async def send_then_vanish(endpoint, payload):
            await repo.delete(created.task.id)
            return await original_send(endpoint, payload)

        transport.send = send_then_vanish

        result = await service.send_now(alice, created.task.id)

        assert result.persisted is False
        assert result.summary.success_count == 3
        assert result.message == "3/3 (record not saved)"
        assert len(transport.calls) == 3

    @pytest.mark.asyncio
    async def test_other_user_cannot_send(self, service, alice, bob, future_time):
        created = await service.submit(
            alice, title="t", task_type="rich_text", fields={"rich_text": "x"}, scheduled_time=future_time,
        )
        with pytest.raises(PermissionDeniedError):
            await service.send_now(bob, created.task.id)


class TestManagement:
    @pytest.mark.asyncio
    async def test_list_scoped_to_principal(self, service, alice, admin, future_time):
        await service.submit(
            alice, title="a", task_type="rich_text", fields={"rich_text": "x"}, scheduled_time=future_time,
        )
        assert len(await service.list_tasks(alice)) == 1
        assert len(await service.list_tasks(admin)) == 1
        assert len(await service.list_tasks(admin, owner_id="bob")) == 0

    @pytest.mark.asyncio
    async def test_user_cannot_list_other_owner(self, service, bob):
        with pytest.raises(PermissionDeniedError) as exc_info:
            await service.list_tasks(bob, owner_id="alice")
        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_invalid_filter(self, service, alice):
        with pytest.raises(ValidationError) as exc_info:
            await service.list_tasks(alice, status="bogus")
        assert "filter" in exc_info.value.fields

    @pytest.mark.asyncio
    async def test_edit_pending_task(self, service, alice, future_time):
        created = await service.submit(
            alice, title="a", task_type="rich_text", fields={"rich_text": "x"}, scheduled_time=future_time,
        )
        result = await service.edit_task(
            alice, created.task.id, title="b", task_type="card",
            fields={"title": "c", "url": "https://u"}, selectors=["g1"],
        )
        assert result.task.title == "b"
        assert result.task.type is TaskType.CARD
        assert result.task.group_selectors == ["g1"]

    @pytest.mark.asyncio
    async def test_edit_completed_task_rejected(self, service, alice):
        created = await service.submit(alice, title="a", task_type="rich_text", fields={"rich_text": "x"})
        with pytest.raises(TaskStateError):
            await service.edit_task(alice, created.task.id, title="b")

    @pytest.mark.asyncio
    async def test_delete(self, service, alice, bob):
        created = await service.submit(alice, title="a", task_type="rich_text", fields={"rich_text": "x"})
        with pytest.raises(PermissionDeniedError):
            await service.delete_task(bob, created.task.id)
        await service.delete_task(alice, created.task.id)
        with pytest.raises(TaskNotFoundError):
            await service.get_task(alice, created.task.id)


class TestPartialEdit:
    @pytest.mark.asyncio
    async def test_image_only_edit_keeps_text(self, service, alice, future_time, png_bytes):
        from app.core.dispatch.composer import LocalImage

        created = await service.submit(
            alice, title="a", task_type="text_image", fields={"text": "hello"}, scheduled_time=future_time,
        )
        result = await service.edit_task(alice, created.task.id, image=LocalImage(data=png_bytes, filename="a.png"))

        assert result.task.content.text == "hello"
        assert result.task.content.image.filename == "a.png"

    @pytest.mark.asyncio
    async def test_text_only_edit_keeps_image(self, service, alice, future_time, png_bytes):
        from app.core.dispatch.composer import LocalImage

        created = await service.submit(
            alice, title="a", task_type="text_image", fields={"text": "hello"},
            image=LocalImage(data=png_bytes, filename="a.png"), scheduled_time=future_time,
        )
        result = await service.edit_task(alice, created.task.id, fields={"text": "updated"})

        assert result.task.content.text == "updated"
        assert result.task.content.image == created.task.content.image

    @pytest.mark.asyncio
    async def test_explicit_none_clears_image(self, service, alice, future_time, png_bytes):
        from app.core.dispatch.composer import LocalImage

        created = await service.submit(
            alice, title="a", task_type="text_image", fields={"text": "hello"},
            image=LocalImage(data=png_bytes), scheduled_time=future_time,
        )
        result = await service.edit_task(alice, created.task.id, fields={"image": None})

        assert result.task.content.text == "hello"
        assert result.task.content.image is None

    @pytest.mark.asyncio
    async def test_card_title_edit_keeps_url(self, service, alice, future_time):
        created = await service.submit(
            alice, title="a", task_type="card",
            fields={"title": "v1", "url": "https://example.com", "description": "d"},
            scheduled_time=future_time,
        )
        result = await service.edit_task(alice, created.task.id, fields={"title": "v2"})

        assert result.task.content.title == "v2"
        assert result.task.content.url == "https://example.com"
        assert result.task.content.description == "d"

    @pytest.mark.asyncio
    async def test_unknown_type_rejected(self, service, alice, future_time):
        created = await service.submit(
            alice, title="a", task_type="rich_text", fields={"rich_text": "x"}, scheduled_time=future_time,
        )
        with pytest.raises(ValidationError) as exc_info:
            await service.edit_task(alice, created.task.id, task_type="video")
        assert "type" in exc_info.value.fields
