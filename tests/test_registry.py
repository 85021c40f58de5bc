import asyncio

import pytest

from healthrelay.connections.registry import ConnectionRegistry
from healthrelay.models.connections import (
    ConnectionStatus,
    ExportRecord,
    ExportStatus,
    can_transition,
)


@pytest.mark.asyncio
async def test_connection_success_creates_connected_connection():
    registry = ConnectionRegistry()
    connection = await registry.upsert_on_connection_success(
        "c1", user_id="u1", platform_type="epic", portal_id="p1"
    )

    assert connection.status == ConnectionStatus.CONNECTED
    assert connection.user_id == "u1"
    assert connection.connected_at is not None
    assert registry.connection_ids_for_user("u1") == ["c1"]
    assert [c.connection_id for c in registry.all_for_user("u1")] == ["c1"]


@pytest.mark.asyncio
async def test_owner_change_moves_connection_between_users():
    registry = ConnectionRegistry()
    await registry.upsert_on_connection_success("c1", user_id="u1")
    await registry.upsert_on_connection_success("c1", user_id="u2")

    assert registry.connection_ids_for_user("u1") == []
    assert registry.connection_ids_for_user("u2") == ["c1"]
    assert registry.user_ids() == ["u2"]


@pytest.mark.asyncio
async def test_repeat_connection_success_without_user_keeps_owner():
    registry = ConnectionRegistry()
    await registry.upsert_on_connection_success("c1", user_id="u1")
    connection = await registry.upsert_on_connection_success("c1")

    assert connection.user_id == "u1"
    assert registry.connection_ids_for_user("u1") == ["c1"]


@pytest.mark.asyncio
async def test_export_success_updates_known_connection():
    registry = ConnectionRegistry()
    await registry.upsert_on_connection_success("c1", user_id="u1")

    export = ExportRecord.succeeded("c1", download_link="https://files/1", task_id="t1")
    result = await registry.apply_export_success("c1", export)

    assert result.export_stored is True
    assert result.connection_updated is True
    assert registry.get("c1").status == ConnectionStatus.EXPORT_SUCCEEDED
    assert registry.get("c1").last_export_success_at == export.created_at
    stored = registry.get_export("c1")
    assert stored.status == ExportStatus.SUCCEEDED
    assert stored.expires_at is not None
    assert [e.connection_id for e in registry.exports_for_user("u1")] == ["c1"]


@pytest.mark.asyncio
async def test_export_failure_for_unknown_connection_stores_export_only():
    registry = ConnectionRegistry()
    result = await registry.apply_export_failure("c9", ExportRecord.failed("c9", "no records"))

    assert result.export_stored is True
    assert result.connection_updated is False
    assert registry.get("c9") is None
    assert registry.get_export("c9").status == ExportStatus.FAILED
    assert registry.get_export("c9").failure_reason == "no records"


@pytest.mark.asyncio
async def test_revoke_detaches_user_and_drops_export():
    registry = ConnectionRegistry()
    await registry.upsert_on_connection_success("c1", user_id="u1")
    await registry.apply_export_success("c1", ExportRecord.succeeded("c1", "https://files/1"))

    revoked = await registry.revoke("c1", provider_status="revoked")

    assert revoked.status == ConnectionStatus.REVOKED
    assert revoked.revoked_at is not None
    assert registry.get_export("c1") is None
    assert registry.connection_ids_for_user("u1") == []
    assert "u1" not in registry.user_ids()


@pytest.mark.asyncio
async def test_nothing_leaves_revoked():
    registry = ConnectionRegistry()
    await registry.upsert_on_connection_success("c1", user_id="u1")
    await registry.revoke("c1")

    result = await registry.apply_export_success("c1", ExportRecord.succeeded("c1", "https://files/1"))
    assert result.export_stored is False
    assert registry.get_export("c1") is None

    assert await registry.upsert_on_connection_success("c1", user_id="u1") is None
    assert await registry.mark_export_requested("c1") is False
    assert registry.get("c1").status == ConnectionStatus.REVOKED


@pytest.mark.asyncio
async def test_revoke_unknown_connection_returns_none():
    registry = ConnectionRegistry()
    assert await registry.revoke("nope") is None


@pytest.mark.asyncio
async def test_trigger_marks_follow_the_lifecycle():
    registry = ConnectionRegistry()
    await registry.upsert_on_connection_success("c1", user_id="u1")

    assert await registry.mark_export_requested("c1") is True
    assert registry.get("c1").status == ConnectionStatus.EXPORT_REQUESTED
    assert registry.get_export("c1").status == ExportStatus.REQUESTED

    assert await registry.mark_export_in_progress("c1", "task-1") is True
    connection = registry.get("c1")
    assert connection.status == ConnectionStatus.EXPORT_IN_PROGRESS
    assert connection.pending_task_id == "task-1"
    assert registry.get_export("c1").task_id == "task-1"


@pytest.mark.asyncio
async def test_late_in_progress_does_not_override_success():
    registry = ConnectionRegistry()
    await registry.upsert_on_connection_success("c1", user_id="u1")
    await registry.mark_export_requested("c1")
    await registry.apply_export_success("c1", ExportRecord.succeeded("c1", "https://files/1"))

    assert await registry.mark_export_in_progress("c1", "task-1") is False
    assert registry.get("c1").status == ConnectionStatus.EXPORT_SUCCEEDED
    assert registry.get_export("c1").status == ExportStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_request_failure_records_error():
    registry = ConnectionRegistry()
    await registry.upsert_on_connection_success("c1")
    await registry.mark_export_requested("c1")

    assert await registry.mark_export_request_failed("c1", "provider unavailable") is True
    connection = registry.get("c1")
    assert connection.status == ConnectionStatus.EXPORT_FAILED
    assert connection.last_error == "provider unavailable"
    assert registry.get_export("c1").status == ExportStatus.FAILED



@pytest.mark.asyncio
async def test_late_request_failure_does_not_override_terminal_webhooks():
    registry = ConnectionRegistry()
    await registry.upsert_on_connection_success("c1", user_id="u1")
    await registry.mark_export_requested("c1")
    await registry.apply_export_success("c1", ExportRecord.succeeded("c1", "https://files/1"))

    assert await registry.mark_export_request_failed("c1", "export already running") is False
    connection = registry.get("c1")
    assert connection.status == ConnectionStatus.EXPORT_SUCCEEDED
    assert connection.last_error is None

    await registry.apply_export_failure("c1", ExportRecord.failed("c1", "no_records_found"))
    assert await registry.mark_export_in_progress("c1", "task-1") is False
    assert registry.get("c1").status == ConnectionStatus.EXPORT_FAILED


@pytest.mark.asyncio
async def test_concurrent_mutations_on_one_connection_are_serialized():
    registry = ConnectionRegistry()

    await asyncio.gather(
        registry.upsert_on_connection_success("c1", user_id="u1"),
        registry.apply_export_success("c1", ExportRecord.succeeded("c1", "https://files/1")),
        registry.upsert_on_connection_success("c2", user_id="u1"),
    )

    assert registry.get_export("c1").status == ExportStatus.SUCCEEDED
    assert set(registry.connection_ids_for_user("u1")) == {"c1", "c2"}
    assert registry.stats()["connections"] == 2


@pytest.mark.asyncio
async def test_reads_return_copies():
    registry = ConnectionRegistry()
    await registry.upsert_on_connection_success("c1", user_id="u1")

    copy = registry.get("c1")
    copy.status = ConnectionStatus.REVOKED

    assert registry.get("c1").status == ConnectionStatus.CONNECTED


def test_transition_table():
    assert can_transition(ConnectionStatus.PENDING, ConnectionStatus.CONNECTED)
    assert not can_transition(ConnectionStatus.PENDING, ConnectionStatus.REVOKED)
    assert can_transition(ConnectionStatus.EXPORT_FAILED, ConnectionStatus.EXPORT_REQUESTED)
    assert not can_transition(ConnectionStatus.EXPORT_SUCCEEDED, ConnectionStatus.EXPORT_IN_PROGRESS)
    for status in ConnectionStatus:
        assert not can_transition(ConnectionStatus.REVOKED, status)


@pytest.mark.asyncio
async def test_locks_are_dropped_once_released():
    registry = ConnectionRegistry()

    async with registry.lock("c1"):
        waiter = asyncio.create_task(registry.upsert_on_connection_success("c1", user_id="u1"))
        await asyncio.sleep(0)
        assert registry.stats()["held_locks"] == 1
    await waiter

    await asyncio.gather(
        registry.upsert_on_connection_success("c2"),
        registry.revoke("unknown"),
        registry.mark_export_requested("missing"),
    )

    assert registry.get("c1").user_id == "u1"
    assert registry.stats()["held_locks"] == 0
