import asyncio

import httpx
import pytest

from healthrelay.connections.registry import ConnectionRegistry
from healthrelay.errors import ProviderRequestError
from healthrelay.models.connections import ConnectionStatus, ExportRecord, ExportStatus
from healthrelay.observability.metrics import MetricsCollector
from healthrelay.provider.client import ExportTaskResponse
from healthrelay.provider.trigger import ExportTrigger, TriggerStatus
from healthrelay.retry import RetryPolicy

from fakes import FakeProvider

EXPORT_URL = "https://provider.test/v1/bridge/fhir/ehi-export"


async def _connected_registry() -> ConnectionRegistry:
    registry = ConnectionRegistry()
    await registry.upsert_on_connection_success("c1", user_id="u1", platform_type="epic")
    return registry


def _trigger(provider, registry, max_retries=3, metrics=None):
    return ExportTrigger(
        provider,
        registry,
        policy=RetryPolicy(max_retries=max_retries, delay_seconds=0),
        metrics=metrics,
    )


@pytest.mark.asyncio
async def test_successful_trigger_moves_connection_in_progress():
    registry = await _connected_registry()
    provider = FakeProvider(outcomes=[ExportTaskResponse(status="pending", task_id="task-9")])
    metrics = MetricsCollector()

    result = await _trigger(provider, registry, metrics=metrics).trigger("c1")

    assert result.status == TriggerStatus.TRIGGERED
    assert result.task_id == "task-9"
    assert result.attempts == 1
    connection = registry.get("c1")
    assert connection.status == ConnectionStatus.EXPORT_IN_PROGRESS
    assert connection.pending_task_id == "task-9"
    assert connection.last_export_requested_at is not None
    assert registry.get_export("c1").status == ExportStatus.IN_PROGRESS
    assert metrics.export_triggers.get(labels={"status": "triggered"}) == 1
    assert metrics.timer.summary("export_trigger")["count"] == 1


@pytest.mark.asyncio
async def test_missing_credentials_skip_the_provider():
    registry = await _connected_registry()
    provider = FakeProvider(configured=False)

    result = await _trigger(provider, registry).trigger("c1")

    assert result.status == TriggerStatus.NOT_CONFIGURED
    assert provider.calls == []
    assert registry.get("c1").status == ConnectionStatus.CONNECTED


@pytest.mark.asyncio
async def test_concurrent_triggers_call_provider_once():
    registry = await _connected_registry()
    gate = asyncio.Event()
    provider = FakeProvider(gate=gate)
    trigger = _trigger(provider, registry)

    first = asyncio.create_task(trigger.trigger("c1"))
    await asyncio.sleep(0)
    assert trigger.is_in_flight("c1")

    second = await trigger.trigger("c1")
    assert second.status == TriggerStatus.IN_FLIGHT

    gate.set()
    first_result = await first

    assert first_result.status == TriggerStatus.TRIGGERED
    assert provider.calls == ["c1"]
    assert not trigger.is_in_flight("c1")


@pytest.mark.asyncio
async def test_retryable_statuses_are_retried():
    registry = await _connected_registry()
    provider = FakeProvider(outcomes=[
        ProviderRequestError(EXPORT_URL, 503),
        ProviderRequestError(EXPORT_URL, 429),
        ExportTaskResponse(status="pending", task_id="task-3"),
    ])

    result = await _trigger(provider, registry).trigger("c1")

    assert result.status == TriggerStatus.TRIGGERED
    assert result.attempts == 3
    assert len(provider.calls) == 3


@pytest.mark.asyncio
async def test_transport_errors_are_retried():
    registry = await _connected_registry()
    provider = FakeProvider(outcomes=[
        httpx.ConnectError("connection refused"),
        httpx.ReadTimeout("timed out"),
    ])

    result = await _trigger(provider, registry).trigger("c1")

    assert result.status == TriggerStatus.TRIGGERED
    assert result.attempts == 3


@pytest.mark.asyncio
async def test_non_retryable_failure_fails_immediately():
    registry = await _connected_registry()
    provider = FakeProvider(outcomes=[ProviderRequestError(EXPORT_URL, 400, "bad request")])

    result = await _trigger(provider, registry).trigger("c1")

    assert result.status == TriggerStatus.FAILED
    assert result.attempts == 1
    connection = registry.get("c1")
    assert connection.status == ConnectionStatus.EXPORT_FAILED
    assert "400" in connection.last_error


@pytest.mark.asyncio
async def test_retries_are_bounded():
    registry = await _connected_registry()
    provider = FakeProvider(outcomes=[ProviderRequestError(EXPORT_URL, 502)] * 10)

    result = await _trigger(provider, registry, max_retries=3).trigger("c1")

    assert result.status == TriggerStatus.FAILED
    assert result.attempts == 4
    assert len(provider.calls) == 4
    assert registry.get("c1").status == ConnectionStatus.EXPORT_FAILED


@pytest.mark.asyncio
async def test_guard_is_released_after_failure():
    registry = await _connected_registry()
    provider = FakeProvider(outcomes=[ProviderRequestError(EXPORT_URL, 400)])
    trigger = _trigger(provider, registry)

    await trigger.trigger("c1")
    result = await trigger.trigger("c1")

    assert result.status == TriggerStatus.TRIGGERED
    assert registry.get("c1").status == ConnectionStatus.EXPORT_IN_PROGRESS


@pytest.mark.asyncio
async def test_acknowledgment_without_task_id_stays_requested():
    registry = await _connected_registry()
    provider = FakeProvider(outcomes=[ExportTaskResponse(status="pending")])

    result = await _trigger(provider, registry).trigger("c1")

    assert result.status == TriggerStatus.TRIGGERED
    assert result.task_id is None
    assert registry.get("c1").status == ConnectionStatus.EXPORT_REQUESTED
    assert registry.get_export("c1").status == ExportStatus.REQUESTED


@pytest.mark.asyncio
async def test_late_request_failure_does_not_override_export_success():
    registry = await _connected_registry()
    gate = asyncio.Event()
    provider = FakeProvider(outcomes=[ProviderRequestError(EXPORT_URL, 400, "export already running")], gate=gate)
    trigger = _trigger(provider, registry)

    pending = asyncio.create_task(trigger.trigger("c1"))
    while not provider.calls:
        await asyncio.sleep(0)
    await registry.apply_export_success("c1", ExportRecord.succeeded("c1", "https://files.test/c1.jsonl"))
    gate.set()
    result = await pending

    assert result.status == TriggerStatus.FAILED
    connection = registry.get("c1")
    assert connection.status == ConnectionStatus.EXPORT_SUCCEEDED
    assert connection.last_error is None
    assert registry.get_export("c1").status == ExportStatus.SUCCEEDED
