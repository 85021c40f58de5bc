from datetime import datetime, timezone
import json

import httpx
import pytest

from healthrelay.config import SinkSettings
from healthrelay.models.records import NormalizedRecord
from healthrelay.sink import HttpIngestSink, NullSink, SinkBatch, build_sink

INGEST_URL = "https://backend.test/api/ingest"


def _records(*ids):
    return [
        NormalizedRecord.from_resource(
            {"resourceType": "Observation", "id": resource_id},
            user_id="u1",
            connection_id="c1",
            ingested_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        )
        for resource_id in ids
    ]


def _sink(handler, **overrides) -> HttpIngestSink:
    values = {"ingest_url": INGEST_URL, "service_secret": "s3cret", "retry_delay_seconds": 0}
    values.update(overrides)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpIngestSink(SinkSettings(**values), source="fasten-connect", client=client)


def test_idempotency_key_ignores_record_order():
    forward = SinkBatch.build("u1", "c1", _records("o1", "o2", "o3"))
    reverse = SinkBatch.build("u1", "c1", _records("o3", "o2", "o1"))
    other = SinkBatch.build("u1", "c2", _records("o1", "o2", "o3"))

    assert forward.idempotency_key == reverse.idempotency_key
    assert forward.idempotency_key != other.idempotency_key


def test_payload_shape():
    batch = SinkBatch.build("u1", "c1", _records("o1"))
    payload = batch.payload("fasten-connect")

    assert payload["records"] == [{"resourceType": "Observation", "id": "o1"}]
    assert payload["user_id"] == "u1"
    assert payload["metadata"]["org_connection_id"] == "c1"
    assert payload["metadata"]["ingestion_run_id"] == batch.idempotency_key
    assert payload["metadata"]["total_records"] == 1


@pytest.mark.asyncio
async def test_http_sink_posts_with_service_headers():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(202, json={"accepted": True})

    batch = SinkBatch.build("u1", "c1", _records("o1", "o2"))
    result = await _sink(handler).push(batch)

    assert result.success is True
    assert result.status_code == 202
    assert result.attempts == 1
    assert seen["url"] == INGEST_URL
    assert seen["headers"]["idempotency-key"] == batch.idempotency_key
    assert seen["headers"]["x-service-secret"] == "s3cret"
    assert seen["headers"]["x-correlation-id"].startswith("relay-")
    assert seen["body"]["metadata"]["total_records"] == 2


@pytest.mark.asyncio
async def test_http_sink_retries_transient_statuses():
    statuses = iter([503, 502, 200])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(next(statuses))

    result = await _sink(handler).push(SinkBatch.build("u1", "c1", _records("o1")))

    assert result.success is True
    assert result.attempts == 3


@pytest.mark.asyncio
async def test_http_sink_reports_rejection_without_raising():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(400, json={"error": "bad batch"})

    result = await _sink(handler).push(SinkBatch.build("u1", "c1", _records("o1")))

    assert result.success is False
    assert result.status_code == 400
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_http_sink_reports_exhausted_transport_failures():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    result = await _sink(handler, max_retries=1).push(SinkBatch.build("u1", "c1", _records("o1")))

    assert result.success is False
    assert result.attempts == 2
    assert "refused" in result.error


@pytest.mark.asyncio
async def test_null_sink_skips():
    result = await NullSink().push(SinkBatch.build("u1", "c1", _records("o1")))

    assert result.success is True
    assert result.skipped is True


def test_build_sink_follows_settings():
    assert isinstance(build_sink(SinkSettings(ingest_url=None)), NullSink)
    assert isinstance(build_sink(SinkSettings(ingest_url=INGEST_URL)), HttpIngestSink)
