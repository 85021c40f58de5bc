"""
Tests for the HTTP API: webhook intake, pull API and diagnostics.
"""

from datetime import datetime, timezone
import json
import time

import pytest
from fastapi.testclient import TestClient

from healthrelay.api.main import create_app
from healthrelay.models.records import NormalizedRecord
from healthrelay.service import RelayService

from fakes import FakeDownloader, FakeProvider, RecordingSink, make_settings

SECRET = "relay-test-secret"


def _service(**app_overrides) -> RelayService:
    app_overrides.setdefault("auto_trigger_export", False)
    return RelayService(
        make_settings(**app_overrides),
        provider=FakeProvider(),
        downloader=FakeDownloader(),
        sink=RecordingSink(),
        use_timers=False,
    )


@pytest.fixture
def service():
    return _service()


@pytest.fixture
def client(service):
    with TestClient(create_app(service)) as test_client:
        yield test_client


def _connection_success(event_id="evt-1", connection_id="c1", user_id="u1"):
    return {
        "id": event_id,
        "type": "patient.connection_success",
        "api_mode": "test",
        "data": {
            "org_connection_id": connection_id,
            "external_id": user_id,
            "platform_type": "cerner",
        },
    }


def _record(user_id, resource_id, resource_type="Observation"):
    return NormalizedRecord.from_resource(
        {"resourceType": resource_type, "id": resource_id},
        user_id=user_id,
        connection_id="c1",
        ingested_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )


# =============================================================================
# Webhook intake
# =============================================================================

def test_webhook_is_acknowledged(client, service):
    response = client.post("/webhook/fasten", json=_connection_success())

    assert response.status_code == 200
    body = response.json()
    assert body["received"] is True
    assert body["event_id"] == "evt-1"
    assert body["status"] == "processed"
    assert body["archive_id"]
    assert service.registry.get("c1").user_id == "u1"


def test_duplicate_webhook_is_acknowledged(client):
    client.post("/webhook/fasten", json=_connection_success())
    response = client.post("/webhook/fasten", json=_connection_success())

    assert response.status_code == 200
    assert response.json()["status"] == "duplicate"


def test_invalid_json_is_rejected(client):
    response = client.post(
        "/webhook/fasten",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )
    assert response.status_code == 400


def test_malformed_event_is_still_acknowledged(client):
    response = client.post("/webhook/fasten", json={"id": "evt-bad", "type": "patient.connection_success"})

    assert response.status_code == 200
    assert response.json()["status"] == "malformed"


def test_unknown_event_type_is_acknowledged(client):
    response = client.post("/webhook/fasten", json={"id": "evt-x", "type": "patient.new_thing"})

    assert response.status_code == 200
    assert response.json()["status"] == "ignored"


def test_test_endpoint_and_unknown_paths_acknowledge(client):
    test_response = client.post("/webhook/test", json={"hello": "world"})
    assert test_response.status_code == 200
    assert test_response.json()["received"] is True

    unknown = client.post("/webhook/some/other/path", content=b"anything")
    assert unknown.status_code == 200
    assert unknown.json()["path"] == "/webhook/some/other/path"


# =============================================================================
# Signature verification
# =============================================================================

def _signed_headers(service, message_id, body, timestamp=None):
    timestamp = timestamp if timestamp is not None else int(time.time())
    return {
        "Content-Type": "application/json",
        "webhook-id": message_id,
        "webhook-timestamp": str(timestamp),
        "webhook-signature": service.verifier.sign(message_id, timestamp, body),
    }


def test_signed_webhook_is_accepted():
    service = _service(webhook_secret=SECRET)
    body = json.dumps(_connection_success()).encode("utf-8")

    with TestClient(create_app(service)) as client:
        response = client.post(
            "/webhook/fasten",
            content=body,
            headers=_signed_headers(service, "msg-1", body),
        )

    assert response.status_code == 200
    assert response.json()["status"] == "processed"


def test_missing_or_bad_signature_is_rejected():
    service = _service(webhook_secret=SECRET)
    body = json.dumps(_connection_success()).encode("utf-8")

    with TestClient(create_app(service)) as client:
        unsigned = client.post(
            "/webhook/fasten",
            content=body,
            headers={"Content-Type": "application/json"},
        )
        headers = _signed_headers(service, "msg-1", body)
        tampered = client.post("/webhook/fasten", content=body + b" ", headers=headers)

    assert unsigned.status_code == 401
    assert tampered.status_code == 401
    assert service.events.stats()["archived_events"] == 0


# =============================================================================
# Health and connections
# =============================================================================

def test_health_reports_counters(client):
    client.post("/webhook/fasten", json=_connection_success())
    client.post("/webhook/fasten", json=_connection_success())

    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["service"] == "healthrelay"
    assert body["provider_configured"] is True
    assert body["stats"]["total_events"] == 1
    assert body["stats"]["duplicates_skipped"] == 1
    assert body["stats"]["connections"] == 1
    assert body["stats"]["unique_users"] == 1


def test_liveness(client):
    assert client.get("/health/live").json() == {"status": "alive"}


def test_connection_status(client):
    assert client.get("/v1/connections/c1/status").status_code == 404

    client.post("/webhook/fasten", json=_connection_success())
    response = client.get("/v1/connections/c1/status")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "connected"
    assert body["has_export"] is False
    assert body["monitoring"]["status"] == "monitoring"


def test_connection_export_and_user_views(client):
    client.post("/webhook/fasten", json=_connection_success())
    assert client.get("/v1/connections/c1/export").status_code == 404

    client.post("/webhook/fasten", json={
        "id": "evt-2",
        "type": "patient.ehi_export_failed",
        "data": {"org_connection_id": "c1", "failure_reason": "timeout"},
    })

    export = client.get("/v1/connections/c1/export").json()
    assert export["status"] == "failed"
    assert export["failure_reason"] == "timeout"

    listed = client.get("/v1/connections").json()
    assert listed["total"] == 1
    assert listed["connections"][0]["status"] == "export_failed"

    user_connections = client.get("/v1/users/u1/connections").json()
    assert [c["connection_id"] for c in user_connections["connections"]] == ["c1"]
    assert len(client.get("/v1/users/u1/exports").json()["exports"]) == 1

    summary = client.get("/v1/users/u1/summary").json()
    assert summary["total_connections"] == 1
    assert summary["total_exports"] == 1

    detailed = client.get("/v1/connections/detailed").json()
    assert detailed["total_connections"] == 1
    assert detailed["connections"][0]["monitoring"]["status"] == "completed"


# =============================================================================
# Records
# =============================================================================

def test_record_pull_api(client, service):
    service.records.append("u1", "c1", [_record("u1", "o1"), _record("u1", "p1", "Patient")])
    service.records.append("u2", "c2", [_record("u2", "o2")])

    everything = client.get("/v1/records").json()
    assert everything["metadata"]["total_records"] == 3
    assert everything["metadata"]["source"] == "fasten-connect"
    assert {r["resource_id"] for r in everything["data"]} == {"o1", "p1", "o2"}

    user = client.get("/v1/records/users/u1").json()
    assert user["metadata"]["total_records"] == 2
    assert user["data"][0]["resource"] == {"resourceType": "Observation", "id": "o1"}

    stats = client.get("/v1/records/stats").json()
    assert stats["records"] == 3
    assert stats["resource_types"] == {"Observation": 2, "Patient": 1}

    history = client.get("/v1/records/history", params={"user_id": "u1"}).json()
    assert history["total"] == 1
    assert history["history"][0]["record_count"] == 2


def test_clear_records(client, service):
    service.records.append("u1", "c1", [_record("u1", "o1")])
    service.records.append("u2", "c2", [_record("u2", "o2")])

    one = client.post("/v1/records/clear", json={"user_id": "u1"}).json()
    assert one["removed"] == 1
    assert client.get("/v1/records/users/u1").json()["data"] == []

    everything = client.post("/v1/records/clear").json()
    assert everything["removed"] == 1
    assert everything["message"] == "Cleared all processed data"
    assert client.get("/v1/records").json()["data"] == []


# =============================================================================
# Diagnostics
# =============================================================================

def test_diagnostics_report_and_sweep(client, service):
    client.post("/webhook/fasten", json=_connection_success())

    report = client.get("/v1/diagnostics/report").json()
    assert [e["connection_id"] for e in report["active_monitoring"]] == ["c1"]
    assert report["diagnostics"] == []

    assert client.post("/v1/diagnostics/sweep").json() == {"timed_out": [], "count": 0}
    assert client.get("/v1/diagnostics/stats").json()["active_monitoring"] == 1


def test_recent_events_and_lookup(client):
    ack = client.post("/webhook/fasten", json=_connection_success()).json()

    events = client.get("/v1/diagnostics/events", params={"limit": 5}).json()
    assert [e["event_id"] for e in events["events"]] == ["evt-1"]
    assert events["events"][0]["outcome"] == "succeeded"

    event = client.get(f"/v1/diagnostics/events/{ack['archive_id']}").json()
    assert event["payload"]["data"]["org_connection_id"] == "c1"
    assert client.get("/v1/diagnostics/events/missing").status_code == 404


def test_metrics_endpoints(client):
    client.post("/webhook/fasten", json=_connection_success())

    summary = client.get("/v1/diagnostics/metrics").json()
    assert summary["webhook_events"] == 1

    prometheus = client.get("/v1/diagnostics/metrics/prometheus")
    assert prometheus.status_code == 200
    assert "# TYPE relay_webhook_events_total counter" in prometheus.text
    assert 'relay_webhook_events_total{outcome="processed",type="patient.connection_success"} 1.0' in prometheus.text
