from healthrelay.config import (
    MonitorSettings,
    PipelineSettings,
    ProviderSettings,
    RelaySettings,
    Settings,
    SinkSettings,
)


def test_defaults():
    settings = Settings()

    assert settings.app.auto_trigger_export is True
    assert settings.provider.max_retries == 3
    assert settings.monitor.export_timeout_minutes == 30.0
    assert settings.monitor.slow_platform_timeout_minutes == 60.0
    assert settings.pipeline.batch_size == 100
    assert settings.pipeline.cache_ttl_seconds == 300.0


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("RELAY_AUTO_TRIGGER_EXPORT", "false")
    monkeypatch.setenv("RELAY_WEBHOOK_SECRET", "whsec_c2VjcmV0")
    monkeypatch.setenv("FASTEN_PUBLIC_KEY", "public")
    monkeypatch.setenv("FASTEN_PRIVATE_KEY", "private")
    monkeypatch.setenv("MONITOR_EXPORT_TIMEOUT_MINUTES", "15")
    monkeypatch.setenv("PIPELINE_BATCH_SIZE", "250")
    monkeypatch.setenv("SINK_INGEST_URL", "https://backend.test/ingest")

    assert RelaySettings().auto_trigger_export is False
    assert RelaySettings().webhook_secret.get_secret_value() == "whsec_c2VjcmV0"
    assert ProviderSettings().is_configured is True
    assert MonitorSettings().export_timeout_minutes == 15
    assert PipelineSettings().batch_size == 250
    assert SinkSettings().ingest_url == "https://backend.test/ingest"


def test_secrets_are_not_rendered():
    settings = ProviderSettings(public_key="public", private_key="hunter2")
    assert "hunter2" not in repr(settings.private_key)
    assert "hunter2" not in str(settings.model_dump())
