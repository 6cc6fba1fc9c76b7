"""Tests for configuration defaults and env overrides."""

from __future__ import annotations

from stepiq.core.config import AppSettings, KMSConfig, SchedulerConfig, WebhookConfig


def test_default_settings():
    settings = AppSettings()
    assert settings.environment == "dev"
    assert settings.worker.concurrency == 5
    assert settings.worker.default_model == "gpt-5.2"


def test_kms_config_defaults(monkeypatch):
    for name in ("STEPIQ_KMS_MASTER_KEY", "STEPIQ_KMS_VAULT_ADDR", "STEPIQ_KMS_VAULT_TOKEN"):
        monkeypatch.delenv(name, raising=False)
    config = KMSConfig()
    assert config.master_key is None
    assert config.vault_addr is None
    assert config.vault_secret_path == "secret/data/stepiq/master-key"


def test_scheduler_config_defaults():
    config = SchedulerConfig()
    assert config.poll_interval_seconds == 30.0
    assert config.lock_key == "stepiq:cron-scheduler-lock"
    assert config.lock_ttl_ms == 25_000
    assert config.batch_size == 50


def test_webhook_config_defaults():
    config = WebhookConfig()
    assert config.max_attempts == 4
    assert config.timeout_ms == 10_000
    assert config.backoff_base_ms == 1_000


def test_env_override(monkeypatch):
    monkeypatch.setenv("STEPIQ_SCHEDULER_LOCK_TTL_MS", "5000")
    monkeypatch.setenv("STEPIQ_KMS_VAULT_ADDR", "http://vault:8200")
    assert SchedulerConfig().lock_ttl_ms == 5000
    assert KMSConfig().vault_addr == "http://vault:8200"
