from agentcall.core.config import Settings, get_settings


def test_defaults():
    settings = Settings()

    assert settings.executor.max_clarifications == 3
    assert settings.executor.enforce_max_clarifications is False
    assert settings.executor.strict_schema_validation is True
    assert settings.circuit_breaker.failure_threshold == 5
    assert settings.circuit_breaker.reset_timeout_seconds == 60.0
    assert settings.polling.poll_interval_seconds == 2.0
    assert settings.webhooks.url_template is None


def test_nested_environment_overrides(monkeypatch):
    monkeypatch.setenv("AGENTCALL_CIRCUIT_BREAKER__FAILURE_THRESHOLD", "2")
    monkeypatch.setenv("AGENTCALL_EXECUTOR__ENABLE_CONVERSATION_STORAGE", "true")

    settings = Settings()

    assert settings.circuit_breaker.failure_threshold == 2
    assert settings.executor.enable_conversation_storage is True


def test_get_settings_overrides_bypass_cache():
    cached = get_settings()
    overridden = get_settings({"polling": {"poll_interval_seconds": 0.25}})

    assert get_settings() is cached
    assert overridden is not cached
    assert overridden.polling.poll_interval_seconds == 0.25
