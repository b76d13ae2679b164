from __future__ import annotations

from typing import Any

from llm_proxy.settings import DEFAULT_TARGET_API_URL, Settings, get_settings


def test_settings_defaults(monkeypatch: Any) -> None:
    for name in (
        "TARGET_API_URL",
        "TARGET_API_KEY",
        "ADMIN_PASSWORD",
        "ADMIN_AUTH_MODE",
        "ENVIRONMENT",
        "STORE_BACKEND",
        "LOG_CAPACITY",
        "FORWARDED_ALLOW_IPS",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings(_env_file=None)

    assert settings.target_api_url == DEFAULT_TARGET_API_URL
    assert settings.target_api_key_value is None
    assert settings.admin_password_value is None
    assert settings.admin_auth_mode == "credential"
    assert settings.store_backend == "durable"
    assert settings.store_name == "llm-proxy-storage"
    assert settings.log_capacity == 1000
    assert settings.forwarded_allow_ips == "127.0.0.1"
    assert not settings.is_production


def test_settings_read_environment(monkeypatch: Any) -> None:
    monkeypatch.setenv("TARGET_API_KEY", "  sk-env  ")
    monkeypatch.setenv("ADMIN_PASSWORD", "   ")
    monkeypatch.setenv("ENVIRONMENT", "Production")
    monkeypatch.setenv("DEBUG", "true")
    monkeypatch.setenv("FORWARDED_ALLOW_IPS", "10.0.0.5,10.0.0.6")
    get_settings.cache_clear()

    settings = get_settings()

    assert settings.target_api_key_value == "sk-env"
    assert settings.admin_password_value is None
    assert settings.is_production
    assert settings.debug is True
    assert settings.forwarded_allow_ips == "10.0.0.5,10.0.0.6"
    get_settings.cache_clear()
