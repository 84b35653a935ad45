"""Unit tests for settings, provider configuration and credential lookup."""

import pytest

from velar import EventTypes
from velar.models.pipeline_models import ConfigError, ConfigErrorKind
from velar.models.settings_manager import (
    BackendType, EnvironmentCredentialStore, PipelineSettings, ProviderConfig, SettingsManager,
    validate_endpoint
)


def test_defaults():
    settings = PipelineSettings()

    assert settings.backend == BackendType.CLOUD
    assert settings.capture.max_entries == 5
    assert settings.inference.request_timeout_seconds == 60.0
    assert settings.local.endpoint == "http://localhost:11434"


def test_from_env_selects_local_backend():
    settings = PipelineSettings.from_env({
        "USE_OLLAMA": "true",
        "OLLAMA_URL": "http://gpu-box:11434",
        "OLLAMA_MODEL": "llava",
        "VELAR_LOG_LEVEL": "debug",
    })

    config = settings.provider_config()

    assert config.backend == BackendType.LOCAL
    assert config.endpoint == "http://gpu-box:11434"
    assert config.active_model == "llava"
    assert settings.log_level == "DEBUG"


def test_explicit_backend_wins_over_use_ollama():
    settings = PipelineSettings.from_env({"VELAR_BACKEND": "cloud", "USE_OLLAMA": "1", "GEMINI_MODEL": "gemini-2.0-flash"})

    config = settings.provider_config("secret-key")

    assert config.backend == BackendType.CLOUD
    assert config.active_model == "gemini-2.0-flash"
    assert config.credential == "secret-key"


def test_unknown_backend_is_rejected():
    with pytest.raises(ConfigError) as excinfo:
        PipelineSettings.from_env({"VELAR_BACKEND": "quantum"})
    assert excinfo.value.kind == ConfigErrorKind.INVALID_VALUE


def test_cloud_config_requires_credential():
    with pytest.raises(ConfigError) as excinfo:
        ProviderConfig.cloud(None).validate()
    assert excinfo.value.kind == ConfigErrorKind.MISSING_CREDENTIAL


def test_credential_never_appears_in_description_or_repr():
    config = ProviderConfig.cloud("AIzaSecretValue", "gemini-1.5-pro")

    assert "AIzaSecretValue" not in repr(config)
    assert "AIzaSecretValue" not in str(config.describe())
    assert config.describe()["credential_ref"] == "gemini"


@pytest.mark.parametrize("endpoint", ["localhost:11434", "ftp://host", "", "http://"])
def test_invalid_endpoints_are_rejected(endpoint):
    with pytest.raises(ConfigError) as excinfo:
        validate_endpoint(endpoint)
    assert excinfo.value.kind == ConfigErrorKind.INVALID_ENDPOINT


def test_endpoint_trailing_slash_is_trimmed():
    assert validate_endpoint("http://localhost:11434/") == "http://localhost:11434"


def test_environment_credential_store_falls_back_to_google_key():
    store = EnvironmentCredentialStore({"GOOGLE_API_KEY": "from-google"})

    assert store.get_credential("gemini") == "from-google"
    assert store.get_credential("other") is None


@pytest.mark.asyncio
async def test_update_setting_emits_change(event_bus):
    manager = SettingsManager(event_bus=event_bus)

    await manager.update_setting("capture.max_entries", 8)
    await event_bus.wait_idle()

    assert manager.get_setting("capture.max_entries") == 8
    updates = event_bus.get_event_history(EventTypes.SETTINGS_UPDATED)
    assert updates[0].data == {"key": "capture.max_entries", "value": 8, "old_value": 5}


@pytest.mark.asyncio
async def test_update_setting_rejects_invalid_value():
    manager = SettingsManager()

    with pytest.raises(ConfigError):
        await manager.update_setting("local.endpoint", "not a url")
    with pytest.raises(ConfigError):
        await manager.update_setting("capture.max_entries", 0)

    assert manager.get_setting("local.endpoint") == "http://localhost:11434"
    assert manager.get_setting("capture.max_entries") == 5


@pytest.mark.asyncio
async def test_update_setting_rejects_unknown_key():
    manager = SettingsManager()

    with pytest.raises(ConfigError):
        await manager.update_setting("capture.color", "blue")
    assert manager.get_setting("capture.color", "missing") == "missing"


def test_invalid_initial_settings_fail_validation():
    settings = PipelineSettings()
    settings.local.temperature = 5.0

    with pytest.raises(ConfigError):
        SettingsManager(settings)
