"""
Settings Manager Module

Manages pipeline configuration: capture timing, inference timeouts, the
cloud and local backend options and the provider configuration derived
from them. Credentials are resolved through a CredentialStore and never
kept in the settings themselves.
"""

import logging
import os
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Protocol
from urllib.parse import urlparse

from .. import EventTypes, get_app_data_dir, DEFAULT_LOG_LEVEL
from .pipeline_models import ConfigError, ConfigErrorKind

logger = logging.getLogger(__name__)

GEMINI_PROVIDER_ID = "gemini"


class BackendType(Enum):
    """Model backend variants."""
    CLOUD = "cloud"
    LOCAL = "local"


def validate_endpoint(endpoint: str) -> str:
    """Return a normalized endpoint URL or raise ConfigError(invalid_endpoint)."""
    parsed = urlparse(endpoint or "")
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        raise ConfigError(
            ConfigErrorKind.INVALID_ENDPOINT,
            f"Invalid endpoint URL: {endpoint!r}",
            hint="Use a full URL such as http://localhost:11434"
        )
    return endpoint.rstrip('/')


@dataclass(frozen=True)
class ProviderConfig:
    """Backend selection owned by the InferenceClient."""
    backend: BackendType
    active_model: Optional[str] = None
    endpoint: Optional[str] = None
    credential_ref: Optional[str] = None
    credential: Optional[str] = field(default=None, repr=False, compare=False)

    @classmethod
    def cloud(cls, credential: Optional[str], model: Optional[str] = None,
              credential_ref: str = GEMINI_PROVIDER_ID) -> 'ProviderConfig':
        return cls(BackendType.CLOUD, active_model=model, credential_ref=credential_ref, credential=credential)

    @classmethod
    def local(cls, endpoint: str, model: Optional[str] = None) -> 'ProviderConfig':
        return cls(BackendType.LOCAL, active_model=model, endpoint=endpoint)

    def with_credential(self, credential: Optional[str]) -> 'ProviderConfig':
        return replace(self, credential=credential)

    def validate(self) -> 'ProviderConfig':
        """
        Check the configuration is usable.

        Raises:
            ConfigError: missing_credential or invalid_endpoint
        """
        if self.backend == BackendType.CLOUD:
            if not self.credential:
                raise ConfigError(
                    ConfigErrorKind.MISSING_CREDENTIAL,
                    "No API key configured for the cloud backend",
                    hint="Set GEMINI_API_KEY or add a key in settings"
                )
        else:
            validate_endpoint(self.endpoint or "")
        return self

    def describe(self) -> Dict[str, Any]:
        """Secret-free description for display and events."""
        return {
            'backend': self.backend.value,
            'model': self.active_model,
            'endpoint': self.endpoint,
            'credential_ref': self.credential_ref,
        }


@dataclass
class CaptureSettings:
    """Capture queue configuration."""
    data_dir: str = field(default_factory=get_app_data_dir)
    max_entries: int = 5
    hide_delay_seconds: float = 0.15
    settle_delay_seconds: float = 0.1
    verify_attempts: int = 3
    verify_backoff_seconds: float = 0.1
    prefer_native_command: bool = True


@dataclass
class InferenceSettings:
    """Policies shared by both backends."""
    request_timeout_seconds: Optional[float] = 60.0
    max_candidates: int = 5
    probe_prompt: str = "Say hello"


@dataclass
class CloudSettings:
    """Hosted model service configuration."""
    api_base: str = "https://generativelanguage.googleapis.com/v1beta"
    model: Optional[str] = None
    credential_ref: str = GEMINI_PROVIDER_ID


@dataclass
class LocalSettings:
    """Locally served model configuration."""
    endpoint: str = "http://localhost:11434"
    model: str = "llama3.2"
    temperature: float = 0.7
    top_p: float = 0.9
    max_image_size: int = 1920


@dataclass
class PipelineSettings:
    """Complete pipeline settings."""
    backend: BackendType = BackendType.CLOUD
    log_level: str = DEFAULT_LOG_LEVEL
    capture: CaptureSettings = field(default_factory=CaptureSettings)
    inference: InferenceSettings = field(default_factory=InferenceSettings)
    cloud: CloudSettings = field(default_factory=CloudSettings)
    local: LocalSettings = field(default_factory=LocalSettings)

    @property
    def log_dir(self) -> Path:
        return Path(self.capture.data_dir) / "logs"

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> 'PipelineSettings':
        """
        Build settings from environment variables.

        Recognized: VELAR_BACKEND (cloud|local), USE_OLLAMA, OLLAMA_URL,
        OLLAMA_MODEL, GEMINI_MODEL, VELAR_DATA_DIR, VELAR_LOG_LEVEL.
        """
        env = os.environ if environ is None else environ
        settings = cls()

        backend = env.get('VELAR_BACKEND', '').strip().lower()
        if backend:
            try:
                settings.backend = BackendType(backend)
            except ValueError:
                raise ConfigError(ConfigErrorKind.INVALID_VALUE, f"Unknown backend: {backend}")
        elif env.get('USE_OLLAMA', '').strip().lower() in ('1', 'true', 'yes'):
            settings.backend = BackendType.LOCAL

        if env.get('OLLAMA_URL'):
            settings.local.endpoint = env['OLLAMA_URL']
        if env.get('OLLAMA_MODEL'):
            settings.local.model = env['OLLAMA_MODEL']
        if env.get('GEMINI_MODEL'):
            settings.cloud.model = env['GEMINI_MODEL']
        if env.get('VELAR_DATA_DIR'):
            settings.capture.data_dir = str(Path(env['VELAR_DATA_DIR']).expanduser())
        if env.get('VELAR_LOG_LEVEL'):
            settings.log_level = env['VELAR_LOG_LEVEL'].upper()

        return settings

    def provider_config(self, credential: Optional[str] = None) -> ProviderConfig:
        """Derive the ProviderConfig for the selected backend."""
        if self.backend == BackendType.LOCAL:
            return ProviderConfig.local(self.local.endpoint, self.local.model)
        return ProviderConfig.cloud(credential, self.cloud.model, self.cloud.credential_ref)


class CredentialStore(Protocol):
    """Secret store collaborator."""

    def get_credential(self, provider_id: str) -> Optional[str]:
        ...


class EnvironmentCredentialStore:
    """Credential store backed by environment variables."""

    ENV_VARS = {GEMINI_PROVIDER_ID: ('GEMINI_API_KEY', 'GOOGLE_API_KEY')}

    def __init__(self, environ: Optional[Dict[str, str]] = None):
        self._environ = os.environ if environ is None else environ

    def get_credential(self, provider_id: str) -> Optional[str]:
        for name in self.ENV_VARS.get(provider_id, (f"{provider_id.upper()}_API_KEY",)):
            value = self._environ.get(name)
            if value:
                return value
        return None


class SettingsManager:
    """
    Holds the live PipelineSettings and validates changes to them.

    Keys use dot notation, e.g. ``capture.max_entries`` or ``local.endpoint``.
    """

    def __init__(self, settings: Optional[PipelineSettings] = None, event_bus=None):
        self._settings = settings or PipelineSettings()
        self.event_bus = event_bus
        self._validation_rules = self._setup_validation_rules()
        self.validate_settings()
        logger.info("SettingsManager initialized")

    @property
    def settings(self) -> PipelineSettings:
        return self._settings

    def _setup_validation_rules(self) -> Dict[str, Callable[[Any], bool]]:
        """Set up validation rules for settings."""
        return {
            'backend': lambda x: isinstance(x, BackendType),
            'log_level': lambda x: str(x).upper() in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'),
            'capture.max_entries': lambda x: 1 <= x <= 50,
            'capture.hide_delay_seconds': lambda x: 0 <= x <= 5,
            'capture.settle_delay_seconds': lambda x: 0 <= x <= 5,
            'capture.verify_attempts': lambda x: 1 <= x <= 10,
            'capture.verify_backoff_seconds': lambda x: 0 <= x <= 5,
            'inference.request_timeout_seconds': lambda x: x is None or 1 <= x <= 600,
            'inference.max_candidates': lambda x: 1 <= x <= 20,
            'inference.probe_prompt': lambda x: bool(x and x.strip()),
            'cloud.api_base': lambda x: bool(validate_endpoint(x)),
            'local.endpoint': lambda x: bool(validate_endpoint(x)),
            'local.model': lambda x: bool(x),
            'local.temperature': lambda x: 0.0 <= x <= 2.0,
            'local.top_p': lambda x: 0.0 <= x <= 1.0,
            'local.max_image_size': lambda x: 256 <= x <= 8192,
        }

    def _get_nested_value(self, obj: Any, key: str) -> Any:
        """Get value using dot notation key."""
        current = obj
        for part in key.split('.'):
            if not hasattr(current, part):
                raise KeyError(key)
            current = getattr(current, part)
        return current

    def _set_nested_value(self, obj: Any, key: str, value: Any) -> None:
        """Set value using dot notation key."""
        parts = key.split('.')
        current = obj
        for part in parts[:-1]:
            current = getattr(current, part)
        setattr(current, parts[-1], value)

    def validate_setting(self, key: str, value: Any) -> bool:
        """
        Validate a specific setting value.

        Args:
            key: Setting key
            value: Value to validate

        Returns:
            True if valid
        """
        rule = self._validation_rules.get(key)
        if rule is None:
            return True
        try:
            return bool(rule(value))
        except (ConfigError, TypeError, ValueError) as e:
            logger.warning("Validation error for '%s': %s", key, e)
            return False

    def validate_settings(self) -> None:
        """
        Validate all current settings.

        Raises:
            ConfigError: If any rule fails
        """
        errors = []
        for key in self._validation_rules:
            value = self._get_nested_value(self._settings, key)
            if not self.validate_setting(key, value):
                errors.append(f"Invalid value for '{key}': {value!r}")

        if errors:
            raise ConfigError(ConfigErrorKind.INVALID_VALUE, f"Settings validation failed: {'; '.join(errors)}")

    def get_setting(self, key: str, default: Any = None) -> Any:
        try:
            return self._get_nested_value(self._settings, key)
        except KeyError:
            return default

    async def update_setting(self, key: str, value: Any) -> None:
        """
        Update a specific setting.

        Raises:
            ConfigError: If the key is unknown or the value fails validation
        """
        try:
            old_value = self._get_nested_value(self._settings, key)
        except KeyError:
            raise ConfigError(ConfigErrorKind.INVALID_VALUE, f"Unknown setting: {key}")

        if not self.validate_setting(key, value):
            raise ConfigError(ConfigErrorKind.INVALID_VALUE, f"Invalid value for '{key}': {value!r}")

        self._set_nested_value(self._settings, key, value)
        logger.info("Setting updated: %s", key)

        if self.event_bus:
            await self.event_bus.emit(
                EventTypes.SETTINGS_UPDATED,
                {'key': key, 'value': value, 'old_value': old_value},
                source="SettingsManager"
            )
