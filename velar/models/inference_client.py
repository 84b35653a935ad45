"""
Inference Client Module

Owns the ProviderConfig, the backend instance built from it and the model
catalog cache. Callers that need a stable backend for a whole request
acquire the current instance once; a later switch_backend does not affect
them.
"""

import logging
from typing import Callable, List, Optional, Sequence

from .. import EventTypes
from .cloud_backend import CloudBackend
from .llm_backend import LLMBackend
from .local_backend import LocalBackend
from .model_catalog import ModelCatalog
from .pipeline_models import (
    AnalysisKind, AnalysisResult, CatalogRefreshResult, ConnectionTestResult, InlinePart, LLMError,
    ModelDescriptor
)
from .settings_manager import BackendType, PipelineSettings, ProviderConfig

logger = logging.getLogger(__name__)

BackendFactory = Callable[[ProviderConfig, ModelCatalog, PipelineSettings], LLMBackend]


def create_backend(config: ProviderConfig, catalog: ModelCatalog, settings: PipelineSettings) -> LLMBackend:
    """Build the backend variant named by config."""
    if config.backend == BackendType.CLOUD:
        return CloudBackend(config, catalog, settings.inference, settings.cloud)
    return LocalBackend(config, catalog, settings.inference, settings.local)


class InferenceClient:
    """Facade over the active model backend."""

    def __init__(
        self,
        config: ProviderConfig,
        settings: PipelineSettings,
        event_bus=None,
        backend_factory: BackendFactory = create_backend
    ):
        """
        Initialize InferenceClient.

        Raises:
            ConfigError: if config cannot produce a backend
        """
        self.settings = settings
        self.event_bus = event_bus
        self._backend_factory = backend_factory
        self._catalog = ModelCatalog()
        self._backend = backend_factory(config, self._catalog, settings)

        logger.info("InferenceClient initialized with %s backend", config.backend.value)

    @property
    def config(self) -> ProviderConfig:
        return self._backend.config

    @property
    def catalog(self) -> ModelCatalog:
        return self._catalog

    def acquire_backend(self) -> LLMBackend:
        """Snapshot the current backend for the duration of one request."""
        return self._backend

    async def analyze(
        self,
        kind: AnalysisKind,
        parts: Sequence[InlinePart],
        prompt: str,
        model_override: Optional[str] = None
    ) -> AnalysisResult:
        """
        Analyze inline payloads with the current backend.

        Raises:
            LLMError: classified provider failure
        """
        return await self._backend.analyze(kind, parts, prompt, model_override)

    async def list_models(self, use_cache: bool = True) -> List[ModelDescriptor]:
        """Return the catalog, refreshing it first when use_cache is False."""
        if not use_cache:
            await self.refresh_catalog()
        return list(self._catalog.models)

    async def refresh_catalog(self) -> CatalogRefreshResult:
        """
        Fetch the live catalog and replace the cache.

        A failed fetch keeps the previous cache and is reported as a warning.
        """
        backend, catalog = self._backend, self._catalog
        try:
            models = await backend.list_models()
        except LLMError as e:
            logger.warning("Catalog refresh failed, keeping %d cached models: %s", len(catalog.models), e.message)
            await self._emit(EventTypes.CATALOG_REFRESH_FAILED, {'warning': e.message, 'kind': e.kind.value})
            return CatalogRefreshResult(success=False, model_count=len(catalog.models), warning=e.message)

        count = catalog.update_from(models)
        await self._emit(EventTypes.CATALOG_REFRESHED, {'model_count': count})
        return CatalogRefreshResult(success=True, model_count=count)

    async def switch_backend(self, new_config: ProviderConfig) -> None:
        """
        Replace the provider configuration.

        The new backend is built (and validated) before anything changes;
        requests holding the previous instance finish with it.

        Raises:
            ConfigError: missing_credential or invalid_endpoint
        """
        catalog = ModelCatalog()
        backend = self._backend_factory(new_config, catalog, self.settings)
        previous = self._backend.config

        self._backend, self._catalog = backend, catalog

        logger.info("Switched backend: %s -> %s", previous.backend.value, new_config.backend.value)
        await self._emit(EventTypes.BACKEND_SWITCHED, {
            'previous': previous.describe(),
            'current': new_config.describe(),
        })

    async def test_connection(self) -> ConnectionTestResult:
        result = await self._backend.test_connection()
        if result.success:
            logger.info("Connection test passed using %s", result.model_used)
        else:
            logger.warning("Connection test failed: %s", result.error)
        await self._emit(EventTypes.CONNECTION_TESTED, result.to_dict())
        return result

    def get_current_config(self) -> dict:
        """Backend and model in use, without secrets."""
        return self._backend.describe()

    async def _emit(self, event_type: str, data: dict) -> None:
        if self.event_bus:
            await self.event_bus.emit(event_type, data, source="InferenceClient")
