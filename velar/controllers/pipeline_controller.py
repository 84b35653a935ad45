"""
Pipeline Controller Module

Caller-facing surface of the pipeline. Wires the capture queue manager,
the inference client and the request orchestrator together and exposes
the operations a shell (hotkeys, tray, CLI) invokes.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from .. import EventTypes
from ..models.capture_queue import CaptureQueueManager, PresentationSurface, ScreenCapturer
from ..models.inference_client import BackendFactory, InferenceClient, create_backend
from ..models.pipeline_models import (
    AnalysisKind, AnalysisResult, CaptureEntry, CatalogRefreshResult, ConnectionTestResult,
    DeleteResult, ModelDescriptor, QueueKind
)
from ..models.response_schema import ProblemArtifact, Solution
from ..models.settings_manager import (
    CredentialStore, EnvironmentCredentialStore, PipelineSettings, ProviderConfig, SettingsManager
)
from . import prompts
from .event_bus import EventBus
from .request_orchestrator import RequestOrchestrator

logger = logging.getLogger(__name__)


class PipelineController:
    """
    Composition root and facade for the capture-to-inference pipeline.

    Every collaborator is an explicit instance owned by the controller;
    tests replace the capture primitive, the surface and the backend factory.
    """

    def __init__(
        self,
        settings: Optional[PipelineSettings] = None,
        event_bus: Optional[EventBus] = None,
        credential_store: Optional[CredentialStore] = None,
        capturer: Optional[ScreenCapturer] = None,
        surface: Optional[PresentationSurface] = None,
        backend_factory: BackendFactory = create_backend
    ):
        """
        Initialize PipelineController.

        Raises:
            ConfigError: if the configured backend cannot be built
        """
        self.event_bus = event_bus or EventBus()
        self.settings_manager = SettingsManager(settings or PipelineSettings(), self.event_bus)
        self.credential_store = credential_store or EnvironmentCredentialStore()

        settings = self.settings_manager.settings
        self.queue_manager = CaptureQueueManager(
            settings.capture,
            capturer=capturer,
            surface=surface,
            event_bus=self.event_bus
        )
        self.inference_client = InferenceClient(
            self._resolve_config(settings.provider_config()),
            settings,
            event_bus=self.event_bus,
            backend_factory=backend_factory
        )
        self.orchestrator = RequestOrchestrator(self.queue_manager, self.inference_client, self.event_bus)

        logger.info("PipelineController initialized")

    @property
    def settings(self) -> PipelineSettings:
        return self.settings_manager.settings

    def _resolve_config(self, config: ProviderConfig) -> ProviderConfig:
        """Fill in the credential for cloud configs that name only a reference."""
        if config.credential_ref and not config.credential:
            return config.with_credential(self.credential_store.get_credential(config.credential_ref))
        return config

    # Capture queue

    async def capture_now(self) -> CaptureEntry:
        """Capture the screen into the current mode's queue."""
        return await self.queue_manager.capture()

    async def import_audio(self, data: bytes, mime_type: str) -> CaptureEntry:
        return await self.queue_manager.import_audio(data, mime_type)

    def get_queue(self, kind: Optional[QueueKind] = None) -> Tuple[CaptureEntry, ...]:
        return self.queue_manager.get_queue(kind)

    async def delete_entry(self, path: str) -> DeleteResult:
        return await self.queue_manager.delete_entry(path)

    async def clear_queues(self) -> None:
        """Empty both queues."""
        for kind in QueueKind:
            result = await self.queue_manager.clear(kind)
            if not result.success:
                logger.warning("Some %s captures could not be deleted: %s", kind.value, result.errors)

    async def get_preview(self, path: str) -> str:
        return await self.queue_manager.get_preview(path)

    # Processing

    async def process_primary(self) -> Optional[ProblemArtifact]:
        return await self.orchestrator.process_primary()

    async def process_secondary(self) -> Optional[Solution]:
        return await self.orchestrator.process_secondary()

    async def process_audio_base64(self, data: str, mime_type: str) -> AnalysisResult:
        return await self.orchestrator.process_audio_base64(data, mime_type)

    async def cancel(self) -> None:
        await self.orchestrator.cancel()

    async def reset(self) -> None:
        await self.orchestrator.reset()

    async def chat(self, message: str, include_screenshots: bool = False) -> AnalysisResult:
        """
        Ask a free-form question, optionally with the current mode's screenshots.

        Raises:
            LLMError: classified provider failure
        """
        parts = []
        if include_screenshots:
            entries = [entry for entry in self.queue_manager.get_queue() if not entry.is_audio]
            parts = [await self.queue_manager.load_part(entry) for entry in entries]

        kind = AnalysisKind.IMAGE if parts else AnalysisKind.TEXT
        return await self.inference_client.analyze(kind, parts, prompts.build_chat_prompt(message))

    # Inference configuration

    async def switch_backend(self, config: ProviderConfig) -> None:
        await self.inference_client.switch_backend(self._resolve_config(config))

    async def test_connection(self) -> ConnectionTestResult:
        return await self.inference_client.test_connection()

    async def refresh_catalog(self) -> CatalogRefreshResult:
        return await self.inference_client.refresh_catalog()

    async def list_models(self, use_cache: bool = True) -> List[ModelDescriptor]:
        return await self.inference_client.list_models(use_cache)

    def get_current_config(self) -> Dict[str, Any]:
        return self.inference_client.get_current_config()

    async def shutdown(self) -> None:
        """Cancel work, remove capture files and stop the event bus."""
        logger.info("Shutting down pipeline...")
        await self.orchestrator.cancel()
        await self.queue_manager.cleanup_temp_files()
        await self.event_bus.emit_and_wait(EventTypes.APP_SHUTDOWN, {}, source="PipelineController")
        await self.event_bus.shutdown()
        logger.info("Pipeline shutdown complete")
