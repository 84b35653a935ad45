"""
Common interface of the model backends.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, List, Optional, Sequence, TypeVar

from .model_catalog import ModelCatalog
from .pipeline_models import (
    AnalysisKind, AnalysisResult, ConnectionTestResult, InlinePart, LLMError, LLMErrorKind,
    ModelDescriptor
)
from .settings_manager import InferenceSettings, ProviderConfig

logger = logging.getLogger(__name__)

T = TypeVar('T')


class LLMBackend(ABC):
    """
    A model backend chosen once per ProviderConfig.

    Backends are immutable with respect to their configuration; switching
    provider means building a new backend instance.
    """

    service_name = "AI service"

    def __init__(self, config: ProviderConfig, catalog: ModelCatalog, inference: InferenceSettings):
        self.config = config
        self.catalog = catalog
        self.inference = inference

    @abstractmethod
    async def analyze(
        self,
        kind: AnalysisKind,
        parts: Sequence[InlinePart],
        prompt: str,
        model_override: Optional[str] = None
    ) -> AnalysisResult:
        """
        Run one analysis.

        Args:
            kind: Input modality; TEXT sends the prompt alone
            parts: Inline image/audio payloads
            prompt: Instruction text
            model_override: Explicit model id, bypassing model selection

        Raises:
            LLMError: classified provider failure
        """

    @abstractmethod
    async def list_models(self) -> List[ModelDescriptor]:
        """Fetch the live model list from the provider."""

    @abstractmethod
    async def test_connection(self) -> ConnectionTestResult:
        """Validate the configuration with real calls; never raises LLMError."""

    async def _with_timeout(self, awaitable: Awaitable[T], model_id: Optional[str] = None) -> T:
        """Apply the request timeout policy to one provider call."""
        timeout = self.inference.request_timeout_seconds
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as e:
            logger.warning("Request to %s timed out after %ss", model_id or self.service_name, timeout)
            raise LLMError(LLMErrorKind.NETWORK, f"Request timed out after {timeout}s", model_id=model_id) from e

    def describe(self) -> dict:
        return self.config.describe()
