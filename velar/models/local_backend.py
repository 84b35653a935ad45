"""
Local Backend Module

Analysis through a locally served Ollama model. Each request is a single
non-streaming generate call; images are downscaled and re-encoded as JPEG
before being sent.
"""

import asyncio
import base64
import logging
from io import BytesIO
from typing import Any, List, Optional, Sequence

import ollama
from PIL import Image

from .llm_backend import LLMBackend
from .llm_errors import to_llm_error
from .model_catalog import ModelCatalog
from .pipeline_models import (
    AnalysisKind, AnalysisResult, ConnectionTestResult, InlinePart, LLMError, LLMErrorKind,
    ModelCapabilities, ModelDescriptor
)
from .settings_manager import InferenceSettings, LocalSettings, ProviderConfig

logger = logging.getLogger(__name__)


class LocalBackend(LLMBackend):
    """Ollama-served model backend."""

    service_name = "local model service"

    def __init__(
        self,
        config: ProviderConfig,
        catalog: ModelCatalog,
        inference: InferenceSettings,
        local: LocalSettings,
        client: Optional[Any] = None
    ):
        """
        Initialize LocalBackend.

        Args:
            config: Local ProviderConfig with the server endpoint
            catalog: Catalog cache shared with the owning InferenceClient
            inference: Timeout policy
            local: Sampling options and image size limit
            client: Pre-built ollama.AsyncClient (tests inject fakes)

        Raises:
            ConfigError: invalid_endpoint
        """
        super().__init__(config.validate(), catalog, inference)
        self.local = local
        self.endpoint = config.endpoint.rstrip('/')
        self._client = client if client is not None else ollama.AsyncClient(host=self.endpoint)
        self._resolved_model: Optional[str] = None

    def _prepare_image(self, data: bytes) -> str:
        """Downscale and re-encode an image as base64 JPEG."""
        with Image.open(BytesIO(data)) as img:
            if img.mode != 'RGB':
                img = img.convert('RGB')

            max_size = self.local.max_image_size
            if img.width > max_size or img.height > max_size:
                img.thumbnail((max_size, max_size), Image.Resampling.LANCZOS)
                logger.debug("Resized image to %dx%d", img.width, img.height)

            buffer = BytesIO()
            img.save(buffer, format='JPEG', quality=85, optimize=True)
            return base64.b64encode(buffer.getvalue()).decode('utf-8')

    async def _encode_images(self, parts: Sequence[InlinePart]) -> List[str]:
        loop = asyncio.get_running_loop()
        images = []
        for part in parts:
            try:
                images.append(await loop.run_in_executor(None, self._prepare_image, part.data))
            except (OSError, ValueError) as e:
                raise LLMError(LLMErrorKind.UNKNOWN, f"Failed to process image: {e}") from e
        return images

    async def _installed_models(self) -> List[str]:
        response = await self._with_timeout(self._client.list())
        names = [model.get('model') or model.get('name') for model in response.get('models', [])]
        return [name for name in names if name]

    async def _resolve_model(self, model_override: Optional[str]) -> str:
        """
        Pick the model to call.

        When the configured model is not installed the first installed model
        is used instead.
        """
        if model_override:
            return model_override
        if self._resolved_model:
            return self._resolved_model

        wanted = self.config.active_model or self.local.model
        try:
            installed = await self._installed_models()
        except LLMError:
            raise
        except Exception as e:
            raise to_llm_error(e, wanted) from e

        if not installed:
            raise LLMError(LLMErrorKind.MODEL_UNAVAILABLE, "No models installed on the local model service",
                           model_id=wanted)

        # "llama3.2" matches an installed "llama3.2:latest"
        match = next((name for name in installed if name == wanted or name.split(':', 1)[0] == wanted), None)
        if match is None:
            logger.warning("Model '%s' not installed, using '%s'", wanted, installed[0])
            match = installed[0]
        self._resolved_model = match
        return match

    async def _generate(self, model_id: str, prompt: str, images: Optional[List[str]] = None) -> str:
        request = {
            'model': model_id,
            'prompt': prompt,
            'stream': False,
            'options': {'temperature': self.local.temperature, 'top_p': self.local.top_p},
        }
        if images:
            request['images'] = images

        try:
            response = await self._with_timeout(self._client.generate(**request), model_id)
        except LLMError:
            raise
        except Exception as e:
            logger.error("Local generate request failed: %s", e)
            raise to_llm_error(e, model_id) from e

        text = response.get('response') or ""
        if not text.strip():
            raise LLMError(LLMErrorKind.UNKNOWN, "Model returned an empty response", model_id=model_id)
        return text

    async def analyze(
        self,
        kind: AnalysisKind,
        parts: Sequence[InlinePart],
        prompt: str,
        model_override: Optional[str] = None
    ) -> AnalysisResult:
        if kind == AnalysisKind.AUDIO:
            raise LLMError(
                LLMErrorKind.MODEL_UNAVAILABLE,
                "Audio analysis is not supported by the local model service"
            )

        model_id = await self._resolve_model(model_override)
        images = await self._encode_images(parts) if kind == AnalysisKind.IMAGE else None
        text = await self._generate(model_id, prompt, images)

        logger.info("Local analysis completed with %s", model_id)
        return AnalysisResult(text=text, model_used=model_id, capabilities=self.catalog.cached_capabilities(model_id))

    async def list_models(self) -> List[ModelDescriptor]:
        try:
            installed = await self._installed_models()
        except LLMError:
            raise
        except Exception as e:
            raise to_llm_error(e) from e
        return [ModelDescriptor(id=name, display_name=name, description="Local model") for name in installed]

    async def test_connection(self) -> ConnectionTestResult:
        """Check the server is reachable, then make one probe call."""
        try:
            await self._with_timeout(self._client.list())
        except Exception as e:
            logger.warning("Local model service unreachable at %s: %s", self.endpoint, e)
            return ConnectionTestResult(
                success=False,
                error=f"Local model service not available at {self.endpoint}",
                error_kind=LLMErrorKind.NETWORK
            )

        try:
            model_id = await self._resolve_model(None)
            await self._generate(model_id, "Hello")
        except LLMError as e:
            return ConnectionTestResult(success=False, error=e.message, error_kind=e.kind)

        capabilities = ModelCapabilities(text=True, audio=False)
        self.catalog.remember_capabilities(model_id, capabilities)
        return ConnectionTestResult(success=True, capabilities=capabilities, model_used=model_id)
