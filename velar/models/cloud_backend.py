"""
Cloud Backend Module

Gemini-backed analysis. Without an explicitly selected model every request
runs the model-fallback cascade: candidate models are probed with a minimal
prompt and the first one that answers (and accepts the input modality)
serves the request. Catalog listing uses the REST endpoint directly.
"""

import base64
import logging
from contextlib import nullcontext
from dataclasses import replace
from typing import Any, Dict, List, Optional, Sequence

import httpx
from google import genai
from google.genai import types

from .llm_backend import LLMBackend
from .llm_errors import classify_status, clean_error_message, to_llm_error
from .model_catalog import ModelCatalog
from .pipeline_models import (
    AnalysisKind, AnalysisResult, CandidateFailure, ConnectionTestResult, InlinePart, LLMError,
    LLMErrorKind, ModelCapabilities, ModelDescriptor
)
from .settings_manager import CloudSettings, InferenceSettings, ProviderConfig

logger = logging.getLogger(__name__)

# 1x1 transparent PNG
PROBE_IMAGE = InlinePart(
    base64.b64decode(
        "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNk+M9QDwADhgGAWjR9awAAAABJRU5ErkJggg=="
    ),
    'image/png'
)

# 8 kHz mono 8-bit PCM, eight samples of silence
PROBE_AUDIO = InlinePart(
    b'RIFF' + (36 + 8).to_bytes(4, 'little') + b'WAVE'
    + b'fmt ' + (16).to_bytes(4, 'little')
    + (1).to_bytes(2, 'little') + (1).to_bytes(2, 'little')
    + (8000).to_bytes(4, 'little') + (8000).to_bytes(4, 'little')
    + (1).to_bytes(2, 'little') + (8).to_bytes(2, 'little')
    + b'data' + (8).to_bytes(4, 'little') + b'\x80' * 8,
    'audio/wav'
)

IMAGE_PROBE_PROMPT = "What do you see?"
AUDIO_PROBE_PROMPT = "Describe this audio"

# Probe failures that mean the content itself was refused
REJECTION_KINDS = (LLMErrorKind.UNKNOWN, LLMErrorKind.MODEL_UNAVAILABLE)


class BoundModel:
    """A generation client bound to one model id."""

    def __init__(self, client: Any, model_id: str):
        self.client = client
        self.model_id = model_id

    async def generate(self, prompt: str, parts: Sequence[InlinePart] = ()) -> Any:
        contents: List[Any] = [prompt]
        contents.extend(types.Part.from_bytes(data=part.data, mime_type=part.mime_type) for part in parts)
        return await self.client.aio.models.generate_content(model=self.model_id, contents=contents)


class CloudBackend(LLMBackend):
    """Hosted model backend with probing fallback across catalog models."""

    service_name = "Gemini API"

    def __init__(
        self,
        config: ProviderConfig,
        catalog: ModelCatalog,
        inference: InferenceSettings,
        cloud: CloudSettings,
        client: Optional[Any] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        """
        Initialize CloudBackend.

        Args:
            config: Cloud ProviderConfig carrying the resolved credential
            catalog: Catalog cache shared with the owning InferenceClient
            inference: Timeout and cascade policy
            cloud: API base URL for catalog listing
            client: Pre-built google-genai client (tests inject fakes)
            http_client: Pre-built httpx client for catalog requests

        Raises:
            ConfigError: missing_credential
        """
        super().__init__(config.validate(), catalog, inference)
        self.cloud = cloud
        self._client = client if client is not None else genai.Client(api_key=config.credential)
        self._http_client = http_client
        self._working_model: Optional[str] = None

    def bind(self, model_id: str) -> BoundModel:
        return BoundModel(self._client, model_id)

    async def _generate(self, model_id: str, prompt: str, parts: Sequence[InlinePart] = ()) -> str:
        try:
            response = await self._with_timeout(self.bind(model_id).generate(prompt, parts), model_id)
        except LLMError:
            raise
        except Exception as e:
            raise to_llm_error(e, model_id) from e

        text = getattr(response, 'text', None) or ""
        if not text.strip():
            raise LLMError(LLMErrorKind.UNKNOWN, "Model returned an empty response", model_id=model_id)
        return text

    async def _probe_modality(self, model_id: str, prompt: str, part: InlinePart) -> Optional[bool]:
        """
        Probe one input modality.

        Returns False only when the model rejected the content; transient
        failures (overload, quota, network) leave the modality unprobed.
        """
        try:
            await self._generate(model_id, prompt, [part])
            return True
        except LLMError as e:
            if e.kind in REJECTION_KINDS:
                logger.debug("%s rejected by %s: %s", part.mime_type, model_id, e.message)
                return False
            logger.debug("%s probe for %s inconclusive (%s): %s", part.mime_type, model_id, e.kind.value, e.message)
            return None

    async def probe(self, model_id: str, reprobe: bool = False) -> ModelCapabilities:
        """
        Determine what a model accepts.

        The text probe must succeed (its failure is raised); image and audio
        probes are best effort and an inconclusive one stays None. Results
        are cached in the catalog and reused unless reprobe is set.
        """
        if not reprobe:
            cached = self.catalog.cached_capabilities(model_id)
            if cached is not None and cached.text:
                return cached

        await self._generate(model_id, self.inference.probe_prompt)
        capabilities = ModelCapabilities(text=True)
        capabilities.image = await self._probe_modality(model_id, IMAGE_PROBE_PROMPT, PROBE_IMAGE)
        capabilities.audio = await self._probe_modality(model_id, AUDIO_PROBE_PROMPT, PROBE_AUDIO)

        self.catalog.remember_capabilities(model_id, capabilities)
        logger.info("Model %s capabilities: %s", model_id, capabilities.to_dict())
        return capabilities

    async def _candidates(self) -> List[ModelDescriptor]:
        """Catalog candidates, with the model that last answered moved to the front."""
        if self.catalog.is_empty():
            try:
                self.catalog.update_from(await self.list_models())
            except LLMError as e:
                logger.warning("Model catalog unavailable, using built-in list: %s", e.message)
        candidates = self.catalog.candidates(self.inference.max_candidates)
        candidates.sort(key=lambda model: model.id != self._working_model)
        return candidates

    async def _run_cascade(
        self,
        kind: AnalysisKind,
        parts: Sequence[InlinePart],
        prompt: Optional[str],
        reprobe: bool = False
    ) -> AnalysisResult:
        """
        Try candidates in order until one produces a result.

        With prompt None only the probes run (connection test). Probed
        capabilities do not gate the request; a modality the request served
        is recorded as supported.
        """
        failures: List[CandidateFailure] = []

        for model in await self._candidates():
            try:
                capabilities = await self.probe(model.id, reprobe)
                text = await self._generate(model.id, prompt, parts) if prompt is not None else ""
            except LLMError as e:
                logger.warning("Model %s failed: %s", model.id, e.message)
                failures.append(CandidateFailure(model.id, model.display_name, e.kind, e.message))
                continue

            if parts and kind != AnalysisKind.TEXT and getattr(capabilities, kind.value) is not True:
                capabilities = replace(capabilities, **{kind.value: True})
                self.catalog.remember_capabilities(model.id, capabilities)

            self._working_model = model.id
            logger.info("Using model %s for %s analysis", model.id, kind.value)
            return AnalysisResult(text=text, model_used=model.id, capabilities=capabilities)

        raise LLMError.composite(failures, self.service_name)

    async def analyze(
        self,
        kind: AnalysisKind,
        parts: Sequence[InlinePart],
        prompt: str,
        model_override: Optional[str] = None
    ) -> AnalysisResult:
        model_id = model_override or self.config.active_model
        if model_id:
            text = await self._generate(model_id, prompt, parts)
            return AnalysisResult(
                text=text,
                model_used=model_id,
                capabilities=self.catalog.cached_capabilities(model_id)
            )
        return await self._run_cascade(kind, parts, prompt)

    def _http(self):
        if self._http_client is not None:
            return nullcontext(self._http_client)
        return httpx.AsyncClient(timeout=self.inference.request_timeout_seconds)

    def _catalog_error(self, response: httpx.Response) -> LLMError:
        try:
            detail = response.json()['error']['message']
        except (ValueError, KeyError, TypeError):
            detail = response.text or response.reason_phrase
        message = clean_error_message(f"{response.status_code} {detail}")
        return LLMError(classify_status(response.status_code, detail), message)

    async def list_models(self) -> List[ModelDescriptor]:
        """
        Fetch every catalog page from ``{api_base}/models``.

        Raises:
            LLMError: classified from the HTTP status and error body
        """
        url = f"{self.cloud.api_base.rstrip('/')}/models"
        params: Dict[str, Any] = {'key': self.config.credential, 'pageSize': 100}
        fetched: List[ModelDescriptor] = []

        async with self._http() as http:
            while True:
                try:
                    response = await self._with_timeout(http.get(url, params=params))
                except httpx.HTTPError as e:
                    raise to_llm_error(e) from e

                if response.status_code >= 400:
                    raise self._catalog_error(response)

                try:
                    payload = response.json()
                except ValueError as e:
                    raise LLMError(LLMErrorKind.UNKNOWN, "Malformed catalog response") from e
                if not isinstance(payload, dict) or not isinstance(payload.get('models', []), list):
                    raise LLMError(LLMErrorKind.UNKNOWN, "Malformed catalog response")

                fetched.extend(
                    ModelDescriptor.from_cloud_dict(item)
                    for item in payload.get('models', [])
                    if isinstance(item, dict) and item.get('name')
                )

                page_token = payload.get('nextPageToken')
                if not page_token:
                    break
                params['pageToken'] = page_token

        logger.debug("Fetched %d cloud models", len(fetched))
        return fetched

    async def test_connection(self) -> ConnectionTestResult:
        """Run the cascade with fresh probes and report the first working model."""
        try:
            if self.config.active_model:
                capabilities = await self.probe(self.config.active_model, reprobe=True)
                result = AnalysisResult(text="", model_used=self.config.active_model, capabilities=capabilities)
            else:
                result = await self._run_cascade(AnalysisKind.TEXT, [], None, reprobe=True)
        except LLMError as e:
            return ConnectionTestResult(success=False, error=e.message, error_kind=e.kind)

        return ConnectionTestResult(
            success=True,
            capabilities=result.capabilities,
            model_used=result.model_used
        )
