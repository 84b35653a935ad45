"""
Model catalog cache.

Holds the models a backend can serve, ordered newest version first, plus
the capability-probe results recorded per model id.
"""

import logging
import re
from typing import Dict, Iterable, List, Optional, Tuple

from .pipeline_models import ModelCapabilities, ModelDescriptor

logger = logging.getLogger(__name__)

# Used when no live catalog could be fetched
STATIC_CLOUD_MODELS: Tuple[ModelDescriptor, ...] = (
    ModelDescriptor('gemini-1.5-flash', 'Gemini 1.5 Flash', 'Fast and versatile multimodal model'),
    ModelDescriptor('gemini-1.5-flash-latest', 'Gemini 1.5 Flash (Latest)', 'Latest fast multimodal model'),
    ModelDescriptor('gemini-1.5-pro', 'Gemini 1.5 Pro', 'Mid-size multimodal model'),
    ModelDescriptor('gemini-1.5-pro-latest', 'Gemini 1.5 Pro (Latest)', 'Latest mid-size multimodal model'),
    ModelDescriptor('gemini-pro', 'Gemini Pro', 'Text generation model'),
)

FAST_MODEL_MARKER = "flash"

_VERSION_PATTERN = re.compile(r"(\d+)\.(\d+)")


def version_sort_key(model: ModelDescriptor):
    """Newest version marker first; unversioned ids last; ties alphabetical."""
    match = _VERSION_PATTERN.search(model.id)
    if match is None:
        return (1, 0, 0, model.id)
    return (0, -int(match.group(1)), -int(match.group(2)), model.id)


class ModelCatalog:
    """Catalog cache owned by one InferenceClient backend."""

    def __init__(self, models: Optional[Iterable[ModelDescriptor]] = None):
        self._models: List[ModelDescriptor] = list(models or [])
        self._capabilities: Dict[str, ModelCapabilities] = {}

    @property
    def models(self) -> Tuple[ModelDescriptor, ...]:
        return tuple(self._models)

    def is_empty(self) -> bool:
        return not self._models

    def get(self, model_id: str) -> Optional[ModelDescriptor]:
        for model in self._models:
            if model.id == model_id:
                return model
        return None

    def replace(self, models: Iterable[ModelDescriptor]) -> None:
        self._models = list(models)
        for model in self._models:
            cached = self._capabilities.get(model.id)
            if cached is not None:
                model.capabilities = cached

    def update_from(self, fetched: Iterable[ModelDescriptor]) -> int:
        """
        Replace the cache with the generation-capable subset of a live fetch.

        Returns:
            Number of models kept
        """
        usable = sorted((m for m in fetched if m.id and m.supports_generation), key=version_sort_key)
        self.replace(usable)
        logger.info("Model catalog updated with %d models", len(usable))
        return len(usable)

    def candidates(self, limit: int) -> List[ModelDescriptor]:
        """
        Cascade candidates: fast models first (stable), capped to limit.

        Falls back to the static list when the catalog is empty.
        """
        source = self._models or list(STATIC_CLOUD_MODELS)
        ordered = sorted(source, key=lambda m: FAST_MODEL_MARKER not in m.id.lower())
        return ordered[:limit]

    def cached_capabilities(self, model_id: str) -> Optional[ModelCapabilities]:
        return self._capabilities.get(model_id)

    def remember_capabilities(self, model_id: str, capabilities: ModelCapabilities) -> None:
        self._capabilities[model_id] = capabilities
        model = self.get(model_id)
        if model is not None:
            model.capabilities = capabilities
