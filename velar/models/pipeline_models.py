"""
Data models for the capture-to-inference pipeline.

This module contains the data structures shared by the CaptureQueueManager,
the InferenceClient backends and the RequestOrchestrator, together with the
typed error hierarchy every pipeline failure is expressed in.
"""

import asyncio
import base64
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple


class QueueKind(Enum):
    """Queue a capture belongs to."""
    PRIMARY = "primary"
    SECONDARY = "secondary"


class AnalysisKind(Enum):
    """Input modality of an analysis request."""
    IMAGE = "image"
    AUDIO = "audio"
    TEXT = "text"


MIME_TYPES = {
    '.png': 'image/png',
    '.jpg': 'image/jpeg',
    '.jpeg': 'image/jpeg',
    '.wav': 'audio/wav',
    '.mp3': 'audio/mp3',
    '.webm': 'audio/webm',
    '.ogg': 'audio/ogg',
    '.m4a': 'audio/mp4',
}

AUDIO_EXTENSIONS = {'.wav', '.mp3', '.webm', '.ogg', '.m4a'}


def mime_type_for(path: str) -> str:
    """Guess the transport MIME type from a capture's file extension."""
    return MIME_TYPES.get(Path(path).suffix.lower(), 'application/octet-stream')


def extension_for(mime_type: str) -> str:
    """Map a MIME type back to the file extension used on disk."""
    base = mime_type.split(';', 1)[0].strip().lower()
    for extension, known in MIME_TYPES.items():
        if known == base:
            return extension
    if base in ('audio/mpeg', 'audio/x-mp3'):
        return '.mp3'
    if base in ('audio/x-wav', 'audio/wave'):
        return '.wav'
    raise ValueError(f"Unsupported capture MIME type: {mime_type}")


@dataclass(frozen=True)
class CaptureEntry:
    """A single capture artifact owned by the capture queue."""

    location: str
    queue_kind: QueueKind
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def filename(self) -> str:
        return Path(self.location).name

    @property
    def is_audio(self) -> bool:
        """Check if the capture is an audio clip rather than a screenshot."""
        return Path(self.location).suffix.lower() in AUDIO_EXTENSIONS

    @property
    def mime_type(self) -> str:
        return mime_type_for(self.location)

    def to_dict(self) -> dict:
        """Convert to dictionary for event payloads."""
        return {
            'path': self.location,
            'kind': self.queue_kind.value,
            'created_at': self.created_at.isoformat(),
            'audio': self.is_audio,
        }


@dataclass(frozen=True)
class InlinePart:
    """Binary payload sent inline to a model, with its MIME type."""

    data: bytes
    mime_type: str

    @property
    def base64_data(self) -> str:
        return base64.b64encode(self.data).decode('ascii')

    @classmethod
    async def from_file(cls, path: str) -> 'InlinePart':
        """Read a file off the event loop and wrap it as an inline part."""
        loop = asyncio.get_running_loop()
        data = await loop.run_in_executor(None, Path(path).read_bytes)
        return cls(data=data, mime_type=mime_type_for(path))

    @classmethod
    def from_base64(cls, data: str, mime_type: str) -> 'InlinePart':
        return cls(data=base64.b64decode(data), mime_type=mime_type)


@dataclass
class DeleteResult:
    """Structured result of deleting a queued capture."""

    success: bool
    error: Optional[str] = None
    error_kind: Optional['QueueErrorKind'] = None

    def to_dict(self) -> dict:
        result: Dict[str, Any] = {'success': self.success}
        if self.error:
            result['error'] = self.error
        return result


@dataclass
class ClearResult:
    """Structured result of clearing a queue."""

    cleared: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


@dataclass
class ModelCapabilities:
    """Input modalities a model accepts; None means not probed yet."""

    text: Optional[bool] = None
    image: Optional[bool] = None
    audio: Optional[bool] = None

    def to_dict(self) -> dict:
        return {'text': self.text, 'image': self.image, 'audio': self.audio}


@dataclass
class ModelDescriptor:
    """An entry of the model catalog."""

    id: str
    display_name: str
    description: str = ""
    capabilities: ModelCapabilities = field(default_factory=ModelCapabilities)
    supported_generation_methods: Tuple[str, ...] = ()

    @property
    def supports_generation(self) -> bool:
        """Entries without a method list are assumed to generate."""
        if not self.supported_generation_methods:
            return True
        return 'generateContent' in self.supported_generation_methods

    @classmethod
    def from_cloud_dict(cls, data: dict) -> 'ModelDescriptor':
        """Create from a cloud catalog entry ({name, displayName, ...})."""
        model_id = str(data.get('name', '')).replace('models/', '', 1)
        return cls(
            id=model_id,
            display_name=data.get('displayName') or model_id,
            description=data.get('description') or 'No description available',
            supported_generation_methods=tuple(data.get('supportedGenerationMethods') or ()),
        )

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'name': self.display_name,
            'description': self.description,
            'capabilities': self.capabilities.to_dict(),
        }


@dataclass
class AnalysisResult:
    """Text produced by a model for one analysis request."""

    text: str
    timestamp: float = field(default_factory=time.time)
    model_used: Optional[str] = None
    capabilities: Optional[ModelCapabilities] = None

    def to_dict(self) -> dict:
        return {
            'text': self.text,
            'timestamp': self.timestamp,
            'model_used': self.model_used,
        }


@dataclass
class ConnectionTestResult:
    """Outcome of validating the configured backend."""

    success: bool
    capabilities: Optional[ModelCapabilities] = None
    model_used: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional['LLMErrorKind'] = None

    def to_dict(self) -> dict:
        return {
            'success': self.success,
            'capabilities': self.capabilities.to_dict() if self.capabilities else None,
            'model_used': self.model_used,
            'error': self.error,
            'error_kind': self.error_kind.value if self.error_kind else None,
        }


@dataclass
class CatalogRefreshResult:
    """Outcome of a live catalog fetch; failures only carry a warning."""

    success: bool
    model_count: int = 0
    warning: Optional[str] = None


# Error taxonomy

class CaptureErrorKind(Enum):
    PERMISSION = "permission"
    TRANSIENT = "transient"
    VERIFICATION_FAILED = "verification_failed"


class LLMErrorKind(Enum):
    MODEL_UNAVAILABLE = "model_unavailable"
    OVERLOADED = "overloaded"
    QUOTA_EXCEEDED = "quota_exceeded"
    UNAUTHORIZED = "unauthorized"
    NETWORK = "network"
    UNKNOWN = "unknown"


class QueueErrorKind(Enum):
    NOT_FOUND = "not_found"
    IO_FAILURE = "io_failure"


class ConfigErrorKind(Enum):
    MISSING_CREDENTIAL = "missing_credential"
    INVALID_ENDPOINT = "invalid_endpoint"
    INVALID_VALUE = "invalid_value"


class OrchestrationErrorKind(Enum):
    NO_BASELINE = "no_baseline"


LLM_USER_MESSAGES = {
    LLMErrorKind.MODEL_UNAVAILABLE: "The selected AI model is currently unavailable. Please try a different model.",
    LLMErrorKind.OVERLOADED: "The AI service is currently overloaded. Please try again in a moment.",
    LLMErrorKind.QUOTA_EXCEEDED: "API quota exceeded. Please try again later or use a different model.",
    LLMErrorKind.UNAUTHORIZED: "Invalid API key. Please check your credentials in settings.",
    LLMErrorKind.NETWORK: "Unable to reach the AI service. Please check your connection.",
    LLMErrorKind.UNKNOWN: "Something went wrong while analyzing the capture. Please try again.",
}


class PipelineError(Exception):
    """Base exception for pipeline failures; every subclass carries a stable kind."""

    def __init__(self, kind: Enum, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.hint = hint

    @property
    def user_message(self) -> str:
        if self.hint:
            return f"{self.message}. {self.hint}"
        return self.message

    def to_dict(self) -> dict:
        return {
            'error': type(self).__name__,
            'kind': self.kind.value,
            'message': self.message,
            'hint': self.hint,
        }


class CaptureError(PipelineError):
    """Raised when a screen or audio capture cannot be produced."""

    def __init__(self, kind: CaptureErrorKind, message: str, hint: Optional[str] = None):
        super().__init__(kind, message, hint)


class QueueError(PipelineError):
    """Raised for failures reading or removing queued captures."""

    def __init__(self, kind: QueueErrorKind, message: str, path: Optional[str] = None):
        super().__init__(kind, message)
        self.path = path


class ConfigError(PipelineError):
    """Raised when a provider configuration cannot be used."""

    def __init__(self, kind: ConfigErrorKind, message: str, hint: Optional[str] = None):
        super().__init__(kind, message, hint)


class OrchestrationError(PipelineError):
    """Raised when a processing request is rejected before it starts."""


@dataclass
class CandidateFailure:
    """Why one model of the fallback cascade was rejected."""

    model_id: str
    display_name: str
    kind: LLMErrorKind
    message: str


class LLMError(PipelineError):
    """Raised when a model backend cannot produce an analysis."""

    RETRYABLE_KINDS = frozenset({LLMErrorKind.OVERLOADED, LLMErrorKind.NETWORK})

    def __init__(
        self,
        kind: LLMErrorKind,
        message: str,
        model_id: Optional[str] = None,
        failures: Optional[Sequence[CandidateFailure]] = None
    ):
        super().__init__(kind, message)
        self.model_id = model_id
        self.failures: List[CandidateFailure] = list(failures or [])

    @property
    def retryable(self) -> bool:
        """Whether a later user-triggered retry is likely to succeed unchanged."""
        return self.kind in self.RETRYABLE_KINDS

    @property
    def user_message(self) -> str:
        return LLM_USER_MESSAGES[self.kind]

    @classmethod
    def composite(cls, failures: Sequence[CandidateFailure], service: str) -> 'LLMError':
        """
        Aggregate every candidate failure of an exhausted cascade.

        The composite keeps a category only when all candidates agree on it.
        """
        kinds = {failure.kind for failure in failures}
        kind = kinds.pop() if len(kinds) == 1 else LLMErrorKind.UNKNOWN

        lines = [f"• {failure.display_name}: {failure.message}" for failure in failures]
        message = (
            f"Unable to connect to the {service}. Tried {len(failures)} models:\n\n"
            + "\n".join(lines)
            + "\n\nPlease check:\n• Your API key is valid\n"
            "• You have API quota remaining\n• Your network connection is working"
        )
        return cls(kind, message, failures=failures)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data['retryable'] = self.retryable
        data['model_id'] = self.model_id
        return data
