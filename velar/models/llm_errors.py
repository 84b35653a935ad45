"""
LLM error classification.

Maps provider exceptions (google-genai, ollama, httpx, timeouts) onto the
stable LLMErrorKind categories and produces cleaned, user-presentable
error text with URLs and transport prefixes removed.
"""

import asyncio
import re
from typing import Optional

import httpx

from .pipeline_models import LLMError, LLMErrorKind


_URL_PATTERN = re.compile(r"https?://\S+")
_NOISE_PATTERNS = [
    re.compile(r"for url '?'?", re.IGNORECASE),
    re.compile(r"For more information check:?", re.IGNORECASE),
    re.compile(r"\[[A-Za-z ]*Error\]:\s*"),
    re.compile(r"Error fetching from\s*:?", re.IGNORECASE),
    re.compile(r"^(Client|Server) error\s*", re.IGNORECASE),
]

# Ordered: the first matching rule wins.
_TEXT_RULES = [
    (LLMErrorKind.UNAUTHORIZED, ("api key", "unauthorized", "401", "permission denied", "api_key_invalid")),
    (LLMErrorKind.QUOTA_EXCEEDED, ("quota", "429", "resource_exhausted", "rate limit")),
    (LLMErrorKind.OVERLOADED, ("overloaded", "503", "unavailable", "try again later")),
    (LLMErrorKind.MODEL_UNAVAILABLE, ("not found for api version", "is not found", "not supported", "404",
                                      "model not found")),
    (LLMErrorKind.NETWORK, ("connection", "timed out", "timeout", "network", "unreachable")),
]

_STATUS_KINDS = {
    401: LLMErrorKind.UNAUTHORIZED,
    403: LLMErrorKind.UNAUTHORIZED,
    404: LLMErrorKind.MODEL_UNAVAILABLE,
    429: LLMErrorKind.QUOTA_EXCEEDED,
    500: LLMErrorKind.OVERLOADED,
    502: LLMErrorKind.NETWORK,
    503: LLMErrorKind.OVERLOADED,
    504: LLMErrorKind.NETWORK,
}


def _status_code(exc: BaseException) -> Optional[int]:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    for attr in ('status_code', 'code'):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    return None


def classify_text(text: str) -> LLMErrorKind:
    """Classify a raw provider message by its well-known substrings."""
    lowered = text.lower()
    for kind, needles in _TEXT_RULES:
        if any(needle in lowered for needle in needles):
            return kind
    return LLMErrorKind.UNKNOWN


def classify_status(status: int, text: str = "") -> LLMErrorKind:
    """Classify an HTTP status; unmapped 4xx codes fall back to the message text."""
    status_kind = _STATUS_KINDS.get(status)
    if status_kind is not None:
        return status_kind
    if status >= 500:
        return LLMErrorKind.OVERLOADED
    return classify_text(text)


def classify_error(exc: BaseException) -> LLMErrorKind:
    """
    Classify a provider exception into an LLMErrorKind.

    Args:
        exc: Exception raised by a provider SDK, httpx or asyncio

    Returns:
        The stable error category driving retry decisions
    """
    if isinstance(exc, LLMError):
        return exc.kind
    if isinstance(exc, (asyncio.TimeoutError, httpx.TransportError, ConnectionError)):
        return LLMErrorKind.NETWORK

    status = _status_code(exc)
    if status is not None:
        return classify_status(status, str(exc))
    return classify_text(str(exc))


def clean_error_message(message: str) -> str:
    """Strip URLs and transport prefixes from a provider error message."""
    cleaned = _URL_PATTERN.sub("", message)
    for pattern in _NOISE_PATTERNS:
        cleaned = pattern.sub("", cleaned)
    cleaned = re.sub(r"\s+", " ", cleaned).strip(" :.-")
    return cleaned or "Unknown error"


def to_llm_error(exc: BaseException, model_id: Optional[str] = None) -> LLMError:
    """Wrap any provider exception as a classified LLMError."""
    if isinstance(exc, LLMError):
        return exc
    if isinstance(exc, asyncio.TimeoutError):
        message = "Request timed out"
    else:
        message = clean_error_message(str(exc) or type(exc).__name__)
    return LLMError(classify_error(exc), message, model_id=model_id)
