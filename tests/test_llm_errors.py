"""Unit tests for provider error classification and message cleaning."""

import asyncio

import httpx
import pytest

from velar.models.llm_errors import classify_error, classify_text, clean_error_message, to_llm_error
from velar.models.pipeline_models import CandidateFailure, LLMError, LLMErrorKind

from conftest import FakeAPIError


@pytest.mark.parametrize("message, kind", [
    ("models/gemini-x is not found for API version v1beta", LLMErrorKind.MODEL_UNAVAILABLE),
    ("The model is overloaded. Please try again later.", LLMErrorKind.OVERLOADED),
    ("You exceeded your current quota", LLMErrorKind.QUOTA_EXCEEDED),
    ("API key not valid. Please pass a valid API key.", LLMErrorKind.UNAUTHORIZED),
    ("Connection refused", LLMErrorKind.NETWORK),
    ("something odd happened", LLMErrorKind.UNKNOWN),
])
def test_classify_text(message, kind):
    assert classify_text(message) == kind


@pytest.mark.parametrize("code, kind", [
    (401, LLMErrorKind.UNAUTHORIZED),
    (403, LLMErrorKind.UNAUTHORIZED),
    (404, LLMErrorKind.MODEL_UNAVAILABLE),
    (429, LLMErrorKind.QUOTA_EXCEEDED),
    (503, LLMErrorKind.OVERLOADED),
    (504, LLMErrorKind.NETWORK),
])
def test_status_code_drives_classification(code, kind):
    assert classify_error(FakeAPIError(code, "request failed")) == kind


def test_bad_request_falls_back_to_message_text():
    error = FakeAPIError(400, "API key not valid. Please pass a valid API key.")
    assert classify_error(error) == LLMErrorKind.UNAUTHORIZED


def test_transport_failures_are_network_errors():
    request = httpx.Request("GET", "https://example.invalid/models")
    assert classify_error(httpx.ConnectError("refused", request=request)) == LLMErrorKind.NETWORK
    assert classify_error(asyncio.TimeoutError()) == LLMErrorKind.NETWORK
    assert classify_error(ConnectionError("reset")) == LLMErrorKind.NETWORK


def test_clean_error_message_strips_urls_and_transport_prefixes():
    raw = (
        "[GoogleGenerativeAI Error]: Error fetching from "
        "https://generativelanguage.googleapis.com/v1beta/models/gemini-x:generateContent: "
        "[404 Not Found] models/gemini-x is not found for API version v1beta"
    )

    cleaned = clean_error_message(raw)

    assert "http" not in cleaned
    assert "GoogleGenerativeAI" not in cleaned
    assert "Error fetching from" not in cleaned
    assert cleaned.endswith("models/gemini-x is not found for API version v1beta")


def test_to_llm_error_keeps_model_and_kind():
    error = to_llm_error(FakeAPIError(429, "Resource has been exhausted"), "gemini-2.0-flash")

    assert error.kind == LLMErrorKind.QUOTA_EXCEEDED
    assert error.model_id == "gemini-2.0-flash"
    assert not error.retryable


def test_retryable_follows_category():
    assert LLMError(LLMErrorKind.OVERLOADED, "busy").retryable
    assert LLMError(LLMErrorKind.NETWORK, "down").retryable
    assert not LLMError(LLMErrorKind.UNAUTHORIZED, "bad key").retryable


def test_composite_keeps_shared_category_and_lists_every_candidate():
    failures = [
        CandidateFailure("a", "Model A", LLMErrorKind.UNAUTHORIZED, "API key not valid"),
        CandidateFailure("b", "Model B", LLMErrorKind.UNAUTHORIZED, "API key not valid"),
    ]

    error = LLMError.composite(failures, "Gemini API")

    assert error.kind == LLMErrorKind.UNAUTHORIZED
    assert "Tried 2 models" in error.message
    assert "• Model A: API key not valid" in error.message
    assert "• Model B: API key not valid" in error.message
    assert len(error.failures) == 2


def test_composite_with_mixed_categories_is_unknown():
    failures = [
        CandidateFailure("a", "Model A", LLMErrorKind.OVERLOADED, "overloaded"),
        CandidateFailure("b", "Model B", LLMErrorKind.QUOTA_EXCEEDED, "quota"),
    ]

    assert LLMError.composite(failures, "Gemini API").kind == LLMErrorKind.UNKNOWN
