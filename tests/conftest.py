"""Shared fakes for the pipeline tests.

The fakes stand in for the external collaborators only: the capture
primitive, the presentation surface, the google-genai client, the ollama
client and a scripted backend for orchestration tests.
"""

import asyncio
import base64
from pathlib import Path
from types import SimpleNamespace

import pytest

from velar.controllers.event_bus import EventBus
from velar.models.llm_backend import LLMBackend
from velar.models.pipeline_models import AnalysisResult, ConnectionTestResult
from velar.models.settings_manager import CaptureSettings, PipelineSettings

PNG_BYTES = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNk+M9QDwADhgGAWjR9awAAAABJRU5ErkJggg=="
)


def make_settings(data_dir, **capture_overrides) -> PipelineSettings:
    """Settings rooted at a temp dir with all capture delays disabled."""
    capture = dict(
        data_dir=str(data_dir),
        hide_delay_seconds=0,
        settle_delay_seconds=0,
        verify_backoff_seconds=0,
    )
    capture.update(capture_overrides)
    settings = PipelineSettings()
    settings.capture = CaptureSettings(**capture)
    return settings


class FakeSurface:
    def __init__(self):
        self.events = []

    def hide(self):
        self.events.append("hide")

    def show(self):
        self.events.append("show")


class FakeCapturer:
    """Writes a distinct small payload per capture, or fails on demand."""

    def __init__(self, error=None, write_empty=False):
        self.error = error
        self.write_empty = write_empty
        self.calls = 0
        self.written = {}

    async def capture_to_file(self, path):
        self.calls += 1
        if self.error is not None:
            raise self.error
        data = b"" if self.write_empty else PNG_BYTES + f"#{self.calls}".encode()
        Path(path).write_bytes(data)
        self.written[path] = data


class FakeAPIError(Exception):
    """Provider error carrying an HTTP-like status code, as the SDKs do."""

    def __init__(self, code, message):
        super().__init__(f"{code} {message}")
        self.code = code


class FakeModels:
    """``client.aio.models`` with per-model scripted behavior.

    A behavior is a string (the reply), an exception (raised), or a callable
    receiving the prompt and part count and returning either.
    """

    def __init__(self, behaviors=None, default="ok", delay=0.0):
        self.behaviors = behaviors or {}
        self.default = default
        self.delay = delay
        self.calls = []

    async def generate_content(self, model, contents):
        prompt, parts = contents[0], contents[1:]
        self.calls.append((model, prompt, len(parts)))
        if self.delay:
            await asyncio.sleep(self.delay)

        behavior = self.behaviors.get(model, self.default)
        if callable(behavior) and not isinstance(behavior, BaseException):
            behavior = behavior(prompt, len(parts))
        if isinstance(behavior, BaseException):
            raise behavior
        return SimpleNamespace(text=behavior)

    def prompts_for(self, model):
        return [prompt for called, prompt, _ in self.calls if called == model]


class FakeGenAIClient:
    def __init__(self, behaviors=None, default="ok", delay=0.0):
        self.models = FakeModels(behaviors, default, delay)
        self.aio = SimpleNamespace(models=self.models)


class FakeOllamaClient:
    def __init__(self, models=("llama3.2:latest",), response="local answer", list_error=None, generate_error=None):
        self.models = list(models)
        self.response = response
        self.list_error = list_error
        self.generate_error = generate_error
        self.requests = []

    async def list(self):
        if self.list_error is not None:
            raise self.list_error
        return {"models": [{"model": name} for name in self.models]}

    async def generate(self, **request):
        self.requests.append(request)
        if self.generate_error is not None:
            raise self.generate_error
        return {"response": self.response, "done": True}


class ScriptedBackend(LLMBackend):
    """Backend returning queued replies; optionally blocks until a gate opens."""

    def __init__(self, config, catalog, inference, replies=(), gate=None, name="scripted"):
        super().__init__(config, catalog, inference)
        self.replies = list(replies)
        self.gate = gate
        self.name = name
        self.calls = []
        self.called = asyncio.Event()

    async def analyze(self, kind, parts, prompt, model_override=None):
        self.calls.append((kind, len(parts), prompt))
        self.called.set()
        if self.gate is not None:
            await self.gate.wait()
        reply = self.replies.pop(0) if self.replies else "plain answer"
        if isinstance(reply, BaseException):
            raise reply
        return AnalysisResult(text=reply, model_used=self.name)

    async def list_models(self):
        return []

    async def test_connection(self):
        return ConnectionTestResult(success=True, model_used=self.name)


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def event_bus():
    return EventBus()
