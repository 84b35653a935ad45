"""Tests for RequestOrchestrator session handling and routing."""

import asyncio
import base64
import json

import pytest

from velar import EventTypes
from velar.controllers.request_orchestrator import NoBaselineError, RequestOrchestrator, SessionState
from velar.models.capture_queue import CaptureQueueManager
from velar.models.inference_client import InferenceClient
from velar.models.pipeline_models import AnalysisKind, LLMError, LLMErrorKind, QueueKind
from velar.models.settings_manager import ProviderConfig

from conftest import FakeCapturer, FakeSurface, ScriptedBackend

PROBLEM_REPLY = json.dumps({
    "problem_statement": "Return the indices of two numbers adding up to target",
    "context": "Coding interview question",
    "suggested_responses": ["Use a hash map"],
    "reasoning": "Single pass lookup",
})
BASELINE_REPLY = json.dumps({"solution": {"code": "def two_sum(nums, target): pass"}})
REFINED_REPLY = json.dumps({"solution": {"code": "def two_sum(nums, target): return []", "reasoning": "fixed"}})


class Pipeline:
    """Queue manager, inference client and orchestrator around one ScriptedBackend."""

    def __init__(self, settings, event_bus, replies=(), gate=None):
        self.event_bus = event_bus
        self.queue = CaptureQueueManager(
            settings.capture, capturer=FakeCapturer(), surface=FakeSurface(), event_bus=event_bus
        )
        self.backend = None

        def factory(config, catalog, s):
            self.backend = ScriptedBackend(config, catalog, s.inference, replies=replies, gate=gate)
            return self.backend

        self.inference = InferenceClient(
            ProviderConfig.local("http://localhost:11434"), settings, event_bus=event_bus, backend_factory=factory
        )
        self.orchestrator = RequestOrchestrator(self.queue, self.inference, event_bus)

    async def events(self, event_type):
        await self.event_bus.wait_idle()
        return self.event_bus.get_event_history(event_type)


@pytest.mark.asyncio
async def test_primary_images_are_sent_together(settings, event_bus):
    pipeline = Pipeline(settings, event_bus, replies=[PROBLEM_REPLY])
    await pipeline.queue.capture()
    await pipeline.queue.capture()

    artifact = await pipeline.orchestrator.process_primary()

    kind, part_count, _ = pipeline.backend.calls[0]
    assert kind == AnalysisKind.IMAGE
    assert part_count == 2
    assert artifact.problem_statement.startswith("Return the indices")
    assert artifact.source == "image"
    assert pipeline.orchestrator.problem_artifact is artifact
    assert pipeline.orchestrator.state(QueueKind.PRIMARY) == SessionState.SUCCEEDED
    assert pipeline.queue.mode == QueueKind.SECONDARY

    succeeded = await pipeline.events(EventTypes.PROCESSING_SUCCEEDED)
    assert len(succeeded) == 1
    assert succeeded[0].data["artifact"]["suggested_responses"] == ["Use a hash map"]


@pytest.mark.asyncio
async def test_newest_audio_entry_routes_to_audio_analysis(settings, event_bus):
    pipeline = Pipeline(settings, event_bus, replies=["Someone asks about the meeting time."])
    await pipeline.queue.capture()
    await pipeline.queue.import_audio(b"RIFF\x00\x00\x00\x00WAVE", "audio/wav")

    artifact = await pipeline.orchestrator.process_primary()

    kind, part_count, _ = pipeline.backend.calls[0]
    assert kind == AnalysisKind.AUDIO
    assert part_count == 1
    assert artifact.source == "audio"
    assert artifact.problem_statement == "Someone asks about the meeting time."


@pytest.mark.asyncio
async def test_newest_image_entry_skips_older_audio(settings, event_bus):
    pipeline = Pipeline(settings, event_bus, replies=[PROBLEM_REPLY])
    await pipeline.queue.import_audio(b"RIFF\x00\x00\x00\x00WAVE", "audio/wav")
    await pipeline.queue.capture()

    await pipeline.orchestrator.process_primary()

    kind, part_count, _ = pipeline.backend.calls[0]
    assert kind == AnalysisKind.IMAGE
    assert part_count == 1


@pytest.mark.asyncio
async def test_empty_primary_queue_reports_no_input(settings, event_bus):
    pipeline = Pipeline(settings, event_bus)

    assert await pipeline.orchestrator.process_primary() is None

    assert len(await pipeline.events(EventTypes.PROCESSING_NO_INPUT)) == 1
    assert await pipeline.events(EventTypes.PROCESSING_STARTED) == []
    assert pipeline.backend.calls == []


@pytest.mark.asyncio
async def test_cancelled_session_never_publishes_result(settings, event_bus):
    gate = asyncio.Event()
    pipeline = Pipeline(settings, event_bus, replies=[PROBLEM_REPLY], gate=gate)
    await pipeline.queue.capture()

    task = asyncio.create_task(pipeline.orchestrator.process_primary())
    await pipeline.backend.called.wait()
    await pipeline.orchestrator.cancel()
    gate.set()

    assert await task is None
    assert pipeline.orchestrator.state(QueueKind.PRIMARY) == SessionState.IDLE
    assert pipeline.orchestrator.problem_artifact is None
    assert pipeline.queue.mode == QueueKind.PRIMARY
    assert await pipeline.events(EventTypes.PROCESSING_SUCCEEDED) == []
    assert len(await pipeline.events(EventTypes.PROCESSING_CANCELLED)) == 1


@pytest.mark.asyncio
async def test_cancelled_session_does_not_publish_failure(settings, event_bus):
    gate = asyncio.Event()
    pipeline = Pipeline(settings, event_bus, replies=[LLMError(LLMErrorKind.NETWORK, "reset")], gate=gate)
    await pipeline.queue.capture()

    task = asyncio.create_task(pipeline.orchestrator.process_primary())
    await pipeline.backend.called.wait()
    await pipeline.orchestrator.cancel()
    gate.set()

    assert await task is None
    assert await pipeline.events(EventTypes.PROCESSING_FAILED) == []


@pytest.mark.asyncio
async def test_cancel_is_idempotent(settings, event_bus):
    gate = asyncio.Event()
    pipeline = Pipeline(settings, event_bus, replies=[PROBLEM_REPLY], gate=gate)
    await pipeline.queue.capture()

    await pipeline.orchestrator.cancel()
    task = asyncio.create_task(pipeline.orchestrator.process_primary())
    await pipeline.backend.called.wait()
    await pipeline.orchestrator.cancel()
    await pipeline.orchestrator.cancel()
    gate.set()
    await task

    assert pipeline.orchestrator.state(QueueKind.PRIMARY) == SessionState.IDLE
    assert not pipeline.orchestrator.has_debugged
    assert len(await pipeline.events(EventTypes.PROCESSING_CANCELLED)) == 1


@pytest.mark.asyncio
async def test_new_primary_request_supersedes_running_one(settings, event_bus):
    gate = asyncio.Event()
    pipeline = Pipeline(settings, event_bus, replies=[PROBLEM_REPLY, PROBLEM_REPLY], gate=gate)
    await pipeline.queue.capture()

    first = asyncio.create_task(pipeline.orchestrator.process_primary())
    await pipeline.backend.called.wait()
    second = asyncio.create_task(pipeline.orchestrator.process_primary())
    while len(pipeline.backend.calls) < 2:
        await asyncio.sleep(0)
    gate.set()

    assert await first is None
    assert await second is not None
    assert pipeline.orchestrator.state(QueueKind.PRIMARY) == SessionState.SUCCEEDED
    assert len(await pipeline.events(EventTypes.PROCESSING_STARTED)) == 2
    assert len(await pipeline.events(EventTypes.PROCESSING_SUCCEEDED)) == 1


@pytest.mark.asyncio
async def test_provider_failure_is_published_with_category(settings, event_bus):
    pipeline = Pipeline(settings, event_bus, replies=[LLMError(LLMErrorKind.OVERLOADED, "The model is overloaded")])
    await pipeline.queue.capture()

    assert await pipeline.orchestrator.process_primary() is None

    assert pipeline.orchestrator.state(QueueKind.PRIMARY) == SessionState.FAILED
    failed = await pipeline.events(EventTypes.PROCESSING_FAILED)
    assert len(failed) == 1
    assert failed[0].data["error_kind"] == "overloaded"
    assert failed[0].data["retryable"] is True
    assert failed[0].data["detail"] == "The model is overloaded"


@pytest.mark.asyncio
async def test_secondary_without_baseline_starts_nothing(settings, event_bus):
    pipeline = Pipeline(settings, event_bus)
    await pipeline.queue.set_mode(QueueKind.SECONDARY)
    await pipeline.queue.capture()

    with pytest.raises(NoBaselineError) as excinfo:
        await pipeline.orchestrator.process_secondary()

    assert excinfo.value.kind.value == "no_baseline"
    assert pipeline.orchestrator.state(QueueKind.SECONDARY) == SessionState.IDLE
    assert await pipeline.events(EventTypes.PROCESSING_STARTED) == []
    assert pipeline.backend.calls == []


@pytest.mark.asyncio
async def test_secondary_refines_baseline_with_debug_captures(settings, event_bus):
    pipeline = Pipeline(settings, event_bus, replies=[PROBLEM_REPLY, BASELINE_REPLY, REFINED_REPLY])
    await pipeline.queue.capture()
    await pipeline.orchestrator.process_primary()
    await pipeline.queue.capture()
    await pipeline.queue.capture()

    solution = await pipeline.orchestrator.process_secondary()

    assert solution.code == "def two_sum(nums, target): return []"
    assert pipeline.orchestrator.solution is solution
    assert pipeline.orchestrator.has_debugged

    baseline_call, refine_call = pipeline.backend.calls[1:]
    assert baseline_call[:2] == (AnalysisKind.TEXT, 0)
    assert "Return the indices" in baseline_call[2]
    assert refine_call[:2] == (AnalysisKind.IMAGE, 2)
    assert "def two_sum(nums, target): pass" in refine_call[2]

    succeeded = await pipeline.events(EventTypes.PROCESSING_SUCCEEDED)
    assert succeeded[-1].data["kind"] == "secondary"
    assert succeeded[-1].data["solution"]["solution"]["reasoning"] == "fixed"


@pytest.mark.asyncio
async def test_secondary_schema_mismatch_fails_with_unknown_kind(settings, event_bus):
    pipeline = Pipeline(settings, event_bus, replies=[PROBLEM_REPLY, BASELINE_REPLY, "Looks fine to me!"])
    await pipeline.queue.capture()
    await pipeline.orchestrator.process_primary()
    await pipeline.queue.capture()

    assert await pipeline.orchestrator.process_secondary() is None

    assert not pipeline.orchestrator.has_debugged
    assert pipeline.orchestrator.state(QueueKind.SECONDARY) == SessionState.FAILED
    failed = await pipeline.events(EventTypes.PROCESSING_FAILED)
    assert failed[-1].data["error_kind"] == "unknown"
    assert failed[-1].data["retryable"] is False


@pytest.mark.asyncio
async def test_cancel_clears_has_debugged(settings, event_bus):
    pipeline = Pipeline(settings, event_bus, replies=[PROBLEM_REPLY, BASELINE_REPLY, REFINED_REPLY])
    await pipeline.queue.capture()
    await pipeline.orchestrator.process_primary()
    await pipeline.queue.capture()
    await pipeline.orchestrator.process_secondary()

    await pipeline.orchestrator.cancel()

    assert not pipeline.orchestrator.has_debugged
    assert pipeline.orchestrator.problem_artifact is not None


@pytest.mark.asyncio
async def test_reset_returns_to_primary_mode_with_empty_queues(settings, event_bus):
    pipeline = Pipeline(settings, event_bus, replies=[PROBLEM_REPLY])
    await pipeline.queue.capture()
    await pipeline.orchestrator.process_primary()
    await pipeline.queue.capture()

    await pipeline.orchestrator.reset()

    assert pipeline.orchestrator.problem_artifact is None
    assert pipeline.queue.mode == QueueKind.PRIMARY
    assert pipeline.queue.get_queue(QueueKind.PRIMARY) == ()
    assert pipeline.queue.get_queue(QueueKind.SECONDARY) == ()
    assert pipeline.orchestrator.state(QueueKind.PRIMARY) == SessionState.IDLE


@pytest.mark.asyncio
async def test_inline_audio_is_analyzed_without_queueing(settings, event_bus):
    pipeline = Pipeline(settings, event_bus, replies=["A doorbell rings."])

    result = await pipeline.orchestrator.process_audio_base64(
        base64.b64encode(b"RIFF\x00\x00\x00\x00WAVE").decode(), "audio/wav"
    )

    assert result.text == "A doorbell rings."
    assert pipeline.backend.calls[0][:2] == (AnalysisKind.AUDIO, 1)
    assert pipeline.queue.get_queue(QueueKind.PRIMARY) == ()
