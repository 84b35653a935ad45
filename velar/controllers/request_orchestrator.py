"""
Request Orchestrator Module

Turns queued captures into analysis requests. Each queue kind has at most
one live RequestSession; starting a new one supersedes the previous one,
and cancelled sessions never emit a result, even if the provider still
answers.

Session state per kind:

    IDLE -> STARTED -> SUCCEEDED | FAILED
    STARTED -> IDLE        (cancel)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional
from uuid import uuid4

from .. import EventTypes
from ..models.capture_queue import CaptureQueueManager
from ..models.inference_client import InferenceClient
from ..models.llm_backend import LLMBackend
from ..models.pipeline_models import (
    AnalysisKind, AnalysisResult, CaptureEntry, InlinePart, LLMError, LLMErrorKind,
    OrchestrationError, OrchestrationErrorKind, PipelineError, QueueKind
)
from ..models.response_schema import ProblemArtifact, Solution
from . import prompts

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Lifecycle of a processing session."""
    IDLE = "idle"
    STARTED = "started"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class CancellationToken:
    """Cooperative cancellation flag checked before any result is published."""

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass
class RequestSession:
    """One in-flight analysis for a queue kind."""
    kind: QueueKind
    backend: LLMBackend
    token: CancellationToken = field(default_factory=CancellationToken)
    session_id: str = field(default_factory=lambda: str(uuid4()))
    state: SessionState = SessionState.STARTED
    started_at: datetime = field(default_factory=datetime.now)


class NoBaselineError(OrchestrationError):
    """Raised when a debug pass is requested before any primary result exists."""

    def __init__(self):
        super().__init__(
            OrchestrationErrorKind.NO_BASELINE,
            "No problem to debug yet",
            hint="Process the primary captures first"
        )


class RequestOrchestrator:
    """
    Drives primary and secondary processing.

    Uses only the public operations of the capture queue manager and the
    inference client; owns the sessions, the problem artifact and the
    has-debugged flag.
    """

    def __init__(self, queue_manager: CaptureQueueManager, inference_client: InferenceClient, event_bus=None):
        self.queue_manager = queue_manager
        self.inference_client = inference_client
        self.event_bus = event_bus

        self._sessions: Dict[QueueKind, Optional[RequestSession]] = {kind: None for kind in QueueKind}
        self._problem: Optional[ProblemArtifact] = None
        self._solution: Optional[Solution] = None
        self._has_debugged = False

    @property
    def problem_artifact(self) -> Optional[ProblemArtifact]:
        return self._problem

    @property
    def solution(self) -> Optional[Solution]:
        return self._solution

    @property
    def has_debugged(self) -> bool:
        return self._has_debugged

    def state(self, kind: QueueKind) -> SessionState:
        session = self._sessions[kind]
        return session.state if session else SessionState.IDLE

    def active_session(self, kind: QueueKind) -> Optional[RequestSession]:
        session = self._sessions[kind]
        if session and session.state == SessionState.STARTED:
            return session
        return None

    async def _start_session(self, kind: QueueKind) -> RequestSession:
        previous = self.active_session(kind)
        if previous:
            logger.info("Superseding %s session %s", kind.value, previous.session_id)
            previous.token.cancel()
            previous.state = SessionState.IDLE

        session = RequestSession(kind=kind, backend=self.inference_client.acquire_backend())
        self._sessions[kind] = session
        logger.info("Started %s session %s", kind.value, session.session_id)
        await self._emit(EventTypes.PROCESSING_STARTED, {'kind': kind.value, 'session_id': session.session_id})
        return session

    def _is_live(self, session: RequestSession) -> bool:
        return not session.token.cancelled and self._sessions[session.kind] is session

    async def _succeed(self, session: RequestSession, payload: dict) -> None:
        session.state = SessionState.SUCCEEDED
        await self._emit(EventTypes.PROCESSING_SUCCEEDED, {
            'kind': session.kind.value,
            'session_id': session.session_id,
            **payload
        })

    async def _fail(self, session: RequestSession, error: PipelineError) -> None:
        if not self._is_live(session):
            logger.debug("Discarding failure of cancelled session %s: %s", session.session_id, error.message)
            return

        session.state = SessionState.FAILED
        logger.error("%s processing failed (%s): %s", session.kind.value, error.kind.value, error.message)
        await self._emit(EventTypes.PROCESSING_FAILED, {
            'kind': session.kind.value,
            'session_id': session.session_id,
            'error': error.user_message,
            'error_kind': error.kind.value,
            'retryable': getattr(error, 'retryable', False),
            'detail': error.message,
        })

    async def _load_parts(self, entries: List[CaptureEntry]) -> List[InlinePart]:
        return [await self.queue_manager.load_part(entry) for entry in entries]

    async def process_primary(self) -> Optional[ProblemArtifact]:
        """
        Analyze the primary queue.

        The newest entry decides the route: an audio clip is analyzed on its
        own, otherwise every queued screenshot is sent as one image request.

        Returns:
            The new problem artifact, or None when there was no input, the
            request failed or the session was cancelled
        """
        entries = list(self.queue_manager.get_queue(QueueKind.PRIMARY))
        if not entries:
            logger.info("No primary captures to process")
            await self._emit(EventTypes.PROCESSING_NO_INPUT, {'kind': QueueKind.PRIMARY.value})
            return None

        session = await self._start_session(QueueKind.PRIMARY)
        newest = entries[-1]

        try:
            if newest.is_audio:
                parts = await self._load_parts([newest])
                result = await session.backend.analyze(AnalysisKind.AUDIO, parts, prompts.AUDIO_ANALYSIS_PROMPT)
                artifact = ProblemArtifact.from_analysis(result, source=AnalysisKind.AUDIO.value)
            else:
                parts = await self._load_parts([entry for entry in entries if not entry.is_audio])
                result = await session.backend.analyze(AnalysisKind.IMAGE, parts, prompts.IMAGE_ANALYSIS_PROMPT)
                artifact = ProblemArtifact.from_analysis(result, source=AnalysisKind.IMAGE.value)
        except PipelineError as e:
            await self._fail(session, e)
            return None
        except Exception as e:
            logger.error("Unexpected error during primary processing: %s", e, exc_info=True)
            await self._fail(session, LLMError(LLMErrorKind.UNKNOWN, str(e)))
            return None

        if not self._is_live(session):
            logger.info("Discarding result of cancelled session %s", session.session_id)
            return None

        self._problem = artifact
        self._solution = None
        self._has_debugged = False
        await self.queue_manager.set_mode(QueueKind.SECONDARY)
        await self._succeed(session, {'artifact': artifact.to_dict(), 'model_used': result.model_used})
        return artifact

    async def process_secondary(self) -> Optional[Solution]:
        """
        Refine the current problem with the secondary (debug) captures.

        A baseline solution is regenerated from the problem artifact, then
        sent together with the debug screenshots for refinement.

        Raises:
            NoBaselineError: when no primary result exists; no session is started
        """
        if self._problem is None:
            logger.warning("Debug requested without a problem artifact")
            raise NoBaselineError()

        entries = [entry for entry in self.queue_manager.get_queue(QueueKind.SECONDARY) if not entry.is_audio]
        if not entries:
            logger.info("No secondary captures to process")
            await self._emit(EventTypes.PROCESSING_NO_INPUT, {'kind': QueueKind.SECONDARY.value})
            return None

        session = await self._start_session(QueueKind.SECONDARY)
        problem = self._problem.to_dict()

        try:
            baseline_result = await session.backend.analyze(
                AnalysisKind.TEXT, [], prompts.build_solution_prompt(problem)
            )
            baseline = Solution.parse(baseline_result)
            if not self._is_live(session):
                logger.info("Discarding result of cancelled session %s", session.session_id)
                return None

            parts = await self._load_parts(entries)
            refined_result = await session.backend.analyze(
                AnalysisKind.IMAGE, parts, prompts.build_debug_prompt(problem, baseline.code)
            )
            refined = Solution.parse(refined_result)
        except PipelineError as e:
            await self._fail(session, e)
            return None
        except Exception as e:
            logger.error("Unexpected error during debug processing: %s", e, exc_info=True)
            await self._fail(session, LLMError(LLMErrorKind.UNKNOWN, str(e)))
            return None

        if not self._is_live(session):
            logger.info("Discarding result of cancelled session %s", session.session_id)
            return None

        self._solution = refined
        self._has_debugged = True
        await self._succeed(session, {
            'baseline': baseline.to_dict(),
            'solution': refined.to_dict(),
            'model_used': refined.model_used,
        })
        return refined

    async def process_audio_base64(self, data: str, mime_type: str) -> AnalysisResult:
        """
        Analyze an inline base64 audio clip without queueing it.

        Raises:
            LLMError: classified provider failure
        """
        part = InlinePart.from_base64(data, mime_type)
        backend = self.inference_client.acquire_backend()
        return await backend.analyze(AnalysisKind.AUDIO, [part], prompts.AUDIO_ANALYSIS_PROMPT)

    async def cancel(self) -> None:
        """Cancel every started session and clear the has-debugged flag."""
        for kind, session in self._sessions.items():
            if session and session.state == SessionState.STARTED:
                session.token.cancel()
                session.state = SessionState.IDLE
                logger.info("Cancelled %s session %s", kind.value, session.session_id)
                await self._emit(EventTypes.PROCESSING_CANCELLED, {
                    'kind': kind.value,
                    'session_id': session.session_id
                })
        self._has_debugged = False

    async def reset(self) -> None:
        """Cancel work, drop the problem and both queues, and return to primary mode."""
        await self.cancel()
        self._problem = None
        self._solution = None
        for kind in QueueKind:
            await self.queue_manager.clear(kind)
            self._sessions[kind] = None
        await self.queue_manager.set_mode(QueueKind.PRIMARY)

    async def _emit(self, event_type: str, data: dict) -> None:
        if self.event_bus:
            await self.event_bus.emit(event_type, data, source="RequestOrchestrator")
