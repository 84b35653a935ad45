"""
Controllers package for the Velar pipeline

This package contains the components that coordinate the models:
- EventBus: Asynchronous event distribution system
- RequestOrchestrator: Per-queue processing sessions and cancellation
- PipelineController: Caller-facing facade wiring the pipeline together
"""

from .event_bus import EventBus, EventData
from .request_orchestrator import RequestOrchestrator, SessionState, NoBaselineError
from .pipeline_controller import PipelineController

__all__ = [
    'EventBus',
    'EventData',
    'RequestOrchestrator',
    'SessionState',
    'NoBaselineError',
    'PipelineController'
]
