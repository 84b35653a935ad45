"""
EventBus Module

Asynchronous publisher/subscriber channel carrying pipeline lifecycle events
(captures, queue changes, processing sessions, backend switches) from the
pipeline components to whoever presents them.
"""

import asyncio
import logging
import time
import weakref
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from .. import EventTypes

logger = logging.getLogger(__name__)


@dataclass
class EventData:
    """Container for event information."""
    event_type: str
    data: Any = None
    timestamp: float = field(default_factory=time.time)
    source: Optional[str] = None


@dataclass
class EventSubscription:
    """Represents an event subscription."""
    subscription_id: str
    event_type: str
    handler: Callable
    priority: int = 0
    once: bool = False
    weak_ref: bool = False

    def resolve(self) -> Optional[Callable]:
        """Return the live handler, or None when a weak target was collected."""
        if self.weak_ref:
            return self.handler()
        return self.handler


class EventBusError(Exception):
    """Base exception for EventBus related errors."""


class EventBus:
    """
    Asynchronous event distribution.

    ``emit`` queues the event and returns immediately; a background task
    delivers queued events in order. ``emit_and_wait`` delivers inline and
    returns handler results. Handler exceptions are logged and re-published
    as ``error.occurred``; they never propagate to the emitter.
    """

    def __init__(self, max_queue_size: int = 1000, history_size: int = 100):
        self._subscribers: Dict[str, List[EventSubscription]] = defaultdict(list)
        self._event_queue: deque = deque()
        self._max_queue_size = max_queue_size
        self._event_history: deque = deque(maxlen=history_size)
        self._worker: Optional[asyncio.Task] = None
        self._shutdown_requested = False
        self._metrics = {
            'events_emitted': 0,
            'events_processed': 0,
            'handler_errors': 0,
            'queue_overflows': 0,
        }

        logger.debug("EventBus initialized with max_queue_size=%d", max_queue_size)

    async def subscribe(
        self,
        event_type: str,
        handler: Callable,
        priority: int = 0,
        once: bool = False,
        weak_ref: bool = False
    ) -> str:
        """
        Subscribe to an event type.

        Args:
            event_type: Type of event to subscribe to
            handler: Sync or async callable receiving an EventData
            priority: Handler priority (higher = called first)
            once: If True, unsubscribe after the first delivery
            weak_ref: If True, hold the handler through a weak reference

        Returns:
            Subscription ID for later unsubscription
        """
        if not callable(handler):
            raise EventBusError(f"Handler must be callable, got {type(handler)}")

        stored: Callable = handler
        if weak_ref:
            try:
                stored = weakref.WeakMethod(handler) if hasattr(handler, '__self__') else weakref.ref(handler)
            except TypeError:
                weak_ref = False

        subscription = EventSubscription(
            subscription_id=str(uuid4()),
            event_type=event_type,
            handler=stored,
            priority=priority,
            once=once,
            weak_ref=weak_ref
        )
        subscribers = self._subscribers[event_type]
        subscribers.append(subscription)
        subscribers.sort(key=lambda s: s.priority, reverse=True)

        logger.debug("Subscribed to '%s' with priority %d (ID: %s)", event_type, priority, subscription.subscription_id)
        return subscription.subscription_id

    async def unsubscribe(self, subscription_id: str) -> bool:
        """Remove a subscription; returns False if the ID is unknown."""
        for subscriptions in self._subscribers.values():
            for index, subscription in enumerate(subscriptions):
                if subscription.subscription_id == subscription_id:
                    del subscriptions[index]
                    return True
        return False

    async def emit(self, event_type: str, data: Any = None, source: Optional[str] = None) -> None:
        """Queue an event for delivery."""
        if self._shutdown_requested:
            logger.warning("Ignoring event emission during shutdown: %s", event_type)
            return

        if len(self._event_queue) >= self._max_queue_size:
            self._metrics['queue_overflows'] += 1
            logger.warning("Event queue overflow, dropping event: %s", event_type)
            return

        self._event_queue.append(EventData(event_type=event_type, data=data, source=source))
        self._metrics['events_emitted'] += 1

        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._process_event_queue())

        logger.debug("Emitted event: %s", event_type)

    async def emit_and_wait(
        self,
        event_type: str,
        data: Any = None,
        source: Optional[str] = None,
        timeout: float = 5.0
    ) -> List[Any]:
        """
        Deliver an event inline and wait for every handler.

        Raises:
            asyncio.TimeoutError: If handlers don't complete within timeout
        """
        event_data = EventData(event_type=event_type, data=data, source=source)
        return await asyncio.wait_for(self._deliver(event_data), timeout=timeout)

    async def wait_idle(self) -> None:
        """Wait until every queued event has been delivered."""
        while self._worker is not None and not self._worker.done():
            await asyncio.shield(self._worker)

    async def _process_event_queue(self) -> None:
        while self._event_queue and not self._shutdown_requested:
            event_data = self._event_queue.popleft()
            await self._deliver(event_data)
            self._metrics['events_processed'] += 1
            await asyncio.sleep(0)

    async def _deliver(self, event_data: EventData) -> List[Any]:
        self._event_history.append(event_data)
        results = []
        finished = []

        for subscription in list(self._subscribers.get(event_data.event_type, [])):
            handler = subscription.resolve()
            if handler is None:
                finished.append(subscription.subscription_id)
                continue

            try:
                result = handler(event_data)
                if asyncio.iscoroutine(result):
                    result = await result
                results.append(result)
            except Exception as e:
                self._metrics['handler_errors'] += 1
                logger.error("Error in event handler for '%s': %s", event_data.event_type, e)
                logger.debug("Handler error details:", exc_info=True)
                if event_data.event_type != EventTypes.ERROR_OCCURRED:
                    await self.emit(
                        EventTypes.ERROR_OCCURRED,
                        {'error': str(e), 'original_event': event_data.event_type},
                        source="EventBus"
                    )

            if subscription.once:
                finished.append(subscription.subscription_id)

        for subscription_id in finished:
            await self.unsubscribe(subscription_id)

        return results

    def get_event_history(self, event_type: Optional[str] = None, limit: int = 50) -> List[EventData]:
        """Recent delivered events, optionally filtered by type."""
        events = [e for e in self._event_history if event_type is None or e.event_type == event_type]
        return events[-limit:]

    def get_metrics(self) -> Dict[str, Any]:
        return {
            **self._metrics,
            'queue_size': len(self._event_queue),
            'subscription_counts': {k: len(v) for k, v in self._subscribers.items() if v},
        }

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Drain the queue (bounded by timeout) and drop all subscriptions."""
        logger.info("Shutting down EventBus...")
        try:
            await asyncio.wait_for(self.wait_idle(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("EventBus queue not drained within %.1fs", timeout)
        self._shutdown_requested = True
        self._subscribers.clear()
        self._event_queue.clear()
        logger.info("EventBus shutdown complete")

    def is_shutdown(self) -> bool:
        return self._shutdown_requested

    def __len__(self) -> int:
        return len(self._event_queue)
