"""Progress events for outside viewers of a running request."""

import logging
import threading
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

from .schemas import EventType

logger = logging.getLogger(__name__)

TERMINAL_EVENTS = frozenset({EventType.COMPLETED, EventType.FAILED})


class GenerationEvent(BaseModel):
    """A single progress event for one request."""

    type: EventType
    request_id: str
    iteration_number: int = 0
    sequence: int = Field(default=0, description="Per-request emission counter, starting at 1")
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def dedupe_key(self) -> tuple[str, int, EventType, int]:
        """Consumers de-duplicate at-least-once deliveries on this key.

        A redelivered event keeps its key. Distinct events never share one,
        including the status changes within one iteration and those repeated
        when a request is continued.
        """
        return (self.request_id, self.iteration_number, self.type, self.sequence)


Subscriber = Callable[[GenerationEvent], None]


class EventBus:
    """Synchronous per-request event fan-out.

    Events for one request reach subscribers in emission order. A terminal
    event (COMPLETED, FAILED) closes that request's subscriptions.
    """

    def __init__(self, keep_history: bool = True):
        self.keep_history = keep_history
        self._subscribers: dict[str, list[Subscriber]] = defaultdict(list)
        self._history: dict[str, list[GenerationEvent]] = defaultdict(list)
        self._sequence: dict[str, int] = defaultdict(int)
        self._lock = threading.RLock()

    def subscribe(self, request_id: str, callback: Subscriber) -> None:
        """Deliver future events for ``request_id`` to ``callback``.

        The subscription ends after the request's next terminal event.
        """
        with self._lock:
            self._subscribers[request_id].append(callback)
        logger.debug(f"Subscriber added for request {request_id}")

    def unsubscribe(self, request_id: str, callback: Subscriber) -> None:
        """Stop delivering to ``callback``. Unknown callbacks are ignored."""
        with self._lock:
            subscribers = self._subscribers.get(request_id, [])
            if callback in subscribers:
                subscribers.remove(callback)
            if not subscribers:
                self._subscribers.pop(request_id, None)

    def subscriber_count(self, request_id: str) -> int:
        """Number of live subscriptions for ``request_id``."""
        with self._lock:
            return len(self._subscribers.get(request_id, []))

    def emit(
        self,
        request_id: str,
        event_type: EventType,
        data: Optional[dict[str, Any]] = None,
        iteration_number: int = 0,
    ) -> GenerationEvent:
        """Record an event and hand it to the request's subscribers in order.

        Subscriber exceptions are logged and never reach the caller.

        Args:
            request_id: The request the event belongs to.
            event_type: Kind of event.
            data: JSON-ready payload.
            iteration_number: Iteration the event refers to.

        Returns:
            The emitted event.
        """
        with self._lock:
            self._sequence[request_id] += 1
            event = GenerationEvent(
                type=event_type,
                request_id=request_id,
                iteration_number=iteration_number,
                sequence=self._sequence[request_id],
                data=data or {},
            )
            if self.keep_history:
                self._history[request_id].append(event)
            subscribers = list(self._subscribers.get(request_id, []))
            if event_type in TERMINAL_EVENTS:
                self._subscribers.pop(request_id, None)

        if not subscribers:
            logger.debug(f"No subscribers for request {request_id}, event {event_type.value} recorded only")
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.warning(
                    f"Event subscriber failed for request {request_id} ({event_type.value})",
                    exc_info=True,
                )
        return event

    def history(self, request_id: str) -> list[GenerationEvent]:
        """Events emitted for ``request_id`` so far, oldest first."""
        with self._lock:
            return list(self._history.get(request_id, []))
