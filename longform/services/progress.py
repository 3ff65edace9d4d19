"""Ordered progress events for one job.

The controller emits; consumers either subscribe (push) or poll with the
last sequence number they saw (pull). Events keep emission order.

Only the newest event that carries ``partial_content`` keeps it; older
snapshots are dropped when a new one arrives. History is capped at
``max_events``; sequence numbers keep counting past the cap.
"""

import logging
import threading
from typing import Callable, List, Optional

from ..schemas.progress import ProgressEvent, ProgressPhase

logger = logging.getLogger(__name__)

Subscriber = Callable[[ProgressEvent], None]


class ProgressChannel:
    def __init__(self, document_id: str, max_events: int = 500):
        if max_events <= 0:
            raise ValueError("max_events must be positive")
        self.document_id = document_id
        self.max_events = max_events
        self._events: List[ProgressEvent] = []
        self._sequence = 0
        self._content_sequence: Optional[int] = None
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def _drop_previous_content(self) -> None:
        if self._content_sequence is None or not self._events:
            return
        index = self._content_sequence - self._events[0].sequence
        if 0 <= index < len(self._events):
            self._events[index] = self._events[index].model_copy(update={"partial_content": None})
        self._content_sequence = None

    def emit(
        self,
        phase: ProgressPhase,
        message: str,
        current: Optional[int] = None,
        total: Optional[int] = None,
        partial_content: Optional[str] = None,
    ) -> ProgressEvent:
        # Subscribers run under the lock so concurrent emitters cannot reorder delivery.
        with self._lock:
            self._sequence += 1
            event = ProgressEvent(
                document_id=self.document_id,
                sequence=self._sequence,
                phase=phase,
                message=message,
                current=current,
                total=total,
                partial_content=partial_content,
            )
            if partial_content is not None:
                self._drop_previous_content()
                self._content_sequence = event.sequence
            self._events.append(event)
            if len(self._events) > self.max_events:
                del self._events[:len(self._events) - self.max_events]
            for callback in list(self._subscribers):
                try:
                    callback(event)
                except Exception:
                    logger.exception("Progress subscriber failed for %s", self.document_id)
        return event

    def events(self, after: int = 0) -> List[ProgressEvent]:
        """Retained events with sequence greater than *after*."""
        with self._lock:
            return [e for e in self._events if e.sequence > after]

    @property
    def last(self) -> Optional[ProgressEvent]:
        with self._lock:
            return self._events[-1] if self._events else None
