"""Event emitter for publishing escrow domain events.

The emitter provides:
- Handler registration with type filtering
- Category-based routing
- Error isolation (handler failures don't break other handlers)
- Event batching so events only leave once a command has succeeded
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from escrow_engine.settlement.events.types import DomainEvent, EventCategory

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=DomainEvent)

EventHandler = Callable[[DomainEvent], None]


@dataclass
class HandlerRegistration:
    """Registration of an event handler."""

    handler: EventHandler
    event_types: set[str] | None  # None = all events
    categories: set[EventCategory] | None  # None = all categories


class EventEmitter:
    """Synchronous event emitter.

    Usage:
        emitter = EventEmitter()
        emitter.on(EscrowReleased, notify_worker)
        emitter.on_category(EventCategory.DISPUTE, page_support)

        with emitter.batch():
            emitter.emit(event1)
            emitter.emit(event2)
        # Both delivered when the block exits without an exception
    """

    def __init__(self) -> None:
        self._handlers: list[HandlerRegistration] = []
        self._local = threading.local()

    def _pending(self) -> tuple[list[int], list[DomainEvent]]:
        """Per-thread batch state: start marks of open batches and held events."""
        if not hasattr(self._local, "marks"):
            self._local.marks = []
            self._local.events = []
        return self._local.marks, self._local.events

    def on(self, event_type: type[T] | list[type[T]], handler: EventHandler) -> None:
        """Register handler for specific event type(s)."""
        types = event_type if isinstance(event_type, list) else [event_type]
        self._handlers.append(
            HandlerRegistration(handler=handler, event_types={t.__name__ for t in types}, categories=None)
        )

    def on_category(self, category: EventCategory | list[EventCategory], handler: EventHandler) -> None:
        """Register handler for event category(ies)."""
        cats = set(category) if isinstance(category, list) else {category}
        self._handlers.append(HandlerRegistration(handler=handler, event_types=None, categories=cats))

    def on_all(self, handler: EventHandler) -> None:
        self._handlers.append(HandlerRegistration(handler=handler, event_types=None, categories=None))

    def off(self, handler: EventHandler) -> None:
        self._handlers = [reg for reg in self._handlers if reg.handler is not handler]

    def emit(self, event: DomainEvent) -> list[Exception]:
        """Emit an event to all matching handlers.

        Returns list of any exceptions raised by handlers.
        """
        marks, pending = self._pending()
        if marks:
            pending.append(event)
            return []
        return self._dispatch(event)

    def _dispatch(self, event: DomainEvent) -> list[Exception]:
        errors: list[Exception] = []
        for reg in self._handlers:
            if reg.event_types and event.event_type not in reg.event_types:
                continue
            if reg.categories and event.category not in reg.categories:
                continue
            try:
                reg.handler(event)
            except Exception as e:
                logger.exception("Handler %s failed for event %s", reg.handler, event.event_type)
                errors.append(e)
        return errors

    def batch(self) -> EventBatch:
        """Hold events until the context exits; discard them on error.

        Batches nest: only the outermost batch delivers, and a failed inner
        batch drops just its own events. Batch state is per thread.
        """
        return EventBatch(self)

    def _start_batch(self) -> None:
        marks, pending = self._pending()
        marks.append(len(pending))

    def _end_batch(self, deliver: bool) -> list[Exception]:
        marks, pending = self._pending()
        start = marks.pop()
        if not deliver:
            del pending[start:]
        if marks or not deliver:
            return []
        events = list(pending)
        pending.clear()
        errors: list[Exception] = []
        for event in events:
            errors.extend(self._dispatch(event))
        return errors


class EventBatch:
    """Context manager for batching events."""

    def __init__(self, emitter: EventEmitter) -> None:
        self._emitter = emitter
        self._errors: list[Exception] = []

    def __enter__(self) -> EventBatch:
        self._emitter._start_batch()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self._errors = self._emitter._end_batch(deliver=exc_type is None)

    def add(self, event: DomainEvent) -> None:
        self._emitter.emit(event)

    @property
    def errors(self) -> list[Exception]:
        """Errors from handler execution (available after context exits)."""
        return self._errors


class EventCollector:
    """Handler that records every event it sees. Used by tests and the CLI."""

    def __init__(self) -> None:
        self.events: list[DomainEvent] = []

    def __call__(self, event: DomainEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: type[T]) -> list[T]:
        return [e for e in self.events if isinstance(e, event_type)]

    def clear(self) -> None:
        self.events.clear()
