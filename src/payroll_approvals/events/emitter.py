"""Event emitter for workflow notifications.

The emitter provides:
- Handler registration by event type, category, or catch-all
- Error isolation (a failing handler never breaks the others or the caller)
- Batching, so notifications leave only after the request transaction commits
"""

from __future__ import annotations

import logging
from contextvars import ContextVar, Token
from dataclasses import dataclass
from typing import Any, Callable, Protocol, TypeVar, runtime_checkable

from payroll_approvals.events.types import DomainEvent, EventCategory

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=DomainEvent)


@runtime_checkable
class EventHandler(Protocol):
    """Protocol for event handlers."""

    def __call__(self, event: DomainEvent) -> None:
        ...


@dataclass
class HandlerRegistration:
    """Registration of an event handler."""

    handler: EventHandler | Callable[[DomainEvent], None]
    event_types: set[str] | None  # None = all events
    categories: set[EventCategory] | None  # None = all categories


class EventEmitter:
    """Synchronous, batch-aware event emitter.

    One emitter is shared by the whole process. Held events belong to the
    batch that was open when they were emitted, so concurrent requests never
    release or discard each other's notifications.

    Usage:
        emitter = EventEmitter()
        emitter.on(PayRunRejected, send_rejection_email)

        with emitter.batch():
            engine.reject(...)       # events are held
            await session.commit()
        # events dispatched here, only if nothing raised
    """

    def __init__(self) -> None:
        self._handlers: list[HandlerRegistration] = []

    def on(self, event_type: type[T] | list[type[T]], handler: EventHandler) -> None:
        """Register handler for specific event type(s)."""
        types = event_type if isinstance(event_type, list) else [event_type]
        self._handlers.append(
            HandlerRegistration(handler, {t.__name__ for t in types}, None)
        )

    def on_category(
        self,
        category: EventCategory | list[EventCategory],
        handler: EventHandler,
    ) -> None:
        """Register handler for event category(ies)."""
        cats = set(category) if isinstance(category, list) else {category}
        self._handlers.append(HandlerRegistration(handler, None, cats))

    def on_all(self, handler: EventHandler) -> None:
        """Register handler for all events."""
        self._handlers.append(HandlerRegistration(handler, None, None))

    def off(self, handler: EventHandler) -> None:
        """Unregister a handler."""
        self._handlers = [reg for reg in self._handlers if reg.handler is not handler]

    def emit(self, event: DomainEvent) -> list[Exception]:
        """Emit an event, or hold it in the innermost open batch.

        Returns list of any exceptions raised by handlers.
        """
        batch = self._open_batch()
        if batch is not None:
            batch._events.append(event)
            return []
        return self._dispatch(event)

    @property
    def held(self) -> list[DomainEvent]:
        """Events waiting for the current batch to close."""
        batch = self._open_batch()
        return list(batch._events) if batch is not None else []

    def _open_batch(self) -> EventBatch | None:
        batch = _current_batch.get()
        while batch is not None and batch._emitter is not self:
            batch = batch._parent
        return batch

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
                logger.exception(
                    "Notification handler %s failed for %s",
                    reg.handler,
                    event.event_type,
                )
                errors.append(e)
        return errors

    def batch(self) -> EventBatch:
        """Hold events until the context exits without an exception."""
        return EventBatch(self)


# Innermost open batch in the current execution context
_current_batch: ContextVar[EventBatch | None] = ContextVar("event_batch", default=None)


class EventBatch:
    """Context manager for one unit of work's notifications.

    Each batch owns the events emitted while it is the innermost open batch
    of its context. A clean exit dispatches them; an exception discards them.
    Nested batches are independent: an inner batch releases its events when
    it closes, whatever later happens to the outer one.
    """

    def __init__(self, emitter: EventEmitter) -> None:
        self._emitter = emitter
        self._events: list[DomainEvent] = []
        self._errors: list[Exception] = []
        self._parent: EventBatch | None = None
        self._token: Token[EventBatch | None] | None = None

    def __enter__(self) -> EventBatch:
        self._parent = _current_batch.get()
        self._token = _current_batch.set(self)
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._token is not None:
            _current_batch.reset(self._token)
            self._token = None
        events, self._events = self._events, []
        if exc_type is not None:
            if events:
                logger.info("Discarded %d notification(s) from a failed unit of work", len(events))
            return
        for event in events:
            self._errors.extend(self._emitter._dispatch(event))

    @property
    def errors(self) -> list[Exception]:
        """Errors from handler execution (available after context exits)."""
        return self._errors
