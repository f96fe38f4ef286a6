"""Event bus used by controllers to notify observers of session progress.

Controllers publish immutable event objects; a terminal renderer, a GUI or a
test subscribes to the types it cares about without the controller knowing
who is listening.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import (
    Any,
    Callable,
    Generic,
    TypeVar,
    TYPE_CHECKING,
)
from weakref import WeakMethod, ref

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from typing import DefaultDict

    from ..chat.message_model import Conversation

logger = logging.getLogger(__name__)

E = TypeVar("E", bound="Event")

Handler = Callable[[E], None]


@dataclass(slots=True)
class Event:
    """Base class for all events published on an :class:`EventBus`."""

    pass


# High-frequency event types that should not log each publish
_QUIET_EVENT_TYPES: set[type] = set()


# =============================================================================
# Completion Session Events
# =============================================================================


@dataclass(slots=True)
class SessionStarted(Event):
    """Emitted when a submission becomes the active completion session.

    Attributes:
        conversation_id: Conversation the session belongs to.
        session_id: Monotonic identifier of the new session.
        prompt: The user text that started the session.
    """

    conversation_id: str
    session_id: int
    prompt: str


@dataclass(slots=True)
class TranscriptUpdated(Event):
    """Emitted whenever the working transcript changes.

    ``conversation`` is an immutable snapshot; holding on to it is safe.
    """

    conversation_id: str
    session_id: int | None
    conversation: "Conversation"


_QUIET_EVENT_TYPES.add(TranscriptUpdated)


@dataclass(slots=True)
class SessionCompleted(Event):
    """Emitted when the provider stream ended and the reply was finalized.

    Attributes:
        conversation_id: Conversation the session belongs to.
        session_id: Identifier of the completed session.
        response_text: Full assistant reply.
        saved: False when the reply was empty or the save failed.
    """

    conversation_id: str
    session_id: int
    response_text: str
    saved: bool


@dataclass(slots=True)
class SessionFailed(Event):
    """Emitted when the provider request failed for the active session."""

    conversation_id: str
    session_id: int
    error: str


@dataclass(slots=True)
class SessionCancelled(Event):
    """Emitted when the user aborted the active session."""

    conversation_id: str
    session_id: int


@dataclass(slots=True)
class PersistenceFailed(Event):
    """Emitted when a finished conversation could not be saved."""

    conversation_id: str
    error: str


@dataclass(slots=True)
class ProviderWarning(Event):
    """Non-fatal notice produced while preparing a request (e.g. dropped images)."""

    conversation_id: str
    session_id: int
    message: str


class EventBus(Generic[E]):
    """A typed publish-subscribe event bus for decoupled communication.

    Example::

        bus = EventBus()

        def on_completed(event: SessionCompleted) -> None:
            print(event.response_text)

        bus.subscribe(SessionCompleted, on_completed)

    Thread Safety:
        This implementation is NOT thread-safe. All operations should be
        performed from the event loop thread.
    """

    __slots__ = ("_handlers",)

    def __init__(self) -> None:
        self._handlers: DefaultDict[type[Event], list[_HandlerRef]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Register a handler to receive events of the specified type.

        Bound methods are held weakly so a subscriber that goes away is
        dropped automatically; plain functions and lambdas are held strongly.
        """
        handler_ref = _HandlerRef.create(handler)
        self._handlers[event_type].append(handler_ref)
        logger.debug(
            "Subscribed handler %s to event type %s",
            _handler_name(handler),
            event_type.__name__,
        )

    def unsubscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Remove the first registration of ``handler``; unknown handlers are ignored."""
        handlers = self._handlers.get(event_type)
        if handlers is None:
            return

        for i, handler_ref in enumerate(handlers):
            if handler_ref.matches(handler):
                handlers.pop(i)
                logger.debug(
                    "Unsubscribed handler %s from event type %s",
                    _handler_name(handler),
                    event_type.__name__,
                )
                return

    def publish(self, event: E) -> None:
        """Broadcast an event to all registered handlers.

        Handlers run synchronously in registration order. A handler that
        raises is logged and the remaining handlers still run.
        """
        event_type = type(event)
        handlers = self._handlers.get(event_type)
        is_quiet = event_type in _QUIET_EVENT_TYPES

        if handlers is None:
            if not is_quiet:
                logger.debug("No handlers for event type %s", event_type.__name__)
            return

        if not is_quiet:
            logger.debug(
                "Publishing %s to %d handler(s)",
                event_type.__name__,
                len(handlers),
            )

        dead_refs: list[_HandlerRef] = []

        for handler_ref in list(handlers):
            handler = handler_ref.resolve()
            if handler is None:
                dead_refs.append(handler_ref)
                continue

            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Handler %s raised exception for event %s",
                    _handler_name(handler),
                    event_type.__name__,
                )

        # Handlers may have (un)subscribed during the loop, so positions are stale.
        for handler_ref in dead_refs:
            if handler_ref in handlers:
                handlers.remove(handler_ref)

    def clear(self) -> None:
        """Remove all registered handlers."""
        self._handlers.clear()
        logger.debug("Cleared all event handlers")

    def handler_count(self, event_type: type[E] | None = None) -> int:
        """Return the handler count for ``event_type``, or across all types."""
        if event_type is not None:
            return len(self._handlers.get(event_type, []))
        return sum(len(handlers) for handlers in self._handlers.values())


class _HandlerRef:
    """Weak reference for bound methods, strong reference for other callables."""

    __slots__ = ("_ref", "_is_weak")

    def __init__(self, handler_ref: WeakMethod | ref | Handler, is_weak: bool) -> None:
        self._ref = handler_ref
        self._is_weak = is_weak

    @classmethod
    def create(cls, handler: Handler) -> _HandlerRef:
        if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
            try:
                return cls(WeakMethod(handler), is_weak=True)
            except TypeError:
                # Some callables can't be weakly referenced
                pass
        return cls(handler, is_weak=False)

    def resolve(self) -> Handler | None:
        if not self._is_weak:
            return self._ref  # type: ignore[return-value]
        return self._ref()  # type: ignore[operator]

    def matches(self, handler: Handler) -> bool:
        resolved = self.resolve()
        if resolved is None:
            return False
        return resolved == handler


def _handler_name(handler: Any) -> str:
    """Get a human-readable name for a handler for logging purposes."""
    if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
        cls_name = type(handler.__self__).__name__
        return f"{cls_name}.{handler.__func__.__name__}"
    if hasattr(handler, "__name__"):
        return handler.__name__
    return repr(handler)


__all__ = [
    "Event",
    "EventBus",
    "Handler",
    "PersistenceFailed",
    "ProviderWarning",
    "SessionCancelled",
    "SessionCompleted",
    "SessionFailed",
    "SessionStarted",
    "TranscriptUpdated",
]
