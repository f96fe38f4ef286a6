"""Unit tests for :mod:`chatwire.ui.events`."""

from __future__ import annotations

import gc
import logging

import pytest

from chatwire.chat.message_model import Conversation
from chatwire.ui.events import (
    EventBus,
    PersistenceFailed,
    SessionCancelled,
    SessionCompleted,
    SessionStarted,
    TranscriptUpdated,
)


def _started(session_id: int = 1) -> SessionStarted:
    return SessionStarted(conversation_id="c", session_id=session_id, prompt="hi")


class TestSubscription:
    """Registering and removing handlers."""

    def test_counts_per_type(self) -> None:
        bus = EventBus()

        bus.subscribe(SessionStarted, lambda event: None)
        bus.subscribe(SessionStarted, lambda event: None)
        bus.subscribe(SessionCancelled, lambda event: None)

        assert bus.handler_count(SessionStarted) == 2
        assert bus.handler_count(SessionCancelled) == 1
        assert bus.handler_count(SessionCompleted) == 0
        assert bus.handler_count() == 3

    def test_unsubscribe_removes_one_registration(self) -> None:
        bus = EventBus()
        received: list[int] = []

        def handler(event: SessionStarted) -> None:
            received.append(event.session_id)

        bus.subscribe(SessionStarted, handler)
        bus.subscribe(SessionStarted, handler)
        bus.unsubscribe(SessionStarted, handler)
        bus.publish(_started(4))

        assert received == [4]

    def test_unsubscribe_unknown_handler_is_ignored(self) -> None:
        bus = EventBus()
        bus.subscribe(SessionStarted, lambda event: None)

        bus.unsubscribe(SessionCancelled, print)
        bus.unsubscribe(SessionStarted, print)

        assert bus.handler_count(SessionStarted) == 1

    def test_clear(self) -> None:
        bus = EventBus()
        bus.subscribe(SessionStarted, lambda event: None)
        bus.subscribe(PersistenceFailed, lambda event: None)

        bus.clear()

        assert bus.handler_count() == 0


class TestPublish:
    """Delivery semantics."""

    def test_handlers_run_in_registration_order(self) -> None:
        bus = EventBus()
        order: list[str] = []
        bus.subscribe(SessionStarted, lambda event: order.append("first"))
        bus.subscribe(SessionStarted, lambda event: order.append("second"))

        bus.publish(_started())

        assert order == ["first", "second"]

    def test_only_matching_type_is_delivered(self) -> None:
        bus = EventBus()
        started: list[SessionStarted] = []
        cancelled: list[SessionCancelled] = []
        bus.subscribe(SessionStarted, started.append)
        bus.subscribe(SessionCancelled, cancelled.append)

        event = _started()
        bus.publish(event)

        assert started == [event]
        assert cancelled == []

    def test_failing_handler_does_not_stop_others(self, caplog: pytest.LogCaptureFixture) -> None:
        bus = EventBus()
        received: list[int] = []

        def broken(event: SessionStarted) -> None:
            raise RuntimeError("boom")

        bus.subscribe(SessionStarted, broken)
        bus.subscribe(SessionStarted, lambda event: received.append(event.session_id))

        with caplog.at_level(logging.ERROR, logger="chatwire.ui.events"):
            bus.publish(_started(9))

        assert received == [9]
        assert "broken raised exception" in caplog.text

    def test_publish_without_handlers(self) -> None:
        EventBus().publish(_started())

    def test_transcript_updates_are_not_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        bus = EventBus()
        bus.subscribe(TranscriptUpdated, lambda event: None)

        with caplog.at_level(logging.DEBUG, logger="chatwire.ui.events"):
            caplog.clear()
            bus.publish(TranscriptUpdated("c", 1, Conversation.new("c")))

        assert "TranscriptUpdated" not in caplog.text


class TestWeakReferences:
    """Bound methods do not keep their owners alive."""

    def test_dead_subscriber_is_dropped(self) -> None:
        bus = EventBus()
        received: list[str] = []

        class Renderer:
            def on_completed(self, event: SessionCompleted) -> None:
                received.append(event.response_text)

        renderer = Renderer()
        bus.subscribe(SessionCompleted, renderer.on_completed)
        bus.publish(SessionCompleted("c", 1, "one", True))

        del renderer
        gc.collect()
        bus.publish(SessionCompleted("c", 2, "two", True))

        assert received == ["one"]
        assert bus.handler_count(SessionCompleted) == 0

    def test_bound_method_can_unsubscribe(self) -> None:
        bus = EventBus()

        class Renderer:
            def on_started(self, event: SessionStarted) -> None:
                pass

        renderer = Renderer()
        bus.subscribe(SessionStarted, renderer.on_started)
        bus.unsubscribe(SessionStarted, renderer.on_started)

        assert bus.handler_count(SessionStarted) == 0

    def test_unsubscribe_during_publish_keeps_live_handlers(self) -> None:
        bus = EventBus()
        received: list[str] = []

        class Renderer:
            def on_started(self, event: SessionStarted) -> None:
                received.append("renderer")

        def status_line(event: SessionStarted) -> None:
            received.append("status")

        def closer(event: SessionStarted) -> None:
            bus.unsubscribe(SessionStarted, status_line)

        renderer = Renderer()
        bus.subscribe(SessionStarted, closer)
        bus.subscribe(SessionStarted, status_line)
        bus.subscribe(SessionStarted, renderer.on_started)
        bus.subscribe(SessionStarted, received.append)
        del renderer
        gc.collect()

        bus.publish(_started())
        received.clear()
        bus.publish(_started(2))

        assert received == [_started(2)]
        assert bus.handler_count(SessionStarted) == 2
