"""Observer-facing event types for chat sessions."""

from .events import EventBus

__all__ = ["EventBus"]
