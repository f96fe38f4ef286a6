"""Cooperative cancellation handle threaded from controllers to the transport."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

LOGGER = logging.getLogger(__name__)


class CancellationToken:
    """One-shot signal checked at every suspension point of a stream.

    ``signal()`` is idempotent; callbacks registered with :meth:`on_signal`
    run once, synchronously, the first time the token is signalled.
    """

    __slots__ = ("_event", "_reason", "_callbacks")

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._callbacks: list[Callable[[], None]] = []

    @property
    def signalled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def signal(self, reason: str = "cancelled") -> bool:
        """Signal the token. Returns False when it was already signalled."""

        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                LOGGER.exception("Cancellation callback %r failed", callback)
        return True

    def on_signal(self, callback: Callable[[], None]) -> None:
        if self._event.is_set():
            callback()
            return
        self._callbacks.append(callback)

    async def wait(self) -> None:
        await self._event.wait()

    def __repr__(self) -> str:
        state = f"signalled ({self._reason})" if self.signalled else "active"
        return f"<CancellationToken {state}>"


__all__ = ["CancellationToken"]
