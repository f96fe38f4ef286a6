"""Pending user input: the text box and attachment tray in front of a controller."""

from __future__ import annotations

import logging
from typing import Protocol, Sequence

from .message_model import AttachedFile

LOGGER = logging.getLogger(__name__)

MAX_FILES = 6
AUTO_CAPTURE_PROMPT = "Describe what is shown in this screenshot."


class AttachmentLimitError(ValueError):
    """Raised when attaching would exceed the per-message file limit."""

    def __init__(self, limit: int = MAX_FILES) -> None:
        super().__init__(f"You can only upload {limit} files")
        self.limit = limit


class _Submitter(Protocol):
    async def submit(
        self,
        user_text: str,
        attachments: Sequence[AttachedFile] = (),
        *,
        system_prompt: str | None = None,
    ):  # pragma: no cover - Protocol placeholder
        ...


class ChatComposer:
    """Collects text and attachments, then forwards them to a controller.

    The pending input is cleared as soon as a submission is handed over. If
    the controller rejects it before anything was sent (no provider, bad
    configuration), the text and attachments are restored so nothing typed is
    lost.
    """

    def __init__(self, controller: _Submitter, *, max_files: int = MAX_FILES) -> None:
        self._controller = controller
        self._max_files = max_files
        self.input = ""
        self._attachments: list[AttachedFile] = []

    @property
    def attachments(self) -> tuple[AttachedFile, ...]:
        return tuple(self._attachments)

    @property
    def max_files(self) -> int:
        return self._max_files

    def attach(self, *files: AttachedFile) -> None:
        if len(self._attachments) + len(files) > self._max_files:
            raise AttachmentLimitError(self._max_files)
        self._attachments.extend(files)

    def remove(self, file_id: str) -> bool:
        for index, item in enumerate(self._attachments):
            if item.id == file_id:
                del self._attachments[index]
                return True
        return False

    def clear(self) -> None:
        self.input = ""
        self._attachments.clear()

    async def submit(self, *, system_prompt: str | None = None):
        """Send the pending input. Blank input is a no-op returning ``None``."""

        text = self.input
        if not text.strip():
            return None
        attachments = list(self._attachments)
        self.clear()
        return await self._send(text, attachments, system_prompt=system_prompt)

    async def submit_capture(self, capture: AttachedFile, prompt: str | None = None):
        """Handle a screenshot capture.

        With a ``prompt`` the capture is sent at once together with it and
        any pending attachments ("auto" mode); the typed text is left alone.
        Without one the capture is only attached for a later manual submit.
        """

        if prompt is None:
            self.attach(capture)
            return None
        pending = list(self._attachments)
        if len(pending) + 1 > self._max_files:
            raise AttachmentLimitError(self._max_files)
        self._attachments.clear()
        text = prompt.strip() or AUTO_CAPTURE_PROMPT
        session = await self._controller.submit(text, pending + [capture])
        if session is not None and not session.sent:
            self._attachments[:0] = pending
        return session

    async def _send(self, text: str, attachments: list[AttachedFile], *, system_prompt: str | None):
        session = await self._controller.submit(text, attachments, system_prompt=system_prompt)
        if session is not None and not session.sent:
            LOGGER.debug("Submission was not sent; restoring pending input")
            if not self.input:
                self.input = text
            self._attachments[:0] = attachments
        return session


__all__ = ["AUTO_CAPTURE_PROMPT", "AttachmentLimitError", "ChatComposer", "MAX_FILES"]
