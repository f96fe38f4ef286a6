"""Tests for :mod:`chatwire.chat.composer`."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

import pytest

from chatwire.chat.composer import AUTO_CAPTURE_PROMPT, AttachmentLimitError, ChatComposer
from chatwire.chat.message_model import AttachedFile


@dataclass
class _Session:
    sent: bool


@dataclass
class _RecordingController:
    accept: bool = True
    calls: list[tuple[str, list[AttachedFile], str | None]] = field(default_factory=list)

    async def submit(
        self,
        user_text: str,
        attachments: Sequence[AttachedFile] = (),
        *,
        system_prompt: str | None = None,
    ) -> _Session:
        self.calls.append((user_text, list(attachments), system_prompt))
        return _Session(sent=self.accept)


def _file(name: str) -> AttachedFile:
    return AttachedFile.from_bytes(name.encode(), name=name, mime_type="image/png")


class TestAttachments:
    def test_attach_and_remove(self) -> None:
        composer = ChatComposer(_RecordingController())
        first, second = _file("a.png"), _file("b.png")

        composer.attach(first, second)

        assert composer.attachments == (first, second)
        assert composer.remove(first.id) is True
        assert composer.remove("unknown") is False
        assert composer.attachments == (second,)

    def test_limit_is_enforced(self) -> None:
        composer = ChatComposer(_RecordingController(), max_files=2)
        composer.attach(_file("a.png"), _file("b.png"))

        with pytest.raises(AttachmentLimitError) as excinfo:
            composer.attach(_file("c.png"))

        assert str(excinfo.value) == "You can only upload 2 files"
        assert len(composer.attachments) == 2


class TestSubmit:
    @pytest.mark.asyncio
    async def test_submit_clears_pending_input(self) -> None:
        controller = _RecordingController()
        composer = ChatComposer(controller)
        image = _file("a.png")
        composer.input = "Describe this"
        composer.attach(image)

        await composer.submit(system_prompt="Short answers")

        assert controller.calls == [("Describe this", [image], "Short answers")]
        assert composer.input == ""
        assert composer.attachments == ()

    @pytest.mark.asyncio
    async def test_blank_input_is_not_sent(self) -> None:
        controller = _RecordingController()
        composer = ChatComposer(controller)
        composer.input = "   "

        assert await composer.submit() is None
        assert controller.calls == []

    @pytest.mark.asyncio
    async def test_rejected_submission_restores_input(self) -> None:
        controller = _RecordingController(accept=False)
        composer = ChatComposer(controller)
        image = _file("a.png")
        composer.input = "Hello"
        composer.attach(image)

        session = await composer.submit()

        assert session is not None and not session.sent
        assert composer.input == "Hello"
        assert composer.attachments == (image,)


class TestCapture:
    @pytest.mark.asyncio
    async def test_manual_capture_is_only_attached(self) -> None:
        controller = _RecordingController()
        composer = ChatComposer(controller)
        capture = _file("screen.png")

        assert await composer.submit_capture(capture) is None

        assert composer.attachments == (capture,)
        assert controller.calls == []

    @pytest.mark.asyncio
    async def test_auto_capture_sends_pending_files_and_keeps_text(self) -> None:
        controller = _RecordingController()
        composer = ChatComposer(controller)
        pending = _file("earlier.png")
        capture = _file("screen.png")
        composer.input = "half-typed"
        composer.attach(pending)

        await composer.submit_capture(capture, prompt="What is on screen?")

        assert controller.calls == [("What is on screen?", [pending, capture], None)]
        assert composer.input == "half-typed"
        assert composer.attachments == ()

    @pytest.mark.asyncio
    async def test_auto_capture_with_blank_prompt_uses_default(self) -> None:
        controller = _RecordingController()
        composer = ChatComposer(controller)

        await composer.submit_capture(_file("screen.png"), prompt="  ")

        assert controller.calls[0][0] == AUTO_CAPTURE_PROMPT

    @pytest.mark.asyncio
    async def test_rejected_auto_capture_restores_pending_files(self) -> None:
        controller = _RecordingController(accept=False)
        composer = ChatComposer(controller)
        pending = _file("earlier.png")
        composer.attach(pending)

        await composer.submit_capture(_file("screen.png"), prompt="Look")

        assert composer.attachments == (pending,)

    @pytest.mark.asyncio
    async def test_auto_capture_respects_limit(self) -> None:
        composer = ChatComposer(_RecordingController(), max_files=1)
        composer.attach(_file("a.png"))

        with pytest.raises(AttachmentLimitError):
            await composer.submit_capture(_file("screen.png"), prompt="Look")

        assert len(composer.attachments) == 1
