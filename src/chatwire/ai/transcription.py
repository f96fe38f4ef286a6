"""Speech-to-text through the same descriptor and transport pipeline."""

from __future__ import annotations

import logging
from typing import Callable, Mapping

from ..chat.message_model import AttachedFile
from .cancellation import CancellationToken
from .errors import BuildError
from .providers import ProviderSelection
from .request_builder import Bindings, build_request
from .transport import StreamTransport, collect_text

LOGGER = logging.getLogger(__name__)


class TranscriptionClient:
    """Sends recorded audio to the selected transcription provider."""

    def __init__(
        self,
        transport: StreamTransport,
        provider_resolver: Callable[[], ProviderSelection | None],
    ) -> None:
        self._transport = transport
        self._provider_resolver = provider_resolver

    async def transcribe(
        self,
        audio: AttachedFile,
        *,
        variables: Mapping[str, str] | None = None,
        cancellation: CancellationToken | None = None,
    ) -> str:
        """Return the transcript of ``audio`` (empty when cancelled)."""

        selection = self._provider_resolver()
        if selection is None:
            raise BuildError(message="No speech-to-text provider selected")
        merged = dict(selection.variables)
        merged.update(variables or {})
        request = build_request(
            selection.descriptor,
            Bindings(user_text="", audio=audio, variables=merged),
        )
        LOGGER.debug("Transcribing %s (%d bytes) via %s", audio.name, audio.size, selection.provider_id)
        text = await collect_text(self._transport.stream(request, cancellation))
        return text.strip()


__all__ = ["TranscriptionClient"]
