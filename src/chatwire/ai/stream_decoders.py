"""Incremental decoders turning provider wire formats into text deltas.

Each decoder accepts decoded text chunks exactly as they arrive from the
network via :meth:`StreamDecoder.feed` and returns the text fragments that
became complete. :meth:`StreamDecoder.close` flushes whatever is left once the
response ends. Events split across chunk boundaries are buffered until they
are whole, so the fragments never depend on how the transport chunked bytes.
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, ClassVar, Sequence

from .errors import ErrorCode, TransportError

LOGGER = logging.getLogger(__name__)

_DONE_SENTINEL = "[DONE]"
_EXCERPT_LIMIT = 200
_PATH_TOKEN = re.compile(r"[^.\[\]]+|\[(\d+)\]")
_NDJSON_TYPES = ("application/x-ndjson", "application/ndjson", "application/jsonl", "application/json-seq")


class StreamDecoder(ABC):
    """Base class for incremental wire-format decoders."""

    name: ClassVar[str] = "base"

    def __init__(self, *, response_path: str | None = None) -> None:
        self._response_path = response_path
        self.finished = False

    @abstractmethod
    def feed(self, chunk: str) -> list[str]:
        """Consume ``chunk`` and return completed text fragments."""

    def close(self) -> list[str]:
        """Flush buffered data at end of stream."""

        return []

    def _texts_from_payload(self, payload: Any, raw: str) -> list[str]:
        _raise_for_error(payload, raw)
        text = extract_text(payload, self._response_path)
        return [text] if text else []

    def _parse(self, raw: str) -> Any:
        try:
            return json.loads(raw)
        except ValueError as exc:
            raise TransportError(
                error_code=ErrorCode.DECODE_ERROR,
                message=f"Unable to decode {self.name} payload from provider",
                body_excerpt=raw[:_EXCERPT_LIMIT],
            ) from exc


class SSEDecoder(StreamDecoder):
    """``text/event-stream`` decoder (OpenAI, Anthropic, most hosted APIs)."""

    name = "event-stream"

    def __init__(self, *, response_path: str | None = None) -> None:
        super().__init__(response_path=response_path)
        self._buffer = ""

    def feed(self, chunk: str) -> list[str]:
        if self.finished:
            return []
        self._buffer = (self._buffer + chunk).replace("\r\n", "\n")
        texts: list[str] = []
        while "\n\n" in self._buffer and not self.finished:
            block, self._buffer = self._buffer.split("\n\n", 1)
            texts.extend(self._decode_event(block))
        return texts

    def close(self) -> list[str]:
        remainder, self._buffer = self._buffer.strip(), ""
        if self.finished or not remainder:
            return []
        return self._decode_event(remainder)

    def _decode_event(self, block: str) -> list[str]:
        event_name = ""
        data_lines: list[str] = []
        for line in block.split("\n"):
            if not line or line.startswith(":"):
                continue
            field_name, _, value = line.partition(":")
            if value.startswith(" "):
                value = value[1:]
            if field_name == "data":
                data_lines.append(value)
            elif field_name == "event":
                event_name = value.strip()
        if not data_lines:
            return []
        data = "\n".join(data_lines)
        if data.strip() == _DONE_SENTINEL:
            self.finished = True
            return []
        if event_name == "error":
            payload = self._parse(data) if data.lstrip().startswith("{") else {"error": data}
            _raise_for_error(payload, data)
        payload = self._parse(data)
        if isinstance(payload, dict) and payload.get("type") == "message_stop":
            self.finished = True
        return self._texts_from_payload(payload, data)


class NDJSONDecoder(StreamDecoder):
    """Newline-delimited JSON decoder (Ollama and similar local servers)."""

    name = "ndjson"

    def __init__(self, *, response_path: str | None = None) -> None:
        super().__init__(response_path=response_path)
        self._buffer = ""

    def feed(self, chunk: str) -> list[str]:
        if self.finished:
            return []
        self._buffer += chunk
        texts: list[str] = []
        while "\n" in self._buffer and not self.finished:
            line, self._buffer = self._buffer.split("\n", 1)
            texts.extend(self._decode_line(line))
        return texts

    def close(self) -> list[str]:
        remainder, self._buffer = self._buffer, ""
        if self.finished:
            return []
        return self._decode_line(remainder)

    def _decode_line(self, line: str) -> list[str]:
        stripped = line.strip().lstrip("\x1e")
        if not stripped:
            return []
        payload = self._parse(stripped)
        texts = self._texts_from_payload(payload, stripped)
        if isinstance(payload, dict) and payload.get("done") is True:
            self.finished = True
        return texts


class JSONBodyDecoder(StreamDecoder):
    """Single aggregated JSON document emitted as one terminal delta."""

    name = "json"

    def __init__(self, *, response_path: str | None = None) -> None:
        super().__init__(response_path=response_path)
        self._chunks: list[str] = []

    def feed(self, chunk: str) -> list[str]:
        self._chunks.append(chunk)
        return []

    def close(self) -> list[str]:
        raw = "".join(self._chunks).strip()
        self._chunks = []
        if not raw:
            return []
        try:
            payload = json.loads(raw)
        except ValueError:
            # Some servers label newline-delimited streams as plain JSON.
            fallback = NDJSONDecoder(response_path=self._response_path)
            texts = fallback.feed(raw + "\n")
            return ["".join(texts)] if texts else []
        if isinstance(payload, list):
            for item in payload:
                _raise_for_error(item, raw)
            text = "".join(extract_text(item, self._response_path) for item in payload)
        else:
            _raise_for_error(payload, raw)
            text = extract_text(payload, self._response_path)
        return [text] if text else []


class PlainTextDecoder(StreamDecoder):
    """Fallback for ``text/plain`` streams: every chunk is a delta."""

    name = "text"

    def feed(self, chunk: str) -> list[str]:
        return [chunk] if chunk else []


def select_decoder(
    content_type: str | None,
    first_chunk: str = "",
    *,
    response_path: str | None = None,
) -> StreamDecoder:
    """Pick a decoder from the response content type, sniffing when absent."""

    media_type = (content_type or "").split(";", 1)[0].strip().lower()
    if media_type == "text/event-stream":
        return SSEDecoder(response_path=response_path)
    if media_type in _NDJSON_TYPES:
        return NDJSONDecoder(response_path=response_path)
    if media_type == "application/json" or media_type.endswith("+json"):
        return JSONBodyDecoder(response_path=response_path)
    if not media_type:
        head = first_chunk.lstrip()
        if head.startswith(("data:", "event:", ":")):
            return SSEDecoder(response_path=response_path)
        if head.startswith(("{", "[")):
            return JSONBodyDecoder(response_path=response_path)
    return PlainTextDecoder(response_path=response_path)


def extract_text(payload: Any, response_path: str | None = None) -> str:
    """Return the assistant text carried by one decoded event.

    ``response_path`` (``choices[0].delta.content`` style) wins when given;
    otherwise the common provider shapes are tried in turn.
    """

    if response_path:
        return _as_text(resolve_path(payload, response_path))
    if isinstance(payload, list):
        return "".join(extract_text(item) for item in payload)
    if not isinstance(payload, dict):
        return payload if isinstance(payload, str) else ""

    choices = payload.get("choices")
    if isinstance(choices, list) and choices:
        choice = choices[0] if isinstance(choices[0], dict) else {}
        for key in ("delta", "message"):
            section = choice.get(key)
            if isinstance(section, dict) and section.get("content") is not None:
                return _as_text(section.get("content"))
        return _as_text(choice.get("text"))

    delta = payload.get("delta")
    if isinstance(delta, dict):
        return _as_text(delta.get("text"))

    message = payload.get("message")
    if isinstance(message, dict):
        return _as_text(message.get("content"))

    candidates = payload.get("candidates")
    if isinstance(candidates, list) and candidates and isinstance(candidates[0], dict):
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(_as_text(part.get("text")) for part in parts if isinstance(part, dict))

    for key in ("response", "output_text", "text", "content"):
        if key in payload:
            return _as_text(payload[key])
    return ""


def resolve_path(payload: Any, path: str) -> Any:
    """Walk ``payload`` along a dotted/bracketed path; missing segments give None."""

    current = payload
    for match in _PATH_TOKEN.finditer(path):
        index = match.group(1)
        if index is not None:
            if not isinstance(current, list) or int(index) >= len(current):
                return None
            current = current[int(index)]
        else:
            key = match.group(0)
            if isinstance(current, list) and key.isdigit():
                position = int(key)
                current = current[position] if position < len(current) else None
            elif isinstance(current, dict):
                current = current.get(key)
            else:
                return None
        if current is None:
            return None
    return current


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, Sequence):
        parts = []
        for item in value:
            if isinstance(item, dict):
                parts.append(_as_text(item.get("text")))
            else:
                parts.append(_as_text(item))
        return "".join(parts)
    return str(value)


def _raise_for_error(payload: Any, raw: str) -> None:
    if not isinstance(payload, dict):
        return
    error = payload.get("error")
    if not error and payload.get("type") != "error":
        return
    if isinstance(error, dict):
        message = str(error.get("message") or error.get("type") or "Provider reported an error")
    elif isinstance(error, str):
        message = error
    else:
        message = "Provider reported an error"
    raise TransportError(
        error_code=ErrorCode.PROVIDER_ERROR,
        message=message,
        body_excerpt=raw[:_EXCERPT_LIMIT],
    )


__all__ = [
    "JSONBodyDecoder",
    "NDJSONDecoder",
    "PlainTextDecoder",
    "SSEDecoder",
    "StreamDecoder",
    "extract_text",
    "resolve_path",
    "select_decoder",
]
