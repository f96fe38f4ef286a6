"""HTTP transport that streams normalized deltas from a bound request."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Dict, List, TypeVar

import httpx

from .cancellation import CancellationToken
from .errors import ErrorCode, TransportError
from .request_builder import BoundRequest
from .stream_decoders import StreamDecoder, select_decoder

LOGGER = logging.getLogger(__name__)
_EXCERPT_LIMIT = 500
_T = TypeVar("_T")


class _Cancelled:
    """Sentinel returned by :meth:`StreamTransport._race` once cancelled."""


_CANCELLED = _Cancelled()


@dataclass(frozen=True, slots=True)
class StreamDelta:
    """One incremental fragment of an assistant reply."""

    text: str
    session_id: int | None = None


class StreamTransport:
    """Async transport producing :class:`StreamDelta` sequences.

    Each call to :meth:`stream` issues one request and returns a finite,
    non-restartable async iterator. Reads race the cancellation token so an
    abort takes effect at the next suspension point instead of after the
    provider finishes.
    """

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
        debug_logging: bool = False,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(follow_redirects=True)
        self._timeout = timeout
        self._debug_logging = debug_logging

    async def stream(
        self,
        request: BoundRequest,
        cancellation: CancellationToken | None = None,
        *,
        session_id: int | None = None,
    ) -> AsyncIterator[StreamDelta]:
        """Execute ``request`` and yield deltas in arrival order."""

        token = cancellation or CancellationToken()
        if token.signalled:
            return

        try:
            http_request = self._build_http_request(request)
        except (httpx.InvalidURL, ValueError, TypeError) as exc:
            # Substituted values can still be unsendable, e.g. non-ASCII header text.
            raise TransportError(
                error_code=ErrorCode.INVALID_REQUEST,
                message=f"Unable to send the provider request: {exc}",
                details={"url": request.url},
            ) from exc
        LOGGER.debug(
            "Dispatching %s %s for provider %s (session=%s)",
            request.method,
            request.url,
            request.provider_id or "?",
            session_id,
        )
        if self._debug_logging and request.body:
            LOGGER.debug("Provider request body:\n%s", request.body)

        response: httpx.Response | None = None
        try:
            sent = await self._race(self._client.send(http_request, stream=True), token)
            if isinstance(sent, _Cancelled):
                LOGGER.debug("Request cancelled before the provider responded (session=%s)", session_id)
                return
            response = sent
            if token.signalled:
                return
            if not response.is_success:
                await self._raise_for_status(response, token)
                return

            content_type = response.headers.get("content-type")
            chunks = response.aiter_text()
            decoder: StreamDecoder | None = None
            while True:
                chunk = await self._race(_next_chunk(chunks), token)
                if isinstance(chunk, _Cancelled) or token.signalled:
                    LOGGER.debug("Stream cancelled mid-read (session=%s)", session_id)
                    return
                if chunk is None:
                    break
                if not chunk:
                    continue
                if decoder is None:
                    decoder = select_decoder(content_type, chunk, response_path=request.response_path)
                    LOGGER.debug("Selected %s decoder for content type %r", decoder.name, content_type)
                for text in decoder.feed(chunk):
                    yield StreamDelta(text=text, session_id=session_id)
                    if token.signalled:
                        return
            if decoder is not None:
                for text in decoder.close():
                    yield StreamDelta(text=text, session_id=session_id)
                    if token.signalled:
                        return
        except httpx.TimeoutException as exc:
            raise TransportError(
                error_code=ErrorCode.TIMEOUT,
                message="The provider did not respond in time",
                details={"url": request.url},
            ) from exc
        except httpx.HTTPError as exc:
            raise TransportError(
                error_code=ErrorCode.CONNECTION_ERROR,
                message=f"Unable to reach provider: {exc}",
                details={"url": request.url},
            ) from exc
        finally:
            if response is not None:
                await response.aclose()

    async def aclose(self) -> None:
        """Close the underlying HTTP client when this transport created it."""

        if self._owns_client:
            await self._client.aclose()

    def _build_http_request(self, request: BoundRequest) -> httpx.Request:
        timeout = request.timeout if request.timeout is not None else self._timeout
        kwargs: Dict[str, Any] = {
            "headers": list(request.headers),
            "timeout": httpx.Timeout(timeout),
        }
        if request.files:
            kwargs["data"] = _form_mapping(request.form)
            kwargs["files"] = [
                (upload.field_name, (upload.filename, upload.content, upload.content_type))
                for upload in request.files
            ]
            # Let httpx generate the multipart boundary.
            kwargs["headers"] = [
                (name, value) for name, value in request.headers if name.lower() != "content-type"
            ]
        elif request.form:
            kwargs["data"] = _form_mapping(request.form)
        elif request.body is not None:
            kwargs["content"] = request.body.encode("utf-8")
        return self._client.build_request(request.method, request.url, **kwargs)

    async def _raise_for_status(self, response: httpx.Response, token: CancellationToken) -> None:
        body = await self._race(response.aread(), token)
        if isinstance(body, _Cancelled):
            return
        excerpt = body.decode("utf-8", errors="replace").strip()[:_EXCERPT_LIMIT]
        LOGGER.warning(
            "Provider returned HTTP %s for %s: %s",
            response.status_code,
            response.request.url,
            excerpt,
        )
        raise TransportError(
            error_code=ErrorCode.HTTP_STATUS,
            message=f"Provider returned HTTP {response.status_code}",
            status_code=response.status_code,
            body_excerpt=excerpt,
        )

    @staticmethod
    async def _race(awaitable: Awaitable[_T], token: CancellationToken) -> _T | _Cancelled:
        """Await ``awaitable`` unless ``token`` fires first, aborting the read."""

        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()
        if work.done():
            return work.result()
        work.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await work
        return _CANCELLED


async def _next_chunk(chunks: AsyncIterator[str]) -> str | None:
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return None


def _form_mapping(form: tuple[tuple[str, str], ...]) -> Dict[str, Any]:
    mapping: Dict[str, Any] = {}
    for name, value in form:
        existing = mapping.get(name)
        if existing is None:
            mapping[name] = value
        elif isinstance(existing, list):
            existing.append(value)
        else:
            mapping[name] = [existing, value]
    return mapping


async def collect_text(deltas: AsyncIterator[StreamDelta]) -> str:
    """Drain ``deltas`` and return the concatenated text."""

    parts: List[str] = []
    async for delta in deltas:
        parts.append(delta.text)
    return "".join(parts)


__all__ = ["StreamDelta", "StreamTransport", "collect_text"]
