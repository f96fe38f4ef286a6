"""Shared test helpers for building provider responses.

Import from here instead of duplicating these builders in individual test files.
"""

from __future__ import annotations

import json
from typing import Any, AsyncIterator, Iterable

import httpx

OPENAI_CURL = (
    "curl https://api.example.test/v1/chat/completions "
    "-H 'Authorization: Bearer {{API_KEY}}' "
    "-H 'Content-Type: application/json' "
    """-d '{"model": "{{MODEL}}", "stream": true, "input": "{{TEXT}}", "messages": {{HISTORY}}}'"""
)

VISION_CURL = """curl https://api.example.test/v1/chat \\
  -H "Authorization: Bearer {{API_KEY}}" \\
  -d '{"messages": [{"role": "user", "content": [
        {"type": "text", "text": "{{TEXT}}"},
        {"type": "image_url", "image_url": {"url": "data:image/png;base64,{{IMAGE}}"}},
        {"type": "image_url", "image_url": {"url": "data:image/png;base64,{{IMAGE}}"}}
      ]}]}'"""


def sse_event(payload: Any) -> str:
    return f"data: {json.dumps(payload)}\n\n"


def openai_chunk(text: str) -> dict[str, Any]:
    return {"choices": [{"index": 0, "delta": {"content": text}}]}


async def _iterate(chunks: Iterable[str]) -> AsyncIterator[bytes]:
    for chunk in chunks:
        yield chunk.encode("utf-8")


def streaming_response(
    chunks: Iterable[str],
    *,
    content_type: str | None = "text/event-stream",
    status_code: int = 200,
) -> httpx.Response:
    """Response whose body arrives as one network chunk per item of ``chunks``."""

    headers = {"content-type": content_type} if content_type else {}
    return httpx.Response(status_code, headers=headers, content=_iterate(list(chunks)))


def sse_response(texts: Iterable[str], *, done: bool = True) -> httpx.Response:
    chunks = [sse_event(openai_chunk(text)) for text in texts]
    if done:
        chunks.append("data: [DONE]\n\n")
    return streaming_response(chunks)
