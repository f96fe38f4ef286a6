"""Shared pytest fixtures."""

from __future__ import annotations

from typing import Any, Callable

import httpx
import pytest

from chatwire.ai.descriptor import ProviderDescriptor, compile_descriptor
from chatwire.ai.providers import ProviderSelection
from chatwire.ai.transport import StreamTransport
from helpers import OPENAI_CURL


@pytest.fixture
def openai_descriptor() -> ProviderDescriptor:
    return compile_descriptor(OPENAI_CURL, provider_id="openai")


@pytest.fixture
def openai_selection(openai_descriptor: ProviderDescriptor) -> ProviderSelection:
    return ProviderSelection(openai_descriptor, {"API_KEY": "sk-test", "MODEL": "gpt-test"})


@pytest.fixture
def make_transport() -> Callable[[Callable[[httpx.Request], Any]], StreamTransport]:
    """Build a transport whose HTTP traffic is served by ``handler``."""

    def _factory(handler: Callable[[httpx.Request], Any]) -> StreamTransport:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return StreamTransport(client=client)

    return _factory
