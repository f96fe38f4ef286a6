"""Provider compilation, request binding, and streaming transport."""

from .cancellation import CancellationToken
from .descriptor import ProviderDescriptor, compile_descriptor, supports_images
from .errors import BuildError, ChatwireError, CompileError, PersistenceError, TransportError
from .providers import ProviderEntry, ProviderRegistry, ProviderSelection
from .request_builder import Bindings, BoundRequest, build_request
from .transport import StreamDelta, StreamTransport

__all__ = [
    "Bindings",
    "BoundRequest",
    "BuildError",
    "CancellationToken",
    "ChatwireError",
    "CompileError",
    "PersistenceError",
    "ProviderDescriptor",
    "ProviderEntry",
    "ProviderRegistry",
    "ProviderSelection",
    "StreamDelta",
    "StreamTransport",
    "TransportError",
    "build_request",
    "compile_descriptor",
    "supports_images",
]
