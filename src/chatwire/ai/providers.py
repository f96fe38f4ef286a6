"""Registry of user-authored providers compiled from persisted curl entries."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, Mapping

from .descriptor import ProviderDescriptor, ProviderKind, compile_descriptor, supports_images
from .errors import CompileError
from .templating import normalize_name

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ProviderEntry:
    """Raw provider definition as stored in settings."""

    id: str
    curl: str
    name: str = ""
    response_path: str | None = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ProviderEntry":
        return cls(
            id=str(payload["id"]),
            curl=str(payload["curl"]),
            name=str(payload.get("name") or payload["id"]),
            response_path=payload.get("response_path") or payload.get("responseContentPath"),
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"id": self.id, "name": self.name or self.id, "curl": self.curl}
        if self.response_path:
            payload["response_path"] = self.response_path
        return payload


@dataclass(frozen=True, slots=True)
class ProviderSelection:
    """Active descriptor plus the variable values the user configured for it."""

    descriptor: ProviderDescriptor
    variables: Mapping[str, str] = field(default_factory=dict)

    @property
    def provider_id(self) -> str:
        return self.descriptor.id

    def missing_variables(self) -> list[str]:
        bound = {normalize_name(key) for key, value in self.variables.items() if value}
        return sorted(name for name in self.descriptor.variables if name not in bound)


class ProviderRegistry:
    """Compiled providers of a single kind, keyed by id."""

    def __init__(
        self,
        kind: ProviderKind,
        descriptors: Iterable[ProviderDescriptor] = (),
        *,
        names: Mapping[str, str] | None = None,
    ) -> None:
        self.kind = kind
        self._descriptors: Dict[str, ProviderDescriptor] = {}
        self._names: Dict[str, str] = dict(names or {})
        for descriptor in descriptors:
            self._descriptors[descriptor.id] = descriptor

    @classmethod
    def from_entries(
        cls,
        entries: Iterable[Mapping[str, Any] | ProviderEntry],
        *,
        kind: ProviderKind = "completion",
    ) -> "ProviderRegistry":
        """Compile ``entries``, logging and skipping the ones that fail to parse."""

        descriptors: list[ProviderDescriptor] = []
        names: Dict[str, str] = {}
        for raw in entries:
            try:
                entry = raw if isinstance(raw, ProviderEntry) else ProviderEntry.from_dict(raw)
            except (KeyError, TypeError) as exc:
                LOGGER.warning("Ignoring %s provider entry without id/curl: %s", kind, exc)
                continue
            try:
                descriptor = compile_descriptor(
                    entry.curl,
                    kind=kind,
                    provider_id=entry.id,
                    response_path=entry.response_path,
                )
            except CompileError as exc:
                LOGGER.warning("Dropping %s provider %s: %s", kind, entry.id, exc)
                continue
            descriptors.append(descriptor)
            names[entry.id] = entry.name or entry.id
        return cls(kind, descriptors, names=names)

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._descriptors

    def __len__(self) -> int:
        return len(self._descriptors)

    def __iter__(self) -> Iterator[ProviderDescriptor]:
        return iter(self._descriptors.values())

    def ids(self) -> list[str]:
        return list(self._descriptors)

    def name(self, provider_id: str) -> str:
        return self._names.get(provider_id, provider_id)

    def get(self, provider_id: str) -> ProviderDescriptor | None:
        return self._descriptors.get(provider_id)

    def supports_images(self, provider_id: str | None) -> bool:
        descriptor = self._descriptors.get(provider_id or "")
        return descriptor is not None and supports_images(descriptor)

    def select(self, provider_id: str, variables: Mapping[str, str] | None = None) -> ProviderSelection:
        descriptor = self._descriptors.get(provider_id)
        if descriptor is None:
            raise KeyError(f"Unknown {self.kind} provider '{provider_id}'")
        return ProviderSelection(descriptor=descriptor, variables=dict(variables or {}))


__all__ = ["ProviderEntry", "ProviderRegistry", "ProviderSelection"]
