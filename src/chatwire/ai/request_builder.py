"""Bind runtime values into a compiled provider descriptor."""

from __future__ import annotations

import base64
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence
from urllib.parse import quote

from ..chat.message_model import AttachedFile
from .descriptor import FormBody, JsonBody, NoBody, Placeholder, ProviderDescriptor, RawBody
from .errors import BuildError, ErrorCode
from .templating import (
    PLACEHOLDER_PATTERN,
    KEEP,
    Resolver,
    Verbatim,
    normalize_name,
    only,
    render_json_template,
    render_text_template,
)

LOGGER = logging.getLogger(__name__)

# Marks an image slot that received no attachment; pruned after JSON parsing.
_UNFILLED_IMAGE = "\u0000chatwire:unfilled-image\u0000"


@dataclass(frozen=True, slots=True)
class FileUpload:
    """Multipart file part produced from a binary placeholder."""

    field_name: str
    filename: str
    content: bytes
    content_type: str


@dataclass(frozen=True, slots=True)
class BoundRequest:
    """Provider-ready request with every placeholder resolved."""

    method: str
    url: str
    headers: tuple[tuple[str, str], ...] = ()
    body: str | None = None
    form: tuple[tuple[str, str], ...] = ()
    files: tuple[FileUpload, ...] = ()
    timeout: float | None = None
    response_path: str | None = None
    provider_id: str = ""
    warnings: tuple[str, ...] = ()

    def header(self, name: str) -> str | None:
        target = name.lower()
        for key, value in self.headers:
            if key.lower() == target:
                return value
        return None

    def unresolved_placeholders(self) -> list[str]:
        """Return placeholder names still present anywhere in the request."""

        texts = [self.url, self.body or ""]
        texts.extend(value for _, value in self.headers)
        texts.extend(value for _, value in self.form)
        return [match.group(1) for text in texts for match in PLACEHOLDER_PATTERN.finditer(text)]


@dataclass(frozen=True, slots=True)
class Bindings:
    """Runtime values available to a single request."""

    user_text: str
    history: Sequence[Mapping[str, str]] = ()
    system_prompt: str | None = None
    images: Sequence[AttachedFile] = ()
    audio: AttachedFile | None = None
    variables: Mapping[str, str] = field(default_factory=dict)


class _ImageSlots:
    """Hands out attachments to ``{{IMAGE}}`` slots in order of appearance."""

    def __init__(self, images: Sequence[AttachedFile]) -> None:
        self._images = list(images)
        self.used = 0
        self.slots = 0

    def next(self) -> AttachedFile | None:
        self.slots += 1
        if self.used >= len(self._images):
            return None
        image = self._images[self.used]
        self.used += 1
        return image

    @property
    def dropped(self) -> int:
        return max(0, len(self._images) - self.used)


def build_request(descriptor: ProviderDescriptor, bindings: Bindings) -> BoundRequest:
    """Materialize ``descriptor`` with ``bindings``.

    Free-form variables are substituted first, then the reserved tokens. Raises
    :class:`BuildError` before anything is sent when a placeholder has no value.
    """

    variables = _normalize_variables(bindings.variables)
    missing = sorted(name for name in descriptor.variables if name not in variables)
    if missing:
        raise BuildError.missing_binding(missing[0])
    if descriptor.uses(Placeholder.AUDIO) and bindings.audio is None:
        raise BuildError.missing_binding(Placeholder.AUDIO)

    variable_pass = only(descriptor.variables, variables.__getitem__)
    json_variable_pass = only(descriptor.variables, lambda name: Verbatim(variables[name]))
    history = serialize_history(bindings.history)
    images = _ImageSlots(bindings.images)

    def reserved(name: str, *, raw_images: bool = False) -> Any:
        if name == Placeholder.HISTORY:
            return history
        if name == Placeholder.TEXT:
            return bindings.user_text
        if name == Placeholder.SYSTEM_PROMPT:
            return bindings.system_prompt or ""
        if name == Placeholder.IMAGE:
            image = images.next()
            if image is None:
                return "" if raw_images else _UNFILLED_IMAGE
            return image.payload
        if name == Placeholder.AUDIO:
            return bindings.audio.payload if bindings.audio is not None else ""
        return KEEP

    def text_resolver(name: str) -> Any:
        return reserved(name, raw_images=True)

    url = _render_url(descriptor.url, variable_pass, text_resolver)
    headers = tuple(
        (name, render_text_template(render_text_template(value, variable_pass), text_resolver))
        for name, value in descriptor.headers
    )
    if descriptor.basic_auth is not None:
        credentials = render_text_template(render_text_template(descriptor.basic_auth, variable_pass), text_resolver)
        if not any(name.lower() == "authorization" for name, _ in headers):
            encoded = base64.b64encode(credentials.encode("utf-8")).decode("ascii")
            headers = headers + (("Authorization", f"Basic {encoded}"),)

    body: str | None = None
    form: tuple[tuple[str, str], ...] = ()
    files: tuple[FileUpload, ...] = ()
    shape = descriptor.body
    if isinstance(shape, JsonBody):
        rendered = render_json_template(render_json_template(shape.template, json_variable_pass), reserved)
        body = _finalize_json(rendered, descriptor.id)
    elif isinstance(shape, RawBody):
        body = render_text_template(render_text_template(shape.template, variable_pass), text_resolver)
    elif isinstance(shape, FormBody):
        form, files = _render_form(shape, variable_pass, text_resolver, images, bindings.audio)
    elif not isinstance(shape, NoBody):  # pragma: no cover - exhaustive guard
        raise TypeError(f"Unsupported body variant: {type(shape).__name__}")

    warnings: list[str] = []
    if images.dropped:
        message = (
            f"{images.dropped} image attachment(s) dropped: provider accepts "
            f"{images.slots} image(s) per request"
        )
        LOGGER.warning("Provider %s: %s", descriptor.id, message)
        warnings.append(message)

    request = BoundRequest(
        method=descriptor.method,
        url=url,
        headers=headers,
        body=body,
        form=form,
        files=files,
        timeout=descriptor.timeout,
        response_path=descriptor.response_path,
        provider_id=descriptor.id,
        warnings=tuple(warnings),
    )
    LOGGER.debug(
        "Bound request for %s: %s %s (history=%d, images=%d/%d)",
        descriptor.id,
        request.method,
        request.url,
        len(history),
        images.used,
        len(bindings.images),
    )
    return request


def serialize_history(history: Sequence[Any]) -> list[dict[str, str]]:
    """Reduce history entries to ``{role, content}`` pairs, preserving order."""

    serialized: list[dict[str, str]] = []
    for entry in history:
        if isinstance(entry, Mapping):
            role = entry.get("role")
            content = entry.get("content")
        else:
            role = getattr(entry, "role", None)
            content = getattr(entry, "content", None)
        if not role:
            raise TypeError("History entries require a role")
        serialized.append({"role": str(role), "content": "" if content is None else str(content)})
    return serialized


def _normalize_variables(variables: Mapping[str, Any]) -> dict[str, str]:
    normalized: dict[str, str] = {}
    for key, value in (variables or {}).items():
        if value is None:
            continue
        normalized[normalize_name(str(key))] = str(value)
    return normalized


def _render_url(template: str, variable_pass: Resolver, reserved: Resolver) -> str:
    """Substitute URL tokens, percent-encoding every value not leading the URL."""

    def _quoted(resolve: Resolver) -> Resolver:
        def _resolver(name: str) -> Any:
            value = resolve(name)
            if value is KEEP:
                return value
            text = value if isinstance(value, str) else json.dumps(value, separators=(",", ":"))
            return quote(text, safe="")

        return _resolver

    match = PLACEHOLDER_PATTERN.match(template)
    if match is None:
        head, tail = "", template
    else:
        head = render_text_template(render_text_template(match.group(0), variable_pass), reserved)
        tail = template[match.end():]
    tail = render_text_template(render_text_template(tail, _quoted(variable_pass)), _quoted(reserved))
    return head + tail


def _render_form(
    shape: FormBody,
    variable_pass: Resolver,
    reserved: Resolver,
    images: _ImageSlots,
    audio: AttachedFile | None,
) -> tuple[tuple[tuple[str, str], ...], tuple[FileUpload, ...]]:
    fields: list[tuple[str, str]] = []
    uploads: list[FileUpload] = []
    for item in shape.fields:
        binary = _binary_placeholder(item.value)
        if binary == Placeholder.AUDIO and audio is not None:
            uploads.append(_upload(item.name, audio, "audio"))
            continue
        if binary == Placeholder.IMAGE:
            image = images.next()
            if image is not None:
                uploads.append(_upload(item.name, image, "image"))
            continue
        value = render_text_template(render_text_template(item.value, variable_pass), reserved)
        fields.append((item.name, value))
    return tuple(fields), tuple(uploads)


def _binary_placeholder(value: str) -> str | None:
    match = PLACEHOLDER_PATTERN.fullmatch(value.strip())
    if match is None:
        return None
    name = normalize_name(match.group(1))
    return name if name in Placeholder.BINARY else None


def _upload(field_name: str, attachment: AttachedFile, fallback: str) -> FileUpload:
    return FileUpload(
        field_name=field_name,
        filename=attachment.name or fallback,
        content=attachment.data,
        content_type=attachment.mime_type or "application/octet-stream",
    )


def _finalize_json(rendered: str, provider_id: str) -> str:
    try:
        payload = json.loads(rendered)
    except ValueError as exc:
        raise BuildError(
            error_code=ErrorCode.INVALID_BODY,
            message=f"Request body is not valid JSON after substitution: {exc}",
            details={"provider": provider_id},
        ) from exc
    if _contains_unfilled(payload):
        payload = _prune_unfilled(payload)
    return json.dumps(payload, ensure_ascii=False)


def _contains_unfilled(node: Any) -> bool:
    if isinstance(node, str):
        return _UNFILLED_IMAGE in node
    if isinstance(node, list):
        return any(_contains_unfilled(item) for item in node)
    if isinstance(node, dict):
        return any(_contains_unfilled(value) for value in node.values())
    return False


def _carries_unfilled(node: Any) -> bool:
    """True when ``node`` holds an unfilled slot outside any nested array."""

    if isinstance(node, str):
        return _UNFILLED_IMAGE in node
    if isinstance(node, dict):
        return any(_carries_unfilled(value) for value in node.values())
    return False


def _prune_unfilled(node: Any) -> Any:
    """Drop the innermost array elements that carry an unfilled image slot."""

    if isinstance(node, list):
        return [_prune_unfilled(item) for item in node if not _carries_unfilled(item)]
    if isinstance(node, dict):
        return {key: _prune_unfilled(value) for key, value in node.items()}
    if isinstance(node, str):
        return node.replace(_UNFILLED_IMAGE, "")
    return node


__all__ = [
    "Bindings",
    "BoundRequest",
    "FileUpload",
    "build_request",
    "serialize_history",
]
