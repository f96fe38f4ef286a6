"""Compile curl-style provider descriptions into reusable descriptors.

Providers are authored as plain ``curl`` command lines carrying ``{{NAME}}``
placeholders, for example::

    curl https://api.openai.com/v1/chat/completions \\
      -H "Authorization: Bearer {{API_KEY}}" \\
      -d '{"model": "{{MODEL}}", "stream": true, "messages": {{HISTORY}}}'

:func:`compile_descriptor` parses such a line once into an immutable
:class:`ProviderDescriptor`; :mod:`chatwire.ai.request_builder` binds it as
many times as needed.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import shlex
from dataclasses import dataclass, field
from typing import Iterable, Literal, Union
from urllib.parse import urlparse

from .errors import CompileError
from .templating import (
    PLACEHOLDER_PATTERN,
    iter_placeholders,
    normalize_name,
    render_json_template,
    token,
)

LOGGER = logging.getLogger(__name__)

ProviderKind = Literal["completion", "transcription"]

_NAME_PATTERN = re.compile(r"[A-Za-z][A-Za-z0-9_]*")
_METHOD_PATTERN = re.compile(r"[A-Za-z]+")
_HEADER_NAME_PATTERN = re.compile(r"[!#$%&'*+.^_`|~0-9A-Za-z-]+")
_CONTINUATION_PATTERN = re.compile(r"\\\r?\n")
_TRANSCRIPTION_ALIASES = re.compile(r"\{\{\s*(AUDIO_BASE64|IMAGE)\s*\}\}")


class Placeholder:
    """Reserved placeholder names understood by the request builder."""

    HISTORY = "HISTORY"
    TEXT = "TEXT"
    SYSTEM_PROMPT = "SYSTEM_PROMPT"
    IMAGE = "IMAGE"
    AUDIO = "AUDIO"

    RESERVED: frozenset[str] = frozenset({HISTORY, TEXT, SYSTEM_PROMPT, IMAGE, AUDIO})
    BINARY: frozenset[str] = frozenset({IMAGE, AUDIO})


# -----------------------------------------------------------------------------
# Body variants
# -----------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class NoBody:
    """Request without a payload."""

    def text(self) -> str:
        return ""


@dataclass(frozen=True, slots=True)
class JsonBody:
    """JSON payload template; placeholders may sit inside or outside strings."""

    template: str

    def text(self) -> str:
        return self.template


@dataclass(frozen=True, slots=True)
class RawBody:
    """Opaque payload template sent verbatim after substitution."""

    template: str
    content_type: str | None = None

    def text(self) -> str:
        return self.template


@dataclass(frozen=True, slots=True)
class FormField:
    """Single ``-F name=value`` entry of a multipart form."""

    name: str
    value: str
    is_file: bool = False


@dataclass(frozen=True, slots=True)
class FormBody:
    """Multipart form payload, used mostly by speech-to-text providers."""

    fields: tuple[FormField, ...]

    def text(self) -> str:
        return "\n".join(item.value for item in self.fields)


Body = Union[NoBody, JsonBody, RawBody, FormBody]


@dataclass(frozen=True, slots=True)
class ProviderDescriptor:
    """Compiled, immutable representation of a provider's HTTP request shape."""

    id: str
    kind: ProviderKind
    method: str
    url: str
    headers: tuple[tuple[str, str], ...] = ()
    body: Body = field(default_factory=NoBody)
    placeholders: frozenset[str] = frozenset()
    variables: frozenset[str] = frozenset()
    basic_auth: str | None = None
    response_path: str | None = None
    timeout: float | None = None

    def header(self, name: str) -> str | None:
        target = name.lower()
        for key, value in self.headers:
            if key.lower() == target:
                return value
        return None

    def image_slots(self) -> int:
        return sum(1 for name in iter_placeholders(self.body.text()) if normalize_name(name) == Placeholder.IMAGE)

    def uses(self, placeholder: str) -> bool:
        return placeholder in self.placeholders


def supports_images(descriptor: ProviderDescriptor) -> bool:
    """Return True when the descriptor body accepts image payloads."""

    return any(normalize_name(name) == Placeholder.IMAGE for name in iter_placeholders(descriptor.body.text()))


# -----------------------------------------------------------------------------
# Compiler
# -----------------------------------------------------------------------------

_VALUE_OPTIONS: dict[str, str] = {
    "-X": "method",
    "--request": "method",
    "-H": "header",
    "--header": "header",
    "-d": "data",
    "--data": "data",
    "--data-raw": "data",
    "--data-binary": "data",
    "--data-ascii": "data",
    "--data-urlencode": "data",
    "--json": "json",
    "-F": "form",
    "--form": "form",
    "--form-string": "form",
    "-u": "user",
    "--user": "user",
    "-A": "user_agent",
    "--user-agent": "user_agent",
    "-e": "referer",
    "--referer": "referer",
    "-b": "cookie",
    "--cookie": "cookie",
    "-m": "max_time",
    "--max-time": "max_time",
    "--url": "url",
}
_SKIPPED_VALUE_OPTIONS = frozenset(
    {
        "-o",
        "--output",
        "-w",
        "--write-out",
        "-x",
        "--proxy",
        "-c",
        "--cookie-jar",
        "-E",
        "--cert",
        "--key",
        "--cacert",
        "-K",
        "--config",
        "-r",
        "--range",
        "-T",
        "--upload-file",
        "--connect-timeout",
        "--retry",
        "--retry-delay",
        "--retry-max-time",
        "--max-redirs",
        "--limit-rate",
        "--resolve",
    }
)
_GET_FLAGS = frozenset({"-G", "--get"})


@dataclass(slots=True)
class _ParsedCurl:
    method: str | None = None
    urls: list[str] = field(default_factory=list)
    headers: list[tuple[str, str]] = field(default_factory=list)
    data: list[str] = field(default_factory=list)
    form: list[FormField] = field(default_factory=list)
    user: str | None = None
    max_time: float | None = None
    json_shorthand: bool = False
    force_get: bool = False


def compile_descriptor(
    raw: str,
    *,
    kind: ProviderKind = "completion",
    provider_id: str | None = None,
    response_path: str | None = None,
    allowed_variables: Iterable[str] | None = None,
) -> ProviderDescriptor:
    """Parse a curl command line into a :class:`ProviderDescriptor`.

    Raises:
        CompileError: the description is malformed or references a
            placeholder outside the recognized set.
    """

    if not isinstance(raw, str) or not raw.strip():
        raise CompileError.malformed("Provider description is empty")

    source = raw
    if kind == "transcription":
        source = _TRANSCRIPTION_ALIASES.sub(token(Placeholder.AUDIO), source)

    parsed = _parse_curl(_tokenize(source))
    url = _resolve_url(parsed)
    headers = list(parsed.headers)
    if parsed.force_get and parsed.data:
        separator = "&" if "?" in url else "?"
        url = f"{url}{separator}{'&'.join(parsed.data)}"
        body: Body = NoBody()
    else:
        body = _resolve_body(parsed, headers)

    method = parsed.method
    if method is None:
        method = "GET" if isinstance(body, NoBody) else "POST"

    placeholders, variables = _collect_placeholders(
        [url, parsed.user or "", *(value for _, value in headers), body.text()],
        allowed_variables=allowed_variables,
    )

    descriptor = ProviderDescriptor(
        id=provider_id or _derive_id(raw),
        kind=kind,
        method=method,
        url=url,
        headers=tuple(headers),
        body=body,
        placeholders=placeholders,
        variables=variables,
        basic_auth=parsed.user,
        response_path=(response_path or "").strip() or None,
        timeout=parsed.max_time,
    )
    LOGGER.debug(
        "Compiled %s provider %s: %s %s (placeholders=%s)",
        kind,
        descriptor.id,
        descriptor.method,
        descriptor.url,
        sorted(descriptor.placeholders | descriptor.variables),
    )
    return descriptor


def _tokenize(raw: str) -> list[str]:
    text = _CONTINUATION_PATTERN.sub(" ", raw.strip())
    if text.startswith("$ "):
        text = text[2:]
    try:
        tokens = shlex.split(text, posix=True)
    except ValueError as exc:
        raise CompileError.malformed(f"Unable to parse command line: {exc}") from exc
    if not tokens or tokens[0] != "curl":
        raise CompileError.malformed("Provider description must start with 'curl'")
    return tokens[1:]


def _parse_curl(tokens: list[str]) -> _ParsedCurl:
    parsed = _ParsedCurl()
    index = 0
    while index < len(tokens):
        item = tokens[index]
        index += 1
        if not item.startswith("-") or item == "-":
            parsed.urls.append(item)
            continue

        option, value = _split_option(item)
        if option in _GET_FLAGS:
            parsed.force_get = True
            continue
        if option in _SKIPPED_VALUE_OPTIONS:
            if value is None:
                index += 1
            continue
        role = _VALUE_OPTIONS.get(option)
        if role is None:
            # Boolean flags such as -s, -L, -N or --compressed.
            continue
        if value is None:
            if index >= len(tokens):
                raise CompileError.malformed(f"Option {option} expects a value", option=option)
            value = tokens[index]
            index += 1
        _apply_option(parsed, role, value)
    return parsed


def _split_option(item: str) -> tuple[str, str | None]:
    if item.startswith("--"):
        if "=" in item:
            option, value = item.split("=", 1)
            if option in _VALUE_OPTIONS or option in _SKIPPED_VALUE_OPTIONS:
                return option, value
        return item, None
    option = item[:2]
    if len(item) > 2 and (option in _VALUE_OPTIONS or option in _SKIPPED_VALUE_OPTIONS):
        return option, item[2:]
    return item, None


def _apply_option(parsed: _ParsedCurl, role: str, value: str) -> None:
    if role == "method":
        method = value.strip()
        if not _METHOD_PATTERN.fullmatch(method):
            raise CompileError.malformed(f"Invalid HTTP method '{value}'", method=value)
        parsed.method = method.upper()
    elif role == "header":
        parsed.headers.append(_parse_header(value))
    elif role == "data":
        parsed.data.append(value)
    elif role == "json":
        parsed.data.append(value)
        parsed.json_shorthand = True
    elif role == "form":
        parsed.form.append(_parse_form_field(value))
    elif role == "user":
        parsed.user = value
    elif role == "user_agent":
        parsed.headers.append(("User-Agent", value))
    elif role == "referer":
        parsed.headers.append(("Referer", value))
    elif role == "cookie":
        parsed.headers.append(("Cookie", value))
    elif role == "max_time":
        try:
            parsed.max_time = float(value)
        except ValueError as exc:
            raise CompileError.malformed(f"Invalid --max-time value '{value}'") from exc
    elif role == "url":
        parsed.urls.append(value)


def _parse_header(value: str) -> tuple[str, str]:
    if ":" not in value:
        raise CompileError.malformed(f"Header '{value}' is missing ':'", header=value)
    name, header_value = value.split(":", 1)
    name = name.strip()
    if not _HEADER_NAME_PATTERN.fullmatch(name):
        raise CompileError.malformed(f"Invalid header name '{name}'", header=value)
    return name, header_value.strip()


def _parse_form_field(value: str) -> FormField:
    if "=" not in value:
        raise CompileError.malformed(f"Form field '{value}' is missing '='", field=value)
    name, field_value = value.split("=", 1)
    name = name.strip()
    if not name:
        raise CompileError.malformed(f"Form field '{value}' has no name", field=value)
    is_file = field_value.startswith("@")
    if is_file:
        field_value = field_value[1:].split(";type=", 1)[0]
    return FormField(name=name, value=field_value, is_file=is_file)


def _resolve_url(parsed: _ParsedCurl) -> str:
    if not parsed.urls:
        raise CompileError.malformed("Provider description has no URL")
    url = parsed.urls[0].strip()
    if url.startswith("{{"):
        return url
    if "://" not in url:
        url = f"http://{url}"
    parts = urlparse(url)
    if parts.scheme not in {"http", "https"} or not parts.netloc:
        raise CompileError.malformed(f"Invalid URL '{parsed.urls[0]}'", url=parsed.urls[0])
    return url


def _resolve_body(parsed: _ParsedCurl, headers: list[tuple[str, str]]) -> Body:
    if parsed.json_shorthand:
        _set_default_header(headers, "Content-Type", "application/json")
        _set_default_header(headers, "Accept", "application/json")
    if parsed.form:
        return FormBody(fields=tuple(parsed.form))
    if not parsed.data:
        return NoBody()
    text = "&".join(parsed.data)
    content_type = _header_value(headers, "Content-Type")
    looks_like_json = text.lstrip().startswith(("{", "["))
    if (looks_like_json or "json" in (content_type or "").lower()) and _parses_as_json(text):
        return JsonBody(template=text)
    if content_type is None:
        _set_default_header(headers, "Content-Type", "application/x-www-form-urlencoded")
    return RawBody(template=text, content_type=content_type)


def _parses_as_json(template: str) -> bool:
    """Return True when the template is valid JSON once placeholders are bound."""

    try:
        rendered = render_json_template(template, lambda _name: "")
        json.loads(rendered)
    except ValueError:
        return False
    return True


def _header_value(headers: list[tuple[str, str]], name: str) -> str | None:
    target = name.lower()
    for key, value in headers:
        if key.lower() == target:
            return value
    return None


def _set_default_header(headers: list[tuple[str, str]], name: str, value: str) -> None:
    if _header_value(headers, name) is None:
        headers.append((name, value))


def _collect_placeholders(
    texts: Iterable[str],
    *,
    allowed_variables: Iterable[str] | None,
) -> tuple[frozenset[str], frozenset[str]]:
    allowed = None if allowed_variables is None else {normalize_name(name) for name in allowed_variables}
    reserved: set[str] = set()
    variables: set[str] = set()
    for text in texts:
        for raw_name in iter_placeholders(text):
            if not _NAME_PATTERN.fullmatch(raw_name):
                raise CompileError.unknown_placeholder(raw_name)
            name = normalize_name(raw_name)
            if name in Placeholder.RESERVED:
                reserved.add(name)
                continue
            if allowed is not None and name not in allowed:
                raise CompileError.unknown_placeholder(name)
            variables.add(name)
    return frozenset(reserved), frozenset(variables)


def _derive_id(raw: str) -> str:
    digest = hashlib.sha1(raw.encode("utf-8")).hexdigest()
    return f"provider-{digest[:12]}"


__all__ = [
    "Body",
    "FormBody",
    "FormField",
    "JsonBody",
    "NoBody",
    "PLACEHOLDER_PATTERN",
    "Placeholder",
    "ProviderDescriptor",
    "ProviderKind",
    "RawBody",
    "compile_descriptor",
    "iter_placeholders",
    "normalize_name",
    "supports_images",
    "token",
]
