"""Placeholder token scanning and context-aware substitution."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Container, Iterator

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([^{}]*?)\s*\}\}")

# Resolver contract: receives the normalized placeholder name, returns the value
# to insert. Returning KEEP leaves the token untouched for a later pass.
Resolver = Callable[[str], Any]
KEEP = object()


@dataclass(frozen=True, slots=True)
class Verbatim:
    """User-authored value that keeps its JSON meaning outside string literals.

    ``{"max_tokens": {{MAX_TOKENS}}}`` bound to ``"100"`` yields the number
    100, while a value that is not valid JSON is still inserted as a string.
    """

    text: str


def token(name: str) -> str:
    """Return the textual token for ``name`` (``{{NAME}}``)."""

    return "{{" + name + "}}"


def normalize_name(raw: str) -> str:
    return raw.strip().upper()


def iter_placeholders(text: str) -> Iterator[str]:
    """Yield raw placeholder names in ``text`` in order of appearance."""

    for match in PLACEHOLDER_PATTERN.finditer(text or ""):
        yield match.group(1)


def render_text_template(template: str, resolve: Resolver) -> str:
    """Substitute tokens in plain text; non-string values become compact JSON."""

    def _replace(match: re.Match[str]) -> str:
        value = resolve(normalize_name(match.group(1)))
        if value is KEEP:
            return match.group(0)
        return _as_text(value)

    return PLACEHOLDER_PATTERN.sub(_replace, template)


def render_json_template(template: str, resolve: Resolver) -> str:
    """Substitute tokens in a JSON template.

    A token inside a string literal receives the JSON-escaped text of its
    value; a token outside any literal receives the JSON encoding of the value,
    or the value itself when it is a :class:`Verbatim` holding valid JSON.
    """

    output: list[str] = []
    in_string = False
    escaped = False
    index = 0
    length = len(template)
    while index < length:
        if not escaped:
            match = PLACEHOLDER_PATTERN.match(template, index)
            if match is not None:
                value = resolve(normalize_name(match.group(1)))
                if value is KEEP:
                    output.append(match.group(0))
                elif in_string:
                    output.append(json.dumps(_as_text(value), ensure_ascii=False)[1:-1])
                else:
                    output.append(_json_fragment(value))
                index = match.end()
                continue
        char = template[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
        elif char == '"':
            in_string = True
        output.append(char)
        index += 1
    return "".join(output)


def only(names: Container[str], resolve: Resolver) -> Resolver:
    """Restrict ``resolve`` to ``names``; everything else is kept for later."""

    def _resolver(name: str) -> Any:
        if name not in names:
            return KEEP
        return resolve(name)

    return _resolver


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, Verbatim):
        return value.text
    if value is None:
        return ""
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def _json_fragment(value: Any) -> str:
    if isinstance(value, Verbatim):
        try:
            json.loads(value.text)
        except ValueError:
            return json.dumps(value.text, ensure_ascii=False)
        return value.text.strip()
    return json.dumps(value, ensure_ascii=False)


__all__ = [
    "KEEP",
    "PLACEHOLDER_PATTERN",
    "Resolver",
    "Verbatim",
    "iter_placeholders",
    "normalize_name",
    "only",
    "render_json_template",
    "render_text_template",
    "token",
]
