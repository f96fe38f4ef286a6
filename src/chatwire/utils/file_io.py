"""File helpers shared by the conversation store, settings and CLI."""

from __future__ import annotations

import json
import mimetypes
import os
import re
import tempfile
from pathlib import Path
from typing import Any

from ..chat.message_model import AttachedFile

__all__ = [
    "read_json",
    "write_json",
    "write_text",
    "safe_filename",
    "load_attachment",
]

_FALLBACK_MIME = "application/octet-stream"


def read_json(path: Path | str) -> Any:
    """Read a UTF-8 JSON document, tolerating a byte-order mark."""

    text = Path(path).read_text(encoding="utf-8")
    return json.loads(_strip_bom(text))


def write_json(path: Path | str, payload: Any, *, indent: int | None = 2) -> Path:
    """Serialize ``payload`` and write it atomically."""

    body = json.dumps(payload, indent=indent, ensure_ascii=False, sort_keys=True)
    return write_text(path, body + "\n")


def write_text(path: Path | str, content: str, *, encoding: str = "utf-8") -> Path:
    """Write text through a temporary sibling file and an atomic rename."""

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    descriptor, tmp_name = tempfile.mkstemp(
        dir=str(target.parent), prefix=f".{target.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(descriptor, "w", encoding=encoding, newline="") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, target)
    finally:
        if os.path.exists(tmp_name):  # pragma: no cover - cleanup path
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
    return target


def safe_filename(identifier: str) -> str:
    """Map an arbitrary identifier onto a portable file stem."""

    slug = re.sub(r"[^A-Za-z0-9._-]", "_", identifier).strip("._")
    return slug or "untitled"


def load_attachment(path: Path | str, *, mime_type: str | None = None) -> AttachedFile:
    """Read ``path`` into an :class:`AttachedFile`, guessing its media type."""

    target = Path(path).expanduser()
    data = target.read_bytes()
    guessed, _ = mimetypes.guess_type(target.name)
    return AttachedFile.from_bytes(data, name=target.name, mime_type=mime_type or guessed or _FALLBACK_MIME)


def _strip_bom(text: str) -> str:
    return text[1:] if text.startswith("\ufeff") else text
