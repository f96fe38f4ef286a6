"""Tests for the file and logging helpers."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from chatwire.utils import logging as logging_utils
from chatwire.utils.file_io import load_attachment, read_json, safe_filename, write_json, write_text


def test_write_json_is_sorted_and_atomic(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "doc.json"

    write_json(target, {"b": 1, "a": "é"})

    text = target.read_text(encoding="utf-8")
    assert text == '{\n  "a": "é",\n  "b": 1\n}\n'
    assert [path.name for path in target.parent.iterdir()] == ["doc.json"]


def test_write_text_replaces_existing(tmp_path: Path) -> None:
    target = tmp_path / "note.txt"
    target.write_text("old", encoding="utf-8")

    write_text(target, "new")

    assert target.read_text(encoding="utf-8") == "new"


def test_read_json_tolerates_bom(tmp_path: Path) -> None:
    target = tmp_path / "bom.json"
    target.write_bytes(b"\xef\xbb\xbf" + json.dumps({"ok": True}).encode("utf-8"))

    assert read_json(target) == {"ok": True}


@pytest.mark.parametrize(
    ("identifier", "expected"),
    [("conv_123", "conv_123"), ("a/b\\c d", "a_b_c_d"), ("...", "untitled"), ("../x", "x")],
)
def test_safe_filename(identifier: str, expected: str) -> None:
    assert safe_filename(identifier) == expected


def test_load_attachment_guesses_type(tmp_path: Path) -> None:
    image = tmp_path / "shot.png"
    image.write_bytes(b"png-bytes")
    blob = tmp_path / "blob.unknownext"
    blob.write_bytes(b"?")

    attachment = load_attachment(image)

    assert attachment.name == "shot.png"
    assert attachment.mime_type == "image/png"
    assert attachment.data == b"png-bytes"
    assert load_attachment(blob).mime_type == "application/octet-stream"
    assert load_attachment(blob, mime_type="audio/wav").mime_type == "audio/wav"


def test_setup_logging_writes_to_log_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    root = logging.getLogger()
    previous_handlers, previous_level = root.handlers[:], root.level
    monkeypatch.setenv("CHATWIRE_LOG_DIR", str(tmp_path))
    try:
        path = logging_utils.setup_logging(logging.DEBUG, console_level=None, force=True)
        logging.getLogger("chatwire.test").debug("hello log")
        logging.getLogger("chatwire.test").debug("Authorization: %s", "Bearer sk-live-abcdef123456")
        for handler in root.handlers:
            handler.flush()

        assert path == tmp_path / "chatwire.log"
        assert logging_utils.setup_logging(logging.INFO) == path
        written = path.read_text(encoding="utf-8")
        assert "hello log" in written
        assert "Authorization: Bearer ***" in written
        assert "abcdef123456" not in written
        assert logging.getLogger("httpx").level == logging.WARNING
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers[:] = previous_handlers
        root.setLevel(previous_level)


@pytest.mark.parametrize(
    ("message", "expected"),
    [
        ("Authorization: Bearer sk-abc123def456", "Authorization: Bearer ***"),
        ('{"api_key": "k-12345", "model": "m"}', '{"api_key": "***", "model": "m"}'),
        ("x-api-key: secret-value", "x-api-key: ***"),
        ("retrying with sk-proj_ABCDEFGH", "retrying with sk-***"),
        ("Provider returned HTTP 500", "Provider returned HTTP 500"),
    ],
)
def test_redact_secrets(message: str, expected: str) -> None:
    assert logging_utils.redact_secrets(message) == expected


def test_redacting_filter_rewrites_formatted_message() -> None:
    record = logging.LogRecord("chatwire", logging.DEBUG, __file__, 1, "body: %s", ('{"api_key": "k1"}',), None)

    assert logging_utils.SecretRedactingFilter().filter(record)
    assert record.getMessage() == 'body: {"api_key": "***"}'
