"""Logging setup for the chatwire CLI.

Everything goes to a rotating file under ``~/.chatwire/logs``. Warnings are
mirrored to stderr in a short form, since stdout carries the streamed reply.
Credentials that leak into messages (debug request dumps, error excerpts)
are masked before any handler writes them.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import re
import sys
from pathlib import Path

__all__ = ["SecretRedactingFilter", "redact_secrets", "setup_logging"]

_DEFAULT_LOG_DIR = Path.home() / ".chatwire" / "logs"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore")
_MASK = "***"
_SECRET_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\b(Bearer|Basic)\s+[A-Za-z0-9._~+/=-]+", re.IGNORECASE), r"\1 " + _MASK),
    (re.compile(r"\bsk-[A-Za-z0-9_-]{6,}"), "sk-" + _MASK),
    (
        re.compile(
            r"""(["']?(?:api[_-]?key|access[_-]?token)["']?\s*[:=]\s*["']?)[^"'\s,&}]+""",
            re.IGNORECASE,
        ),
        r"\1" + _MASK,
    ),
)

_LOG_PATH: Path | None = None


def redact_secrets(text: str) -> str:
    """Mask bearer tokens, API keys and similar credentials in ``text``."""

    for pattern, replacement in _SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


class SecretRedactingFilter(logging.Filter):
    """Rewrites each record's message with credentials masked."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact_secrets(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console_level: int | None = logging.WARNING,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Install the file handler and, unless ``console_level`` is None, a stderr handler.

    Repeated calls are no-ops unless ``force`` is set. Returns the log file path.
    """

    global _LOG_PATH
    if _LOG_PATH is not None and not force:
        return _LOG_PATH

    target_dir = _resolve_log_dir(log_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / "chatwire.log"
    redactor = SecretRedactingFilter()

    file_handler = logging.handlers.RotatingFileHandler(
        log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    file_handler.addFilter(redactor)
    handlers: list[logging.Handler] = [file_handler]

    if console_level is not None:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(max(level, console_level))
        console_handler.setFormatter(logging.Formatter("chatwire: %(levelname)s: %(message)s"))
        console_handler.addFilter(redactor)
        handlers.append(console_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    _tune_external_loggers(level)

    _LOG_PATH = log_path
    return log_path


def _resolve_log_dir(log_dir: Path | str | None) -> Path:
    env_override = os.environ.get("CHATWIRE_LOG_DIR")
    return Path(log_dir or env_override or _DEFAULT_LOG_DIR).expanduser()


def _tune_external_loggers(root_level: int) -> None:
    # httpx logs every request line at INFO, which would drown the reply.
    quiet_level = logging.WARNING if root_level < logging.WARNING else root_level
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(quiet_level)
