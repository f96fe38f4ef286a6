"""Command line entry point for chatwire."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, TextIO, get_args, get_origin, get_type_hints

from .ai.errors import ChatwireError
from .ai.providers import ProviderRegistry, ProviderSelection
from .ai.transcription import TranscriptionClient
from .ai.transport import StreamTransport
from .chat.conversation_store import JsonConversationStore
from .chat.message_model import AttachedFile, Conversation
from .chat.session_controller import CompletionController, SessionStatus
from .services.settings import ProviderKind, Settings, SettingsStore, redact_variables
from .ui.events import EventBus, PersistenceFailed, ProviderWarning, TranscriptUpdated
from .utils import logging as logging_utils
from .utils.file_io import load_attachment

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_LOGGER = logging.getLogger(__name__)
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    """Configure structured logging for the CLI."""

    level = logging.DEBUG if debug else logging.INFO
    log_path = logging_utils.setup_logging(level, force=force)
    _LOGGER.debug("Logging configured (level=%s, file=%s)", logging.getLevelName(level), log_path)


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        settings = active_store.load(overrides=overrides)
    except (OSError, ValueError) as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        settings = Settings()
    return settings


def build_registry(settings: Settings, kind: ProviderKind) -> ProviderRegistry:
    return ProviderRegistry.from_entries(settings.provider_entries(kind), kind=kind)


def provider_resolver(
    settings: Settings,
    registry: ProviderRegistry,
    provider_id: str | None = None,
):
    """Return a callable resolving the active provider at submit time."""

    def _resolve() -> ProviderSelection | None:
        selected = provider_id or settings.selected_provider(registry.kind)
        if not selected or selected not in registry:
            return None
        return registry.select(selected, settings.variables_for(selected))

    return _resolve


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point invoked by the `chatwire` console script."""

    parser = _build_parser()
    args = parser.parse_args(argv)

    debug = _env_flag("CHATWIRE_DEBUG", default=False)
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("CHATWIRE_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    settings_store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        return 2

    overrides_mapping: Dict[str, Any] | None = cli_overrides or None
    settings = load_settings(resolved_path, store=settings_store, overrides=overrides_mapping)

    if args.dump_settings:
        _dump_settings(settings, settings_store, overrides=cli_overrides)
        return 0

    if settings.debug_logging and not debug:
        configure_logging(True, force=True)
        debug = True

    if args.command == "providers":
        _list_providers(settings)
        return 0
    if args.command == "chats":
        return asyncio.run(_chats(args, settings))
    if args.command is None:
        parser.print_help()
        return 0

    try:
        return asyncio.run(_run_command(args, settings, debug_logging=debug))
    except KeyboardInterrupt:  # pragma: no cover - manual shutdown path
        _LOGGER.info("Interrupted by user.")
        return 130


async def _run_command(args: argparse.Namespace, settings: Settings, *, debug_logging: bool) -> int:
    transport = StreamTransport(timeout=settings.request_timeout, debug_logging=debug_logging)
    try:
        if args.command == "ask":
            return await _ask(args, settings, transport)
        return await _transcribe(args, settings, transport)
    finally:
        await transport.aclose()


async def _ask(args: argparse.Namespace, settings: Settings, transport: StreamTransport) -> int:
    try:
        attachments = [load_attachment(path) for path in args.images]
    except OSError as exc:
        print(f"Unable to read attachment: {exc}", file=sys.stderr)
        return 2
    if len(attachments) > settings.max_files:
        print(f"You can only upload {settings.max_files} files", file=sys.stderr)
        return 2

    registry = build_registry(settings, "completion")
    store = JsonConversationStore(settings.conversations_dir)
    bus = EventBus()
    printer = _StreamPrinter(sys.stdout)
    bus.subscribe(TranscriptUpdated, printer.on_transcript)
    bus.subscribe(ProviderWarning, printer.on_warning)
    bus.subscribe(PersistenceFailed, printer.on_warning)

    controller = CompletionController(
        args.conversation or _new_conversation_id(),
        store=store,
        transport=transport,
        provider_resolver=provider_resolver(settings, registry, args.provider),
        system_prompt=settings.system_prompt,
        event_bus=bus,
        request_timeout=settings.request_timeout,
    )
    try:
        if args.conversation:
            await controller.load()
        session = await controller.submit(" ".join(args.text), attachments)
    except ChatwireError as exc:
        print(exc.user_message(), file=sys.stderr)
        return 1
    finally:
        await controller.aclose()

    printer.finish()
    if session is None:
        print("Nothing to send.", file=sys.stderr)
        return 2
    if session.status is not SessionStatus.COMPLETED:
        print(controller.error or f"Request {session.status.value}", file=sys.stderr)
        return 1
    _LOGGER.info("Conversation %s saved=%s", controller.conversation_id, session.saved)
    return 0


async def _transcribe(args: argparse.Namespace, settings: Settings, transport: StreamTransport) -> int:
    try:
        audio: AttachedFile = load_attachment(args.file, mime_type=args.mime_type)
    except OSError as exc:
        print(f"Unable to read audio file: {exc}", file=sys.stderr)
        return 2
    registry = build_registry(settings, "transcription")
    client = TranscriptionClient(transport, provider_resolver(settings, registry, args.provider))
    try:
        text = await client.transcribe(audio)
    except ChatwireError as exc:
        print(exc.user_message(), file=sys.stderr)
        return 1
    print(text)
    return 0


async def _chats(args: argparse.Namespace, settings: Settings, stream: TextIO | None = None) -> int:
    destination = stream or sys.stdout
    store = JsonConversationStore(settings.conversations_dir)
    try:
        if args.conversation_id is None:
            for conversation in await store.list_conversations():
                destination.write(
                    f"{conversation.id}  {conversation.updated_at:%Y-%m-%d %H:%M}  "
                    f"{len(conversation.messages)} messages  {conversation.title or '(untitled)'}\n"
                )
            return 0
        conversation = await store.get_by_id(args.conversation_id)
    except ChatwireError as exc:
        print(exc.user_message(), file=sys.stderr)
        return 1
    if conversation is None:
        print(f"Conversation {args.conversation_id} not found", file=sys.stderr)
        return 1
    destination.write(f"{conversation.title or '(untitled)'}\n")
    for message in conversation.messages:
        destination.write(f"[{message.role}] {message.content}\n")
    return 0


def _list_providers(settings: Settings, stream: TextIO | None = None) -> None:
    destination = stream or sys.stdout
    for kind in ("completion", "transcription"):
        registry = build_registry(settings, kind)
        selected = settings.selected_provider(kind)
        destination.write(f"{kind} providers ({len(registry)}):\n")
        for descriptor in registry:
            marker = "*" if descriptor.id == selected else " "
            selection = registry.select(descriptor.id, settings.variables_for(descriptor.id))
            notes = []
            if registry.supports_images(descriptor.id):
                notes.append("images")
            missing = selection.missing_variables()
            if missing:
                notes.append("missing " + ", ".join(missing))
            suffix = f" [{'; '.join(notes)}]" if notes else ""
            destination.write(
                f" {marker} {descriptor.id}  {registry.name(descriptor.id)}  "
                f"{descriptor.method} {descriptor.url}{suffix}\n"
            )


class _StreamPrinter:
    """Writes each session's assistant text to ``stream`` as it grows."""

    def __init__(self, stream: TextIO) -> None:
        self._stream = stream
        self._printed: Dict[int, int] = {}
        self._wrote = False

    def on_transcript(self, event: TranscriptUpdated) -> None:
        if event.session_id is None or not event.conversation.messages:
            return
        last = event.conversation.messages[-1]
        if last.role != "assistant":
            return
        offset = self._printed.get(event.session_id, 0)
        if len(last.content) <= offset:
            return
        self._stream.write(last.content[offset:])
        self._stream.flush()
        self._printed[event.session_id] = len(last.content)
        self._wrote = True

    def on_warning(self, event: ProviderWarning | PersistenceFailed) -> None:
        message = getattr(event, "message", None) or getattr(event, "error", "")
        print(f"warning: {message}", file=sys.stderr)

    def finish(self) -> None:
        if self._wrote:
            self._stream.write("\n")
            self._stream.flush()


def _new_conversation_id() -> str:
    return Conversation.new().id


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chatwire",
        description="Chat with curl-described AI providers or inspect the configuration.",
    )
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.chatwire/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings for this run (repeatable).",
    )
    commands = parser.add_subparsers(dest="command")

    ask = commands.add_parser("ask", help="Send a message and stream the reply to stdout.")
    ask.add_argument("text", nargs="+", help="Message text.")
    ask.add_argument("--conversation", metavar="ID", help="Continue a stored conversation.")
    ask.add_argument(
        "--image",
        dest="images",
        metavar="PATH",
        action="append",
        default=[],
        help="Attach an image (repeatable).",
    )
    ask.add_argument("--provider", metavar="ID", help="Use this completion provider.")

    transcribe = commands.add_parser("transcribe", help="Transcribe an audio file.")
    transcribe.add_argument("file", help="Audio file to send.")
    transcribe.add_argument("--provider", metavar="ID", help="Use this transcription provider.")
    transcribe.add_argument("--mime-type", metavar="TYPE", help="Override the guessed media type.")

    commands.add_parser("providers", help="List configured providers.")

    chats = commands.add_parser("chats", help="List stored conversations or print one.")
    chats.add_argument("conversation_id", nargs="?", metavar="ID", help="Conversation to print.")
    return parser


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if not items:
        return overrides

    fields = Settings.__dataclass_fields__  # type: ignore[attr-defined]
    type_hints = get_type_hints(Settings)
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in fields:
            raise ValueError(f"Unknown setting '{key}'.")
        annotation = type_hints.get(key, fields[key].type)
        overrides[key] = _coerce_value(annotation, raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    target = _resolve_annotation(annotation)
    normalized = raw_value.strip()
    nullable = type(None) in get_args(annotation)

    if nullable and normalized.lower() in {"none", "null"}:
        return None
    if target is str or target is Any:
        return normalized
    if target is bool:
        return _parse_bool(normalized)
    if target is int:
        return int(normalized, 10)
    if target is float:
        return float(normalized)
    if target is list:
        try:
            return json.loads(normalized or "[]")
        except json.JSONDecodeError as exc:
            raise ValueError("List overrides must be valid JSON arrays") from exc
    if target is dict:
        try:
            return json.loads(normalized or "{}")
        except json.JSONDecodeError as exc:
            raise ValueError("Dict overrides must be valid JSON objects") from exc
    return normalized


def _resolve_annotation(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is None:
        return annotation
    if origin in {list, dict}:
        return origin
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    if not args:
        return origin
    return _resolve_annotation(args[0])


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    payload["variables"] = redact_variables(settings.variables)
    payload["provider_variables"] = {
        provider_id: redact_variables(values)
        for provider_id, values in settings.provider_variables.items()
    }
    metadata = {
        "path": str(store.path),
        "secret_backend": store.vault.strategy,
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": _active_env_overrides(),
    }
    output = {"settings": payload, "meta": metadata}
    json.dump(output, destination, indent=2)
    destination.write("\n")


def _active_env_overrides() -> list[str]:
    return sorted(name for name in os.environ if name.startswith("CHATWIRE_"))


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
