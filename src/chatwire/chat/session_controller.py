"""Per-conversation completion controller.

The controller owns the working transcript of one conversation and runs at
most one live completion session at a time. A new submission supersedes the
live one: its token is signalled, its partial reply is removed, and anything
it still produces is discarded by comparing session ids. Saves run one at a
time in session order, so a newer snapshot is never overwritten by an older one.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Sequence

from ..ai.cancellation import CancellationToken
from ..ai.errors import BuildError, ChatwireError, PersistenceError
from ..ai.providers import ProviderSelection
from ..ai.request_builder import BoundRequest, Bindings, build_request
from ..ai.transport import StreamDelta, StreamTransport
from ..ui.events import (
    Event,
    EventBus,
    PersistenceFailed,
    ProviderWarning,
    SessionCancelled,
    SessionCompleted,
    SessionFailed,
    SessionStarted,
    TranscriptUpdated,
)
from .conversation_store import ConversationStore
from .message_model import AttachedFile, Conversation, Message, derive_title

LOGGER = logging.getLogger(__name__)

NO_PROVIDER_MESSAGE = "Please select an AI provider in settings"

ProviderResolver = Callable[[], ProviderSelection | None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(Enum):
    """Lifecycle of a completion session.

    Values:
        PENDING: Created, request not yet dispatched.
        STREAMING: Request sent, deltas may arrive.
        FINALIZING: Stream ended, reply being persisted.
        COMPLETED: Reply finalized (saved or not).
        CANCELLED: Aborted by the user or superseded.
        FAILED: Provider or configuration error.
    """

    PENDING = "pending"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(slots=True)
class CompletionSession:
    """State of a single submission.

    Attributes:
        session_id: Monotonic identifier, unique per controller.
        conversation_id: Conversation the session writes to.
        prompt: User text that started the session.
        status: Current lifecycle state.
        accumulated_text: Concatenation of every accepted delta.
        assistant_message: In-progress assistant reply, if any delta arrived.
        user_message_id: Set once the user message joined the transcript.
        error: Human readable failure message.
        warnings: Non-fatal notices produced while building the request.
        superseded: True when a newer submission replaced this one.
        saved: True once the finished conversation reached the store.
    """

    session_id: int
    conversation_id: str
    prompt: str
    status: SessionStatus = SessionStatus.PENDING
    accumulated_text: str = ""
    assistant_message: Message | None = None
    user_message_id: str | None = None
    error: str | None = None
    warnings: list[str] = field(default_factory=list)
    token: CancellationToken = field(default_factory=CancellationToken, repr=False)
    superseded: bool = False
    saved: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        """Pending or streaming sessions can still be cancelled or superseded."""
        return self.status in (SessionStatus.PENDING, SessionStatus.STREAMING)

    @property
    def sent(self) -> bool:
        """Whether the user message made it into the transcript."""
        return self.user_message_id is not None

    def mark_completed(self, *, saved: bool) -> None:
        self.status = SessionStatus.COMPLETED
        self.saved = saved
        self.completed_at = _utcnow()

    def mark_failed(self, error: str) -> None:
        self.status = SessionStatus.FAILED
        self.error = error
        self.completed_at = _utcnow()

    def mark_cancelled(self, reason: str = "cancelled") -> None:
        self.status = SessionStatus.CANCELLED
        self.token.signal(reason)
        self.completed_at = _utcnow()


class CompletionController:
    """Runs completion sessions for one conversation.

    Events Emitted:
        - SessionStarted: When a submission is dispatched
        - TranscriptUpdated: Whenever the working transcript changes
        - ProviderWarning: For each request-building warning
        - SessionCompleted: When a reply is finalized
        - SessionFailed: When the active session fails
        - SessionCancelled: When the user cancels the active session
        - PersistenceFailed: When saving the finished conversation fails
    """

    def __init__(
        self,
        conversation_id: str,
        *,
        store: ConversationStore,
        transport: StreamTransport,
        provider_resolver: ProviderResolver,
        system_prompt: str | None = None,
        event_bus: EventBus | None = None,
        conversation: Conversation | None = None,
        request_timeout: float | None = None,
    ) -> None:
        self._conversation_id = conversation_id
        self._store = store
        self._transport = transport
        self._provider_resolver = provider_resolver
        self._system_prompt = system_prompt
        self._bus = event_bus
        self._request_timeout = request_timeout
        self._transcript = conversation or Conversation.new(conversation_id)
        self._session: CompletionSession | None = None
        self._last_session_id = 0
        self._error: str | None = None
        self._pending_save: Conversation | None = None
        self._save_lock = asyncio.Lock()
        self._saved_session_id = 0

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def conversation_id(self) -> str:
        return self._conversation_id

    @property
    def transcript(self) -> Conversation:
        """Immutable snapshot of the working transcript."""
        return self._transcript

    @property
    def session(self) -> CompletionSession | None:
        """The most recent session, live or finished."""
        return self._session

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def is_loading(self) -> bool:
        return self._session is not None and self._session.is_active

    @property
    def has_pending_save(self) -> bool:
        return self._pending_save is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def load(self) -> Conversation:
        """Replace the working transcript with the stored conversation, if any."""

        try:
            stored = await self._store.get_by_id(self._conversation_id)
        except PersistenceError:
            raise
        except Exception as exc:
            raise PersistenceError(
                message="Failed to load conversation",
                details={"conversation_id": self._conversation_id, "reason": str(exc)},
            ) from exc
        if stored is not None:
            self._set_transcript(stored, None)
        return self._transcript

    async def submit(
        self,
        user_text: str,
        attachments: Sequence[AttachedFile] = (),
        *,
        system_prompt: str | None = None,
    ) -> CompletionSession | None:
        """Start a completion for ``user_text`` and wait until it settles.

        Returns ``None`` for blank input. Failures never raise: they are
        reported on the returned session and on :attr:`error`.
        """

        text = (user_text or "").strip()
        if not text:
            return None

        self._supersede_active()
        self._last_session_id += 1
        session = CompletionSession(
            session_id=self._last_session_id,
            conversation_id=self._conversation_id,
            prompt=text,
        )
        self._session = session
        self._error = None

        selection = self._provider_resolver()
        if selection is None:
            self._fail(session, NO_PROVIDER_MESSAGE)
            return session

        bindings = Bindings(
            user_text=text,
            history=self._transcript.history(),
            system_prompt=system_prompt if system_prompt is not None else self._system_prompt,
            images=[item for item in attachments if item.is_image],
            variables=selection.variables,
        )
        try:
            request = build_request(selection.descriptor, bindings)
        except BuildError as exc:
            LOGGER.warning("Unable to build request for provider %s: %s", selection.provider_id, exc)
            self._fail(session, exc.user_message())
            return session
        if request.timeout is None and self._request_timeout is not None:
            request = replace(request, timeout=self._request_timeout)

        user_message = Message.create("user", text)
        session.user_message_id = user_message.id
        self._set_transcript(self._transcript.append(user_message), session.session_id)
        LOGGER.debug(
            "Session %s started for conversation %s via %s",
            session.session_id,
            self._conversation_id,
            selection.provider_id,
        )
        self._publish(
            SessionStarted(
                conversation_id=self._conversation_id,
                session_id=session.session_id,
                prompt=text,
            )
        )
        for warning in request.warnings:
            session.warnings.append(warning)
            self._publish(
                ProviderWarning(
                    conversation_id=self._conversation_id,
                    session_id=session.session_id,
                    message=warning,
                )
            )

        await self._run(session, request)
        return session

    def cancel(self) -> bool:
        """Abort the live session. Returns False when there was nothing to cancel."""

        session = self._session
        if session is None or not session.is_active:
            LOGGER.debug("cancel: no live session for conversation %s", self._conversation_id)
            return False
        session.mark_cancelled()
        self._drop_partial_reply(session)
        LOGGER.debug("Session %s cancelled", session.session_id)
        self._publish(
            SessionCancelled(conversation_id=self._conversation_id, session_id=session.session_id)
        )
        return True

    async def retry_save(self) -> bool:
        """Retry the last failed save. Returns True once the store accepted it."""

        async with self._save_lock:
            pending = self._pending_save
            if pending is None:
                return False
            conversation = replace(pending, updated_at=_utcnow())
            try:
                await self._save(conversation)
            except PersistenceError as exc:
                self._report_persistence_failure(exc)
                return False
            self._pending_save = None
        self._error = None
        return True

    async def aclose(self) -> None:
        """Cancel any live session; the transport stays open for its owner."""

        self.cancel()

    # ------------------------------------------------------------------
    # Internal Helpers
    # ------------------------------------------------------------------

    async def _run(self, session: CompletionSession, request: BoundRequest) -> None:
        session.status = SessionStatus.STREAMING
        stream = self._transport.stream(request, session.token, session_id=session.session_id)
        try:
            async with contextlib.aclosing(stream):
                async for delta in stream:
                    self._apply_delta(delta)
        except asyncio.CancelledError:
            if session.is_active:
                session.mark_cancelled()
                self._drop_partial_reply(session)
            raise
        except Exception as exc:
            self._handle_stream_error(session, exc)
            return

        if session is not self._session or not session.is_active:
            LOGGER.debug("Session %s ended after it was %s", session.session_id, session.status.value)
            return
        await self._finalize(session)

    def _apply_delta(self, delta: StreamDelta) -> bool:
        session = self._session
        if session is None or delta.session_id != session.session_id or not session.is_active:
            LOGGER.debug("Discarding stale delta for session %s", delta.session_id)
            return False
        if not delta.text:
            return False
        session.accumulated_text += delta.text
        if session.assistant_message is None:
            session.assistant_message = Message.create("assistant", session.accumulated_text)
        else:
            session.assistant_message = replace(session.assistant_message, content=session.accumulated_text)
        self._set_transcript(self._transcript.upsert(session.assistant_message), session.session_id)
        return True

    def _handle_stream_error(self, session: CompletionSession, exc: Exception) -> None:
        if session is not self._session or not session.is_active:
            LOGGER.debug("Ignoring error from stale session %s: %s", session.session_id, exc)
            return
        message = exc.user_message() if isinstance(exc, ChatwireError) else str(exc) or type(exc).__name__
        LOGGER.warning(
            "Session %s failed: %s", session.session_id, exc, exc_info=not isinstance(exc, ChatwireError)
        )
        self._fail(session, message)

    async def _finalize(self, session: CompletionSession) -> None:
        session.status = SessionStatus.FINALIZING
        if not session.accumulated_text.strip():
            LOGGER.debug("Session %s produced an empty reply; nothing to save", session.session_id)
            self._drop_partial_reply(session)
            session.mark_completed(saved=False)
            self._publish_completed(session)
            return

        snapshot = self._transcript
        async with self._save_lock:
            if session.session_id < self._saved_session_id:
                LOGGER.debug(
                    "Session %s not saved: session %s already stored a newer snapshot",
                    session.session_id,
                    self._saved_session_id,
                )
                session.mark_completed(saved=False)
                self._publish_completed(session)
                return
            try:
                existing = await self._get_existing()
                conversation = self._prepare_for_save(snapshot, existing, session.prompt)
                await self._save(conversation)
            except PersistenceError as exc:
                self._pending_save = self._prepare_for_save(snapshot, None, session.prompt)
                self._report_persistence_failure(exc)
                session.mark_completed(saved=False)
                self._publish_completed(session)
                return
            self._saved_session_id = session.session_id
            self._pending_save = None

        self._set_transcript(
            replace(
                self._transcript,
                title=conversation.title,
                created_at=conversation.created_at,
                updated_at=conversation.updated_at,
            ),
            session.session_id,
        )
        session.mark_completed(saved=True)
        LOGGER.debug("Session %s completed (%d chars)", session.session_id, len(session.accumulated_text))
        self._publish_completed(session)

    async def _get_existing(self) -> Conversation | None:
        try:
            return await self._store.get_by_id(self._conversation_id)
        except PersistenceError:
            raise
        except Exception as exc:
            raise PersistenceError(
                message="Failed to load conversation",
                details={"conversation_id": self._conversation_id, "reason": str(exc)},
            ) from exc

    async def _save(self, conversation: Conversation) -> None:
        try:
            await self._store.save(conversation)
        except PersistenceError:
            raise
        except Exception as exc:
            raise PersistenceError(
                details={"conversation_id": conversation.id, "reason": str(exc)},
            ) from exc

    def _prepare_for_save(
        self,
        snapshot: Conversation,
        existing: Conversation | None,
        prompt: str,
    ) -> Conversation:
        if existing is not None and existing.title:
            title = existing.title
        elif snapshot.title:
            title = snapshot.title
        else:
            first_user = next((item for item in snapshot.messages if item.role == "user"), None)
            title = derive_title(first_user.content if first_user else prompt)
        created_at = existing.created_at if existing is not None else snapshot.created_at
        return replace(snapshot, title=title, created_at=created_at, updated_at=_utcnow())

    def _report_persistence_failure(self, exc: PersistenceError) -> None:
        LOGGER.warning("Failed to save conversation %s: %s", self._conversation_id, exc)
        self._error = exc.user_message()
        self._publish(PersistenceFailed(conversation_id=self._conversation_id, error=self._error))

    def _supersede_active(self) -> None:
        previous = self._session
        if previous is None:
            return
        if previous.status is SessionStatus.FINALIZING:
            # The reply is complete and stays; saves are serialized oldest first.
            previous.superseded = True
            LOGGER.debug("Session %s superseded while saving", previous.session_id)
            return
        if not previous.is_active:
            return
        previous.superseded = True
        previous.mark_cancelled("superseded")
        self._drop_partial_reply(previous)
        LOGGER.debug("Session %s superseded", previous.session_id)

    def _drop_partial_reply(self, session: CompletionSession) -> None:
        if session.assistant_message is None:
            return
        updated = self._transcript.without(session.assistant_message.id)
        if updated is not self._transcript:
            self._set_transcript(updated, session.session_id)

    def _fail(self, session: CompletionSession, message: str) -> None:
        session.mark_failed(message)
        self._error = message
        self._publish(
            SessionFailed(
                conversation_id=self._conversation_id,
                session_id=session.session_id,
                error=message,
            )
        )

    def _publish_completed(self, session: CompletionSession) -> None:
        self._publish(
            SessionCompleted(
                conversation_id=self._conversation_id,
                session_id=session.session_id,
                response_text=session.accumulated_text,
                saved=session.saved,
            )
        )

    def _set_transcript(self, conversation: Conversation, session_id: int | None) -> None:
        self._transcript = conversation
        self._publish(
            TranscriptUpdated(
                conversation_id=self._conversation_id,
                session_id=session_id,
                conversation=conversation,
            )
        )

    def _publish(self, event: Event) -> None:
        if self._bus is not None:
            self._bus.publish(event)


__all__ = [
    "CompletionController",
    "CompletionSession",
    "NO_PROVIDER_MESSAGE",
    "ProviderResolver",
    "SessionStatus",
]
