"""One inference turn: send (or regenerate), stream, finalize.

    IDLE -> SENDING -> STREAMING -> FINALIZING -> IDLE
               \\            \\
                +------------+--> CANCELLED -> IDLE

Only one turn runs at a time across all sessions; ``SessionStore.is_streaming``
is the shared gate. Each streamed fragment is committed to the store before
the next one is requested, always by replacing the assistant slot with the
accumulated text.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator

from common.events import (
    AssistantDeltaEvent,
    AssistantMessageEvent,
    ErrorEvent,
    EventEmitter,
    MetadataEvent,
    TurnStateEvent,
)
from chatdeck.errors import CancellationError
from chatdeck.models import ChatSession, Message
from chatdeck.sessions.store import SessionStore
from chatdeck.transport import CancelSignal, ChatClient

logger = logging.getLogger(__name__)

SEND_ERROR_MARKER = "Error: Failed to get response"
REGENERATE_ERROR_MARKER = "Error: Failed to regenerate response"


class TurnState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class TurnOutcome:
    status: str
    content: str = ""
    error: str = ""

    @property
    def completed(self) -> bool:
        return self.status == "completed"


def api_messages(session: ChatSession, history: list[Message]) -> list[dict]:
    msgs: list[dict] = []
    if session.system_prompt:
        msgs.append({"role": "system", "content": session.system_prompt})
    msgs.extend(m.to_api() for m in history)
    return msgs


class StreamingOrchestrator:
    def __init__(
        self,
        store: SessionStore,
        client: ChatClient,
        emitter: EventEmitter | None = None,
    ):
        self.store = store
        self.client = client
        self.emitter = emitter or EventEmitter()
        self.state = TurnState.IDLE
        self._session_id: str | None = None
        self._cancel: CancelSignal | None = None
        self._metadata_tasks: set[asyncio.Task] = set()

    @property
    def is_streaming(self) -> bool:
        return self.store.is_streaming

    async def send(self, session_id: str, text: str) -> TurnOutcome:
        session = self.store.get_session(session_id)
        if session is None or not text.strip() or not session.model:
            return TurnOutcome(status="skipped")
        if self.store.is_streaming:
            logger.warning("A response is already streaming; ignoring send")
            return TurnOutcome(status="skipped")

        history = [*session.messages, Message(role="user", content=text)]
        placeholder = [*history, Message(role="assistant", content="")]
        return await self._run_turn(
            session_id,
            history=history,
            placeholder=placeholder,
            slot=len(history),
            error_marker=SEND_ERROR_MARKER,
        )

    async def regenerate(self, session_id: str) -> TurnOutcome:
        session = self.store.get_session(session_id)
        if session is None or not session.model:
            return TurnOutcome(status="skipped")
        if self.store.is_streaming:
            logger.warning("A response is already streaming; ignoring regenerate")
            return TurnOutcome(status="skipped")

        slot = session.last_assistant_index()
        if slot < 0:
            return TurnOutcome(status="skipped")

        placeholder = list(session.messages)
        placeholder[slot] = Message(role="assistant", content="")
        return await self._run_turn(
            session_id,
            history=list(session.messages[:slot]),
            placeholder=placeholder,
            slot=slot,
            error_marker=REGENERATE_ERROR_MARKER,
        )

    def stop(self) -> bool:
        if self._cancel is None:
            return False
        self._cancel.cancel()
        return True

    async def drain(self) -> None:
        """Wait for any metadata generation started by finished turns."""
        while self._metadata_tasks:
            await asyncio.gather(*list(self._metadata_tasks), return_exceptions=True)

    async def _run_turn(
        self,
        session_id: str,
        *,
        history: list[Message],
        placeholder: list[Message],
        slot: int,
        error_marker: str,
    ) -> TurnOutcome:
        cancel = CancelSignal()
        self._cancel = cancel
        self._session_id = session_id
        self.store.set_streaming(True)
        self._set_state(TurnState.SENDING)

        accumulated = ""
        fragments: AsyncIterator[str] | None = None
        try:
            self.store.update_messages(session_id, placeholder)
            session = self.store.get_session(session_id)
            if session is None:
                raise CancellationError("session was deleted")
            request = api_messages(session, history)
            options = session.options

            if options is None or options.stream_enabled:
                fragments = await self.client.stream(session.model, request, options, cancel)
                self._set_state(TurnState.STREAMING)
                async for text in fragments:
                    if cancel.cancelled:
                        raise CancellationError("stopped by user")
                    accumulated += text
                    self._commit_slot(session_id, slot, accumulated)
                    self.emitter.emit(
                        AssistantDeltaEvent(session_id=session_id, text=text, content=accumulated)
                    )
            else:
                accumulated = await self.client.complete(session.model, request, options, cancel)

            if cancel.cancelled:
                raise CancellationError("stopped by user")

            self._set_state(TurnState.FINALIZING)
            self._commit_slot(session_id, slot, accumulated)
            self.emitter.emit(AssistantMessageEvent(session_id=session_id, content=accumulated))

            current = self.store.get_session(session_id)
            if current is not None and current.has_default_name:
                self._schedule_metadata(session_id)
            return TurnOutcome(status="completed", content=accumulated)

        except CancellationError:
            self._set_state(TurnState.CANCELLED)
            logger.info(f"Turn for session {session_id} cancelled")
            return TurnOutcome(status="cancelled", content=accumulated)

        except Exception as e:
            logger.error(f"Chat error in session {session_id}: {e}")
            self._commit_slot(session_id, slot, error_marker)
            self.emitter.emit(ErrorEvent(message=str(e), source="chat"))
            return TurnOutcome(status="failed", content=error_marker, error=str(e))

        finally:
            if fragments is not None:
                aclose = getattr(fragments, "aclose", None)
                if aclose is not None:
                    await aclose()
            self._cancel = None
            self.store.set_streaming(False)
            self._set_state(TurnState.IDLE)
            self._session_id = None

    def _commit_slot(self, session_id: str, slot: int, content: str) -> None:
        session = self.store.get_session(session_id)
        if session is None:
            return
        messages = list(session.messages)
        if slot >= len(messages):
            logger.warning(f"Assistant slot {slot} vanished from session {session_id}")
            return
        messages[slot] = Message(role="assistant", content=content)
        self.store.update_messages(session_id, messages)

    def _set_state(self, state: TurnState) -> None:
        self.state = state
        if self._session_id is not None:
            self.emitter.emit(TurnStateEvent(session_id=self._session_id, state=state.value))

    def _schedule_metadata(self, session_id: str) -> None:
        task = asyncio.get_running_loop().create_task(self._generate_metadata(session_id))
        self._metadata_tasks.add(task)
        task.add_done_callback(self._metadata_tasks.discard)

    async def _generate_metadata(self, session_id: str) -> None:
        results = await self.store.generate_metadata(session_id)
        for kind, success in results.items():
            self.emitter.emit(MetadataEvent(session_id=session_id, kind=kind.value, success=success))
