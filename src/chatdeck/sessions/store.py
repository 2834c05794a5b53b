from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from chatdeck.metadata import MetadataGenerator, MetadataKind
from chatdeck.models import (
    ChatSession,
    GenerationOptions,
    Message,
    dedupe_tags,
    merge_options,
    normalize_options,
    utc_now,
)
from chatdeck.registry import ModelRegistry
from chatdeck.sessions.persistence import SessionPersistence
from chatdeck.sessions.schema import validate_records

logger = logging.getLogger(__name__)

StoreListener = Callable[["SessionStore"], None]


def repair_session_models(
    sessions: list[ChatSession], models: list[str]
) -> tuple[list[ChatSession], bool]:
    """Point every session with an empty or unknown model at ``models[0]``."""
    if not models:
        return list(sessions), False

    default_model = models[0]
    available = set(models)
    changed = False
    repaired: list[ChatSession] = []
    for session in sessions:
        if not session.model or session.model not in available:
            session = session.model_copy(update={"model": default_model, "updated_at": utc_now()})
            changed = True
        repaired.append(session)
    return repaired, changed


class SessionStore:
    """Owner of every chat session and of the current-session pointer.

    All mutations are synchronous and each committed one is written through
    to ``persistence`` and announced to subscribers. Sessions are replaced,
    never mutated in place, so objects handed out are stable snapshots.
    """

    def __init__(
        self,
        registry: ModelRegistry,
        persistence: SessionPersistence | None = None,
        generator: MetadataGenerator | None = None,
    ):
        self.registry = registry
        self.persistence = persistence
        self.generator = generator
        self._sessions: list[ChatSession] = []
        self.current_session_id: str | None = None
        self.is_streaming = False
        self._in_flight: dict[MetadataKind, set[str]] = {kind: set() for kind in MetadataKind}
        self._listeners: list[StoreListener] = []

        self._rehydrate()
        registry.subscribe(self._on_models_loaded)

    # -- reads -------------------------------------------------------------

    @property
    def sessions(self) -> list[ChatSession]:
        return list(self._sessions)

    @property
    def current_session(self) -> ChatSession | None:
        if self.current_session_id is None:
            return None
        return self.get_session(self.current_session_id)

    def get_session(self, session_id: str) -> ChatSession | None:
        index = self._index(session_id)
        return self._sessions[index] if index >= 0 else None

    def is_generating(self, kind: MetadataKind, session_id: str) -> bool:
        return session_id in self._in_flight[kind]

    def is_metadata_loading(self, session_id: str) -> bool:
        return any(session_id in ids for ids in self._in_flight.values())

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # -- session lifecycle -------------------------------------------------

    def create_session(self) -> ChatSession:
        return ChatSession(model=self.registry.default_model)

    def add_session(self) -> ChatSession:
        session = self.create_session()
        self._sessions.append(session)
        self.current_session_id = session.id
        logger.info(f"Created session {session.id}")
        self._commit()
        return session

    def select_session(self, session_id: str) -> None:
        if self._index(session_id) < 0:
            logger.warning(f"Cannot select unknown session {session_id}")
            return
        self.current_session_id = session_id
        self._commit()

    def delete_session(self, session_id: str) -> None:
        remaining = [s for s in self._sessions if s.id != session_id]
        if len(remaining) == len(self._sessions):
            logger.warning(f"Cannot delete unknown session {session_id}")
            return

        if not remaining:
            fallback = self.create_session()
            self._sessions = [fallback]
            self.current_session_id = fallback.id
        else:
            self._sessions = remaining
            if self.current_session_id == session_id:
                self.current_session_id = remaining[0].id
        logger.info(f"Deleted session {session_id}")
        self._commit()

    # -- field updates -----------------------------------------------------

    def update_session(self, session_id: str, **fields: Any) -> ChatSession | None:
        index = self._index(session_id)
        if index < 0:
            logger.warning(f"Cannot update unknown session {session_id}")
            return None

        unknown = set(fields) - set(ChatSession.model_fields) - {"id"}
        if unknown:
            raise TypeError(f"Unknown session field(s): {', '.join(sorted(unknown))}")
        if "options" in fields:
            fields["options"] = normalize_options(fields["options"])
        if "tags" in fields:
            fields["tags"] = dedupe_tags(list(fields["tags"]))

        data = self._sessions[index].model_dump()
        data.update(fields)
        data["id"] = session_id
        data["updated_at"] = utc_now()
        updated = ChatSession.model_validate(data)
        self._sessions[index] = updated

        model = fields.get("model")
        if model and not self.registry.contains(model):
            logger.warning(
                f"Session {session_id} updated with model {model} "
                "which is not in the available models list"
            )
        self._commit()
        return updated

    def rename_session(self, session_id: str, name: str) -> None:
        name = (name or "").strip()
        if name:
            self.update_session(session_id, name=name)

    def update_messages(self, session_id: str, messages: list[Message]) -> None:
        self.update_session(session_id, messages=list(messages))

    def update_system_prompt(self, session_id: str, system_prompt: str) -> None:
        self.update_session(session_id, system_prompt=system_prompt)

    def update_model(self, session_id: str, model: str) -> None:
        self.update_session(session_id, model=model)

    def update_options(
        self, session_id: str, options: GenerationOptions | dict[str, Any]
    ) -> None:
        session = self.get_session(session_id)
        if session is None:
            return
        self.update_session(session_id, options=merge_options(session.options, options))

    def reset_option(self, session_id: str, key: str) -> None:
        self.update_options(session_id, {key: None})

    def set_tags(self, session_id: str, tags: list[str]) -> None:
        self.update_session(session_id, tags=tags)

    def set_notes(self, session_id: str, notes: str) -> None:
        self.update_session(session_id, notes=notes)

    def toggle_bookmark(self, session_id: str) -> None:
        session = self.get_session(session_id)
        if session is not None:
            self.update_session(session_id, is_bookmarked=not session.is_bookmarked)

    def toggle_favorite(self, session_id: str) -> None:
        session = self.get_session(session_id)
        if session is not None:
            self.update_session(session_id, is_favorite=not session.is_favorite)

    def edit_message(self, session_id: str, index: int, content: str) -> None:
        session = self._require(session_id)
        messages = list(session.messages)
        if not 0 <= index < len(messages):
            raise IndexError(f"Message index {index} out of range")
        messages[index] = Message(role=messages[index].role, content=content)
        self.update_messages(session_id, messages)

    def delete_message(self, session_id: str, index: int) -> None:
        session = self._require(session_id)
        messages = list(session.messages)
        if not 0 <= index < len(messages):
            raise IndexError(f"Message index {index} out of range")
        del messages[index]
        self.update_messages(session_id, messages)

    def set_streaming(self, is_streaming: bool) -> None:
        self.is_streaming = is_streaming
        self._notify()

    # -- import / export ---------------------------------------------------

    def export_all(self) -> list[dict[str, Any]]:
        return [session.to_record() for session in self._sessions]

    def import_all(self, records: Any) -> list[ChatSession]:
        sessions = validate_records(records, default_model=self.registry.default_model)
        self._sessions = sessions
        self.current_session_id = sessions[0].id if sessions else None
        logger.info(f"Imported {len(sessions)} session(s)")
        self._commit()
        return list(sessions)

    # -- metadata generation -----------------------------------------------

    async def generate_name(self, session_id: str) -> bool:
        return await self._generate(MetadataKind.NAME, session_id)

    async def generate_tags(self, session_id: str) -> bool:
        return await self._generate(MetadataKind.TAGS, session_id)

    async def generate_notes(self, session_id: str) -> bool:
        return await self._generate(MetadataKind.NOTES, session_id)

    async def generate_metadata(self, session_id: str) -> dict[MetadataKind, bool]:
        kinds = list(MetadataKind)
        results = await asyncio.gather(
            *(self._generate(kind, session_id) for kind in kinds),
            return_exceptions=True,
        )
        return {kind: result is True for kind, result in zip(kinds, results)}

    async def _generate(self, kind: MetadataKind, session_id: str) -> bool:
        session = self.get_session(session_id)
        if session is None or not session.messages or not session.model:
            return False
        if session_id in self._in_flight[kind]:
            return False
        if self.generator is None:
            logger.warning(f"No metadata generator configured; skipping {kind.value}")
            return False

        self._in_flight[kind].add(session_id)
        self._notify()
        try:
            if kind is MetadataKind.NAME:
                name = await self.generator.generate_name(session)
                if not name:
                    return False
                self.rename_session(session_id, name)
            elif kind is MetadataKind.TAGS:
                tags = await self.generator.generate_tags(session)
                if not tags:
                    return False
                self.set_tags(session_id, tags)
            else:
                notes = await self.generator.generate_notes(session)
                if not notes:
                    return False
                self.set_notes(session_id, notes)
            return True
        except Exception as e:
            logger.error(f"Failed to generate session {kind.value} for {session_id}: {e}")
            return False
        finally:
            self._in_flight[kind].discard(session_id)
            self._notify()

    # -- internals ---------------------------------------------------------

    def _index(self, session_id: str) -> int:
        for index, session in enumerate(self._sessions):
            if session.id == session_id:
                return index
        return -1

    def _require(self, session_id: str) -> ChatSession:
        session = self.get_session(session_id)
        if session is None:
            raise KeyError(f"Unknown session {session_id}")
        return session

    def _rehydrate(self) -> None:
        state = None
        if self.persistence is not None:
            state = self.persistence.load(default_model=self.registry.default_model)

        if state is None or not state.sessions:
            session = self.create_session()
            self._sessions = [session]
            self.current_session_id = session.id
        else:
            self._sessions = list(state.sessions)
            known = {s.id for s in self._sessions}
            if state.current_session_id in known:
                self.current_session_id = state.current_session_id
            else:
                self.current_session_id = self._sessions[0].id
        self._commit()

    def _on_models_loaded(self, models: list[str]) -> None:
        repaired, changed = repair_session_models(self._sessions, models)
        if changed:
            self._sessions = repaired
            logger.info(f"Repaired session models to default {models[0]}")
            self._commit()

    def _commit(self) -> None:
        if self.persistence is not None:
            self.persistence.save(self._sessions, self.current_session_id)
        self._notify()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self)
