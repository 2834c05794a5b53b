from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, TypeAlias


@dataclass(frozen=True, slots=True)
class TurnStateEvent:
    session_id: str
    state: str


@dataclass(frozen=True, slots=True)
class AssistantDeltaEvent:
    session_id: str
    text: str
    content: str


@dataclass(frozen=True, slots=True)
class AssistantMessageEvent:
    session_id: str
    content: str


@dataclass(frozen=True, slots=True)
class MetadataEvent:
    session_id: str
    kind: str
    success: bool
    error: str = ""


@dataclass(frozen=True, slots=True)
class ErrorEvent:
    message: str
    source: str | None = None


Event: TypeAlias = (
    TurnStateEvent
    | AssistantDeltaEvent
    | AssistantMessageEvent
    | MetadataEvent
    | ErrorEvent
)
EventCallback: TypeAlias = Callable[[Event], None] | None


class EventEmitter:
    def __init__(self, callback: EventCallback = None):
        self._callback = callback

    def emit(self, event: Event) -> None:
        if self._callback is not None:
            self._callback(event)
