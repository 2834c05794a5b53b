"""Session search: ``key:value`` operators plus weighted free text.

Supported operators are ``system:``, ``name:``, ``tag:``, ``note:``, ``in:``
(message content) and ``type:`` (``bookmarked`` or ``favorite``). Values with
spaces are double-quoted: ``in:"python code"``. Whatever is left after the
operators are stripped is matched against name, tags, notes and messages.
All matching is case-insensitive substring containment.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, Literal

from chatdeck.models import ChatSession, Message

OPERATORS = ("system", "name", "tag", "note", "in", "type")
TYPE_VALUES = ("bookmarked", "favorite")

TypeFilter = Literal["bookmarked", "favorite"]

OPERATOR_PATTERN = re.compile(r'(system|name|tag|note|in|type):("([^"]+)"|(\S+))')


@dataclass(frozen=True)
class SearchQuery:
    raw: str
    text: str
    operators: dict[str, str] = field(default_factory=dict)

    @property
    def type_filter(self) -> TypeFilter | None:
        value = self.operators.get("type")
        return value if value in TYPE_VALUES else None  # type: ignore[return-value]

    @property
    def is_empty(self) -> bool:
        return not self.raw


def parse_query(raw: str) -> SearchQuery:
    operators: dict[str, str] = {}
    text = raw

    for match in OPERATOR_PATTERN.finditer(raw):
        operator, _, quoted, unquoted = match.groups()
        value = quoted if quoted is not None else unquoted

        if operator == "type":
            lowered = value.lower()
            if lowered in TYPE_VALUES:
                operators["type"] = lowered
        else:
            operators[operator] = value

        text = text.replace(match.group(0), "", 1)

    text = text.strip()
    return SearchQuery(raw=raw, text=text, operators=operators)


def _contains(haystack: str, needle: str) -> bool:
    return needle.lower() in (haystack or "").lower()


def _any_contains(values: Iterable[str], needle: str) -> bool:
    lowered = needle.lower()
    return any(lowered in (value or "").lower() for value in values)


def _messages_contain(messages: Iterable[Message], needle: str) -> bool:
    return _any_contains((m.content for m in messages), needle)


def matches(session: ChatSession, query: SearchQuery) -> bool:
    ops = query.operators

    if "system" in ops and not _contains(session.system_prompt, ops["system"]):
        return False
    if "name" in ops and not _contains(session.name, ops["name"]):
        return False
    if "tag" in ops and not _any_contains(session.tags, ops["tag"]):
        return False
    if "note" in ops and not _contains(session.notes, ops["note"]):
        return False
    if "in" in ops and not _messages_contain(session.messages, ops["in"]):
        return False

    type_filter = query.type_filter
    if type_filter == "bookmarked" and not session.is_bookmarked:
        return False
    if type_filter == "favorite" and not session.is_favorite:
        return False

    if not query.text:
        return True

    # Name, then tags, then notes, then messages; first hit wins.
    if _contains(session.name, query.text):
        return True
    if _any_contains(session.tags, query.text):
        return True
    if _contains(session.notes, query.text):
        return True
    return _messages_contain(session.messages, query.text)


def filter_sessions(sessions: list[ChatSession], query: SearchQuery) -> list[ChatSession]:
    if query.is_empty:
        return list(sessions)
    return [session for session in sessions if matches(session, query)]


def search(sessions: list[ChatSession], raw: str) -> list[ChatSession]:
    return filter_sessions(sessions, parse_query(raw))


def toggle_type_filter(raw: str, kind: TypeFilter, enabled: bool) -> str:
    """Add or remove a ``type:<kind>`` token in a raw query string."""
    token = f"type:{kind}"
    if enabled:
        if token in raw:
            return raw
        return f"{raw.strip()} {token}".strip()
    stripped = re.sub(rf"\s*{re.escape(token)}\s*", " ", raw, count=1)
    return re.sub(r"\s+", " ", stripped).strip()
