"""Validation and legacy upgrade of stored or imported session records.

A record only has to carry ``id`` and ``name``; every other field is
defaulted. Timestamps that are missing or unparseable become "now".
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from chatdeck.errors import RecordProblem, ValidationError
from chatdeck.models import (
    DEFAULT_SESSION_NAME,
    DEFAULT_SYSTEM_PROMPT,
    ChatSession,
    GenerationOptions,
    Message,
    dedupe_tags,
    normalize_options,
    utc_now,
)


class SessionRecord(BaseModel):
    """Minimal shape every session record must have."""

    model_config = ConfigDict(extra="allow", strict=True)

    id: str
    name: str


def parse_timestamp(value: Any, fallback: datetime) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return fallback
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        # epoch milliseconds
        try:
            parsed = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return fallback
    else:
        return fallback

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _check_record(index: int, raw: Any) -> list[RecordProblem]:
    if not isinstance(raw, dict):
        return [RecordProblem(index, f"expected an object, got {type(raw).__name__}")]
    try:
        SessionRecord.model_validate(raw)
    except PydanticValidationError as e:
        return [
            RecordProblem(index, f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}")
            for err in e.errors()
        ]

    problems: list[RecordProblem] = []
    messages = raw.get("messages")
    if messages is not None:
        if not isinstance(messages, list):
            problems.append(RecordProblem(index, "messages: expected a list"))
        else:
            for pos, message in enumerate(messages):
                try:
                    Message.model_validate(message)
                except PydanticValidationError:
                    problems.append(RecordProblem(index, f"messages.{pos}: invalid message"))
    options = raw.get("options")
    if options is not None:
        try:
            GenerationOptions.model_validate(options)
        except PydanticValidationError:
            problems.append(RecordProblem(index, "options: invalid generation options"))
    tags = raw.get("tags")
    if tags is not None and not isinstance(tags, list):
        problems.append(RecordProblem(index, "tags: expected a list"))
    prompt = _system_prompt(raw)
    if not isinstance(prompt, str):
        problems.append(RecordProblem(index, "systemPrompt: expected a string"))
    return problems


def _system_prompt(raw: dict[str, Any]) -> Any:
    # An empty prompt is kept; only a missing one gets the default.
    prompt = raw.get("systemPrompt", raw.get("system_prompt"))
    return DEFAULT_SYSTEM_PROMPT if prompt is None else prompt


def normalize_record(
    raw: dict[str, Any], *, default_model: str = "", now: datetime | None = None
) -> ChatSession:
    now = now or utc_now()
    return ChatSession(
        id=raw["id"],
        name=raw.get("name") or DEFAULT_SESSION_NAME,
        system_prompt=_system_prompt(raw),
        messages=[Message.model_validate(m) for m in raw.get("messages") or []],
        model=raw.get("model") or default_model,
        options=normalize_options(raw.get("options")),
        tags=dedupe_tags(raw.get("tags") or []),
        notes=raw.get("notes") or "",
        is_bookmarked=bool(raw.get("isBookmarked", raw.get("is_bookmarked", False))),
        is_favorite=bool(raw.get("isFavorite", raw.get("is_favorite", False))),
        created_at=parse_timestamp(raw.get("createdAt", raw.get("created_at")), now),
        updated_at=parse_timestamp(raw.get("updatedAt", raw.get("updated_at")), now),
    )


def validate_records(
    records: Any, *, default_model: str = "", now: datetime | None = None
) -> list[ChatSession]:
    """Validate a list of raw records and upgrade them to ``ChatSession``.

    Raises ``ValidationError`` listing every offending record; nothing is
    returned unless the whole input is valid.
    """
    if not isinstance(records, list):
        raise ValidationError(
            f"Expected a list of session records, got {type(records).__name__}"
        )

    problems: list[RecordProblem] = []
    for index, raw in enumerate(records):
        problems.extend(_check_record(index, raw))
    if problems:
        raise ValidationError("Invalid session backup", problems)

    now = now or utc_now()
    sessions = [normalize_record(raw, default_model=default_model, now=now) for raw in records]

    seen: set[str] = set()
    for index, session in enumerate(sessions):
        if session.id in seen:
            problems.append(RecordProblem(index, f"duplicate id {session.id!r}"))
        seen.add(session.id)
    if problems:
        raise ValidationError("Invalid session backup", problems)
    return sessions
