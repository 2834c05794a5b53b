from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from common.ids import generate_id

DEFAULT_SESSION_NAME = "New Chat"
DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant."

OPTION_KEYS = ("temperature", "top_k", "top_p", "repeat_penalty", "stop", "stream")

Role = Literal["user", "assistant", "system"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Message(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    role: Role
    content: str = ""

    def to_api(self) -> dict:
        return {"role": self.role, "content": self.content}


class GenerationOptions(BaseModel):
    model_config = ConfigDict(extra="ignore")

    temperature: float | None = None
    top_k: int | None = None
    top_p: float | None = None
    repeat_penalty: float | None = None
    stop: list[str] | None = None
    stream: bool | None = None

    def overrides(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)

    def is_empty(self) -> bool:
        return not self.overrides()

    @property
    def stream_enabled(self) -> bool:
        return self.stream is not False


def normalize_options(options: GenerationOptions | dict | None) -> GenerationOptions | None:
    if options is None:
        return None
    if isinstance(options, dict):
        options = GenerationOptions.model_validate(options)
    return None if options.is_empty() else options


def merge_options(
    current: GenerationOptions | None, updates: GenerationOptions | dict[str, Any]
) -> GenerationOptions | None:
    """Shallow-merge ``updates`` over ``current``.

    A key explicitly set to ``None`` in ``updates`` is removed, which is how a
    single override is reset to the transport default.
    """
    merged = current.overrides() if current else {}
    if isinstance(updates, GenerationOptions):
        updates = updates.model_dump(exclude_unset=True)
    for key, value in updates.items():
        if key not in OPTION_KEYS:
            raise KeyError(f"Unknown generation option: {key}")
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = value
    return normalize_options(merged)


class ChatSession(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(default_factory=generate_id)
    name: str = DEFAULT_SESSION_NAME
    system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT, alias="systemPrompt")
    messages: list[Message] = Field(default_factory=list)
    model: str = ""
    options: GenerationOptions | None = None
    tags: list[str] = Field(default_factory=list)
    notes: str = ""
    is_bookmarked: bool = Field(default=False, alias="isBookmarked")
    is_favorite: bool = Field(default=False, alias="isFavorite")
    created_at: datetime = Field(default_factory=utc_now, alias="createdAt")
    updated_at: datetime = Field(default_factory=utc_now, alias="updatedAt")

    @property
    def has_default_name(self) -> bool:
        return self.name == DEFAULT_SESSION_NAME

    def last_assistant_index(self) -> int:
        for index in range(len(self.messages) - 1, -1, -1):
            if self.messages[index].role == "assistant":
                return index
        return -1

    def to_record(self) -> dict[str, Any]:
        record = self.model_dump(mode="json", by_alias=True, exclude={"options"})
        if self.options is not None:
            record["options"] = self.options.overrides()
        return record


def dedupe_tags(tags: list[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for tag in tags:
        tag = str(tag).strip()
        if not tag or tag in seen:
            continue
        seen.add(tag)
        out.append(tag)
    return out
