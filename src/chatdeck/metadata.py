import logging
import re
from enum import Enum

from chatdeck.models import ChatSession, GenerationOptions, Message
from chatdeck.transport import ChatClient

logger = logging.getLogger(__name__)

EXCERPT_MESSAGES = 3
EXCERPT_CHARS = 100


class MetadataKind(str, Enum):
    NAME = "name"
    TAGS = "tags"
    NOTES = "notes"


INSTRUCTIONS = {
    MetadataKind.NAME: (
        "Give this chat session a short name based on its content, at most 4 words. "
        "Reply with the name only: no quotes, punctuation, or other text."
    ),
    MetadataKind.TAGS: (
        "Generate 2-4 relevant tags for this conversation. Each tag is a single word "
        "or a short phrase. Reply with only the tags, separated by commas."
    ),
    MetadataKind.NOTES: (
        "Summarize this conversation in 1-2 sentences, focusing on its main topic or "
        "goal. Reply with only the summary."
    ),
}


def conversation_excerpt(messages: list[Message]) -> str:
    return "\n".join(
        f"{m.role}: {m.content[:EXCERPT_CHARS]}" for m in messages[:EXCERPT_MESSAGES]
    )


def clean_name(text: str) -> str:
    name = re.sub(r"[\"']", "", text).strip()
    name = re.sub(r"[.!?,;:]+$", "", name)
    return name.strip()


def parse_tags(text: str) -> list[str]:
    return [tag.strip() for tag in text.split(",") if tag.strip()]


def clean_notes(text: str) -> str:
    return text.strip()


class MetadataGenerator:
    """Derives a session's name, tags, or notes from its opening turns."""

    def __init__(self, client: ChatClient, temperature: float = 0.7):
        self.client = client
        self.options = GenerationOptions(temperature=temperature)

    async def _ask(self, kind: MetadataKind, session: ChatSession) -> str:
        messages = [
            {"role": "system", "content": INSTRUCTIONS[kind]},
            {"role": "user", "content": conversation_excerpt(session.messages)},
        ]
        logger.debug(f"Generating {kind.value} for session {session.id}")
        return await self.client.complete(session.model, messages, self.options)

    async def generate_name(self, session: ChatSession) -> str:
        return clean_name(await self._ask(MetadataKind.NAME, session))

    async def generate_tags(self, session: ChatSession) -> list[str]:
        return parse_tags(await self._ask(MetadataKind.TAGS, session))

    async def generate_notes(self, session: ChatSession) -> str:
        return clean_notes(await self._ask(MetadataKind.NOTES, session))
