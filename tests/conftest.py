import asyncio
from pathlib import Path

import pytest

from chatdeck.config import ChatConfig
from chatdeck.metadata import INSTRUCTIONS, MetadataGenerator, MetadataKind
from chatdeck.registry import ModelRegistry
from chatdeck.sessions.persistence import SessionPersistence
from chatdeck.sessions.store import SessionStore
from chatdeck.transport import ChatClient


class _Msg:
    def __init__(self, content: str | None):
        self.content = content


class _Choice:
    def __init__(self, content: str | None):
        self.message = _Msg(content)
        self.delta = _Msg(content)


class _Resp:
    def __init__(self, content: str | None):
        self.choices = [_Choice(content)]


class _Stream:
    def __init__(self, chunks: list[str], gate: asyncio.Event | None = None, fail_after: int | None = None):
        self._chunks = list(chunks)
        self._gate = gate
        self._fail_after = fail_after
        self._sent = 0
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self._gate is not None:
            await self._gate.wait()
        if self._fail_after is not None and self._sent >= self._fail_after:
            raise ConnectionError("connection reset")
        if self._sent >= len(self._chunks):
            raise StopAsyncIteration
        chunk = _Resp(self._chunks[self._sent])
        self._sent += 1
        return chunk

    async def aclose(self):
        self.closed = True


class FakeServer:
    """Stands in for litellm.acompletion and the model listing endpoint."""

    def __init__(self, models: list[str] | None = None, chunks: list[str] | None = None):
        self.models = list(models or [])
        self.chunks = list(chunks or [])
        self.reply = "Full reply"
        self.fail: Exception | None = None
        self.fail_after: int | None = None
        self.gate: asyncio.Event | None = None
        self.metadata = {
            MetadataKind.NAME: '"Greeting Exchange."',
            MetadataKind.TAGS: "greeting, smalltalk , ,greeting",
            MetadataKind.NOTES: "  The user said hello.  ",
        }
        self.metadata_errors: dict[MetadataKind, Exception] = {}
        self.metadata_gate: asyncio.Event | None = None
        self.list_error: Exception | None = None
        self.calls: list[dict] = []
        self.metadata_calls: list[MetadataKind] = []
        self.streams: list[_Stream] = []

    def _metadata_kind(self, messages: list[dict]) -> MetadataKind | None:
        if not messages or messages[0]["role"] != "system":
            return None
        for kind, instruction in INSTRUCTIONS.items():
            if messages[0]["content"] == instruction:
                return kind
        return None

    async def completion(self, **kwargs):
        kind = self._metadata_kind(kwargs["messages"])
        if kind is not None:
            self.metadata_calls.append(kind)
            if self.metadata_gate is not None:
                await self.metadata_gate.wait()
            if kind in self.metadata_errors:
                raise self.metadata_errors[kind]
            return _Resp(self.metadata[kind])

        self.calls.append(kwargs)
        if self.fail is not None:
            raise self.fail
        if kwargs["stream"]:
            stream = _Stream(self.chunks, gate=self.gate, fail_after=self.fail_after)
            self.streams.append(stream)
            return stream
        return _Resp(self.reply)

    async def list_models(self) -> list[str]:
        if self.list_error is not None:
            raise self.list_error
        return list(self.models)


async def _wait_for(predicate, attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


@pytest.fixture
def wait_for():
    return _wait_for


@pytest.fixture
def config(tmp_path: Path) -> ChatConfig:
    return ChatConfig(
        data_dir=str(tmp_path / "data"),
        ollama_host="http://ollama.test:11434",
        model_prefix="ollama_chat/",
        request_timeout=30.0,
    )


@pytest.fixture
def server() -> FakeServer:
    return FakeServer(models=["llama3", "mistral"], chunks=["Hel", "lo", " world"])


@pytest.fixture
def client(config: ChatConfig, server: FakeServer) -> ChatClient:
    return ChatClient(config, completion_fn=server.completion, list_models_fn=server.list_models)


@pytest.fixture
def registry(client: ChatClient, server: FakeServer) -> ModelRegistry:
    registry = ModelRegistry(client)
    registry.set_models(server.models)
    return registry


@pytest.fixture
def persistence(config: ChatConfig) -> SessionPersistence:
    return SessionPersistence(config.data_dir)


@pytest.fixture
def store(registry: ModelRegistry, persistence: SessionPersistence, client: ChatClient) -> SessionStore:
    return SessionStore(registry, persistence=persistence, generator=MetadataGenerator(client))
