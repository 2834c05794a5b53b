from __future__ import annotations

from dataclasses import dataclass

from common.events import EventCallback, EventEmitter
from chatdeck.config import ChatConfig
from chatdeck.metadata import MetadataGenerator
from chatdeck.registry import ModelRegistry
from chatdeck.sessions.persistence import SessionPersistence
from chatdeck.sessions.store import SessionStore
from chatdeck.streaming import StreamingOrchestrator
from chatdeck.transport import ChatClient


@dataclass
class ChatApp:
    config: ChatConfig
    client: ChatClient
    registry: ModelRegistry
    store: SessionStore
    orchestrator: StreamingOrchestrator

    @classmethod
    def build(
        cls,
        config: ChatConfig,
        on_event: EventCallback = None,
        client: ChatClient | None = None,
    ) -> "ChatApp":
        client = client or ChatClient(config)
        registry = ModelRegistry(client)
        store = SessionStore(
            registry,
            persistence=SessionPersistence(config.data_dir),
            generator=MetadataGenerator(client, temperature=config.metadata_temperature),
        )
        orchestrator = StreamingOrchestrator(store, client, EventEmitter(on_event))
        return cls(
            config=config,
            client=client,
            registry=registry,
            store=store,
            orchestrator=orchestrator,
        )

    async def start(self) -> list[str]:
        return await self.registry.refresh()

    async def shutdown(self) -> None:
        self.orchestrator.stop()
        await self.orchestrator.drain()
