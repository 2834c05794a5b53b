import logging
from typing import Callable

from chatdeck.errors import TransportError
from chatdeck.transport import ChatClient

logger = logging.getLogger(__name__)

ModelsListener = Callable[[list[str]], None]


class ModelRegistry:
    """Available model identifiers, refreshed from the inference server."""

    def __init__(self, client: ChatClient):
        self.client = client
        self.models: list[str] = []
        self.is_loading = False
        self.is_ready = False
        self._listeners: list[ModelsListener] = []

    @property
    def default_model(self) -> str:
        return self.models[0] if self.models else ""

    def contains(self, name: str) -> bool:
        return name in self.models

    def subscribe(self, listener: ModelsListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def set_models(self, models: list[str]) -> None:
        self.models = list(models)
        self.is_ready = True
        if self.models:
            for listener in list(self._listeners):
                listener(list(self.models))

    async def refresh(self) -> list[str]:
        if self.is_loading:
            return list(self.models)

        self.is_loading = True
        try:
            models = await self.client.list_models()
        except TransportError as e:
            logger.error(f"Failed to fetch models: {e}")
            models = []
        finally:
            self.is_loading = False

        logger.info(f"Loaded {len(models)} model(s)")
        self.set_models(models)
        return list(self.models)
