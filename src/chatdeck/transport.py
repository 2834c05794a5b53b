"""Inference transport used by the streaming and metadata layers.

``ChatClient`` is the only place that talks to the model server. Everything
above it sees plain strings: a full completion, or an async iterator of text
fragments, and two failure kinds (``CancellationError`` for a user stop and
``TransportError`` for everything else).
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

from common import llm
from chatdeck.config import ChatConfig
from chatdeck.errors import CancellationError, TransportError
from chatdeck.models import GenerationOptions

logger = logging.getLogger(__name__)

T = TypeVar("T")

CompletionFn = Callable[..., Awaitable[Any]]
ListModelsFn = Callable[[], Awaitable[list[str]]]


class CancelSignal:
    """Abort flag shared by one turn's network call and the stop action."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


async def race_cancel(awaitable: Awaitable[T], cancel: CancelSignal | None) -> T:
    """Await ``awaitable`` unless ``cancel`` fires first."""
    if cancel is None:
        return await awaitable
    if cancel.cancelled:
        if inspect.iscoroutine(awaitable):
            awaitable.close()
        raise CancellationError("request cancelled")

    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not work.done():
            work.cancel()

    if work in done:
        return work.result()
    raise CancellationError("request cancelled")


async def _next_chunk(iterator: AsyncIterator[Any]) -> Any:
    return await iterator.__anext__()


def options_to_params(options: GenerationOptions | None) -> dict[str, Any]:
    if options is None:
        return {}
    params = options.overrides()
    params.pop("stream", None)
    return params


class ChatClient:
    def __init__(
        self,
        config: ChatConfig | None = None,
        completion_fn: CompletionFn | None = None,
        list_models_fn: ListModelsFn | None = None,
    ):
        self.config = config or ChatConfig()
        self._completion_fn = completion_fn or llm.acompletion
        self._list_models_fn = list_models_fn

    async def list_models(self) -> list[str]:
        try:
            if self._list_models_fn is not None:
                return list(await self._list_models_fn())
            return await llm.list_local_models(
                self.config.ollama_host, timeout=self.config.list_timeout
            )
        except Exception as e:
            raise TransportError(f"Failed to list models: {e}") from e

    def _params(
        self,
        model: str,
        messages: list[dict],
        options: GenerationOptions | None,
        stream: bool,
    ) -> dict[str, Any]:
        return {
            "model": self.config.resolve_model(model),
            "messages": messages,
            "stream": stream,
            "api_base": self.config.ollama_host,
            "timeout": self.config.request_timeout,
            **options_to_params(options),
        }

    async def complete(
        self,
        model: str,
        messages: list[dict],
        options: GenerationOptions | None = None,
        cancel: CancelSignal | None = None,
    ) -> str:
        params = self._params(model, messages, options, stream=False)
        try:
            response = await race_cancel(self._completion_fn(**params), cancel)
        except CancellationError:
            raise
        except Exception as e:
            raise TransportError(f"Chat completion failed: {e}") from e
        return llm.response_text(response)

    async def stream(
        self,
        model: str,
        messages: list[dict],
        options: GenerationOptions | None = None,
        cancel: CancelSignal | None = None,
    ) -> AsyncIterator[str]:
        params = self._params(model, messages, options, stream=True)
        try:
            response = await race_cancel(self._completion_fn(**params), cancel)
        except CancellationError:
            raise
        except Exception as e:
            raise TransportError(f"Chat completion failed: {e}") from e
        return self._fragments(response, cancel)

    async def chat(
        self,
        model: str,
        messages: list[dict],
        options: GenerationOptions | None = None,
        stream: bool = False,
        cancel: CancelSignal | None = None,
    ) -> str | AsyncIterator[str]:
        if stream:
            return await self.stream(model, messages, options, cancel)
        return await self.complete(model, messages, options, cancel)

    async def _fragments(
        self, response: Any, cancel: CancelSignal | None
    ) -> AsyncIterator[str]:
        iterator = response.__aiter__()
        try:
            while True:
                try:
                    chunk = await race_cancel(_next_chunk(iterator), cancel)
                except StopAsyncIteration:
                    return
                except CancellationError:
                    raise
                except Exception as e:
                    raise TransportError(f"Stream interrupted: {e}") from e
                text = llm.delta_text(chunk)
                if text:
                    yield text
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception as e:
                    logger.debug(f"Ignoring error while closing stream: {e}")
