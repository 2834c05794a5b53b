import warnings
from typing import Any

import httpx
import litellm

warnings.filterwarnings("ignore", message="Pydantic serializer warnings")
litellm.drop_params = True


async def acompletion(
    model: str,
    messages: list[dict],
    stream: bool = False,
    temperature: float | None = None,
    api_base: str | None = None,
    timeout: float | None = None,
    **kwargs,
) -> Any:
    params: dict[str, Any] = {
        "model": model,
        "messages": messages,
        "stream": stream,
        **kwargs,
    }
    if temperature is not None:
        params["temperature"] = temperature
    if api_base:
        params["api_base"] = api_base
    if timeout is not None:
        params["timeout"] = timeout

    return await litellm.acompletion(**params)


def response_text(response: Any) -> str:
    choices = getattr(response, "choices", None) or []
    if not choices:
        return ""
    message = getattr(choices[0], "message", None)
    return getattr(message, "content", None) or ""


def delta_text(chunk: Any) -> str:
    choices = getattr(chunk, "choices", None) or []
    if not choices:
        return ""
    delta = getattr(choices[0], "delta", None)
    return getattr(delta, "content", None) or ""


async def list_local_models(host: str, timeout: float = 10.0) -> list[str]:
    async with httpx.AsyncClient(base_url=host, timeout=timeout) as client:
        response = await client.get("/api/tags")
        response.raise_for_status()
        data = response.json()

    names: list[str] = []
    for entry in data.get("models", []) or []:
        name = entry.get("name") or entry.get("model")
        if name:
            names.append(str(name))
    return names
