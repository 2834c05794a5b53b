import os
import logging
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_OLLAMA_HOST = "http://127.0.0.1:11434"


class ConfigError(Exception):
    pass


def get_optional_env(name: str, default: str) -> str:
    return os.environ.get(name) or default


def _default_data_dir() -> str:
    return str(Path(get_optional_env("CHATDECK_DATA_DIR", "~/.chatdeck")).expanduser())


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e


@dataclass
class ChatConfig:
    data_dir: str = field(default_factory=_default_data_dir)
    ollama_host: str = field(
        default_factory=lambda: get_optional_env("OLLAMA_HOST", DEFAULT_OLLAMA_HOST)
    )
    model_prefix: str = field(
        default_factory=lambda: get_optional_env("CHATDECK_MODEL_PREFIX", "ollama_chat/")
    )
    request_timeout: float = field(
        default_factory=lambda: _env_float("CHATDECK_REQUEST_TIMEOUT", 300.0)
    )
    list_timeout: float = 10.0
    metadata_temperature: float = 0.7

    @classmethod
    def from_env(cls, data_dir: str | None = None) -> "ChatConfig":
        config = cls()
        if data_dir:
            config.data_dir = str(Path(data_dir).expanduser())
        if not config.ollama_host.startswith(("http://", "https://")):
            config.ollama_host = f"http://{config.ollama_host}"
        return config

    def validate(self) -> None:
        if not self.data_dir:
            raise ConfigError("data_dir must not be empty")
        if not self.ollama_host.startswith(("http://", "https://")):
            raise ConfigError(f"ollama_host must be an http(s) URL, got {self.ollama_host!r}")
        if self.request_timeout <= 0:
            raise ConfigError("request_timeout must be > 0")
        if self.list_timeout <= 0:
            raise ConfigError("list_timeout must be > 0")
        if not 0.0 <= self.metadata_temperature <= 2.0:
            raise ConfigError("metadata_temperature must be between 0 and 2")

    def resolve_model(self, name: str) -> str:
        if not self.model_prefix or name.startswith(self.model_prefix):
            return name
        return f"{self.model_prefix}{name}"
