import logging
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any

from common.jsonio import JSONFileError, atomic_write_json, read_json
from chatdeck.errors import PersistenceError, ValidationError
from chatdeck.models import ChatSession
from chatdeck.sessions.schema import validate_records

logger = logging.getLogger(__name__)

STORAGE_KEY = "chat-sessions-storage"
EXPORT_PREFIX = "chat-sessions-backup"


@dataclass(frozen=True)
class PersistedState:
    sessions: list[ChatSession]
    current_session_id: str | None


def export_filename(today: date | None = None) -> str:
    today = today or date.today()
    return f"{EXPORT_PREFIX}-{today.isoformat()}.json"


class SessionPersistence:
    """Durable slot holding the whole session collection as one JSON document."""

    def __init__(self, data_dir: str | Path, key: str = STORAGE_KEY):
        self.data_dir = Path(data_dir)
        self.key = key

    @property
    def path(self) -> Path:
        return self.data_dir / f"{self.key}.json"

    def save(self, sessions: list[ChatSession], current_session_id: str | None) -> None:
        data = {
            "sessions": [s.to_record() for s in sessions],
            "currentSessionId": current_session_id,
        }
        try:
            atomic_write_json(self.path, data)
        except OSError as e:
            logger.error(f"Failed to save sessions to {self.path}: {e}")
            return
        logger.debug(f"Saved {len(sessions)} session(s) to {self.path}")

    def load(self, default_model: str = "") -> PersistedState | None:
        try:
            return self._load(default_model)
        except PersistenceError as e:
            logger.error(f"Failed to load sessions from {self.path}: {e}")
            return None

    def _load(self, default_model: str) -> PersistedState | None:
        if not self.path.exists():
            return None
        try:
            data = read_json(self.path)
        except JSONFileError as e:
            raise PersistenceError(e.reason) from e
        if not isinstance(data, dict):
            raise PersistenceError("stored data is not an object")

        current = data.get("currentSessionId")
        if current is not None and not isinstance(current, str):
            raise PersistenceError("currentSessionId must be a string or null")
        try:
            sessions = validate_records(data.get("sessions", []), default_model=default_model)
        except ValidationError as e:
            raise PersistenceError(str(e)) from e

        logger.info(f"Loaded {len(sessions)} session(s) from {self.path}")
        return PersistedState(sessions=sessions, current_session_id=current)


def export_sessions(
    records: list[dict[str, Any]], directory: str | Path, today: date | None = None
) -> Path:
    target = Path(directory) / export_filename(today)
    atomic_write_json(target, records)
    logger.info(f"Exported {len(records)} session(s) to {target}")
    return target


def read_import_file(path: str | Path) -> Any:
    try:
        return read_json(path)
    except JSONFileError as e:
        raise ValidationError(f"Failed to read import file {e}") from e
