import json
import os
from pathlib import Path
from typing import Any


class JSONFileError(ValueError):
    def __init__(self, path: Path, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"{path}: {reason}")


def read_json(path: str | Path) -> Any:
    """Parse a UTF-8 JSON file, raising ``JSONFileError`` if it can't be read or parsed."""
    source = Path(path)
    try:
        text = source.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise JSONFileError(source, "not UTF-8 text") from e
    except OSError as e:
        raise JSONFileError(source, e.strerror or str(e)) from e
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise JSONFileError(source, f"line {e.lineno} column {e.colno}: {e.msg}") from e


def atomic_write_json(path: str | Path, data: Any) -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = target.with_suffix(f"{target.suffix}.tmp")
    payload = json.dumps(data, indent=2, ensure_ascii=False)
    with open(tmp_path, "w", encoding="utf-8") as handle:
        handle.write(payload)
        handle.write("\n")
    os.replace(tmp_path, target)
