from common import llm
from common.ids import generate_id
from common.jsonio import JSONFileError, atomic_write_json, read_json

__all__ = ["llm", "generate_id", "JSONFileError", "atomic_write_json", "read_json"]
