from dataclasses import dataclass


class ChatDeckError(Exception):
    pass


@dataclass(frozen=True)
class RecordProblem:
    index: int
    reason: str

    def __str__(self) -> str:
        return f"record {self.index}: {self.reason}"


class ValidationError(ChatDeckError):
    """Raised when imported session data does not match the session schema."""

    def __init__(self, message: str, problems: list[RecordProblem] | None = None):
        self.problems = list(problems or [])
        if self.problems:
            details = "; ".join(str(p) for p in self.problems[:5])
            if len(self.problems) > 5:
                details += f" (+{len(self.problems) - 5} more)"
            message = f"{message}: {details}"
        super().__init__(message)


class TransportError(ChatDeckError):
    pass


class CancellationError(ChatDeckError):
    pass


class PersistenceError(ChatDeckError):
    pass
