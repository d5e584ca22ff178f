"""Error taxonomy shared by the backup engine and its boundary service."""

from __future__ import annotations


class ConfigHistoryError(Exception):
    """Base class for all engine errors. ``kind`` is reported across the boundary."""

    kind = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "error": self.message}


class NotFoundError(ConfigHistoryError):
    """Unknown config or backup reference. Not retried."""

    kind = "not_found"


class ReadError(ConfigHistoryError):
    """Reading live or stored content failed."""

    kind = "read_error"

    def __init__(self, message: str, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class WriteError(ConfigHistoryError):
    """Writing or deleting a backup artifact or live file failed."""

    kind = "write_error"

    def __init__(self, message: str, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class ValidationError(ConfigHistoryError):
    """Settings document rejected. Nothing from it was applied."""

    kind = "validation_error"

    def __init__(self, message: str, problems: list[str] | None = None) -> None:
        super().__init__(message)
        self.problems = problems or [message]


class ConcurrencyConflict(ConfigHistoryError):
    """Another snapshot or restore holds the config's lock. Retry the whole operation."""

    kind = "concurrency_conflict"
