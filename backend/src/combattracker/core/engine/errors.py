from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict

# коды ошибок, которые уходят в CommandRejected / ValidationError
NOT_FOUND = "NOT_FOUND"
INVALID_FORMAT = "INVALID_FORMAT"
PERMISSION_DENIED = "PERMISSION_DENIED"
LOOP_GUARD_TRIPPED = "LOOP_GUARD_TRIPPED"
EMPTY_ORDER = "EMPTY_ORDER"
INVALID_ARGUMENT = "INVALID_ARGUMENT"


class TrackerError(Exception):
    code: str = INVALID_ARGUMENT

    def __init__(self, message: str, **meta: Any) -> None:
        super().__init__(message)
        self.message = message
        self.meta = meta


class NotFoundError(TrackerError):
    code = NOT_FOUND


class PermissionDeniedError(TrackerError):
    code = PERMISSION_DENIED


class EmptyOrderError(TrackerError):
    code = EMPTY_ORDER


@dataclass(frozen=True)
class InvalidFormat:
    """Битый сохранённый JSON. Не исключение: вызывающий получает дефолт + эту метку."""

    source: str
    message: str
    meta: Dict[str, Any] = field(default_factory=dict)

    code: str = INVALID_FORMAT
