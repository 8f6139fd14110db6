from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

_T = TypeVar("_T")


class ErrorKind(Enum):
    """Expected, caller-recoverable failures. None of them mutate state."""

    CAPACITY_EXCEEDED = "capacity_exceeded"
    SESSION_NOT_FOUND = "session_not_found"
    SESSION_EXPIRED = "session_expired"
    SESSION_FULL = "session_full"
    SESSION_PAUSED = "session_paused"
    PARTICIPANT_NOT_FOUND = "participant_not_found"
    FORBIDDEN = "forbidden"
    NO_ACTIVE_ROUND = "no_active_round"
    ALREADY_VOTING = "already_voting"
    ALREADY_REVEALED = "already_revealed"
    INVALID_VOTE_VALUE = "invalid_vote_value"
    INVALID_TRANSFER_TARGET = "invalid_transfer_target"


@dataclass
class Result(Generic[_T]):
    """Tagged outcome of a request-style operation."""

    ok: bool
    value: _T | None = None
    error: ErrorKind | None = None
    message: str = ""

    @classmethod
    def success(cls, value: _T | None = None) -> Result[_T]:
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: ErrorKind, message: str = "") -> Result[_T]:
        return cls(ok=False, error=error, message=message or error.value.replace("_", " "))

    def to_dict(self) -> dict:
        if self.ok:
            return {"ok": True}
        return {"ok": False, "code": self.error.value if self.error else None, "message": self.message}
