from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class Rejection(str, Enum):
    NOT_AUTHENTICATED = "not-authenticated"
    NOT_FOUND = "not-found"
    NOT_PARTICIPANT = "not-participant"
    NOT_GROUP = "not-group"
    NOT_ADMIN = "not-admin"
    NOT_SENDER = "not-sender"
    EXPIRED = "expired"
    DELETED = "deleted"
    ALREADY_EXISTS = "already-exists"
    ALREADY_ADMIN = "already-admin"
    LAST_ADMIN = "last-admin"
    EMPTY_MESSAGE = "empty-message"
    BLOCKED = "blocked"
    ENCRYPTION_UNAVAILABLE = "encryption-unavailable"
    CONFIRMATION_REQUIRED = "confirmation-required"
    KEY_GENERATION_FAILED = "key-generation-failed"
    UNAVAILABLE = "unavailable"
    PARTIAL_FAILURE = "partial-failure"


@dataclass(frozen=True)
class OpResult:
    """
    Outcome of a user-initiated command.

    Expected policy outcomes come back as `success=False` with a stable
    `error` code and a human `message`; only infrastructure failures raise.
    """

    success: bool
    error: Optional[str] = None
    message: Optional[str] = None
    value: Any = None

    @classmethod
    def ok(cls, value: Any = None) -> "OpResult":
        return cls(success=True, value=value)

    @classmethod
    def fail(cls, reason: Rejection, message: Optional[str] = None) -> "OpResult":
        return cls(success=False, error=reason.value, message=message or reason.value)

    def as_dict(self) -> dict:
        data: dict = {"success": self.success}
        if self.error:
            data["error"] = self.error
            data["message"] = self.message
        if self.value is not None:
            data["value"] = self.value
        return data
