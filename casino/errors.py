"""Typed failures for dispute operations.

Engine and coordinator calls never raise these across the API boundary:
they come back wrapped in a Result, and the HTTP layer maps
``status_code`` onto the response.
"""

from dataclasses import dataclass
from typing import Any


class DisputeError(Exception):
    kind = "error"
    status_code = 400

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class NotFound(DisputeError):
    kind = "not_found"
    status_code = 404


class InvalidState(DisputeError):
    kind = "invalid_state"
    status_code = 409


class Forbidden(DisputeError):
    """Caller is not allowed to act on this dispute (wrong actor, banned)."""
    kind = "forbidden"
    status_code = 400


class InsufficientFunds(DisputeError):
    kind = "insufficient_funds"
    status_code = 400

    def __init__(self, message: str = "", user_id: int | None = None, role: str | None = None):
        super().__init__(message)
        self.user_id = user_id
        self.role = role


class ValidationFailed(DisputeError):
    kind = "validation"
    status_code = 400


class AlreadySettled(DisputeError):
    """Lost the settlement race. Callers re-read the finished dispute."""
    kind = "already_settled"
    status_code = 409


@dataclass
class Result:
    """Success payload or typed failure."""
    value: Any = None
    error: DisputeError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self):
        if self.error is not None:
            raise self.error
        return self.value

    @classmethod
    def success(cls, value=None) -> "Result":
        return cls(value=value)

    @classmethod
    def failure(cls, error: DisputeError) -> "Result":
        return cls(error=error)
