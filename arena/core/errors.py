from enum import Enum
from typing import Any, Dict, Optional

from fastapi import status


class ErrorKind(str, Enum):
    INVALID_ARGUMENT = "invalid-argument"
    NOT_FOUND = "not-found"
    FAILED_PRECONDITION = "failed-precondition"
    ALREADY_EXISTS = "already-exists"
    INTERNAL = "internal"


HTTP_STATUS_BY_KIND = {
    ErrorKind.INVALID_ARGUMENT: status.HTTP_400_BAD_REQUEST,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.FAILED_PRECONDITION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.ALREADY_EXISTS: status.HTTP_409_CONFLICT,
    ErrorKind.INTERNAL: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


class ArenaError(Exception):
    """
    Structured failure raised by the service layer.
    The API layer turns it into a response with the matching HTTP status.
    """

    def __init__(self, kind: ErrorKind, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.kind = ErrorKind(kind)
        self.message = message
        self.details = details or {}

    @property
    def http_status(self) -> int:
        return HTTP_STATUS_BY_KIND[self.kind]

    def __repr__(self):
        return f"ArenaError({self.kind.value!r}, {self.message!r})"


def invalid_argument(message: str) -> ArenaError:
    return ArenaError(ErrorKind.INVALID_ARGUMENT, message)


def not_found(message: str) -> ArenaError:
    return ArenaError(ErrorKind.NOT_FOUND, message)


def failed_precondition(message: str, **details) -> ArenaError:
    return ArenaError(ErrorKind.FAILED_PRECONDITION, message, details)


def already_exists(message: str) -> ArenaError:
    return ArenaError(ErrorKind.ALREADY_EXISTS, message)


def internal(message: str) -> ArenaError:
    return ArenaError(ErrorKind.INTERNAL, message)
