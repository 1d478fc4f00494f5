"""
Error taxonomy for the scheduling engine.

Routers map these to HTTP responses through `error_to_http`, so route
handlers stay thin and new error types only need a rule here.

Conflicts found by the detector and the "manual review required" outcome
of the optimizer are normal results, not exceptions.
"""
from __future__ import annotations

from typing import Callable, List, Sequence

from fastapi import HTTPException


class SchedulingError(Exception):
    """Base class for every error raised by the engine or its stores."""


class ValidationError(SchedulingError, ValueError):
    """Malformed input: bad date range, missing identifiers, end before start."""


class SessionNotFoundError(ValidationError):
    def __init__(self, session_id: int):
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class DataAccessError(SchedulingError):
    """A store or the event log was unreachable or returned malformed data."""


class ConcurrencyConflict(SchedulingError):
    """
    Raised at commit time when the re-run conflict check inside the
    transaction finds a booking that appeared after the options were
    generated. Callers retry the whole check -> commit cycle once.
    """

    def __init__(self, conflicts: Sequence = ()):
        self.conflicts = list(conflicts)
        descriptions = "; ".join(c.description for c in self.conflicts)
        super().__init__(
            "Slot is no longer free" + (f": {descriptions}" if descriptions else "")
        )


STATUS_BAD_REQUEST = 400
STATUS_NOT_FOUND = 404
STATUS_CONFLICT = 409
STATUS_SERVICE_UNAVAILABLE = 503
STATUS_INTERNAL_ERROR = 500


# (predicate, status_code). First match wins, so subclasses go first.
ERROR_RULES: List[tuple[Callable[[Exception], bool], int]] = [
    (lambda e: isinstance(e, SessionNotFoundError), STATUS_NOT_FOUND),
    (lambda e: isinstance(e, ValidationError), STATUS_BAD_REQUEST),
    (lambda e: isinstance(e, ConcurrencyConflict), STATUS_CONFLICT),
    (lambda e: isinstance(e, DataAccessError), STATUS_SERVICE_UNAVAILABLE),
]


def error_to_http(exc: Exception) -> HTTPException:
    """
    Map an engine exception into an HTTPException.
    Unknown exceptions become a 500 with the exception message.
    """
    for predicate, status_code in ERROR_RULES:
        if predicate(exc):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=STATUS_INTERNAL_ERROR, detail=str(exc))
