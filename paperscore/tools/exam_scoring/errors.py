"""Exceptions raised by the exam scoring tool."""

from typing import Optional


class ScoringError(Exception):
    """Base class for all exam scoring errors."""


class NotFoundError(ScoringError, KeyError):
    """A referenced rubric or submission does not exist."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} {identifier} not found")

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return self.args[0]


class InvalidTransitionError(ScoringError):
    """An operation was requested from a status that does not permit it."""

    def __init__(self, submission_id: str, status: str, trigger: str):
        self.submission_id = submission_id
        self.status = status
        self.trigger = trigger
        super().__init__(
            f"Cannot {trigger.replace('_', ' ')} submission {submission_id} in status '{status}'"
        )


class AdapterError(ScoringError):
    """The extraction or scoring adapter failed or returned unusable data."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message)


class ConsistencyError(ScoringError, ValueError):
    """A document failed validation at persistence time."""


class ConcurrentModificationError(ScoringError):
    """The stored document changed since it was read."""

    def __init__(self, submission_id: str, expected: int, actual: int):
        self.submission_id = submission_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Submission {submission_id} was modified concurrently "
            f"(expected revision {expected}, found {actual})"
        )


class NothingToExportError(ScoringError):
    """No scored or reviewed submissions exist for the requested rubric."""


class BatchCancelled(ScoringError):
    """A batch was cancelled through its cancellation token."""
