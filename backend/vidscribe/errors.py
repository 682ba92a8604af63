"""Error taxonomy shared by every pipeline stage.

Stages raise a :class:`PipelineError` subclass carrying an :class:`ErrorKind`.
The orchestrator turns those exceptions into :class:`Ok` / :class:`Err` outcomes
so the decision "fail fast or let the scheduler try again" is made on the kind,
never on the exception type or message.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar, Union

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Categories of failure a stage can report."""

    RATE_LIMITED = "rate_limited"
    INVALID_REQUEST = "invalid_request"
    UNAUTHORIZED = "unauthorized"
    OVERSIZED_INPUT = "oversized_input"
    PROVIDER_ERROR = "provider_error"
    NETWORK = "network"
    RESOURCE = "resource"
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        """Transient failures a stage may retry locally with backoff."""
        return self in _TRANSIENT

    @property
    def reattemptable(self) -> bool:
        """Failures after which the scheduler may run the whole job again."""
        return self in _TRANSIENT or self in (ErrorKind.RESOURCE, ErrorKind.UNKNOWN)


_TRANSIENT = frozenset({ErrorKind.RATE_LIMITED, ErrorKind.PROVIDER_ERROR, ErrorKind.NETWORK})


class PipelineError(Exception):
    """Base class for typed stage failures."""

    stage = "pipeline"

    def __init__(self, kind: ErrorKind, detail: str, stage: str | None = None) -> None:
        super().__init__(detail)
        self.kind = kind
        self.detail = detail
        if stage:
            self.stage = stage

    def __str__(self) -> str:
        return self.detail

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, detail={self.detail!r})"


class AudioExtractionError(PipelineError):
    stage = "audio_extraction"


class TranscriptionFailed(PipelineError):
    """Raised by the transcription stage; ``reason`` is the error kind."""

    stage = "transcription"

    @property
    def reason(self) -> ErrorKind:
        return self.kind


class PersistenceError(PipelineError):
    stage = "storage"


# ---------------------------------------------------------------------------
# Service-level errors (raised to the API layer, never stored on a job)
# ---------------------------------------------------------------------------


class ServiceError(Exception):
    """Base for errors the public service API raises to its callers."""

    status_code = 400

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class VideoNotFoundError(ServiceError):
    status_code = 404


class JobNotFoundError(ServiceError):
    status_code = 404


class JobConflictError(ServiceError):
    status_code = 409


class InvalidJobStateError(ServiceError):
    status_code = 409


# ---------------------------------------------------------------------------
# Tagged stage outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    error: PipelineError

    @property
    def ok(self) -> bool:
        return False

    @property
    def kind(self) -> ErrorKind:
        return self.error.kind


StageResult = Union[Ok[Any], Err]
