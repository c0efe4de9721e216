"""Line-delimited JSON control protocol.

One request per line, one response per line, UTF-8 JSON:

    {"kind": "Ping"}                       -> {"kind": "Pong", "version": ...}
    {"kind": "Status"}                     -> {"kind": "Status", ...}
    {"kind": "Trigger", "repo": "/path"}   -> {"kind": "TriggerResult", "outcomes": [...]}

Anything that cannot be decoded yields {"kind": "Error", "code": ..., "message": ...}.
Both directions are discriminated unions on `kind`.
"""

import datetime
from enum import StrEnum
from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

from .engine import CycleOutcome, OutcomeStatus, Phase, PhaseResult, PhaseStatus
from .scheduler import RepoStatus


class ErrorCode(StrEnum):
    MALFORMED_REQUEST = "malformed_request"
    UNKNOWN_KIND = "unknown_kind"
    INVALID_FIELD = "invalid_field"
    FRAME_TOO_LARGE = "frame_too_large"
    UNKNOWN_REPOSITORY = "unknown_repository"
    REPOSITORY_DISABLED = "repository_disabled"
    SHUTTING_DOWN = "shutting_down"
    INTERNAL = "internal_error"


class ProtocolError(ValueError):
    """A frame could not be decoded into a request or response."""

    def __init__(self, code: ErrorCode, message: str):
        super().__init__(message)
        self.code = code


class _Frame(BaseModel):
    model_config = {"frozen": True}


# Requests


class Ping(_Frame):
    kind: Literal["Ping"] = "Ping"


class Status(_Frame):
    kind: Literal["Status"] = "Status"


class Trigger(_Frame):
    """Run a cycle for `repo`, or every enabled repository when it is None."""

    kind: Literal["Trigger"] = "Trigger"
    repo: Path | None = None

    @field_validator("repo", mode="before")
    @classmethod
    def _expand_repo(cls, value: Any) -> Path | None:
        if value is None:
            return None
        if not isinstance(value, str | Path) or not str(value):
            raise ValueError("'repo' must be a non-empty string")
        return Path(value).expanduser()


ControlRequest = Annotated[Ping | Status | Trigger, Field(discriminator="kind")]


# Responses


class PhaseReport(_Frame):
    phase: Phase
    status: PhaseStatus
    message: str = ""
    stderr: str = ""

    @classmethod
    def from_result(cls, result: PhaseResult) -> "PhaseReport":
        return cls(
            phase=result.phase,
            status=result.status,
            message=result.message,
            stderr=result.stderr,
        )


class OutcomeReport(_Frame):
    """One finished cycle as sent over the wire."""

    path: Path
    status: OutcomeStatus
    committed: bool
    message: str
    started_at: datetime.datetime
    finished_at: datetime.datetime
    phases: tuple[PhaseReport, ...] = ()

    @classmethod
    def from_outcome(cls, outcome: CycleOutcome) -> "OutcomeReport":
        return cls(
            path=outcome.path,
            status=outcome.status,
            committed=outcome.committed,
            message=outcome.message,
            started_at=outcome.started_at.replace(microsecond=0),
            finished_at=outcome.finished_at.replace(microsecond=0),
            phases=tuple(PhaseReport.from_result(p) for p in outcome.phases),
        )


class RepositoryReport(_Frame):
    path: Path
    enabled: bool
    phase: Phase
    generation: int
    interval_seconds: int
    last_started: datetime.datetime | None = None
    last_finished: datetime.datetime | None = None
    last_outcome: OutcomeReport | None = None

    @classmethod
    def from_status(cls, status: RepoStatus) -> "RepositoryReport":
        return cls(
            path=status.path,
            enabled=status.enabled,
            phase=status.phase,
            generation=status.generation,
            interval_seconds=status.interval_seconds,
            last_started=_seconds(status.last_started),
            last_finished=_seconds(status.last_finished),
            last_outcome=(
                OutcomeReport.from_outcome(status.last_outcome) if status.last_outcome else None
            ),
        )


class Pong(_Frame):
    kind: Literal["Pong"] = "Pong"
    version: str


class StatusReply(_Frame):
    kind: Literal["Status"] = "Status"
    version: str
    uptime_seconds: int
    check_interval_seconds: int
    shutting_down: bool
    repositories: tuple[RepositoryReport, ...] = ()


class TriggerResult(_Frame):
    kind: Literal["TriggerResult"] = "TriggerResult"
    outcomes: tuple[OutcomeReport, ...] = ()


class ErrorReply(_Frame):
    kind: Literal["Error"] = "Error"
    code: ErrorCode
    message: str


ControlResponse = Annotated[
    Pong | StatusReply | TriggerResult | ErrorReply, Field(discriminator="kind")
]

_REQUESTS = TypeAdapter(ControlRequest)
_RESPONSES = TypeAdapter(ControlResponse)


def _seconds(value: datetime.datetime | None) -> datetime.datetime | None:
    return value.replace(microsecond=0) if value else None


def _request_error(error: ValidationError) -> ProtocolError:
    """Picks the error code that best describes a rejected request frame."""
    first = error.errors()[0]
    where = ".".join(str(part) for part in first["loc"])
    message = f"{where}: {first['msg']}" if where else first["msg"]

    if first["type"] == "union_tag_invalid":
        data = first["input"]
        if isinstance(data, dict) and isinstance(data.get("kind"), str):
            return ProtocolError(ErrorCode.UNKNOWN_KIND, f"Unknown request kind: {data['kind']}")
        return ProtocolError(ErrorCode.MALFORMED_REQUEST, "'kind' must be a string")
    # Errors inside a known request carry (kind, field) locations.
    if len(first["loc"]) >= 2:
        return ProtocolError(ErrorCode.INVALID_FIELD, message)
    return ProtocolError(ErrorCode.MALFORMED_REQUEST, message)


def decode_request(line: bytes | str) -> Ping | Status | Trigger:
    """Parses one request frame.

    Raises:
        ProtocolError: If the frame is not a well-formed request.
    """
    try:
        return _REQUESTS.validate_json(line)
    except ValidationError as e:
        raise _request_error(e) from e


def encode_request(request: Ping | Status | Trigger) -> bytes:
    """Serializes a request as one newline-terminated frame."""
    return (request.model_dump_json(exclude_none=True) + "\n").encode("utf-8")


def encode_response(response: BaseModel) -> bytes:
    """Serializes a response as one newline-terminated frame."""
    return (response.model_dump_json() + "\n").encode("utf-8")


def decode_response(line: bytes | str) -> Pong | StatusReply | TriggerResult | ErrorReply:
    """Parses one response frame.

    Raises:
        ProtocolError: If the frame is not a known response.
    """
    try:
        return _RESPONSES.validate_json(line)
    except ValidationError as e:
        raise ProtocolError(ErrorCode.MALFORMED_REQUEST, f"Invalid response: {e}") from e
