from enum import Enum, IntEnum
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class BackupScope(str, Enum):
    full = "full"
    reduced = "reduced"


class JobRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    scope: BackupScope = BackupScope.full
    payload: dict = Field(default_factory=dict)

    def reduced(self) -> "JobRequest":
        """Copy of this request with the scope forced to reduced"""
        return self.model_copy(update={"scope": BackupScope.reduced})


class JobHandle(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str


class TriggerStatus(str, Enum):
    accepted = "accepted"
    rate_limited = "rate_limited"
    auth_failed = "auth_failed"
    unknown_error = "unknown_error"


class TriggerOutcome(BaseModel):
    status: TriggerStatus
    handle: Optional[JobHandle] = None
    message: str = ""

    @classmethod
    def accepted(cls, handle: JobHandle) -> "TriggerOutcome":
        return cls(status=TriggerStatus.accepted, handle=handle)

    @classmethod
    def rate_limited(cls, message: str = "") -> "TriggerOutcome":
        return cls(status=TriggerStatus.rate_limited, message=message)

    @classmethod
    def auth_failed(cls, message: str = "") -> "TriggerOutcome":
        return cls(status=TriggerStatus.auth_failed, message=message)

    @classmethod
    def unknown_error(cls, message: str) -> "TriggerOutcome":
        return cls(status=TriggerStatus.unknown_error, message=message)


class JobState(str, Enum):
    in_progress = "in_progress"
    succeeded = "succeeded"
    failed = "failed"


class ArtifactRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str
    filename: str = "backup.zip"


class StatusSnapshot(BaseModel):
    state: JobState
    raw_percentage: Any = None
    message: str = ""
    artifact: Optional[ArtifactRef] = None


def clamp_percentage(raw: Any, previous: int = 0) -> int:
    """Clamps a raw progress value into [0, 100], falling back to `previous` for non-numeric input"""
    if isinstance(raw, bool) or raw is None:
        return previous
    try:
        value = float(str(raw).strip().rstrip("%"))
    except ValueError:
        return previous
    if value != value:  # NaN
        return previous
    return int(min(max(value, 0.0), 100.0))


class ProgressState(BaseModel):
    percentage: int = Field(default=0, ge=0, le=100)
    terminal: bool = False

    def update(self, raw: Any, terminal: bool = False) -> int:
        self.percentage = clamp_percentage(raw, self.percentage)
        self.terminal = terminal
        return self.percentage


class DownloadOutcome(BaseModel):
    path: Optional[Path] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.path is not None


class ExitCode(IntEnum):
    success = 0
    status_failed = 1
    invalid_input = 2
    fetch_failed = 3
    creation_failed = 4
    creation_unknown_error = 5
    success_degraded = 10
    cancelled = 130
    auth_failed = 401


class FailureKind(str, Enum):
    invalid_input = "invalid_input"
    auth_failure = "auth_failure"
    rate_limited = "rate_limited"
    unknown_trigger_error = "unknown_trigger_error"
    poll_terminal_failure = "poll_terminal_failure"
    fetch_failure = "fetch_failure"
    cancelled = "cancelled"


_EXIT_CODES = {
    FailureKind.invalid_input: ExitCode.invalid_input,
    FailureKind.auth_failure: ExitCode.auth_failed,
    FailureKind.rate_limited: ExitCode.creation_failed,
    FailureKind.unknown_trigger_error: ExitCode.creation_unknown_error,
    FailureKind.poll_terminal_failure: ExitCode.status_failed,
    FailureKind.fetch_failure: ExitCode.fetch_failed,
    FailureKind.cancelled: ExitCode.cancelled,
}


class FailureReason(BaseModel):
    kind: FailureKind
    message: str

    @property
    def exit_code(self) -> ExitCode:
        return _EXIT_CODES[self.kind]


class SessionState(str, Enum):
    idle = "idle"
    triggering = "triggering"
    triggered = "triggered"
    trigger_failed = "trigger_failed"
    polling = "polling"
    poll_failed = "poll_failed"
    poll_succeeded = "poll_succeeded"
    fetching = "fetching"
    fetch_failed = "fetch_failed"
    fetched = "fetched"


TERMINAL_STATES = frozenset(
    {
        SessionState.trigger_failed,
        SessionState.poll_failed,
        SessionState.fetch_failed,
        SessionState.fetched,
    }
)


class SessionOutcome(str, Enum):
    success = "success"
    success_degraded = "success_degraded"
    failure = "failure"


class SessionResult(BaseModel):
    state: SessionState
    artifact_location: Optional[Path] = None
    degraded: bool = False
    failure: Optional[FailureReason] = None
    elapsed_time: float = 0.0

    @property
    def outcome(self) -> SessionOutcome:
        if self.failure is not None:
            return SessionOutcome.failure
        if self.degraded:
            return SessionOutcome.success_degraded
        return SessionOutcome.success

    @property
    def exit_code(self) -> ExitCode:
        if self.failure is not None:
            return self.failure.exit_code
        return ExitCode.success_degraded if self.degraded else ExitCode.success


class TriggeredJob(BaseModel):
    handle: JobHandle
    degraded: bool = False


class BackupSessionConfig(BaseModel):
    """Per-session polling settings, passed by value into the client.

    `wait_minutes` is counted in trigger attempts: each frequency-limited
    retry consumes one minute of budget whatever `retry_interval` is.
    """

    model_config = ConfigDict(frozen=True)

    wait_minutes: int = Field(default=0, ge=0)
    retry_interval: float = Field(default=60.0, ge=0)
    progress_interval: float = Field(default=10.0, ge=0)
