import asyncio
from pathlib import Path

import pytest
from cloud_backup_client.backup_client import BackupSessionClient, SessionFailed
from cloud_backup_client.models import (
    ArtifactRef,
    BackupScope,
    BackupSessionConfig,
    DownloadOutcome,
    ExitCode,
    FailureKind,
    JobHandle,
    JobRequest,
    JobState,
    SessionOutcome,
    SessionState,
    StatusSnapshot,
    TriggerOutcome,
    clamp_percentage,
)

HANDLE = JobHandle(id="10042")
ARTIFACT = ArtifactRef(url="https://acme.atlassian.net/plugins/servlet/export", filename="JIRA-backup.zip")


class FakeTransport:
    """In-memory transport replaying scripted outcomes; the last one repeats."""

    def __init__(self, trigger_outcomes, snapshots=(), download_error=None):
        self.trigger_outcomes = list(trigger_outcomes)
        self.snapshots = list(snapshots)
        self.download_error = download_error
        self.trigger_requests = []
        self.status_requests = 0

    @staticmethod
    def _next(items):
        return items.pop(0) if len(items) > 1 else items[0]

    async def trigger(self, request):
        self.trigger_requests.append(request)
        return self._next(self.trigger_outcomes)

    async def get_status(self, handle):
        self.status_requests += 1
        return self._next(self.snapshots)

    async def download(self, artifact, target):
        if self.download_error is not None:
            return DownloadOutcome(error=self.download_error)
        Path(target).write_bytes(b"backup")
        return DownloadOutcome(path=target)


class RecordingSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, delay):
        self.calls.append(delay)


def progress(value):
    return StatusSnapshot(state=JobState.in_progress, raw_percentage=value)


def completed(value=100):
    return StatusSnapshot(state=JobState.succeeded, raw_percentage=value, artifact=ARTIFACT)


RATE_LIMITED = TriggerOutcome.rate_limited("Backup frequency is limited")
ACCEPTED = TriggerOutcome.accepted(HANDLE)


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


def make_client(transport, sleep, wait_minutes=0, **kwargs):
    config = BackupSessionConfig(
        wait_minutes=wait_minutes, retry_interval=60.0, progress_interval=10.0
    )
    return BackupSessionClient(transport, config, sleep=sleep, **kwargs)


@pytest.mark.asyncio
async def test_zero_budget_rate_limited_fails_without_sleeping(sleep, tmp_path):
    transport = FakeTransport([RATE_LIMITED])
    client = make_client(transport, sleep, wait_minutes=0)

    result = await client.run(JobRequest(), tmp_path)

    assert result.state == SessionState.trigger_failed
    assert result.failure.kind == FailureKind.rate_limited
    assert result.exit_code == ExitCode.creation_failed
    assert len(transport.trigger_requests) == 1
    assert sleep.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize("budget", [1, 2, 5])
async def test_fallback_happens_once_after_budget_retries(sleep, budget):
    transport = FakeTransport([RATE_LIMITED] * (budget + 1) + [ACCEPTED])
    client = make_client(transport, sleep, wait_minutes=budget)

    job = await client.trigger(JobRequest())

    scopes = [request.scope for request in transport.trigger_requests]
    assert scopes == [BackupScope.full] * (budget + 1) + [BackupScope.reduced]
    assert sleep.calls == [60.0] * budget
    assert client.trigger_attempts == budget
    assert job.degraded is True
    assert job.handle == HANDLE


@pytest.mark.asyncio
async def test_no_fallback_when_retry_succeeds_within_budget(sleep):
    transport = FakeTransport([RATE_LIMITED, RATE_LIMITED, ACCEPTED])
    client = make_client(transport, sleep, wait_minutes=3)

    job = await client.trigger(JobRequest())

    assert job.degraded is False
    assert all(r.scope == BackupScope.full for r in transport.trigger_requests)
    assert len(sleep.calls) == 2


@pytest.mark.asyncio
async def test_auth_failure_is_fatal_with_budget_left(sleep):
    transport = FakeTransport([RATE_LIMITED, TriggerOutcome.auth_failed("You must be authenticated")])
    client = make_client(transport, sleep, wait_minutes=5)

    with pytest.raises(SessionFailed) as excinfo:
        await client.trigger(JobRequest())

    assert excinfo.value.state == SessionState.trigger_failed
    assert excinfo.value.reason.kind == FailureKind.auth_failure
    assert excinfo.value.reason.exit_code == ExitCode.auth_failed
    assert len(transport.trigger_requests) == 2


@pytest.mark.asyncio
async def test_reduced_request_is_not_retried(sleep, tmp_path):
    transport = FakeTransport([RATE_LIMITED])
    client = make_client(transport, sleep, wait_minutes=5)

    result = await client.run(JobRequest(scope=BackupScope.reduced), tmp_path)

    assert result.exit_code == ExitCode.creation_failed
    assert len(transport.trigger_requests) == 1
    assert sleep.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "fallback, kind, exit_code",
    [
        (RATE_LIMITED, FailureKind.rate_limited, ExitCode.creation_failed),
        (TriggerOutcome.auth_failed(), FailureKind.auth_failure, ExitCode.auth_failed),
        (TriggerOutcome.unknown_error("boom"), FailureKind.unknown_trigger_error, ExitCode.creation_unknown_error),
    ],
)
async def test_failed_fallback_is_fatal(sleep, tmp_path, fallback, kind, exit_code):
    transport = FakeTransport([RATE_LIMITED, RATE_LIMITED, fallback])
    client = make_client(transport, sleep, wait_minutes=1)

    result = await client.run(JobRequest(), tmp_path)

    assert result.state == SessionState.trigger_failed
    assert result.failure.kind == kind
    assert result.exit_code == exit_code
    assert len(transport.trigger_requests) == 3


@pytest.mark.parametrize(
    "raw, expected",
    [(-5, 0), (0, 0), (57, 57), (101, 100), ("unknown", 33), ("57%", 57), (None, 33), (42.9, 42)],
)
def test_clamp_percentage(raw, expected):
    assert clamp_percentage(raw, previous=33) == expected


@pytest.mark.asyncio
async def test_reported_progress_is_clamped(sleep):
    reported = []

    async def sink(state):
        reported.append(state.percentage)

    transport = FakeTransport(
        [ACCEPTED],
        [progress(-5), progress(0), progress(101), progress(57), progress("unknown"), completed()],
    )
    client = make_client(transport, sleep, on_progress=sink)

    artifact = await client.poll_until_terminal(HANDLE)

    assert artifact == ARTIFACT
    assert reported == [0, 0, 100, 57, 57, 100]
    assert sleep.calls == [10.0] * 6
    assert client.progress.terminal is True


@pytest.mark.asyncio
async def test_scenario_a_success(sleep, tmp_path):
    reported = []

    async def sink(state):
        reported.append(state.percentage)

    transport = FakeTransport([ACCEPTED], [progress(0), progress(50), completed(100)])
    client = make_client(transport, sleep, on_progress=sink)

    result = await client.run(JobRequest(), tmp_path)

    assert result.outcome == SessionOutcome.success
    assert result.exit_code == ExitCode.success
    assert result.state == SessionState.fetched
    assert result.degraded is False
    assert result.artifact_location == tmp_path / "JIRA-backup.zip"
    assert result.artifact_location.read_bytes() == b"backup"
    assert reported == [0, 50, 100]


@pytest.mark.asyncio
async def test_scenario_b_degraded(sleep, tmp_path):
    transport = FakeTransport(
        [RATE_LIMITED, RATE_LIMITED, RATE_LIMITED, ACCEPTED], [completed()]
    )
    client = make_client(transport, sleep, wait_minutes=2)

    result = await client.run(JobRequest(), tmp_path)

    assert result.outcome == SessionOutcome.success_degraded
    assert result.exit_code == ExitCode.success_degraded
    assert result.state == SessionState.fetched
    assert result.degraded is True
    assert client.trigger_attempts == 2


@pytest.mark.asyncio
async def test_scenario_c_unknown_error(sleep, tmp_path):
    transport = FakeTransport([TriggerOutcome.unknown_error("Internal server error")])
    client = make_client(transport, sleep, wait_minutes=5)

    result = await client.run(JobRequest(), tmp_path)

    assert result.state == SessionState.trigger_failed
    assert result.failure.kind == FailureKind.unknown_trigger_error
    assert "Internal server error" in result.failure.message
    assert result.exit_code == ExitCode.creation_unknown_error
    assert len(transport.trigger_requests) == 1
    assert sleep.calls == []


@pytest.mark.asyncio
async def test_scenario_d_poll_failure_message_is_verbatim(sleep, tmp_path):
    transport = FakeTransport(
        [ACCEPTED], [progress(10), StatusSnapshot(state=JobState.failed, message="disk full")]
    )
    client = make_client(transport, sleep)

    result = await client.run(JobRequest(), tmp_path)

    assert result.state == SessionState.poll_failed
    assert result.failure.kind == FailureKind.poll_terminal_failure
    assert result.failure.message == "disk full"
    assert result.exit_code == ExitCode.status_failed
    assert result.outcome == SessionOutcome.failure


@pytest.mark.asyncio
async def test_fetch_failure(sleep, tmp_path):
    transport = FakeTransport([ACCEPTED], [completed()], download_error="connection reset")
    client = make_client(transport, sleep)

    result = await client.run(JobRequest(), tmp_path)

    assert result.state == SessionState.fetch_failed
    assert result.failure.kind == FailureKind.fetch_failure
    assert "connection reset" in result.failure.message
    assert result.exit_code == ExitCode.fetch_failed


@pytest.mark.asyncio
async def test_missing_destination_is_invalid_input(sleep, tmp_path):
    transport = FakeTransport([ACCEPTED])
    client = make_client(transport, sleep)

    result = await client.run(JobRequest(), tmp_path / "missing")

    assert result.failure.kind == FailureKind.invalid_input
    assert result.exit_code == ExitCode.invalid_input
    assert transport.trigger_requests == []


@pytest.mark.asyncio
async def test_cancellation_during_polling(sleep, tmp_path):
    cancel_event = asyncio.Event()

    async def sink(state):
        if state.percentage >= 50:
            cancel_event.set()

    transport = FakeTransport([ACCEPTED], [progress(25), progress(50), progress(75)])
    client = make_client(transport, sleep, on_progress=sink, cancel_event=cancel_event)

    result = await client.run(JobRequest(), tmp_path)

    assert result.state == SessionState.poll_failed
    assert result.failure.kind == FailureKind.cancelled
    assert result.exit_code == ExitCode.cancelled
    assert transport.status_requests == 2


@pytest.mark.asyncio
async def test_cancellation_wakes_a_long_wait(tmp_path):
    cancel_event = asyncio.Event()
    transport = FakeTransport([RATE_LIMITED])
    config = BackupSessionConfig(wait_minutes=5, retry_interval=3600.0)
    client = BackupSessionClient(transport, config, cancel_event=cancel_event)

    asyncio.get_event_loop().call_later(0.05, cancel_event.set)
    result = await asyncio.wait_for(client.run(JobRequest(), tmp_path), timeout=5)

    assert result.state == SessionState.trigger_failed
    assert result.exit_code == ExitCode.cancelled
