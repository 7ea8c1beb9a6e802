import asyncio
from pathlib import Path
from typing import Awaitable, Callable, NoReturn, Optional, Union

from loguru import logger
from cloud_backup_client.models import (
    ArtifactRef,
    BackupScope,
    BackupSessionConfig,
    FailureKind,
    FailureReason,
    JobHandle,
    JobRequest,
    JobState,
    ProgressState,
    SessionResult,
    SessionState,
    TriggeredJob,
    TriggerOutcome,
    TriggerStatus,
)
from cloud_backup_client.transports import BackupTransport, ProgressSink

_FAILED_STATE = {
    SessionState.idle: SessionState.trigger_failed,
    SessionState.triggering: SessionState.trigger_failed,
    SessionState.triggered: SessionState.poll_failed,
    SessionState.polling: SessionState.poll_failed,
    SessionState.poll_succeeded: SessionState.fetch_failed,
    SessionState.fetching: SessionState.fetch_failed,
}


class SessionFailed(Exception):
    """Raised by a session stage when the session cannot continue.

    Attributes:
        state: Terminal session state the failure leads to.
        reason: Failure kind and human-readable message.
    """

    def __init__(self, state: SessionState, reason: FailureReason):
        self.state = state
        self.reason = reason
        super().__init__(reason.message)


class BackupSessionClient:
    """Drives one backup job through trigger, progress polling and download.

    A client owns the state of a single session; use one instance (and one
    transport) per site when backing up several sites at once.
    """

    def __init__(
        self,
        transport: BackupTransport,
        config: Optional[BackupSessionConfig] = None,
        on_progress: Optional[ProgressSink] = None,
        cancel_event: Optional[asyncio.Event] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.transport = transport
        self.config = config or BackupSessionConfig()
        self.on_progress = on_progress
        self.cancel_event = cancel_event
        self.logger = logger
        self.state = SessionState.idle
        self.progress = ProgressState()
        self.trigger_attempts = 0
        self.degraded = False
        self._sleep = sleep

    def _fail(self, kind: FailureKind, message: str) -> NoReturn:
        """Logs the failure and aborts the current stage"""
        reason = FailureReason(kind=kind, message=message)
        self.logger.error(message)
        raise SessionFailed(_FAILED_STATE.get(self.state, self.state), reason)

    def _check_cancelled(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            self._fail(
                FailureKind.cancelled,
                f"Backup session cancelled while {self.state.value}",
            )

    async def _wait(self, delay: float) -> None:
        """Sleeps for `delay` seconds, waking early if the session is cancelled"""
        self._check_cancelled()
        if self.cancel_event is None:
            await self._sleep(delay)
        else:
            sleeper = asyncio.ensure_future(self._sleep(delay))
            canceller = asyncio.ensure_future(self.cancel_event.wait())
            _, pending = await asyncio.wait(
                {sleeper, canceller}, return_when=asyncio.FIRST_COMPLETED
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        self._check_cancelled()

    def _raise_for_fatal(self, outcome: TriggerOutcome) -> None:
        """Ends the session on trigger outcomes that are never retried"""
        if outcome.status == TriggerStatus.auth_failed:
            self._fail(
                FailureKind.auth_failure,
                f"Authentication failed: {outcome.message or 'credentials were rejected'}",
            )
        if outcome.status == TriggerStatus.unknown_error:
            self._fail(
                FailureKind.unknown_trigger_error,
                f"Backup creation failed with an unrecognized error: {outcome.message}",
            )

    def _accept(self, outcome: TriggerOutcome, degraded: bool) -> TriggeredJob:
        if outcome.handle is None:
            self._fail(
                FailureKind.unknown_trigger_error,
                "Backup creation was accepted without a job handle",
            )
        self.state = SessionState.triggered
        self.degraded = degraded
        self.logger.info(
            f"Backup job {outcome.handle.id} accepted"
            + (" without attachments" if degraded else "")
        )
        return TriggeredJob(handle=outcome.handle, degraded=degraded)

    async def _wait_before_retry(self) -> None:
        """Waits one retry interval and records the attempt against the budget"""
        budget = self.config.wait_minutes
        self.logger.info(
            f"Backup frequency is limited, waiting {self.config.retry_interval:.0f}s "
            f"before retrying ({self.trigger_attempts}/{budget})"
        )
        await self._wait(self.config.retry_interval)
        self.trigger_attempts += 1
        consumed = self.trigger_attempts / budget * 100
        self.logger.debug(f"{consumed:.0f}% of the {budget} minute wait budget consumed")

    async def trigger(self, request: JobRequest) -> TriggeredJob:
        """Triggers the backup, retrying frequency-limited attempts within the wait budget.

        Once the budget is used up, one reduced-scope attempt is made and an
        accepted fallback marks the job as degraded.
        """
        self.state = SessionState.triggering
        self.trigger_attempts = 0
        budget = self.config.wait_minutes

        while True:
            self._check_cancelled()
            outcome = await self.transport.trigger(request)

            if outcome.status == TriggerStatus.accepted:
                return self._accept(outcome, degraded=False)

            self._raise_for_fatal(outcome)

            if request.scope != BackupScope.full or budget == 0:
                self._fail(
                    FailureKind.rate_limited,
                    f"Backup creation failed: {outcome.message or 'backup frequency is limited'}",
                )
            if self.trigger_attempts >= budget:
                break

            await self._wait_before_retry()

        self.logger.warning(
            f"Wait budget of {budget} minutes exhausted, trying once without attachments"
        )
        self._check_cancelled()
        outcome = await self.transport.trigger(request.reduced())
        if outcome.status == TriggerStatus.accepted:
            return self._accept(outcome, degraded=True)

        self._raise_for_fatal(outcome)
        self._fail(
            FailureKind.rate_limited,
            f"Backup creation failed after fallback: {outcome.message or 'backup frequency is limited'}",
        )

    async def _report_progress(self) -> None:
        """Hands a copy of the current progress to the progress sink"""
        self.logger.debug(f"Backup progress {self.progress.percentage}%")
        if self.on_progress is not None:
            await asyncio.create_task(self.on_progress(self.progress.model_copy()))

    async def poll_until_terminal(self, handle: JobHandle) -> ArtifactRef:
        """Polls the job status until it reports success or failure"""
        self.state = SessionState.polling

        while True:
            await self._wait(self.config.progress_interval)
            snapshot = await self.transport.get_status(handle)

            self.progress.update(
                snapshot.raw_percentage,
                terminal=snapshot.state != JobState.in_progress,
            )
            await self._report_progress()

            if snapshot.state == JobState.failed:
                self._fail(
                    FailureKind.poll_terminal_failure,
                    snapshot.message or f"Backup job {handle.id} failed",
                )
            if snapshot.state == JobState.succeeded:
                if snapshot.artifact is None:
                    self._fail(
                        FailureKind.poll_terminal_failure,
                        f"Backup job {handle.id} finished without a downloadable artifact",
                    )
                self.state = SessionState.poll_succeeded
                self.logger.info(f"Backup job {handle.id} completed")
                return snapshot.artifact

    async def fetch(self, artifact: ArtifactRef, destination: Union[str, Path]) -> Path:
        """Downloads the artifact; a directory destination receives the artifact's file name"""
        self.state = SessionState.fetching
        destination = Path(destination)
        target = destination / artifact.filename if destination.is_dir() else destination

        self._check_cancelled()
        outcome = await self.transport.download(artifact, target)
        if not outcome.ok:
            self._fail(
                FailureKind.fetch_failure,
                f"Backup download failed: {outcome.error}",
            )

        self.state = SessionState.fetched
        self.logger.info(f"Backup saved to {outcome.path}")
        return outcome.path

    async def run(
        self, request: JobRequest, destination: Union[str, Path]
    ) -> SessionResult:
        """Runs a whole session and returns its single terminal result"""
        start_time = asyncio.get_event_loop().time()
        destination = Path(destination)

        try:
            if not destination.is_dir():
                self._fail(
                    FailureKind.invalid_input,
                    f"Destination {destination} is not an existing directory",
                )
            job = await self.trigger(request)
            artifact = await self.poll_until_terminal(job.handle)
            location = await self.fetch(artifact, destination)
        except SessionFailed as failure:
            self.state = failure.state
            return SessionResult(
                state=failure.state,
                degraded=self.degraded,
                failure=failure.reason,
                elapsed_time=asyncio.get_event_loop().time() - start_time,
            )

        return SessionResult(
            state=self.state,
            artifact_location=location,
            degraded=self.degraded,
            elapsed_time=asyncio.get_event_loop().time() - start_time,
        )
