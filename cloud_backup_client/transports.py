from pathlib import Path
from typing import Awaitable, Callable, Protocol

from cloud_backup_client.models import (
    ArtifactRef,
    DownloadOutcome,
    JobHandle,
    JobRequest,
    ProgressState,
    StatusSnapshot,
    TriggerOutcome,
)

ProgressSink = Callable[[ProgressState], Awaitable[None]]


class TriggerTransport(Protocol):
    async def trigger(self, request: JobRequest) -> TriggerOutcome:
        """Performs one trigger call and classifies the response."""
        ...


class StatusTransport(Protocol):
    async def get_status(self, handle: JobHandle) -> StatusSnapshot:
        """Performs one status call and returns the raw progress data."""
        ...


class DownloadTransport(Protocol):
    async def download(self, artifact: ArtifactRef, target: Path) -> DownloadOutcome:
        """Writes the artifact to `target` in a single retrieval."""
        ...


class BackupTransport(TriggerTransport, StatusTransport, DownloadTransport, Protocol):
    pass
