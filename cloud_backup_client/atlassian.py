"""aiohttp adapters for the Jira and Confluence Cloud backup APIs.

Both adapters implement the trigger, status and download transports used by
`BackupSessionClient`. Service responses are classified here into structured
outcomes; error-text matching lives in `classify_trigger_error` and nowhere
else.
"""

import abc
import asyncio
import json
from datetime import date
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import aiohttp
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

from cloud_backup_client.models import (
    ArtifactRef,
    BackupScope,
    DownloadOutcome,
    JobHandle,
    JobRequest,
    JobState,
    StatusSnapshot,
    TriggerOutcome,
)

FREQUENCY_LIMITED_MARKER = "frequency is limited"
NOT_AUTHENTICATED_MARKER = "must be authenticated"
DOWNLOAD_CHUNK_SIZE = 1024 * 1024


class AtlassianProduct(str, Enum):
    jira = "jira"
    confluence = "confluence"


class AtlassianSiteConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    site: str = Field(min_length=1)
    email: str = Field(min_length=1)
    api_token: SecretStr
    request_timeout: float = Field(default=60.0, gt=0)

    @field_validator("site")
    @classmethod
    def _normalize_site(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if "://" not in value:
            value = f"https://{value}"
        return value

    @field_validator("api_token")
    @classmethod
    def _require_token(cls, value: SecretStr) -> SecretStr:
        if not value.get_secret_value():
            raise ValueError("api_token must not be empty")
        return value


def classify_trigger_error(status: int, text: str) -> TriggerOutcome:
    """Maps a rejected trigger response onto a structured outcome"""
    lowered = text.lower()
    if FREQUENCY_LIMITED_MARKER in lowered:
        return TriggerOutcome.rate_limited(text)
    if status == 401 or NOT_AUTHENTICATED_MARKER in lowered:
        return TriggerOutcome.auth_failed(text or f"HTTP {status}")
    return TriggerOutcome.unknown_error(text or f"HTTP {status}")


def _parse_body(body: str) -> Any:
    if not body.strip():
        return None
    try:
        return json.loads(body)
    except ValueError:
        return body.strip()


def _error_text(body: str) -> str:
    """Pulls the human-readable error out of an Atlassian error body"""
    try:
        data = json.loads(body)
    except ValueError:
        return body.strip()
    if isinstance(data, dict):
        for key in ("error", "message", "errorMessage"):
            if data.get(key):
                return str(data[key])
        messages = data.get("errorMessages")
        if messages:
            return "; ".join(str(message) for message in messages)
    return body.strip()


class AtlassianBackupTransport(abc.ABC):
    """Shared HTTP plumbing for the Atlassian backup adapters.

    Use as an async context manager; the underlying `aiohttp.ClientSession`
    lives for the duration of the `async with` block.
    """

    product: AtlassianProduct
    run_backup_path: str
    archive_prefix: str

    def __init__(self, config: AtlassianSiteConfig):
        self.config = config
        self.base_url = config.site
        self.logger = logger
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "AtlassianBackupTransport":
        self._session = aiohttp.ClientSession(
            headers={
                "Accept": "application/json",
                "Authorization": aiohttp.BasicAuth(
                    self.config.email, self.config.api_token.get_secret_value()
                ).encode(),
            },
            timeout=aiohttp.ClientTimeout(total=self.config.request_timeout),
        )
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError(
                f"{type(self).__name__} must be used inside 'async with'"
            )
        return self._session

    def _run_backup_body(self, request: JobRequest) -> dict:
        include_attachments = request.scope == BackupScope.full
        if request.payload.get("include_attachments") is False:
            include_attachments = False
        return {
            "cbAttachments": "true" if include_attachments else "false",
            "exportToCloud": "true",
        }

    def _run_backup_headers(self) -> dict:
        return {"Content-Type": "application/json"}

    def _archive_name(self) -> str:
        return f"{self.archive_prefix}-backup-{date.today():%Y%m%d}.zip"

    @abc.abstractmethod
    async def _handle_from_response(self, data: Any) -> Optional[JobHandle]:
        """Extracts the job handle from an accepted runbackup response"""

    async def trigger(self, request: JobRequest) -> TriggerOutcome:
        url = f"{self.base_url}{self.run_backup_path}"
        self.logger.debug(f"Requesting {self.product.value} backup ({request.scope.value}) at {url}")
        try:
            async with self.session.post(
                url,
                json=self._run_backup_body(request),
                headers=self._run_backup_headers(),
            ) as response:
                body = await response.text(errors="replace")
                if response.status >= 400:
                    self.logger.debug(f"Backup request rejected with HTTP {response.status}")
                    return classify_trigger_error(response.status, _error_text(body))
                data = _parse_body(body)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.logger.error(f"Error requesting backup at {url}: {e}")
            return TriggerOutcome.unknown_error(str(e) or type(e).__name__)

        # Some rejections come back as HTTP 200 with an error body
        if isinstance(data, dict) and (data.get("error") or data.get("errorMessages")):
            return classify_trigger_error(200, _error_text(body))

        handle = await self._handle_from_response(data)
        if handle is None:
            return TriggerOutcome.unknown_error(
                f"Backup request returned no task id: {body.strip()[:200]}"
            )
        return TriggerOutcome.accepted(handle)

    async def _get_json(self, url: str, params: Optional[dict] = None) -> Any:
        async with self.session.get(url, params=params) as response:
            response.raise_for_status()
            return _parse_body(await response.text(errors="replace"))

    async def download(self, artifact: ArtifactRef, target: Path) -> DownloadOutcome:
        """Streams the artifact into `<target>.part` and renames it into place once complete"""
        partial = target.with_name(f"{target.name}.part")
        self.logger.info(f"Downloading {artifact.url} to {target}")
        try:
            async with self.session.get(
                artifact.url, timeout=aiohttp.ClientTimeout(total=None)
            ) as response:
                response.raise_for_status()
                with open(partial, "wb") as handle:
                    async for chunk in response.content.iter_chunked(DOWNLOAD_CHUNK_SIZE):
                        await asyncio.to_thread(handle.write, chunk)
            partial.replace(target)
        except aiohttp.ClientResponseError as e:
            partial.unlink(missing_ok=True)
            return DownloadOutcome(error=f"HTTP error {e.status} at {artifact.url}: {e.message}")
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            partial.unlink(missing_ok=True)
            return DownloadOutcome(error=str(e) or type(e).__name__)
        return DownloadOutcome(path=target)


class JiraBackupTransport(AtlassianBackupTransport):
    product = AtlassianProduct.jira
    run_backup_path = "/rest/backup/1/export/runbackup"
    last_task_path = "/rest/backup/1/export/lastTaskId"
    progress_path = "/rest/backup/1/export/getProgress"
    download_path = "/plugins/servlet"
    archive_prefix = "JIRA"

    async def _handle_from_response(self, data: Any) -> Optional[JobHandle]:
        if isinstance(data, dict) and data.get("taskId"):
            return JobHandle(id=str(data["taskId"]))
        try:
            task_id = await self._get_json(f"{self.base_url}{self.last_task_path}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.logger.error(f"Could not look up the last backup task id: {e}")
            return None
        if isinstance(task_id, dict):
            task_id = task_id.get("taskId")
        return JobHandle(id=str(task_id)) if task_id else None

    async def get_status(self, handle: JobHandle) -> StatusSnapshot:
        url = f"{self.base_url}{self.progress_path}"
        try:
            data = await self._get_json(url, params={"taskId": handle.id})
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.logger.error(f"Error polling backup status at {url}: {e}")
            return StatusSnapshot(state=JobState.failed, message=f"Status request failed: {e}")
        if not isinstance(data, dict):
            return StatusSnapshot(state=JobState.in_progress)

        status = str(data.get("status", "")).lower()
        message = str(data.get("message") or data.get("description") or "")
        if status in ("failed", "failure", "cancelled"):
            return StatusSnapshot(
                state=JobState.failed, raw_percentage=data.get("progress"), message=message
            )
        if status == "success" and data.get("result"):
            return StatusSnapshot(
                state=JobState.succeeded,
                raw_percentage=data.get("progress", 100),
                message=message,
                artifact=ArtifactRef(
                    url=f"{self.base_url}{self.download_path}/{str(data['result']).lstrip('/')}",
                    filename=self._archive_name(),
                ),
            )
        return StatusSnapshot(
            state=JobState.in_progress, raw_percentage=data.get("progress"), message=message
        )


class ConfluenceBackupTransport(AtlassianBackupTransport):
    product = AtlassianProduct.confluence
    run_backup_path = "/wiki/rest/obm/1.0/runbackup"
    progress_path = "/wiki/rest/obm/1.0/getprogress.json"
    download_path = "/wiki/download"
    archive_prefix = "CONF"

    def _run_backup_headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "X-Atlassian-Token": "no-check",
            "X-Requested-With": "XMLHttpRequest",
        }

    async def _handle_from_response(self, data: Any) -> Optional[JobHandle]:
        # Confluence runs one backup per site and reports progress site-wide
        return JobHandle(id=self.base_url)

    async def get_status(self, handle: JobHandle) -> StatusSnapshot:
        url = f"{self.base_url}{self.progress_path}"
        try:
            data = await self._get_json(url)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.logger.error(f"Error polling backup status at {url}: {e}")
            return StatusSnapshot(state=JobState.failed, message=f"Status request failed: {e}")
        if not isinstance(data, dict):
            return StatusSnapshot(state=JobState.in_progress)

        current_status = str(data.get("currentStatus") or "")
        percentage = data.get("alternativePercentage")
        lowered = current_status.lower()
        if "error" in lowered or "fail" in lowered:
            return StatusSnapshot(
                state=JobState.failed, raw_percentage=percentage, message=current_status
            )
        if data.get("fileName"):
            return StatusSnapshot(
                state=JobState.succeeded,
                raw_percentage=percentage if percentage is not None else 100,
                message=current_status,
                artifact=ArtifactRef(
                    url=f"{self.base_url}{self.download_path}/{str(data['fileName']).lstrip('/')}",
                    filename=self._archive_name(),
                ),
            )
        return StatusSnapshot(
            state=JobState.in_progress, raw_percentage=percentage, message=current_status
        )


def transport_for(product: AtlassianProduct, config: AtlassianSiteConfig) -> AtlassianBackupTransport:
    if product == AtlassianProduct.jira:
        return JiraBackupTransport(config)
    return ConfluenceBackupTransport(config)
