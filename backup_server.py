import base64
from typing import Optional

from aiohttp import web
from loguru import logger


class AtlassianBackupServer:
    """Fake Jira and Confluence backup endpoints for tests and the example.

    The first `rate_limited_attempts` full-scope backup requests are refused
    as frequency limited; reduced-scope requests (no attachments) are refused
    only when `limit_reduced` is set. Progress advances by `progress_step`
    per status request, and `fail_message` makes the job fail instead.
    `trigger_body` answers backup requests with raw bytes and
    `truncate_download` drops the connection partway through the archive.
    """

    def __init__(
        self,
        email: str = "admin@example.com",
        api_token: str = "token",
        rate_limited_attempts: int = 0,
        limit_reduced: bool = False,
        progress_step: int = 50,
        fail_message: Optional[str] = None,
        trigger_error: Optional[str] = None,
        trigger_body: Optional[bytes] = None,
        truncate_download: bool = False,
        archive: bytes = b"PK\x05\x06" + b"\x00" * 18,
    ):
        self.email = email
        self.api_token = api_token
        self.rate_limited_attempts = rate_limited_attempts
        self.limit_reduced = limit_reduced
        self.progress_step = progress_step
        self.fail_message = fail_message
        self.trigger_error = trigger_error
        self.trigger_body = trigger_body
        self.truncate_download = truncate_download
        self.archive = archive
        self.trigger_requests: list = []
        self.progress = 0
        self.task_id = "10042"
        self.runner: Optional[web.AppRunner] = None
        self.app = web.Application()
        self.app.router.add_post("/rest/backup/1/export/runbackup", self.handle_run_backup)
        self.app.router.add_get("/rest/backup/1/export/lastTaskId", self.handle_last_task_id)
        self.app.router.add_get("/rest/backup/1/export/getProgress", self.handle_jira_progress)
        self.app.router.add_get("/plugins/servlet/export/download/", self.handle_download)
        self.app.router.add_post("/wiki/rest/obm/1.0/runbackup", self.handle_run_backup)
        self.app.router.add_get("/wiki/rest/obm/1.0/getprogress.json", self.handle_confluence_progress)
        self.app.router.add_get("/wiki/download/temp/filestore/{name}", self.handle_download)
        self.logger = logger

    def _authorized(self, request: web.Request) -> bool:
        expected = base64.b64encode(f"{self.email}:{self.api_token}".encode()).decode()
        return request.headers.get("Authorization") == f"Basic {expected}"

    def _advance(self) -> int:
        self.progress = min(self.progress + self.progress_step, 100)
        return self.progress

    async def handle_run_backup(self, request: web.Request) -> web.Response:
        if not self._authorized(request):
            self.logger.info("Rejecting unauthenticated backup request")
            return web.json_response(
                {"error": "You must be authenticated to perform this action"}, status=401
            )

        body = await request.json()
        self.trigger_requests.append(body)
        with_attachments = body.get("cbAttachments") == "true"

        if self.trigger_body is not None:
            return web.Response(body=self.trigger_body, status=500, charset="utf-8")
        if self.trigger_error is not None:
            return web.json_response({"error": self.trigger_error}, status=500)

        limited = (
            self.limit_reduced
            if not with_attachments
            else len(self.trigger_requests) <= self.rate_limited_attempts
        )
        if limited:
            self.logger.info("Returning frequency limited response")
            return web.json_response(
                {
                    "error": "Backup frequency is limited. You cannot make another "
                    "backup right now. Approximate time till next allowed backup: 23h 59m"
                },
                status=412,
            )

        self.progress = 0
        self.logger.info(f"Backup started (attachments={with_attachments})")
        if request.path.startswith("/wiki/"):
            return web.Response(status=200)
        return web.json_response({"taskId": self.task_id})

    async def handle_last_task_id(self, request: web.Request) -> web.Response:
        return web.Response(text=self.task_id)

    async def handle_jira_progress(self, request: web.Request) -> web.Response:
        if request.query.get("taskId") != self.task_id:
            return web.json_response({"error": "Unknown task"}, status=404)
        if self.fail_message is not None:
            return web.json_response(
                {"status": "Failed", "message": self.fail_message, "progress": self.progress}
            )

        progress = self._advance()
        self.logger.info(f"Returning Jira progress {progress}%")
        if progress >= 100:
            return web.json_response(
                {
                    "status": "Success",
                    "message": "Completed export",
                    "progress": 100,
                    "result": f"export/download/?fileId={self.task_id}",
                }
            )
        return web.json_response(
            {"status": "InProgress", "message": "Export in progress", "progress": progress}
        )

    async def handle_confluence_progress(self, request: web.Request) -> web.Response:
        if self.fail_message is not None:
            return web.json_response(
                {"currentStatus": f"Error: {self.fail_message}", "alternativePercentage": f"{self.progress}%"}
            )

        progress = self._advance()
        self.logger.info(f"Returning Confluence progress {progress}%")
        data = {
            "currentStatus": "Backing up" if progress < 100 else "Complete",
            "alternativePercentage": f"{progress}%",
            "concurrentBackupInProgress": progress < 100,
        }
        if progress >= 100:
            data["fileName"] = "temp/filestore/backup.zip"
        return web.json_response(data)

    async def handle_download(self, request: web.Request) -> web.StreamResponse:
        if not self.truncate_download:
            return web.Response(body=self.archive, content_type="application/zip")

        self.logger.info("Dropping the connection halfway through the download")
        response = web.StreamResponse(headers={"Content-Type": "application/zip"})
        response.content_length = len(self.archive) * 10
        await response.prepare(request)
        await response.write(self.archive)
        request.transport.close()
        return response

    async def start(self, port: int = 8080) -> web.TCPSite:
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "localhost", port)
        await site.start()
        self.logger.info(f"Server started on port {port}")
        return site

    async def stop(self) -> None:
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
