import asyncio
import tempfile

from backup_server import AtlassianBackupServer
from cloud_backup_client.atlassian import AtlassianSiteConfig, JiraBackupTransport
from cloud_backup_client.backup_client import BackupSessionClient
from cloud_backup_client.models import BackupSessionConfig, JobRequest


async def progress_changed(progress):
    print(f"Backup progress: {progress.percentage}%")


async def main():
    PORT = 8000
    server = AtlassianBackupServer(rate_limited_attempts=2, progress_step=20)
    await server.start(port=PORT)
    print(f"Server started on http://localhost:{PORT}")

    site = AtlassianSiteConfig(
        site=f"http://localhost:{PORT}", email=server.email, api_token=server.api_token
    )
    config = BackupSessionConfig(wait_minutes=3, retry_interval=1.0, progress_interval=0.5)

    with tempfile.TemporaryDirectory() as destination:
        async with JiraBackupTransport(site) as transport:
            client = BackupSessionClient(transport, config, on_progress=progress_changed)
            result = await client.run(JobRequest(), destination)

        print(f"Final state: {result.state.value} ({result.outcome.value})")
        print(f"Exit code: {int(result.exit_code)}")
        print(f"Total time: {result.elapsed_time:.6f}s")
        if result.failure is not None:
            print(f"Error occurred: {result.failure.message}")
        else:
            print(f"Saved to: {result.artifact_location}")

    await server.stop()


if __name__ == "__main__":
    asyncio.run(main())
