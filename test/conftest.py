from typing import AsyncGenerator

import pytest_asyncio
from backup_server import AtlassianBackupServer


@pytest_asyncio.fixture
async def server(unused_tcp_port_factory) -> AsyncGenerator[tuple, None]:
    """Start and yield a fake Atlassian backup server on a random port."""
    port = unused_tcp_port_factory()
    server_instance = AtlassianBackupServer()
    await server_instance.start(port=port)
    try:
        yield server_instance, port
    finally:
        await server_instance.stop()
