from __future__ import annotations

import os
import socket
import threading
import time
from collections.abc import Iterator

import httpx
import pytest
import uvicorn

from task_registry_api.main import create_app


@pytest.fixture
def api_client(settings_factory) -> Iterator[httpx.Client]:
    """HTTP client for a uvicorn server backed by a freshly reset PostgreSQL table."""
    if os.getenv("RUN_POSTGRES_INTEGRATION_TESTS") != "1":
        pytest.skip(
            "Set RUN_POSTGRES_INTEGRATION_TESTS=1 and TASK_REGISTRY_DATABASE_URL "
            "to run integration tests against PostgreSQL."
        )
    database_url = os.getenv("TASK_REGISTRY_DATABASE_URL")
    if not database_url:
        pytest.skip("TASK_REGISTRY_DATABASE_URL is required for integration tests.")

    settings = settings_factory(
        storage_backend="postgres",
        database_url=database_url,
        reset_schema=True,
    )
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        port = int(sock.getsockname()[1])
    server = uvicorn.Server(
        uvicorn.Config(
            create_app(settings_override=settings),
            host="127.0.0.1",
            port=port,
            log_level="warning",
        )
    )
    thread = threading.Thread(target=server.run, daemon=True)
    thread.start()
    started_by = time.monotonic() + 20.0
    while not server.started:
        if not thread.is_alive() or time.monotonic() > started_by:
            pytest.fail("uvicorn did not start")
        time.sleep(0.05)

    try:
        with httpx.Client(base_url=f"http://127.0.0.1:{port}", timeout=20.0) as client:
            yield client
    finally:
        server.should_exit = True
        thread.join(timeout=5)
