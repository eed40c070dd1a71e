"""Pytest configuration and fixtures for api-workbench tests.

This file provides:
- Factories: make_request, make_response, make_record, mock_executor
- PortReservation: Race-free port allocation for test servers
- MockServer: Subprocess management for the mock API server
- Fixtures: Shared test infrastructure (repositories, services, server)
"""

from __future__ import annotations

import socket
import subprocess
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Generator

import httpx
import pytest

from api_workbench.executor import Executor
from api_workbench.history import HistoryService
from api_workbench.models import (
    ApiRequest,
    ExecutionResponse,
    HistoryRecord,
    HttpMethod,
)
from api_workbench.storage import (
    CollectionRepository,
    EnvironmentRepository,
    HistoryRepository,
    RequestRepository,
)

# Project root for fixture paths
PROJECT_ROOT = Path(__file__).parent.parent
MOCK_SERVER_MODULE = "tests.integration.mock_server"

FIXED_NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


def make_request(
    url: str = "https://api.example.com/users",
    method: HttpMethod | str = HttpMethod.GET,
    **kwargs: Any,
) -> ApiRequest:
    """Create an ApiRequest for testing.

    Prefer this over constructing ApiRequest directly - it provides
    sensible defaults and documents which fields are typically varied in tests.
    """
    kwargs.setdefault("name", "Test Request")
    return ApiRequest(url=url, method=method, **kwargs)


def make_response(
    status_code: int = 200,
    response_time_ms: int = 10,
    body: str | None = None,
    **kwargs: Any,
) -> ExecutionResponse:
    """Create a successful ExecutionResponse for testing."""
    return ExecutionResponse(
        status_code=status_code,
        response_time_ms=response_time_ms,
        body=body,
        body_size=len(body.encode("utf-8")) if body else 0,
        **kwargs,
    )


def make_record(
    status_code: int | None = 200,
    method: HttpMethod | None = HttpMethod.GET,
    response_time: int | None = 100,
    url: str = "https://api.example.com/users",
    executed_at: datetime = FIXED_NOW,
    **kwargs: Any,
) -> HistoryRecord:
    """Create a HistoryRecord for testing queries and stats."""
    return HistoryRecord(
        url=url,
        method=method,
        status_code=status_code,
        response_time=response_time,
        executed_at=executed_at,
        **kwargs,
    )


def mock_executor(
    handler: Callable[[httpx.Request], httpx.Response], timeout: float = 5.0
) -> Executor:
    """Executor whose requests are answered in-process by handler."""
    return Executor(timeout=timeout, transport=httpx.MockTransport(handler))


class PortReservation:
    """Holds a reserved port with socket kept open to prevent races.

    WHY this exists: find_free_port() has a race window - another process can
    grab the port between when we find it and when our server binds. This class
    keeps the socket open until just before the server starts, eliminating the race.

    Usage:
        reservation = PortReservation()
        # port is held exclusively until release()
        server = MockServer(reservation)
        server.start()  # calls release() internally, then binds
    """

    def __init__(self) -> None:
        self._socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._socket.bind(("127.0.0.1", 0))  # Port 0 = OS assigns ephemeral port
        self._port = self._socket.getsockname()[1]
        self._released = False

    @property
    def port(self) -> int:
        return self._port

    def release(self) -> int:
        """Release the socket and return the port for server use.

        Safe to call multiple times - subsequent calls are no-ops.
        """
        if not self._released:
            self._socket.close()
            self._released = True
        return self._port

    def __enter__(self) -> PortReservation:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.release()


def wait_for_server_ready(host: str, port: int, timeout: float = 10.0) -> bool:
    """Block until server accepts TCP connections, or timeout expires."""
    start = time.time()
    while time.time() - start < timeout:
        try:
            with socket.create_connection((host, port), timeout=1.0):
                return True
        except (ConnectionRefusedError, socket.timeout, OSError):
            time.sleep(0.1)
    return False


class MockServer:
    """Manages a mock server subprocess for integration tests.

    Runs tests/integration/mock_server.py as a subprocess. The server echoes
    requests back and can be asked for arbitrary status codes, delays and
    binary bodies.
    """

    def __init__(self, port: int | PortReservation) -> None:
        """Initialize mock server configuration.

        Args:
            port: Either a port number or PortReservation. Using PortReservation
                  is preferred as it eliminates port allocation races.
        """
        if isinstance(port, PortReservation):
            self._reservation = port
            self.port = port.port
        else:
            self._reservation = None
            self.port = port
        self.host = "127.0.0.1"
        self.base_url = f"http://{self.host}:{self.port}"
        self._process: subprocess.Popen | None = None

    def start(self) -> None:
        """Start the mock server subprocess.

        Raises:
            RuntimeError: If server fails to start within 10 seconds.
        """
        if self._reservation:
            self._reservation.release()

        self._process = subprocess.Popen(
            [
                sys.executable, "-m", MOCK_SERVER_MODULE,
                "--host", self.host,
                "--port", str(self.port),
            ],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=PROJECT_ROOT,
        )

        if not wait_for_server_ready(self.host, self.port):
            stderr = ""
            if self._process and self._process.stderr:
                stderr = self._process.stderr.read().decode(errors="replace")
            self.stop()
            raise RuntimeError(
                f"MockServer failed to start on port {self.port}. "
                f"stderr: {stderr or '(empty)'}"
            )

    def stop(self) -> None:
        """Stop the mock server subprocess with graceful shutdown.

        Uses SIGTERM first, then SIGKILL after 5s if process doesn't exit.
        Safe to call multiple times or if server was never started.
        """
        if self._process:
            self._process.terminate()
            try:
                self._process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                # Process ignored SIGTERM, escalate to SIGKILL
                self._process.kill()
                try:
                    self._process.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    pass  # Process is unkillable (zombie?), nothing more we can do
            self._process = None

    def __enter__(self) -> MockServer:
        self.start()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.stop()


# =============================================================================
# Pytest Fixtures
# =============================================================================


@pytest.fixture
def history_repository() -> HistoryRepository:
    return HistoryRepository()


@pytest.fixture
def request_repository() -> RequestRepository:
    return RequestRepository()


@pytest.fixture
def collection_repository() -> CollectionRepository:
    return CollectionRepository()


@pytest.fixture
def environment_repository() -> EnvironmentRepository:
    return EnvironmentRepository()


@pytest.fixture
def history_service(
    history_repository: HistoryRepository,
    request_repository: RequestRepository,
    collection_repository: CollectionRepository,
) -> HistoryService:
    """HistoryService over empty in-memory repositories with a fixed clock."""
    return HistoryService(
        history_repository,
        request_repository,
        collection_repository,
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture(scope="session")
def fixture_mock_server() -> Generator[MockServer, None, None]:
    """Start the mock API server once per test session.

    Example:
        def test_echo(fixture_mock_server):
            url = f"{fixture_mock_server.base_url}/echo"
    """
    with MockServer(PortReservation()) as server:
        yield server


# =============================================================================
# Pytest Hooks
# =============================================================================


def pytest_collection_modifyitems(
    config: pytest.Config, items: list[pytest.Item]
) -> None:
    """Automatically apply markers based on test location.

    This hook runs after test collection and tags tests with markers
    based on their directory location. Enables running subsets via:
        pytest -m integration  # only integration tests
        pytest -m unit         # only unit tests
    """
    for item in items:
        test_path = Path(item.fspath)
        if "integration" in test_path.parts:
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)
