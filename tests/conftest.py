"""
pytest configuration and fixtures.
"""

import socket
import threading
from typing import Generator, Optional
import pytest

# Add src (and this directory, for helpers) to path for imports
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent))

from lineserver import LineServer, ServerConfig
from lineserver.handlers import Handler
from helpers import LineClient, RecordingHandler


@pytest.fixture
def config() -> ServerConfig:
    """Default test server configuration."""
    return ServerConfig(
        host="127.0.0.1",
        port=0,  # Let OS pick a free port
        poll_interval=0.05,
        log_level="WARNING",
    )


@pytest.fixture
def socket_pair() -> Generator[tuple, None, None]:
    """Connected (server_side, client_side) socket pair."""
    server_side, client_side = socket.socketpair()
    client_side.settimeout(5.0)
    yield server_side, client_side
    for sock in (server_side, client_side):
        try:
            sock.close()
        except OSError:
            pass


class TestServer:
    """Test server helper that runs in a background thread."""

    __test__ = False  # Not a test class despite the name

    def __init__(self, server: LineServer):
        self.server = server
        self._thread: Optional[threading.Thread] = None
        self.error: Optional[BaseException] = None

    def _run(self):
        try:
            self.server.run()
        except BaseException as e:
            self.error = e

    def start(self):
        """Start server in background thread."""
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

        if not self.server.wait_until_ready(5.0):
            raise RuntimeError(f"Server failed to start: {self.error!r}")

    @property
    def address(self):
        return self.server.address

    @property
    def stats(self) -> dict:
        return self.server.stats

    def connect(self) -> LineClient:
        return LineClient(self.address)

    def stop(self):
        """Stop the server."""
        self.server.shutdown()

        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5.0)


@pytest.fixture
def start_server() -> Generator:
    """
    Factory fixture: start_server(handler=None, **config_overrides).

    Every server started through it is stopped at teardown.
    """
    servers = []

    def _start(handler: Optional[Handler] = None, middleware=(), **overrides) -> TestServer:
        settings = dict(host="127.0.0.1", port=0, poll_interval=0.05, log_level="WARNING")
        settings.update(overrides)
        server = LineServer(ServerConfig(**settings), handler=handler or RecordingHandler(echo=True))
        for mw in middleware:
            server.use(mw)

        test_srv = TestServer(server)
        test_srv.start()
        servers.append(test_srv)
        return test_srv

    yield _start

    for test_srv in servers:
        test_srv.stop()
