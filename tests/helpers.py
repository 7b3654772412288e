"""
Shared test helpers: a recording handler, a blocking line client and a
polling wait.
"""

import socket
import threading
import time
from collections import defaultdict
from typing import Callable, Dict, List, Optional, Tuple

from lineserver.handlers import Handler, HandlerContext


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll predicate until it is true or timeout expires."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class RecordingContext(HandlerContext):
    """Context that records every line it sees."""

    def __init__(self, connection, handler: "RecordingHandler"):
        super().__init__(connection)
        self.handler = handler
        self.lines: List[bytes] = []
        self.closed = False

    def on_line(self, line: bytes) -> None:
        handler = self.handler

        with handler.lock:
            self.lines.append(line)
            handler.events.append((self.connection.id, line))

        if handler.delay:
            time.sleep(handler.delay)

        if handler.fail_on is not None and line == handler.fail_on:
            raise RuntimeError(f"handler failed on {line!r}")

        if handler.disconnect_on is not None and line == handler.disconnect_on:
            self.disconnect()
            return

        if handler.echo:
            self.send(line + b"\n")

    def close(self) -> None:
        self.closed = True


class RecordingHandler(Handler):
    """
    Handler for tests.

    Args:
        echo: Send every line back.
        fail_on: Raise when this line arrives.
        disconnect_on: Ask for disconnect when this line arrives.
        fail_create: Raise from create_context().
        delay: Sleep this long in on_line().
    """

    def __init__(
        self,
        echo: bool = False,
        fail_on: Optional[bytes] = None,
        disconnect_on: Optional[bytes] = None,
        fail_create: bool = False,
        delay: float = 0.0,
    ):
        self.echo = echo
        self.fail_on = fail_on
        self.disconnect_on = disconnect_on
        self.fail_create = fail_create
        self.delay = delay

        self.lock = threading.Lock()
        self.contexts: List[RecordingContext] = []
        self.events: List[Tuple[str, bytes]] = []
        self.destroy_calls: Dict[str, int] = defaultdict(int)

    def create_context(self, connection) -> HandlerContext:
        if self.fail_create:
            raise RuntimeError("context creation failed")

        context = RecordingContext(connection, self)
        with self.lock:
            self.contexts.append(context)
        return context

    def destroy_context(self, context: HandlerContext) -> None:
        with self.lock:
            self.destroy_calls[context.connection.id] += 1
        super().destroy_context(context)

    @property
    def lines(self) -> List[bytes]:
        """Every line seen, across all connections, in arrival order."""
        with self.lock:
            return [line for _, line in self.events]

    @property
    def destroyed(self) -> int:
        """Total destroy_context() calls."""
        with self.lock:
            return sum(self.destroy_calls.values())


class LineClient:
    """Blocking TCP client that reads newline-terminated replies."""

    def __init__(self, address: Tuple[str, int], timeout: float = 5.0):
        self.sock = socket.create_connection(address, timeout=timeout)
        self._buffer = b""

    def send(self, data: bytes) -> None:
        self.sock.sendall(data)

    def read_line(self) -> bytes:
        """Next line without its terminator. Raises EOFError if closed first."""
        while b"\n" not in self._buffer:
            chunk = self.sock.recv(4096)
            if not chunk:
                raise EOFError(f"connection closed with {self._buffer!r} unread")
            self._buffer += chunk
        line, _, self._buffer = self._buffer.partition(b"\n")
        return line

    def read_lines(self, count: int) -> List[bytes]:
        return [self.read_line() for _ in range(count)]

    def read_until_closed(self) -> bytes:
        """Everything until the server closes (a reset counts as closed)."""
        data = self._buffer
        self._buffer = b""
        while True:
            try:
                chunk = self.sock.recv(4096)
            except ConnectionResetError:
                return data
            if not chunk:
                return data
            data += chunk

    def is_closed_by_peer(self) -> bool:
        """True if the server has closed the connection."""
        try:
            self.read_until_closed()
        except socket.timeout:
            return False
        return True

    def close(self) -> None:
        self.sock.close()

    def __enter__(self) -> "LineClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


# Targets for load_handler() tests
def shout(context, line):
    context.send_line(line.upper())


shared_handler = RecordingHandler(echo=True)
not_a_handler = 42
