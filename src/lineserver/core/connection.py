"""
=============================================================================
CONNECTION MANAGEMENT
=============================================================================

This module wraps one accepted client socket with everything the event
loop needs to know about it:

    ┌─────────────────────────────────────────────────────────────────────┐
    │                            Connection                                │
    ├─────────────────────────────────────────────────────────────────────┤
    │   fd              socket identity (the registry key)                 │
    │   framer          partial-line buffer + overflow policy              │
    │   context         the HandlerContext, owned exclusively              │
    │   state           NEW → OPEN → CLOSING → CLOSED                      │
    │   counters        bytes in/out, lines, last activity                 │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
READING WITHOUT ASKING FIRST
=============================================================================

The socket is non-blocking. We never ask the kernel "how many bytes are
waiting?" before reading; the result of recv() already tells us:

    recv() → b"..."           data, feed it to the framer
    recv() → b""              peer closed its side (orderly shutdown)
    recv() → BlockingIOError  nothing there after all, try next cycle
    recv() → other OSError    the connection is broken

Every call returns a fresh bytes object, so two connections can never
scribble over each other's read buffer.

=============================================================================
WRITING TO A NON-BLOCKING SOCKET
=============================================================================

send() on a non-blocking socket may write only part of the data, or
nothing at all if the kernel buffer is full. Connection.send() keeps
going until every byte is out, waiting for writability in between, but
never longer than send_timeout. A client that stops reading cannot hold
the event loop hostage forever.

=============================================================================
CONNECTION STATE MACHINE
=============================================================================

    NEW ──────► OPEN ──────► CLOSING ──────► CLOSED
     │                                         ▲
     └─────────────────────────────────────────┘
        (context creation failed, never registered)

=============================================================================
"""

import selectors
import socket
import threading
import time
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, Iterable, Iterator, Optional

from ..handlers.base import ContextDestroyedError, ContextState, Handler, HandlerContext
from .framing import LineFramer, OverflowPolicy


logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """
    Connection lifecycle states.

    Used for logging and to refuse I/O on connections that are going away.
    """
    NEW = "new"          # Accepted, context not created yet
    OPEN = "open"        # Registered, lines flow to the context
    CLOSING = "closing"  # Removal started, waiting for in-flight work
    CLOSED = "closed"    # Socket released


LineDispatcher = Callable[[HandlerContext, bytes], None]


def deliver_line(context: HandlerContext, line: bytes) -> None:
    """Innermost dispatcher: hand the line to the context."""
    context.on_line(line)


@dataclass(eq=False)
class Connection:
    """
    Represents one accepted client socket.

    Identity is by object (eq=False), so connections can live in sets
    while their counters change.

    Attributes:
        socket: The client socket.
        address: Client's address as returned by accept().
        id: Short random identifier (for logging).
        fd: Socket descriptor captured at construction. Stays valid as a
            registry key after the socket is closed.
        state: Current ConnectionState.
        framer: LineFramer holding this connection's partial line.
        context: HandlerContext, set by open_context().
        close_requested: Set by the handler to ask for removal.
        lines_dispatched: Lines handed to the dispatch chain so far. Lags
            lines_received in pool mode, where framing runs ahead.
    """

    # Required parameters
    socket: socket.socket
    address: tuple

    # Generated/default parameters
    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    state: ConnectionState = ConnectionState.NEW
    created_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)
    lines_received: int = 0
    lines_dispatched: int = 0
    bytes_received: int = 0
    bytes_sent: int = 0
    close_requested: bool = False

    # Configuration (passed from ServerConfig)
    max_line_size: int = 4096
    overflow_policy: OverflowPolicy = OverflowPolicy.DELIVER
    send_timeout: Optional[float] = 5.0

    # Line dispatch chain (middleware wrapped around deliver_line)
    dispatcher: LineDispatcher = field(default=deliver_line, repr=False)

    # Internal state (not shown in repr for cleaner logs)
    fd: int = field(init=False)
    framer: LineFramer = field(init=False, repr=False)
    context: Optional[HandlerContext] = field(default=None, init=False, repr=False)
    handler: Optional[Handler] = field(default=None, init=False, repr=False)
    _pending: Deque[bytes] = field(default_factory=deque, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)
    _scheduled: bool = field(default=False, init=False, repr=False)
    _aborted: bool = field(default=False, init=False, repr=False)
    _draining: bool = field(default=False, init=False, repr=False)

    def __post_init__(self):
        """Capture identity, build the framer, switch to non-blocking I/O."""
        self.fd = self.socket.fileno()
        self.framer = LineFramer(self.max_line_size, self.overflow_policy)
        self.socket.setblocking(False)

    # =========================================================================
    # PROPERTIES: Convenient accessors
    # =========================================================================

    @property
    def client_ip(self) -> str:
        """Get the client IP address."""
        return self.address[0] if self.address else ""

    @property
    def client_port(self) -> int:
        """Get the client port."""
        return self.address[1] if len(self.address) > 1 else 0

    @property
    def age(self) -> float:
        """Get connection age in seconds."""
        return time.time() - self.created_at

    @property
    def idle_time(self) -> float:
        """Get time since last activity in seconds."""
        return time.time() - self.last_activity

    # =========================================================================
    # CONTEXT LIFECYCLE
    # =========================================================================

    def open_context(self, handler: Handler) -> HandlerContext:
        """
        Create the handler context for this connection.

        Raises whatever the handler raises; the caller closes the socket
        and never registers the connection in that case.
        """
        context = handler.create_context(self)
        if not isinstance(context, HandlerContext):
            raise TypeError(
                f"{handler.name}.create_context() returned {type(context).__name__}, "
                f"expected HandlerContext"
            )

        self.handler = handler
        self.context = context
        self.state = ConnectionState.OPEN
        return context

    def dispatch(self, line: bytes) -> None:
        """
        Deliver one line to the context through the dispatch chain.

        Raises:
            ContextDestroyedError: If the context is gone (or never existed).
        """
        context = self.context
        if context is None or context.state is ContextState.DESTROYED:
            raise ContextDestroyedError(f"[{self.id}] No live context for line")

        context.state = ContextState.ACTIVE
        self.lines_dispatched += 1
        self.dispatcher(context, line)

    def destroy_context(self) -> bool:
        """
        Destroy the context (at most once).

        Returns:
            True if this call destroyed it, False if there was nothing to do.
        """
        context = self.context
        if context is None or context.state is ContextState.DESTROYED:
            return False

        try:
            self.handler.destroy_context(context)
        finally:
            context.state = ContextState.DESTROYED
        return True

    # =========================================================================
    # READING
    # =========================================================================

    def read(self, size: int) -> Optional[bytes]:
        """
        Read up to size bytes.

        Returns:
            The bytes read, b"" if the peer closed its side, or None if
            the socket had nothing after all.

        Raises:
            OSError: On a broken connection (reset, etc.).
        """
        try:
            data = self.socket.recv(size)
        except (BlockingIOError, InterruptedError):
            return None

        if data:
            self.bytes_received += len(data)
            self.last_activity = time.time()
        return data

    def feed(self, chunk: bytes) -> Iterator[bytes]:
        """Frame a chunk; lazily yields complete lines and counts them."""
        for line in self.framer.feed(chunk):
            self.lines_received += 1
            yield line

    # =========================================================================
    # WRITING
    # =========================================================================

    def send(self, data: bytes) -> int:
        """
        Write all of data to the client.

        Returns:
            Number of bytes written.

        Raises:
            ConnectionError: If the connection is already closed.
            TimeoutError: If the socket stayed unwritable for send_timeout.
            OSError: On a broken connection.
        """
        if self.state is ConnectionState.CLOSED:
            raise ConnectionError(f"[{self.id}] Send on closed connection")

        view = memoryview(data)
        total = 0
        deadline = None if self.send_timeout is None else time.monotonic() + self.send_timeout

        while total < len(view):
            try:
                total += self.socket.send(view[total:])
            except (BlockingIOError, InterruptedError):
                # ─────────────────────────────────────────────────────────
                # KERNEL BUFFER FULL: wait until the peer drains it
                # ─────────────────────────────────────────────────────────
                remaining = None
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise TimeoutError(
                            f"[{self.id}] Send timed out after {total}/{len(view)} bytes"
                        )
                self._wait_writable(remaining)

        self.bytes_sent += total
        self.last_activity = time.time()
        return total

    def _wait_writable(self, timeout: Optional[float]) -> None:
        """Block until the socket accepts more data or timeout passes."""
        # select.select() rejects descriptors >= FD_SETSIZE; a selector does not
        with selectors.DefaultSelector() as waiter:
            waiter.register(self.socket, selectors.EVENT_WRITE)
            waiter.select(timeout)

    # =========================================================================
    # WORKER POOL HAND-OFF
    # =========================================================================
    #
    # In pool mode the loop thread frames lines and queues them here; one
    # worker at a time drains the queue. _scheduled is True while a worker
    # owns the queue, so lines of one connection never run concurrently and
    # never run out of order.
    #
    # =========================================================================

    def enqueue(self, lines: Iterable[bytes]) -> bool:
        """
        Queue framed lines for a worker.

        Returns:
            True if the caller must schedule a worker for this connection.
        """
        with self._lock:
            if self._aborted or self._draining or self.close_requested:
                return False
            self._pending.extend(lines)
            if self._pending and not self._scheduled:
                self._scheduled = True
                return True
            return False

    def next_pending(self) -> Optional[bytes]:
        """
        Pop the next queued line (worker side).

        Returns None, and releases the queue, once it is empty or the
        connection is going away.
        """
        with self._lock:
            if self._aborted or self.close_requested or not self._pending:
                self._scheduled = False
                return None
            return self._pending.popleft()

    def fail(self) -> None:
        """Worker side: drop queued lines after a handler error."""
        with self._lock:
            self._aborted = True
            self._pending.clear()
            self._scheduled = False

    def finish_input(self) -> bool:
        """
        No more input will arrive; deliver what is queued, then close.

        Returns:
            True if no worker owns the queue (safe to finalize now).
        """
        with self._lock:
            self._draining = True
            return not self._scheduled

    def abort(self) -> bool:
        """
        Discard queued lines and stop dispatching.

        Returns:
            True if no worker owns the queue (safe to finalize now).
        """
        with self._lock:
            self._aborted = True
            self._pending.clear()
            return not self._scheduled

    @property
    def is_idle(self) -> bool:
        """True when no worker is dispatching for this connection."""
        with self._lock:
            return not self._scheduled

    # =========================================================================
    # CLOSING: Properly terminate the connection
    # =========================================================================

    def close(self):
        """
        Close the socket.

        Safe to call more than once. Any unterminated remainder in the
        framer is discarded (and logged).
        """
        if self.state == ConnectionState.CLOSED:
            return  # Already closed

        self.state = ConnectionState.CLOSING

        remainder = self.framer.flush()
        if remainder:
            logger.debug(f"[{self.id}] Discarding {len(remainder)} unterminated bytes")

        try:
            # Sends FIN; the peer sees EOF on its next read
            self.socket.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass  # Peer already gone

        try:
            self.socket.close()
        except OSError as e:
            logger.warning(f"[{self.id}] Error closing socket: {e}")

        self.state = ConnectionState.CLOSED
        logger.debug(
            f"[{self.id}] Connection closed after {self.age:.1f}s, {self.lines_received} lines "
            f"({self.bytes_received} bytes in, {self.bytes_sent} bytes out)"
        )
