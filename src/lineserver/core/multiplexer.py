"""
=============================================================================
READINESS MULTIPLEXER (THE EVENT LOOP)
=============================================================================

One thread, many sockets. Instead of a thread per client, the loop asks
the OS "which of these sockets can I read without blocking?" and only
touches those:

    ┌─────────────────────────────────────────────────────────────────────┐
    │                                                                      │
    │   selector.select(timeout)                                           │
    │        │                                                             │
    │        ├── listener ready  ──► accept queued clients, create         │
    │        │                       contexts, register connections        │
    │        │                                                             │
    │        ├── waker ready     ──► a worker finished or stop() was       │
    │        │                       called, just drain the byte           │
    │        │                                                             │
    │        └── client ready    ──► recv() once, frame lines, deliver     │
    │                                                                      │
    │   then: worker completions, idle sweep, back to select()             │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

The selector's registrations mirror the registry: a connection is
registered with the selector right after registry.add() and unregistered
right before its removal starts.

=============================================================================
LOOP STATES
=============================================================================

    IDLE ──────► DISPATCHING ──────► IDLE ──────► ... ──────► STOPPED
            (events arrived)   (cycle finished)         (stop(), close())

=============================================================================
REMOVING A CONNECTION
=============================================================================

Removal always happens on the loop thread and always ends in
registry.remove(), which destroys the context exactly once and closes the
socket. In pool mode a worker may still be inside the handler when the
loop decides to drop a connection, so removal is split in two:

    _remove()      unregister from the selector, state → CLOSING,
                   stop (or finish) queued lines
    _finalize()    registry.remove(): destroy context, close socket

    worker idle?  ── yes ──► _finalize() right away
                  ── no  ──► wait for the worker's completion record

Graceful removal (peer EOF, overflow under the close policy) still
delivers lines that were already framed. Abortive removal (errors, idle
timeout, handler disconnect, shutdown) discards them.

=============================================================================
"""

import queue
import selectors
import socket
import logging
from enum import Enum
from typing import TYPE_CHECKING, Dict, Optional, Tuple

from ..handlers.base import Handler
from .connection import Connection, ConnectionState, LineDispatcher, deliver_line
from .framing import LineOverflowError
from .listener import Listener
from .registry import ConnectionExistsError, ConnectionRegistry
from .thread_pool import ThreadPool

if TYPE_CHECKING:
    from ..config import ServerConfig


logger = logging.getLogger(__name__)


class LoopState(Enum):
    """Event loop states."""
    IDLE = "idle"                # Waiting in select()
    DISPATCHING = "dispatching"  # Handling the events of one cycle
    STOPPED = "stopped"          # stop() or close() was called


# Selector key.data markers for the two non-client sockets
_LISTENER = "listener"
_WAKER = "waker"


class Multiplexer:
    """
    Readiness-based event loop over the listener and every live connection.

    Usage:
        listener = Listener("0.0.0.0", 5000)
        listener.open()

        loop = Multiplexer(listener, EchoHandler(), config)
        loop.run()          # Blocks until stop() (from a signal or thread)
        loop.close()

    Or one cycle at a time (tests, embedding):

        loop.run_once(timeout=0.1)
    """

    def __init__(
        self,
        listener: Listener,
        handler: Handler,
        config: "ServerConfig",
        pool: Optional[ThreadPool] = None,
        dispatcher: LineDispatcher = deliver_line,
        registry: Optional[ConnectionRegistry] = None,
    ):
        """
        Initialize the loop.

        Args:
            listener: An open Listener.
            handler: Creates one context per accepted connection.
            config: Buffer sizes, limits and timeouts.
            pool: Started ThreadPool for pool mode, or None to run
                  handlers on the loop thread.
            dispatcher: Line dispatch chain (middleware around deliver_line).
            registry: Registry to use (a fresh one by default).
        """
        self.listener = listener
        self.handler = handler
        self.config = config
        self.pool = pool
        self.dispatcher = dispatcher
        self.registry = registry if registry is not None else ConnectionRegistry()

        self.state = LoopState.IDLE
        self._running = False
        self._stopping = False
        self._closed = False

        self._selector = selectors.DefaultSelector()
        self._selector.register(listener.sock, selectors.EVENT_READ, data=_LISTENER)

        # ─────────────────────────────────────────────────────────────────
        # WAKER: lets other threads (and signal handlers) interrupt select()
        # ─────────────────────────────────────────────────────────────────
        self._waker_r, self._waker_w = socket.socketpair()
        self._waker_r.setblocking(False)
        self._waker_w.setblocking(False)
        self._selector.register(self._waker_r, selectors.EVENT_READ, data=_WAKER)

        # (connection, error or None) records posted by workers
        self._completions: "queue.Queue[Tuple[Connection, Optional[BaseException]]]" = queue.Queue()

        # fd → reason, for connections waiting on a worker before finalizing
        self._closing: Dict[int, str] = {}

        self._stats = {
            "accepted": 0,
            "rejected": 0,
            "removed": 0,
            "lines": 0,
            "overflow_closes": 0,
        }

    # =========================================================================
    # PROPERTIES
    # =========================================================================

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def stats(self) -> dict:
        """Counters for logging and tests."""
        stats = dict(self._stats)
        stats["connections"] = len(self.registry)
        return stats

    # =========================================================================
    # RUNNING
    # =========================================================================

    def run(self) -> None:
        """
        Run cycles until stop() is called.

        Raises:
            OSError: If the selector fails (fatal for the server).
        """
        self._running = True
        logger.debug("Event loop started")

        try:
            while not self._stopping:
                self.run_once(self.config.poll_interval)
        finally:
            self._running = False
            self.state = LoopState.STOPPED
            logger.debug("Event loop stopped")

    def run_once(self, timeout: Optional[float] = None) -> int:
        """
        Wait for readiness once and handle whatever is ready.

        Args:
            timeout: Seconds to wait in select(). None waits forever.

        Returns:
            Number of ready events handled.

        Raises:
            OSError: Selector failure other than an interrupted wait.
        """
        if self._closed:
            raise RuntimeError("Event loop is closed")

        try:
            events = self._selector.select(timeout)
        except InterruptedError:
            return 0  # Signal arrived, try again next cycle

        self.state = LoopState.DISPATCHING
        try:
            accept_ready = False
            ready = set()

            for key, _mask in events:
                if key.data is _LISTENER:
                    accept_ready = True
                elif key.data is _WAKER:
                    self._drain_waker()
                else:
                    ready.add(key.data)

            if accept_ready:
                self._accept_pending()

            if ready:
                # Registry order, skipping anything removed earlier this cycle
                self.registry.for_each(
                    lambda conn: self._service(conn) if conn in ready else None
                )

            self._process_completions()
            self._sweep_idle()
        finally:
            if self.state is LoopState.DISPATCHING:
                self.state = LoopState.IDLE

        return len(events)

    def stop(self) -> None:
        """
        Ask run() to return after the current cycle.

        Safe to call from a signal handler or another thread, and before
        run() has started.
        """
        self._stopping = True
        self.state = LoopState.STOPPED
        self._wake()

    # =========================================================================
    # ACCEPTING
    # =========================================================================

    def _accept_pending(self) -> None:
        """Accept queued clients, at most backlog of them per cycle."""
        for _ in range(max(1, self.config.backlog)):
            try:
                pair = self.listener.accept()
            except OSError as e:
                # Out of descriptors, client reset before accept, ...
                logger.error(f"Accept failed: {e}")
                break

            if pair is None:
                break  # Queue drained

            self._admit(*pair)

    def _admit(self, client_socket: socket.socket, address: tuple) -> None:
        """Wrap an accepted socket, create its context and register it."""
        limit = self.config.max_connections
        if limit is not None and len(self.registry) >= limit:
            logger.warning(
                f"Connection limit reached ({limit}), refusing {address[0]}:{address[1]}"
            )
            self._stats["rejected"] += 1
            client_socket.close()
            return

        conn = Connection(
            socket=client_socket,
            address=address,
            max_line_size=self.config.max_line_size,
            overflow_policy=self.config.overflow,
            send_timeout=self.config.send_timeout,
            dispatcher=self.dispatcher,
        )

        # ─────────────────────────────────────────────────────────────────
        # CONTEXT FIRST: a connection without a context is never registered
        # ─────────────────────────────────────────────────────────────────
        try:
            conn.open_context(self.handler)
        except Exception as e:
            logger.exception(f"[{conn.id}] {self.handler.name} failed to create context: {e}")
            self._stats["rejected"] += 1
            conn.close()
            return

        try:
            self.registry.add(conn.fd, conn)
        except ConnectionExistsError as e:
            logger.critical(f"[{conn.id}] {e}; keeping the existing entry, closing the new socket")
            try:
                conn.destroy_context()
            except Exception as destroy_error:
                logger.exception(f"[{conn.id}] Error destroying handler context: {destroy_error}")
            conn.close()
            return

        self._selector.register(conn.socket, selectors.EVENT_READ, data=conn)
        self._stats["accepted"] += 1

        logger.info(
            f"[{conn.id}] Connection from {conn.client_ip}:{conn.client_port} "
            f"({len(self.registry)} open)"
        )

        if conn.close_requested:
            self._remove(conn, "disconnect requested")

    # =========================================================================
    # READING AND DISPATCH
    # =========================================================================

    def _service(self, conn: Connection) -> None:
        """One read for a ready connection, then hand off the lines."""
        try:
            data = conn.read(self.config.read_buffer_size)
        except OSError as e:
            logger.warning(f"[{conn.id}] Read failed: {e}")
            self._remove(conn, "read error")
            return

        if data is None:
            return  # Spurious wakeup

        if not data:
            self._remove(conn, "peer closed", graceful=True)
            return

        if self.pool is None:
            self._dispatch_inline(conn, data)
        else:
            self._dispatch_pooled(conn, data)

    def _dispatch_inline(self, conn: Connection, data: bytes) -> None:
        """Deliver every complete line on the loop thread, in order."""
        try:
            for line in conn.feed(data):
                self._stats["lines"] += 1
                conn.dispatch(line)
                if conn.close_requested:
                    break

        except LineOverflowError as e:
            logger.warning(f"[{conn.id}] {e}, closing")
            self._stats["overflow_closes"] += 1
            self._remove(conn, "line overflow", graceful=True)
            return

        except Exception as e:
            logger.exception(f"[{conn.id}] {self.handler.name} failed handling line: {e}")
            self._remove(conn, "handler error")
            return

        if conn.close_requested:
            self._remove(conn, "disconnect requested")

    def _dispatch_pooled(self, conn: Connection, data: bytes) -> None:
        """Frame on the loop thread, queue the lines for a worker."""
        lines = []
        overflow: Optional[LineOverflowError] = None

        try:
            for line in conn.feed(data):
                lines.append(line)
        except LineOverflowError as e:
            overflow = e

        self._stats["lines"] += len(lines)

        if lines and conn.enqueue(lines):
            if not self._submit(conn):
                return

        if overflow is not None:
            logger.warning(f"[{conn.id}] {overflow}, closing")
            self._stats["overflow_closes"] += 1
            self._remove(conn, "line overflow", graceful=True)

    def _submit(self, conn: Connection) -> bool:
        """Schedule a drain of conn's queue. Removes conn on failure."""
        try:
            queued = self.pool.submit(
                self._drain,
                args=(conn,),
                name=conn.id,
                queue_timeout=self.config.dispatch_timeout,
            )
        except RuntimeError as e:
            logger.error(f"[{conn.id}] Cannot dispatch: {e}")
            queued = False

        if not queued:
            logger.error(f"[{conn.id}] No worker available within {self.config.dispatch_timeout}s")
            conn.fail()
            self._remove(conn, "dispatch timeout")
            return False
        return True

    def _drain(self, conn: Connection) -> None:
        """
        Worker side: deliver queued lines until the queue is empty.

        Never touches the registry or the selector; the outcome goes back
        to the loop thread as a completion record.
        """
        error: Optional[BaseException] = None
        try:
            while True:
                line = conn.next_pending()
                if line is None:
                    break
                conn.dispatch(line)
        except Exception as e:
            error = e
            conn.fail()
        finally:
            self._completions.put((conn, error))
            self._wake()

    def _process_completions(self) -> None:
        """Act on records posted by workers (loop thread)."""
        while True:
            try:
                conn, error = self._completions.get_nowait()
            except queue.Empty:
                return

            if self.registry.get(conn.fd) is not conn:
                continue  # Already finalized

            if error is not None:
                logger.error(
                    f"[{conn.id}] {self.handler.name} failed handling line: {error}",
                    exc_info=error,
                )
                self._remove(conn, "handler error")
            elif conn.close_requested:
                self._remove(conn, "disconnect requested")
            elif conn.state is ConnectionState.CLOSING and conn.is_idle:
                self._finalize(conn, self._closing.get(conn.fd, "closed"))

    # =========================================================================
    # REMOVAL
    # =========================================================================

    def _remove(self, conn: Connection, reason: str, graceful: bool = False) -> None:
        """
        Start removing conn (loop thread only).

        Args:
            conn: The connection to drop.
            reason: Short text for the log record.
            graceful: Deliver already-framed lines first (pool mode).
        """
        if self.registry.get(conn.fd) is not conn:
            return

        if conn.state is not ConnectionState.CLOSING:
            self._unregister(conn)
            conn.state = ConnectionState.CLOSING
            self._closing[conn.fd] = reason

        idle = conn.finish_input() if graceful else conn.abort()
        if idle:
            self._finalize(conn, self._closing.get(conn.fd, reason))
        else:
            logger.debug(f"[{conn.id}] Closing ({reason}), waiting for worker")

    def _finalize(self, conn: Connection, reason: str) -> None:
        """Destroy the context, close the socket, drop the registry entry."""
        self._closing.pop(conn.fd, None)
        if self.registry.remove(conn.fd):
            self._stats["removed"] += 1
            logger.info(f"[{conn.id}] Connection closed: {reason} ({len(self.registry)} open)")

    def _unregister(self, conn: Connection) -> None:
        try:
            self._selector.unregister(conn.fd)
        except (KeyError, ValueError):
            pass  # Never registered (or selector already closed)

    def _sweep_idle(self) -> None:
        """Remove connections that have been silent for idle_timeout."""
        timeout = self.config.idle_timeout
        if not timeout:
            return

        def check(conn: Connection) -> None:
            if conn.state is ConnectionState.OPEN and conn.idle_time > timeout:
                logger.info(f"[{conn.id}] Idle for {conn.idle_time:.1f}s")
                self._remove(conn, "idle timeout")

        self.registry.for_each(check)

    def abort_all(self) -> None:
        """Abortively remove every connection (server shutdown)."""
        self.registry.for_each(lambda conn: self._remove(conn, "server shutdown"))

    # =========================================================================
    # WAKER
    # =========================================================================

    def _wake(self) -> None:
        if self._closed:
            return
        try:
            self._waker_w.send(b"\x00")
        except (BlockingIOError, InterruptedError):
            pass  # A wakeup is already pending

    def _drain_waker(self) -> None:
        while True:
            try:
                if not self._waker_r.recv(4096):
                    return
            except (BlockingIOError, InterruptedError):
                return

    # =========================================================================
    # CLEANUP
    # =========================================================================

    def close(self) -> None:
        """
        Release everything the loop owns.

        Connections still registered (e.g. waiting on a worker that never
        reported back) are finalized unconditionally. The listener belongs
        to the caller and stays open.
        """
        if self._closed:
            return

        self._stopping = True
        self.state = LoopState.STOPPED

        self._process_completions()
        for conn in self.registry:
            self._unregister(conn)
        if len(self.registry):
            logger.debug(f"Force-closing {len(self.registry)} connection(s)")
            self.registry.clear()
        self._closing.clear()

        self._closed = True
        self._selector.close()
        self._waker_r.close()
        self._waker_w.close()
