"""
=============================================================================
LISTENING SOCKET
=============================================================================

This module owns the server's listening socket: the one socket that
never carries data and only produces new connections.

SOCKET LIFECYCLE (Server Side):
────────────────────────────────

    1. socket()    Create a socket file descriptor
    2. bind()      Associate the socket with an IP:PORT
    3. listen()    Mark the socket as listening (backlog = queue size)
    4. accept()    Take one queued connection, get a NEW socket for it

                    ┌───────────────────────┐
                    │   Listening Socket    │ ◄── Created once at startup
                    │   (Listener)          │     Bound to 0.0.0.0:5000
                    └───────────┬───────────┘     Never sends/receives data
                                │
        ┌───────────────────────┼───────────────────────┐
        ▼                       ▼                       ▼
    ┌───────────┐         ┌───────────┐         ┌───────────┐
    │ Client    │         │ Client    │         │ Client    │
    │ Socket 1  │         │ Socket 2  │         │ Socket 3  │
    └───────────┘         └───────────┘         └───────────┘

=============================================================================
NON-BLOCKING ACCEPT
=============================================================================

The listener is registered with the event loop's selector. When the
selector says "readable", at least one connection is queued. We accept
in non-blocking mode, so draining the queue ends with BlockingIOError
instead of hanging:

    while True:
        pair = listener.accept()
        if pair is None:        ← queue empty (BlockingIOError)
            break
        ...

=============================================================================
SOCKET OPTIONS
=============================================================================

SO_REUSEADDR on the listener lets a restarted server bind immediately,
instead of failing with "Address already in use" while old sockets sit
in TIME_WAIT.

TCP_NODELAY on accepted sockets disables Nagle's algorithm. Replies are
usually one short line; we want them on the wire right away.

=============================================================================
"""

import socket
import logging
from typing import Optional, Tuple


logger = logging.getLogger(__name__)


class Listener:
    """
    The bound, listening TCP socket.

    Usage:
        listener = Listener("0.0.0.0", 5000, backlog=10)
        listener.open()            # bind + listen, raises OSError on failure

        pair = listener.accept()   # (socket, address) or None
        ...
        listener.close()
    """

    def __init__(self, host: str = "0.0.0.0", port: int = 5000, backlog: int = 10):
        self.host = host
        self.port = port
        self.backlog = backlog

        self._socket: Optional[socket.socket] = None

    @property
    def is_open(self) -> bool:
        """Check if the listener is bound and listening."""
        return self._socket is not None

    @property
    def sock(self) -> socket.socket:
        """The underlying socket (for selector registration)."""
        if self._socket is None:
            raise RuntimeError("Listener is not open")
        return self._socket

    @property
    def address(self) -> Tuple[str, int]:
        """
        Get the bound address (IP, port).

        After open() this is the real address, so port=0 reports the
        port the OS picked.
        """
        if self._socket is not None:
            return self._socket.getsockname()[:2]
        return (self.host, self.port)

    def _create_socket(self) -> socket.socket:
        """Create and configure the listening socket."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)

        # Avoid "Address already in use" when restarting the server
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)

        return sock

    def open(self) -> None:
        """
        Bind and listen.

        Raises:
            OSError: If the socket cannot be created, bound or put into
                     listening mode. Callers treat this as fatal.
        """
        sock = self._create_socket()

        try:
            # ─────────────────────────────────────────────────────────────
            # BIND: Associate socket with address
            # ─────────────────────────────────────────────────────────────
            # Common errors:
            # - Address already in use: Another process has this port
            # - Permission denied: Ports < 1024 require root
            sock.bind((self.host, self.port))

            # ─────────────────────────────────────────────────────────────
            # LISTEN: Start queueing connections
            # ─────────────────────────────────────────────────────────────
            # When backlog connections are queued and not yet accepted,
            # new clients are refused (or their SYNs dropped).
            sock.listen(self.backlog)
            sock.setblocking(False)
        except OSError as e:
            logger.error(f"Failed to listen on {self.host}:{self.port}: {e}")
            sock.close()
            raise

        self._socket = sock
        host, port = self.address
        logger.info(f"Listening on {host}:{port} (backlog {self.backlog})")

    def accept(self) -> Optional[Tuple[socket.socket, tuple]]:
        """
        Accept one queued connection.

        Returns:
            (client_socket, client_address), or None if the queue is empty.

        Raises:
            OSError: If accept() failed for another reason (for example
                     the client reset before we got to it, or we ran out
                     of descriptors). The event loop logs and carries on.
        """
        try:
            client_socket, client_address = self.sock.accept()
        except (BlockingIOError, InterruptedError):
            return None

        try:
            client_socket.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        except OSError:
            pass  # Not fatal; only affects latency

        logger.debug(f"Accepted connection from {client_address[0]}:{client_address[1]}")
        return client_socket, client_address

    def close(self) -> None:
        """Close the listening socket. Safe to call more than once."""
        if self._socket is None:
            return

        try:
            self._socket.close()
        except OSError as e:
            logger.warning(f"Error closing listener: {e}")
        self._socket = None
        logger.info("Listener closed")

    def __enter__(self) -> "Listener":
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
