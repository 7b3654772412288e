"""
=============================================================================
CONNECTION REGISTRY
=============================================================================

The registry is the single source of truth for "which connections are
alive right now". It maps socket descriptors to Connection objects:

    ┌──────────────┬──────────────────────────────────────────────┐
    │  fd          │  Connection                                  │
    ├──────────────┼──────────────────────────────────────────────┤
    │  7           │  Connection(id="3f2a9c1b", 10.0.0.5:51514)   │
    │  9           │  Connection(id="b71e04d2", 10.0.0.8:40022)   │
    │  12          │  Connection(id="0c9d55aa", 10.0.0.5:51530)   │
    └──────────────┴──────────────────────────────────────────────┘

=============================================================================
DESCRIPTOR REUSE
=============================================================================

The OS hands out the lowest free descriptor number. Close fd 9 and the
very next accept() may return 9 again. That is why:

1. add() REFUSES a descriptor that is already present. If that ever
   happens, an old connection was not removed properly. Overwriting it
   would leak its context, so ConnectionExistsError is raised instead.

2. remove() destroys the context and closes the socket BEFORE dropping
   the entry. The descriptor only becomes reusable once its old owner
   is completely gone.

=============================================================================
REMOVING WHILE ITERATING
=============================================================================

Processing a connection can remove it (peer closed, handler failed).
for_each() walks a snapshot taken when the pass starts, and checks each
entry is still the registered one before visiting it:

    snapshot = [(7, A), (9, B), (12, C)]

    visit A  → fine
    visit B  → B is removed during its own visit
    visit C  → still registered, visited

    Removed-before-their-turn entries are skipped, nothing is visited
    twice, and connections added mid-pass wait for the next pass.

=============================================================================
"""

import logging
from typing import Callable, Dict, Iterator, List, Optional

from .connection import Connection


logger = logging.getLogger(__name__)


class ConnectionExistsError(KeyError):
    """Raised by add() when the descriptor is already registered."""

    def __init__(self, fd: int):
        self.fd = fd
        super().__init__(f"Connection already registered for fd {fd}")


class ConnectionRegistry:
    """
    Mapping from socket descriptor to Connection.

    Only the event loop thread touches the registry.
    """

    def __init__(self):
        self._connections: Dict[int, Connection] = {}

    def add(self, fd: int, connection: Connection) -> None:
        """
        Register a connection.

        Raises:
            ConnectionExistsError: If fd is already registered. The
                                   existing entry is left untouched.
        """
        if fd in self._connections:
            raise ConnectionExistsError(fd)

        self._connections[fd] = connection
        logger.debug(f"[{connection.id}] Registered fd {fd} ({len(self._connections)} live)")

    def remove(self, fd: int) -> bool:
        """
        Remove a connection, destroying its context and closing its socket.

        Returns:
            True if fd was registered, False otherwise.
        """
        connection = self._connections.get(fd)
        if connection is None:
            return False

        try:
            connection.destroy_context()
        except Exception as e:
            # The destroy hook belongs to the handler; its failure must not
            # leave a half-removed entry behind.
            logger.exception(f"[{connection.id}] Error destroying handler context: {e}")
        finally:
            connection.close()
            del self._connections[fd]

        logger.debug(f"[{connection.id}] Unregistered fd {fd} ({len(self._connections)} live)")
        return True

    def get(self, fd: int) -> Optional[Connection]:
        """Get the connection registered for fd, if any."""
        return self._connections.get(fd)

    def for_each(self, visitor: Callable[[Connection], None]) -> None:
        """
        Visit every registered connection, tolerating removal mid-pass.

        Args:
            visitor: Called once per connection still registered when its
                     turn comes. May add or remove connections.
        """
        for fd, connection in list(self._connections.items()):
            if self._connections.get(fd) is connection:
                visitor(connection)

    def fds(self) -> List[int]:
        """Snapshot of registered descriptors."""
        return list(self._connections)

    def clear(self) -> None:
        """Remove every connection."""
        for fd in self.fds():
            self.remove(fd)

    def __contains__(self, fd: int) -> bool:
        return fd in self._connections

    def __len__(self) -> int:
        return len(self._connections)

    def __iter__(self) -> Iterator[Connection]:
        """Iterate over a snapshot of the registered connections."""
        return iter(list(self._connections.values()))
