"""
=============================================================================
CORE SERVER COMPONENTS
=============================================================================

The networking plumbing: everything between "bytes arrived on a socket"
and "a handler context got a line".

=============================================================================
ARCHITECTURE OVERVIEW
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │                            LISTENER                                  │
    │  ─────────────────────────────────────────────────────────────────  │
    │  • Creates, binds and listens on the TCP socket                     │
    │  • Non-blocking accept(), one new socket per client                 │
    └─────────────────────────────────────────────────────────────────────┘
                                    │
                                    │ New sockets
                                    ▼
    ┌─────────────────────────────────────────────────────────────────────┐
    │                           MULTIPLEXER                                │
    │  ─────────────────────────────────────────────────────────────────  │
    │  • One selector over the listener and every live connection        │
    │  • Reads ready sockets, frames lines, dispatches them               │
    │  • Optional ThreadPool runs handlers off the loop thread            │
    └─────────────────────────────────────────────────────────────────────┘
                                    │
                                    │ Owns
                                    ▼
    ┌─────────────────────────────────────────────────────────────────────┐
    │                     REGISTRY → CONNECTION → FRAMER                   │
    │  ─────────────────────────────────────────────────────────────────  │
    │  • ConnectionRegistry: fd → Connection, one entry per live socket   │
    │  • Connection: socket, counters, handler context                    │
    │  • LineFramer: partial-line buffer with an overflow bound           │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
IMPORTS AND EXPORTS
=============================================================================
"""

from .connection import Connection, ConnectionState
from .framing import LineFramer, LineOverflowError, OverflowPolicy
from .listener import Listener
from .multiplexer import LoopState, Multiplexer
from .registry import ConnectionExistsError, ConnectionRegistry
from .thread_pool import ThreadPool

__all__ = [
    "Connection",             # One accepted client socket
    "ConnectionState",        # Connection lifecycle states
    "ConnectionRegistry",     # fd → Connection mapping
    "ConnectionExistsError",  # Duplicate registration
    "LineFramer",             # Byte stream → lines
    "LineOverflowError",      # Line too long under the close policy
    "OverflowPolicy",         # deliver / close
    "Listener",               # Listening socket
    "Multiplexer",            # The event loop
    "LoopState",              # Event loop states
    "ThreadPool",             # Optional worker threads for handlers
]
