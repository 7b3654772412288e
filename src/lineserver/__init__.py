"""
=============================================================================
LINESERVER - Newline-Delimited TCP Server
=============================================================================

A single-process TCP server that accepts many clients at once, cuts each
client's byte stream into lines, and hands every line to a per-connection
handler context that can write back to the same client.

=============================================================================
PROJECT OVERVIEW
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │                    LINESERVER ARCHITECTURE                          │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   1. READINESS MULTIPLEXING                                         │
    │      - One selector over the listener and every client socket       │
    │      - No thread per client                                         │
    │                                                                      │
    │   2. CONNECTION REGISTRY                                            │
    │      - One entry per live socket, removed exactly once              │
    │                                                                      │
    │   3. LINE FRAMING                                                   │
    │      - "\\n"-terminated lines, any chunking                          │
    │      - Bounded partial buffer with an overflow policy               │
    │                                                                      │
    │   4. HANDLERS AND MIDDLEWARE                                        │
    │      - One context per connection                                   │
    │      - Logging and rate limiting around every line                  │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
PACKAGE STRUCTURE
=============================================================================

    lineserver/
    ├── __init__.py          # This file - package exports
    ├── __main__.py          # CLI entry point (python -m lineserver)
    ├── server.py            # LineServer orchestrator
    ├── config.py            # ServerConfig dataclass
    ├── core/                # Networking plumbing
    │   ├── framing.py       # LineFramer
    │   ├── connection.py    # Connection wrapper
    │   ├── registry.py      # ConnectionRegistry
    │   ├── listener.py      # Listening socket
    │   ├── multiplexer.py   # Event loop
    │   └── thread_pool.py   # Optional handler workers
    ├── handlers/            # Handler capability + built-ins
    │   ├── base.py
    │   └── echo.py
    └── middleware/          # Line middleware
        ├── base.py
        ├── logging.py
        └── rate_limit.py

=============================================================================
QUICK START
=============================================================================

    from lineserver import LineServer, ServerConfig
    from lineserver.handlers import FunctionHandler

    def reverse(context, line):
        context.send_line(line[::-1])

    server = LineServer(ServerConfig(port=5000), handler=FunctionHandler(reverse))
    server.run()

=============================================================================
"""

__version__ = "1.0.0"

from .config import ServerConfig
from .server import LineServer, create_app
from .handlers import EchoHandler, FunctionHandler, Handler, HandlerContext, load_handler

__all__ = [
    "__version__",
    "LineServer",
    "ServerConfig",
    "create_app",
    "Handler",
    "HandlerContext",
    "FunctionHandler",
    "EchoHandler",
    "load_handler",
]
