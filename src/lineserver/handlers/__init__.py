"""
=============================================================================
LINE HANDLERS
=============================================================================

Handlers decide what a line means. The server core frames the bytes and
calls into these classes; it never looks inside a line itself.

=============================================================================
AVAILABLE HANDLERS
=============================================================================

1. Handler / HandlerContext
   - The capability interface every handler implements
   - create_context() on accept, destroy_context() on removal
   - on_line() once per framed line, send() to answer

2. FunctionHandler
   - Wraps a plain func(context, line)

3. EchoHandler
   - Sends every line back (the default)

=============================================================================
USAGE EXAMPLES
=============================================================================

    from lineserver.handlers import EchoHandler, FunctionHandler

    server = LineServer(handler=EchoHandler(greeting="welcome"))

    def upper(context, line):
        context.send_line(line.upper())

    server = LineServer(handler=FunctionHandler(upper))

=============================================================================
"""

from .base import (
    ContextDestroyedError,
    ContextState,
    FunctionHandler,
    Handler,
    HandlerContext,
    HandlerLoadError,
    load_handler,
)
from .echo import EchoHandler

__all__ = [
    "Handler",
    "HandlerContext",
    "ContextState",
    "ContextDestroyedError",
    "HandlerLoadError",
    "FunctionHandler",
    "EchoHandler",
    "load_handler",
]
