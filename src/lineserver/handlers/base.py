"""
=============================================================================
HANDLER CAPABILITY
=============================================================================

The server core knows nothing about what a line MEANS. Everything
application-specific lives behind two small classes:

    ┌─────────────────────────────────────────────────────────────────────┐
    │                                                                      │
    │   Handler                     one per server                         │
    │   ─────────────────────────────────────────────────────────────────  │
    │   create_context(connection)  → HandlerContext    (on accept)        │
    │   destroy_context(context)                        (on removal)       │
    │                                                                      │
    │   HandlerContext              one per connection                     │
    │   ─────────────────────────────────────────────────────────────────  │
    │   on_line(line)               called once per framed line            │
    │   send(data)                  write back to this connection          │
    │   disconnect()                ask the server to drop the connection  │
    │   close()                     release resources                      │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
CONTEXT LIFECYCLE
=============================================================================

    CREATED ──────► ACTIVE ──────► DESTROYED
       │                               ▲
       └───────────────────────────────┘
         (connection closed before any line arrived)

- CREATED:   create_context() returned. send() is already allowed, so a
             handler can greet the client.
- ACTIVE:    at least one line was delivered.
- DESTROYED: destroy_context() ran. The core calls it exactly once per
             context, and never delivers another line afterwards.

If create_context() raises, the connection is closed on the spot and is
never registered.

=============================================================================
WRITING A HANDLER
=============================================================================

    class ShoutHandler(Handler):
        def create_context(self, connection):
            return ShoutContext(connection)

    class ShoutContext(HandlerContext):
        def on_line(self, line):
            self.send_line(line.upper())

Or, for one-liners, a plain function:

    def shout(context, line):
        context.send_line(line.upper())

    server = LineServer(handler=FunctionHandler(shout))

Handlers can also be named on the command line:

    python -m lineserver --handler mypackage.handlers:ShoutHandler

=============================================================================
"""

import importlib
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import TYPE_CHECKING, Callable, Optional, Union

if TYPE_CHECKING:
    from ..core.connection import Connection


logger = logging.getLogger(__name__)


class ContextState(Enum):
    """Lifecycle of a HandlerContext."""
    CREATED = "created"
    ACTIVE = "active"
    DESTROYED = "destroyed"


class ContextDestroyedError(RuntimeError):
    """Raised when a destroyed context is asked to handle or send data."""


class HandlerLoadError(ImportError):
    """Raised when a handler path cannot be resolved to a Handler."""


class HandlerContext(ABC):
    """
    Per-connection execution environment.

    Subclasses implement on_line(). Everything else has a working default.

    Attributes:
        connection: The owning Connection. Exclusively owned, never shared
                    with another context.
        state: Current ContextState. Managed by the server core.
    """

    def __init__(self, connection: "Connection"):
        self.connection = connection
        self.state = ContextState.CREATED

    @abstractmethod
    def on_line(self, line: bytes) -> None:
        """
        Handle one complete line.

        Called synchronously, in stream order. May call send() any number
        of times before returning. Raising an exception closes the
        connection.

        Args:
            line: Line bytes without the trailing newline.
        """

    def send(self, data: bytes) -> int:
        """
        Write data to the owning connection.

        Returns:
            Number of bytes written (always len(data) on success).

        Raises:
            ContextDestroyedError: If the context was already destroyed.
            TimeoutError: If the peer stopped reading for send_timeout.
            OSError: If the socket failed.
        """
        if self.state is ContextState.DESTROYED:
            raise ContextDestroyedError(f"[{self.connection.id}] Context already destroyed")
        return self.connection.send(data)

    def send_line(self, data: Union[str, bytes]) -> int:
        """Send data followed by a newline. Strings are UTF-8 encoded."""
        if isinstance(data, str):
            data = data.encode("utf-8")
        return self.send(data + b"\n")

    def disconnect(self) -> None:
        """
        Ask the server to close this connection.

        No further lines are delivered after the current one returns.
        """
        self.connection.close_requested = True

    def close(self) -> None:
        """Release resources held by the context. Override as needed."""


class Handler(ABC):
    """
    Factory for per-connection contexts.

    A single Handler instance serves every connection. In pool mode its
    methods may run on several threads at once, so keep shared state out
    of it (or lock it).
    """

    @abstractmethod
    def create_context(self, connection: "Connection") -> HandlerContext:
        """
        Build the context for a freshly accepted connection.

        Raises:
            Exception: Any error aborts the connection before it is
                       registered.
        """

    def destroy_context(self, context: HandlerContext) -> None:
        """Release the context. The core calls this exactly once per context."""
        context.close()

    @property
    def name(self) -> str:
        """Get the handler name for logging."""
        return self.__class__.__name__


# =============================================================================
# FUNCTION HANDLER
# =============================================================================
#
# Sometimes a handler is just "do X with every line". FunctionHandler wraps
# a plain function so you don't need two classes for it.
#
# =============================================================================

LineFunction = Callable[[HandlerContext, bytes], None]


class FunctionContext(HandlerContext):
    """Context that forwards each line to a plain function."""

    def __init__(self, connection: "Connection", func: LineFunction):
        super().__init__(connection)
        self._func = func

    def on_line(self, line: bytes) -> None:
        self._func(self, line)


class FunctionHandler(Handler):
    """
    Wraps func(context, line) as a Handler.

    Usage:
        def echo(context, line):
            context.send_line(line)

        server = LineServer(handler=FunctionHandler(echo))
    """

    def __init__(self, func: LineFunction, name: Optional[str] = None):
        self._func = func
        self._name = name or getattr(func, "__name__", "function")

    def create_context(self, connection: "Connection") -> HandlerContext:
        return FunctionContext(connection, self._func)

    @property
    def name(self) -> str:
        return self._name


def load_handler(path: str) -> Handler:
    """
    Resolve "package.module:attribute" to a Handler instance.

    The attribute may be:
    - a Handler instance          → used as-is
    - a Handler subclass          → instantiated with no arguments
    - any other callable          → wrapped in FunctionHandler

    Args:
        path: Import path, e.g. "lineserver.handlers.echo:EchoHandler".

    Returns:
        Handler ready to pass to LineServer.

    Raises:
        HandlerLoadError: If the path is malformed, the module cannot be
                          imported, or the attribute is not usable.
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise HandlerLoadError(f"Handler path must look like 'module:attribute', got {path!r}")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise HandlerLoadError(f"Cannot import handler module {module_name!r}: {e}") from e

    target = module
    for part in attr.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as e:
            raise HandlerLoadError(f"{module_name!r} has no attribute {attr!r}") from e

    if isinstance(target, Handler):
        handler = target
    elif isinstance(target, type) and issubclass(target, Handler):
        handler = target()
    elif callable(target) and not isinstance(target, type):
        handler = FunctionHandler(target)
    else:
        raise HandlerLoadError(f"{path!r} is not a Handler, Handler subclass or function")

    logger.debug(f"Loaded handler {handler.name} from {path}")
    return handler
