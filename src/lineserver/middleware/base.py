"""
=============================================================================
BASE MIDDLEWARE INTERFACE
=============================================================================

Defines the line middleware protocol and the pipeline that chains it.
Chain of Responsibility: each layer sees the line on its way to the
handler context and can act before and after it runs.

    ┌─────────────────────────────────────────────────────────────────────┐
    │                      LINE DISPATCH CHAIN                            │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   line ──────────────────────────────────────────────────►          │
    │                                                                      │
    │   ┌──────────┐    ┌──────────┐    ┌───────────────────────┐         │
    │   │ Logging  │───►│   Rate   │───►│  context.on_line()    │         │
    │   │    MW    │    │  Limit   │    │  (deliver_line)       │         │
    │   └──────────┘    └──────────┘    └───────────────────────┘         │
    │                                                                      │
    │   [before]        [before]                                          │
    │   start timer     take a token                                      │
    │                   (or drop / disconnect)                            │
    │                                                                      │
    │   [after]                                                           │
    │   log duration,                                                     │
    │   bytes sent                                                        │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

There is no response object flowing back through the chain: the
handler writes with context.send() whenever it likes. A middleware that
does not call next() simply drops the line.

=============================================================================
"""

from abc import ABC, abstractmethod
from typing import Callable, List, Optional
import logging

from ..handlers.base import HandlerContext


logger = logging.getLogger(__name__)


# The rest of the chain as seen from one middleware: the next middleware,
# or deliver_line() at the very end.
NextHandler = Callable[[HandlerContext, bytes], None]

LineMiddlewareFunc = Callable[[HandlerContext, bytes, NextHandler], None]


class Middleware(ABC):
    """
    One layer of the line dispatch chain.

    =========================================================================
    ANATOMY OF A LINE MIDDLEWARE
    =========================================================================

        class DropBlank(Middleware):
            def __call__(self, context, line, next):
                if not line.strip():
                    return                 # never reaches the handler

                next(context, line)        # hand it on (maybe rewritten)

                # anything here runs after the handler returned

    An exception raised here, or by anything further down the chain,
    closes the connection that sent the line.

    =========================================================================
    """

    @abstractmethod
    def __call__(self, context: HandlerContext, line: bytes, next: NextHandler) -> None:
        """
        Handle one line on its way to the context.

        Args:
            context: Handler context of the sending connection.
            line: The line, terminator excluded.
            next: Call with (context, line) to continue the chain.
        """

    @property
    def name(self) -> str:
        """Name used in log records."""
        return type(self).__name__


class MiddlewarePipeline:
    """
    Ordered middleware, folded around the innermost dispatcher.

    The first one added sees the line first:

        pipeline = MiddlewarePipeline()
        pipeline.use(LoggingMiddleware(), RateLimitMiddleware())

        dispatch = pipeline.wrap(deliver_line)
        dispatch(context, b"hello")     # Logging → RateLimit → on_line
    """

    def __init__(self):
        self._middleware: List[Middleware] = []

    def add(self, middleware: Middleware) -> "MiddlewarePipeline":
        """Append one middleware. Returns self, for chaining."""
        self._middleware.append(middleware)
        logger.debug(f"Line middleware added: {middleware.name} (position {len(self._middleware)})")
        return self

    def use(self, *middleware: Middleware) -> "MiddlewarePipeline":
        """Append several middleware, in order."""
        for each in middleware:
            self.add(each)
        return self

    def wrap(self, dispatcher: NextHandler) -> NextHandler:
        """
        Build the dispatch chain around dispatcher.

        Wrapping starts from the LAST middleware so that the first one
        added ends up outermost. With no middleware, dispatcher itself is
        returned.
        """
        chain = dispatcher
        for middleware in reversed(self._middleware):
            chain = self._bind(middleware, chain)
        return chain

    @staticmethod
    def _bind(middleware: Middleware, rest: NextHandler) -> NextHandler:
        def link(context: HandlerContext, line: bytes) -> None:
            middleware(context, line, rest)

        return link

    def __len__(self) -> int:
        return len(self._middleware)

    def __iter__(self):
        return iter(self._middleware)


# =============================================================================
# FUNCTION MIDDLEWARE
# =============================================================================
#
# For a middleware that is one function body there is no need for a class.
#
# =============================================================================

class FunctionMiddleware(Middleware):
    """
    Adapts func(context, line, next) to the Middleware interface.

    Usage:
        @function_middleware
        def strip_cr(context, line, next):
            next(context, line.rstrip(b"\\r"))

        server.use(strip_cr)
    """

    def __init__(self, func: LineMiddlewareFunc, name: Optional[str] = None):
        self._func = func
        self._name = name or getattr(func, "__name__", "function")

    def __call__(self, context: HandlerContext, line: bytes, next: NextHandler) -> None:
        self._func(context, line, next)

    @property
    def name(self) -> str:
        return self._name


def function_middleware(func: LineMiddlewareFunc) -> FunctionMiddleware:
    """Decorator: turn func(context, line, next) into a FunctionMiddleware."""
    return FunctionMiddleware(func)
