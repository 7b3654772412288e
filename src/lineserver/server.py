"""
=============================================================================
LINE SERVER - MAIN ORCHESTRATOR
=============================================================================

Ties the pieces together:

    ┌─────────────────────────────────────────────────────────────────────┐
    │                          LineServer                                  │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   ServerConfig ──► Listener.open()        bind + listen (fatal)     │
    │                        │                                             │
    │   Handler ─────────────┤                                             │
    │   MiddlewarePipeline ──┤  wrap(deliver_line)                         │
    │   ThreadPool (opt.) ───┤                                             │
    │                        ▼                                             │
    │                   Multiplexer.run()       blocks until shutdown     │
    │                        │                                             │
    │                        ▼                                             │
    │                   cleanup: drop connections, stop workers,          │
    │                   close selector and listener, restore signals      │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
LIFE OF A LINE
=============================================================================

    1. Client writes "hello\\n"
    2. select() reports the socket readable
    3. recv() returns b"hello\\n" (or part of it, or more)
    4. LineFramer cuts it at "\\n" → b"hello"
    5. Middleware chain (logging, rate limit, ...)
    6. context.on_line(b"hello")
    7. Handler calls context.send(...) → bytes go straight to the socket

=============================================================================
GRACEFUL SHUTDOWN
=============================================================================

SIGINT / SIGTERM (or shutdown() from another thread):

    1. Stop the loop after its current cycle
    2. Remove every connection (context destroyed, socket closed)
    3. Shut the worker pool down
    4. Close the listening socket

=============================================================================
"""

import logging
import signal
import threading
from typing import Optional, Tuple

from .config import ServerConfig
from .core import Listener, Multiplexer, ThreadPool
from .core.connection import deliver_line
from .handlers import Handler, load_handler
from .middleware import Middleware, MiddlewarePipeline


logger = logging.getLogger(__name__)


class LineServer:
    """
    Newline-delimited TCP server.

    =========================================================================
    USAGE
    =========================================================================

        from lineserver import LineServer, ServerConfig
        from lineserver.handlers import FunctionHandler

        def shout(context, line):
            context.send_line(line.upper())

        server = LineServer(ServerConfig(port=5000), handler=FunctionHandler(shout))
        server.use(LoggingMiddleware())
        server.run()          # blocks until Ctrl+C

    Running in a background thread (tests):

        thread = threading.Thread(target=server.run, daemon=True)
        thread.start()
        server.wait_until_ready(5.0)
        host, port = server.address
        ...
        server.shutdown()
        thread.join()

    =========================================================================
    """

    def __init__(self, config: Optional[ServerConfig] = None, handler: Optional[Handler] = None):
        """
        Initialize the server.

        Args:
            config: Server configuration. Uses defaults if not provided.
            handler: Handler instance. Loaded from config.handler if not
                     provided.

        Raises:
            ValueError: If the configuration is invalid.
            HandlerLoadError: If config.handler cannot be loaded.
        """
        self.config = config or ServerConfig()
        self.config.validate()  # Fail-fast on invalid config

        self.handler = handler if handler is not None else load_handler(self.config.handler)

        self._middleware = MiddlewarePipeline()

        # ─────────────────────────────────────────────────────────────────
        # RUNTIME STATE (created in run())
        # ─────────────────────────────────────────────────────────────────
        self._listener: Optional[Listener] = None
        self._pool: Optional[ThreadPool] = None
        self._multiplexer: Optional[Multiplexer] = None

        self._ready = threading.Event()
        self._stopped = threading.Event()
        self._stop_requested = False

        self._original_handlers: dict = {}

    # =========================================================================
    # CONFIGURATION METHODS
    # =========================================================================

    def use(self, middleware: Middleware) -> "LineServer":
        """
        Add line middleware. Executed in the order added.

        Returns:
            Self for method chaining.
        """
        if self._multiplexer is not None:
            raise RuntimeError("Middleware must be added before run()")
        self._middleware.add(middleware)
        return self

    @property
    def address(self) -> Tuple[str, int]:
        """The bound (host, port); the real port once running."""
        if self._listener is not None and self._listener.is_open:
            return self._listener.address
        return (self.config.host, self.config.port)

    @property
    def is_running(self) -> bool:
        return self._ready.is_set() and not self._stopped.is_set()

    @property
    def stats(self) -> dict:
        """Event loop counters (empty before run())."""
        if self._multiplexer is None:
            return {}
        stats = self._multiplexer.stats
        if self._pool is not None:
            stats["pool"] = self._pool.stats
        return stats

    # =========================================================================
    # SERVER LIFECYCLE
    # =========================================================================

    def run(self, host: Optional[str] = None, port: Optional[int] = None):
        """
        Start the server (blocking).

        Args:
            host: Override config host.
            port: Override config port.

        Raises:
            OSError: If the listening socket cannot be set up, or the
                     event loop fails. Both are fatal.
        """
        if host:
            self.config.host = host
        if port is not None:
            self.config.port = port

        self._setup_logging()
        self._ready.clear()
        self._stopped.clear()

        # Middleware wrapped around the innermost "context.on_line(line)"
        dispatcher = self._middleware.wrap(deliver_line)

        try:
            # ─────────────────────────────────────────────────────────────
            # SETUP
            # ─────────────────────────────────────────────────────────────
            self._listener = Listener(self.config.host, self.config.port, self.config.backlog)
            self._listener.open()

            if self.config.workers > 0:
                self._pool = ThreadPool(
                    min_workers=self.config.workers,
                    max_workers=self.config.pool_max_workers,
                    queue_size=self.config.queue_size,
                )
                self._pool.start()

            self._multiplexer = Multiplexer(
                self._listener,
                self.handler,
                self.config,
                pool=self._pool,
                dispatcher=dispatcher,
            )

            self._setup_signals()

            host, port = self.address
            mode = f"{self.config.workers} workers" if self._pool else "inline"
            logger.info(
                f"Line server running on {host}:{port} "
                f"(handler {self.handler.name}, {mode}, max line {self.config.max_line_size}B, "
                f"overflow {self.config.overflow_policy})"
            )

            if self._stop_requested:
                self._multiplexer.stop()
            self._ready.set()

            # ─────────────────────────────────────────────────────────────
            # MAIN LOOP (blocks here)
            # ─────────────────────────────────────────────────────────────
            try:
                self._multiplexer.run()
            except KeyboardInterrupt:
                logger.info("Received keyboard interrupt")
        finally:
            self._shutdown()

    def shutdown(self) -> None:
        """
        Request a graceful shutdown. Safe from signal handlers and other
        threads; run() returns once cleanup is done.
        """
        self._stop_requested = True
        if self._multiplexer is not None:
            self._multiplexer.stop()

    def wait_until_ready(self, timeout: Optional[float] = None) -> bool:
        """Wait until the server accepts connections. False on timeout."""
        return self._ready.wait(timeout)

    def wait_for_shutdown(self, timeout: Optional[float] = None) -> bool:
        """Wait until run() has cleaned up. False on timeout."""
        return self._stopped.wait(timeout)

    def _setup_logging(self):
        """Configure logging based on config."""
        level = getattr(logging, self.config.log_level.upper(), logging.INFO)

        logging.basicConfig(
            level=level,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

        logging.getLogger("lineserver").setLevel(level)

    def _setup_signals(self):
        """
        Route SIGINT (Ctrl+C) and SIGTERM (docker stop, kill) to shutdown().

        Python only allows signal handlers on the main thread; a server
        started from any other thread relies on shutdown() instead.
        """
        if threading.current_thread() is not threading.main_thread():
            return

        def shutdown_handler(signum, frame):
            signal_name = signal.Signals(signum).name
            logger.info(f"Received {signal_name}, initiating shutdown...")
            self.shutdown()

        self._original_handlers[signal.SIGTERM] = signal.signal(signal.SIGTERM, shutdown_handler)
        self._original_handlers[signal.SIGINT] = signal.signal(signal.SIGINT, shutdown_handler)

    def _restore_signals(self):
        """Restore original signal handlers."""
        for sig, handler in self._original_handlers.items():
            signal.signal(sig, handler)
        self._original_handlers.clear()

    def _shutdown(self):
        """
        Release everything run() created, in reverse order.

        Every connection is removed (its context destroyed exactly once)
        before the worker pool and the listener go away.
        """
        logger.info("Shutting down server...")

        if self._multiplexer is not None:
            self._multiplexer.abort_all()

        if self._pool is not None:
            self._pool.shutdown(wait=True, timeout=self.config.dispatch_timeout)

        if self._multiplexer is not None:
            self._multiplexer.close()

        if self._listener is not None:
            self._listener.close()

        self._restore_signals()
        self._stopped.set()
        logger.info("Server stopped")


def create_app(config: Optional[ServerConfig] = None, handler: Optional[Handler] = None) -> LineServer:
    """
    Create a line server application.

    Example:
        app = create_app(ServerConfig(port=6000), EchoHandler(greeting="hi"))
        app.run()
    """
    return LineServer(config, handler)


# =============================================================================
# MODULE SUMMARY
# =============================================================================
#
# 1. Component setup: config, listener, handler, middleware, worker pool
# 2. One event loop thread owns every socket and the registry
# 3. Lifecycle: startup failures are fatal, shutdown is graceful
# =============================================================================
