"""
=============================================================================
SERVER CONFIGURATION
=============================================================================

Centralized configuration for the line server.

=============================================================================
CONFIGURATION SOURCES
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │                    CONFIGURATION HIERARCHY                          │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   Priority (highest to lowest):                                     │
    │                                                                      │
    │   1. Command-line arguments                                         │
    │      └── python -m lineserver --port 6000                          │
    │                                                                      │
    │   2. Environment variables                                          │
    │      └── LINE_PORT=6000 python -m lineserver                       │
    │                                                                      │
    │   3. Default values (in this dataclass)                            │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
SIZES AND LIMITS
=============================================================================

Two sizes matter and they are independent:

    read_buffer_size   how many bytes ONE recv() may return
    max_line_size      how many bytes ONE line may hold before the
                       overflow policy kicks in

A line can span many reads; a read can carry many lines. Memory per
connection is bounded by max_line_size (the partial-line buffer) plus one
read.

=============================================================================
"""

import os
from dataclasses import dataclass
from typing import Optional

from .core.framing import OverflowPolicy


DEFAULT_HANDLER = "lineserver.handlers.echo:EchoHandler"


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


@dataclass
class ServerConfig:
    """
    Configuration for the line server.

    =========================================================================
    CONFIGURATION GROUPS
    =========================================================================

    NETWORK SETTINGS
    - host, port, backlog, read_buffer_size

    FRAMING
    - max_line_size, overflow_policy

    CONNECTION LIMITS
    - send_timeout, idle_timeout, max_connections

    EVENT LOOP / WORKERS
    - poll_interval, workers, max_workers, queue_size, dispatch_timeout

    HANDLER
    - handler

    LOGGING
    - log_level, log_format

    =========================================================================
    """

    # ─────────────────────────────────────────────────────────────────────
    # NETWORK SETTINGS
    # ─────────────────────────────────────────────────────────────────────

    host: str = "0.0.0.0"
    """
    The IP address to bind to.
    - "0.0.0.0" - All network interfaces (default)
    - "127.0.0.1" - Localhost only
    """

    port: int = 5000
    """
    The port number to listen on. 0 lets the OS pick a free port
    (handy in tests, read the real one from LineServer.address).
    """

    backlog: int = 10
    """
    Listen queue length. Also the most connections accepted in one
    event loop cycle.
    """

    read_buffer_size: int = 4096
    """Maximum bytes returned by a single recv()."""

    # ─────────────────────────────────────────────────────────────────────
    # FRAMING
    # ─────────────────────────────────────────────────────────────────────

    max_line_size: int = 4096
    """Longest line (in bytes, terminator excluded) before overflow."""

    overflow_policy: str = "deliver"
    """
    What happens to a line longer than max_line_size:
    - "deliver" - hand the first max_line_size bytes to the handler as
                  a line of their own and keep going
    - "close"   - drop the connection
    """

    # ─────────────────────────────────────────────────────────────────────
    # CONNECTION LIMITS
    # ─────────────────────────────────────────────────────────────────────

    send_timeout: Optional[float] = 5.0
    """
    How long HandlerContext.send() waits for a client that is not reading.
    None = wait forever.
    """

    idle_timeout: Optional[float] = None
    """Close connections silent for this many seconds. None = never."""

    max_connections: Optional[int] = None
    """Refuse connections beyond this many open ones. None = unlimited."""

    # ─────────────────────────────────────────────────────────────────────
    # EVENT LOOP / WORKERS
    # ─────────────────────────────────────────────────────────────────────

    poll_interval: float = 1.0
    """Longest select() wait, so shutdown and idle checks stay timely."""

    workers: int = 0
    """
    Worker threads for handlers.
    0 = run handlers on the event loop thread (default)
    """

    max_workers: Optional[int] = None
    """Upper bound when the pool scales up. None = 2 * workers."""

    queue_size: int = 100
    """Maximum connections waiting for a worker."""

    dispatch_timeout: float = 5.0
    """How long to wait for room in the worker queue before dropping."""

    # ─────────────────────────────────────────────────────────────────────
    # HANDLER
    # ─────────────────────────────────────────────────────────────────────

    handler: str = DEFAULT_HANDLER
    """Import path of the handler, "package.module:attribute"."""

    # ─────────────────────────────────────────────────────────────────────
    # LOGGING
    # ─────────────────────────────────────────────────────────────────────

    log_level: str = "INFO"
    """Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)."""

    log_format: str = "text"
    """Per-line access log format: 'json' or 'text'."""

    @property
    def overflow(self) -> OverflowPolicy:
        """overflow_policy as an OverflowPolicy."""
        return OverflowPolicy(self.overflow_policy)

    @property
    def pool_max_workers(self) -> int:
        """Resolved upper bound for the worker pool."""
        if self.max_workers is not None:
            return self.max_workers
        return self.workers * 2

    @classmethod
    def from_env(cls) -> "ServerConfig":
        """
        Create configuration from environment variables.

        =====================================================================
        ENVIRONMENT VARIABLES
        =====================================================================

        LINE_HOST             Bind address (default: 0.0.0.0)
        LINE_PORT             Port (default: 5000)
        LINE_BACKLOG          Listen backlog (default: 10)
        LINE_BUFFER_SIZE      recv() size (default: 4096)
        LINE_MAX_LINE         Max line length (default: 4096)
        LINE_OVERFLOW         deliver | close (default: deliver)
        LINE_SEND_TIMEOUT     Send timeout in seconds (default: 5)
        LINE_IDLE_TIMEOUT     Idle timeout in seconds (default: none)
        LINE_MAX_CONNECTIONS  Connection limit (default: none)
        LINE_WORKERS          Handler worker threads (default: 0)
        LINE_HANDLER          Handler import path
        LINE_LOG_LEVEL        Logging level (default: INFO)
        LINE_LOG_FORMAT       text | json (default: text)

        =====================================================================
        USAGE
        =====================================================================

        # From shell:
        LINE_PORT=6000 LINE_LOG_LEVEL=DEBUG python -m lineserver

        # In code:
        config = ServerConfig.from_env()
        server = LineServer(config)

        =====================================================================

        Raises:
            ValueError: If a numeric variable does not parse.
        """
        defaults = cls()
        return cls(
            host=os.getenv("LINE_HOST", defaults.host),
            port=_env_int("LINE_PORT", defaults.port),
            backlog=_env_int("LINE_BACKLOG", defaults.backlog),
            read_buffer_size=_env_int("LINE_BUFFER_SIZE", defaults.read_buffer_size),
            max_line_size=_env_int("LINE_MAX_LINE", defaults.max_line_size),
            overflow_policy=os.getenv("LINE_OVERFLOW", defaults.overflow_policy),
            send_timeout=_env_float("LINE_SEND_TIMEOUT", defaults.send_timeout),
            idle_timeout=_env_float("LINE_IDLE_TIMEOUT", defaults.idle_timeout),
            max_connections=_env_int("LINE_MAX_CONNECTIONS", defaults.max_connections),
            workers=_env_int("LINE_WORKERS", defaults.workers),
            handler=os.getenv("LINE_HANDLER", defaults.handler),
            log_level=os.getenv("LINE_LOG_LEVEL", defaults.log_level),
            log_format=os.getenv("LINE_LOG_FORMAT", defaults.log_format),
        )

    def validate(self) -> None:
        """
        Validate configuration values.

        Fail fast: every problem is reported at startup, before a socket
        is opened.

        Raises:
            ValueError: On the first invalid value.
        """
        if not 0 <= self.port < 65536:
            raise ValueError(f"Invalid port: {self.port}. Must be 0-65535.")

        if self.backlog < 1:
            raise ValueError("backlog must be >= 1")

        if self.read_buffer_size < 1:
            raise ValueError("read_buffer_size must be >= 1")

        if self.max_line_size < 1:
            raise ValueError("max_line_size must be >= 1")

        try:
            OverflowPolicy(self.overflow_policy)
        except ValueError:
            raise ValueError(
                f"Invalid overflow_policy: {self.overflow_policy!r}. Must be 'deliver' or 'close'."
            ) from None

        if self.send_timeout is not None and self.send_timeout <= 0:
            raise ValueError("send_timeout must be > 0")

        if self.idle_timeout is not None and self.idle_timeout <= 0:
            raise ValueError("idle_timeout must be > 0")

        if self.max_connections is not None and self.max_connections < 1:
            raise ValueError("max_connections must be >= 1")

        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be > 0")

        if self.workers < 0:
            raise ValueError("workers must be >= 0")

        if self.workers and self.pool_max_workers < self.workers:
            raise ValueError("max_workers must be >= workers")

        if self.queue_size < 1:
            raise ValueError("queue_size must be >= 1")

        if self.dispatch_timeout <= 0:
            raise ValueError("dispatch_timeout must be > 0")

        if ":" not in self.handler:
            raise ValueError(f"Invalid handler path: {self.handler!r}. Expected 'module:attribute'.")

        if self.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log_level: {self.log_level!r}")

        if self.log_format not in ("text", "json"):
            raise ValueError(f"Invalid log_format: {self.log_format!r}. Must be 'text' or 'json'.")


# =============================================================================
# MODULE SUMMARY
# =============================================================================
#
# 1. Type-safe configuration with dataclass
# 2. LINE_* environment variables, overridden by CLI flags
# 3. Validation at startup (fail-fast)
# 4. Defaults match a plain "echo on port 5000" server
# =============================================================================
