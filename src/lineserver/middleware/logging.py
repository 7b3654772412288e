"""
=============================================================================
LOGGING MIDDLEWARE
=============================================================================

One access-log record per delivered line, with timing.

=============================================================================
LOG FORMATS
=============================================================================

    TEXT FORMAT (default):
    ┌─────────────────────────────────────────────────────────────────────┐
    │ 10.0.0.5:51514 [3f2a9c1b] [17/Oct/2026:10:55:36 +0000] 5B -> 6B    │
    │ ok 0.12ms                                                           │
    │ ───────────────────────────────────────────────────────────────────│
    │ Client       Conn id    Timestamp        In    Out  Outcome Duration│
    └─────────────────────────────────────────────────────────────────────┘

    JSON FORMAT (for log aggregators):
    ┌─────────────────────────────────────────────────────────────────────┐
    │ {"connection_id": "3f2a9c1b", "client_ip": "10.0.0.5",             │
    │  "client_port": 51514, "line_number": 3, "line_bytes": 5,          │
    │  "bytes_sent": 6, "outcome": "ok", "duration_ms": 0.12, ...}       │
    └─────────────────────────────────────────────────────────────────────┘

Line CONTENT is never logged, only sizes. Lines may carry anything.

=============================================================================
"""

import time
import json
import logging
from dataclasses import dataclass

from .base import Middleware, NextHandler
from ..handlers.base import HandlerContext


# Namespaced logger so access records can be routed separately:
#   logging.getLogger("lineserver.access").addHandler(file_handler)
logger = logging.getLogger("lineserver.access")


@dataclass
class LineLog:
    """
    Structured log entry for one delivered line.

    Fields:
        connection_id:  Connection.id, correlates with core log records
        client_ip:      Client's IP address
        client_port:    Client's port
        line_number:    1-based position of the line on its connection
        line_bytes:     Size of the line (terminator excluded)
        bytes_sent:     Bytes the handler wrote while handling it
        outcome:        "ok", or the exception class name
        duration_ms:    Handler time
        timestamp:      When the line was handled
    """

    connection_id: str
    client_ip: str
    client_port: int
    line_number: int
    line_bytes: int
    bytes_sent: int
    outcome: str
    duration_ms: float
    timestamp: str

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "connection_id": self.connection_id,
            "client_ip": self.client_ip,
            "client_port": self.client_port,
            "line_number": self.line_number,
            "line_bytes": self.line_bytes,
            "bytes_sent": self.bytes_sent,
            "outcome": self.outcome,
            "duration_ms": round(self.duration_ms, 2),
            "timestamp": self.timestamp,
        }

    def to_text(self) -> str:
        """Format as a single human-readable line."""
        return (
            f'{self.client_ip}:{self.client_port} [{self.connection_id}] [{self.timestamp}] '
            f'{self.line_bytes}B -> {self.bytes_sent}B {self.outcome} {self.duration_ms:.2f}ms'
        )


class LoggingMiddleware(Middleware):
    """
    Per-line access logging.

    Put it FIRST in the pipeline so it sees every line, including the
    ones later middleware drop, and times the whole chain.

    Usage:
        server.use(LoggingMiddleware())                  # text
        server.use(LoggingMiddleware(log_format="json")) # JSON
        server.use(LoggingMiddleware(skip_empty=True))   # ignore keepalive blanks
    """

    def __init__(
        self,
        log_format: str = "text",
        log_level: int = logging.INFO,
        skip_empty: bool = False,
    ):
        """
        Initialize logging middleware.

        Args:
            log_format: "text" (human readable) or "json" (structured).
            log_level: Logging level for access records.
            skip_empty: Don't log empty lines (bare "\\n" keepalives).
        """
        if log_format not in ("text", "json"):
            raise ValueError(f"Unknown log format: {log_format!r}")

        self.log_format = log_format
        self.log_level = log_level
        self.skip_empty = skip_empty

    def __call__(self, context: HandlerContext, line: bytes, next: NextHandler) -> None:
        """Time the rest of the chain and emit one record."""
        connection = context.connection
        sent_before = connection.bytes_sent
        start_time = time.time()

        try:
            next(context, line)
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            logger.error(
                f"[{connection.id}] Line {connection.lines_dispatched} failed "
                f"- {type(e).__name__}: {e} ({duration_ms:.2f}ms)"
            )
            raise

        duration_ms = (time.time() - start_time) * 1000

        if self.skip_empty and not line:
            return

        log_entry = LineLog(
            connection_id=connection.id,
            client_ip=connection.client_ip,
            client_port=connection.client_port,
            line_number=connection.lines_dispatched,
            line_bytes=len(line),
            bytes_sent=connection.bytes_sent - sent_before,
            outcome="disconnect" if connection.close_requested else "ok",
            duration_ms=duration_ms,
            timestamp=time.strftime("%d/%b/%Y:%H:%M:%S %z"),
        )

        if self.log_format == "json":
            logger.log(self.log_level, json.dumps(log_entry.to_dict()))
        else:
            logger.log(self.log_level, log_entry.to_text())
