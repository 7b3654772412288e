"""
=============================================================================
COMMAND-LINE ENTRY POINT
=============================================================================

Run the server with:

    python -m lineserver [options]
    lineserver [options]                  (installed script)

Every flag overrides the matching LINE_* environment variable, which
overrides the built-in default.

    python -m lineserver --port 6000 --handler mypkg.chat:ChatHandler
    LINE_WORKERS=4 python -m lineserver --log-format json

Exit status: 0 after a signal-initiated shutdown, 1 when startup fails
(bad configuration, handler that won't load, port in use) or the event
loop dies.

=============================================================================
"""

import argparse
import sys
from typing import List, Optional

from . import __version__
from .config import ServerConfig
from .middleware import LoggingMiddleware
from .server import LineServer


def build_parser() -> argparse.ArgumentParser:
    """
    Create the argument parser.

    Defaults are None throughout so that unset flags fall back to the
    environment (ServerConfig.from_env).
    """
    parser = argparse.ArgumentParser(
        prog="lineserver",
        description="Newline-delimited TCP server with pluggable line handlers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m lineserver                              # Echo server on 0.0.0.0:5000
  python -m lineserver --port 6000                  # Custom port
  python -m lineserver --max-line 1024 --overflow close
  python -m lineserver --workers 4                  # Handlers on 4 worker threads
  python -m lineserver --handler mypkg.chat:ChatHandler
        """
    )

    # ──────────────────────────────────────
    # NETWORK ARGUMENTS
    # ──────────────────────────────────────
    parser.add_argument(
        "--host", "-H",
        default=None,
        help="Host to bind to (default: 0.0.0.0)"
    )
    parser.add_argument(
        "--port", "-p",
        type=int,
        default=None,
        help="Port to listen on (default: 5000, 0 = any free port)"
    )
    parser.add_argument(
        "--backlog",
        type=int,
        default=None,
        help="Listen backlog (default: 10)"
    )
    parser.add_argument(
        "--buffer-size",
        type=int,
        default=None,
        help="Bytes per read (default: 4096)"
    )

    # ──────────────────────────────────────
    # FRAMING ARGUMENTS
    # ──────────────────────────────────────
    parser.add_argument(
        "--max-line",
        type=int,
        default=None,
        help="Longest line in bytes before overflow (default: 4096)"
    )
    parser.add_argument(
        "--overflow",
        choices=["deliver", "close"],
        default=None,
        help="Overlong lines: deliver in pieces, or close the connection (default: deliver)"
    )

    # ──────────────────────────────────────
    # CONCURRENCY AND LIMITS
    # ──────────────────────────────────────
    parser.add_argument(
        "--workers", "-w",
        type=int,
        default=None,
        help="Handler worker threads, 0 runs handlers on the event loop (default: 0)"
    )
    parser.add_argument(
        "--idle-timeout",
        type=float,
        default=None,
        help="Close connections idle for this many seconds (default: never)"
    )
    parser.add_argument(
        "--max-connections",
        type=int,
        default=None,
        help="Refuse clients beyond this many open connections (default: unlimited)"
    )

    # ──────────────────────────────────────
    # HANDLER AND LOGGING
    # ──────────────────────────────────────
    parser.add_argument(
        "--handler",
        default=None,
        help="Handler import path, module:attribute (default: lineserver.handlers.echo:EchoHandler)"
    )
    parser.add_argument(
        "--log-level", "-l",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Logging level (default: INFO)"
    )
    parser.add_argument(
        "--log-format",
        choices=["text", "json"],
        default=None,
        help="Access log format (default: text)"
    )

    # ──────────────────────────────────────
    # META ARGUMENTS
    # ──────────────────────────────────────
    parser.add_argument(
        "--version", "-v",
        action="version",
        version=f"lineserver {__version__}"
    )

    return parser


# CLI flag → ServerConfig field
_OVERRIDES = {
    "host": "host",
    "port": "port",
    "backlog": "backlog",
    "buffer_size": "read_buffer_size",
    "max_line": "max_line_size",
    "overflow": "overflow_policy",
    "workers": "workers",
    "idle_timeout": "idle_timeout",
    "max_connections": "max_connections",
    "handler": "handler",
    "log_level": "log_level",
    "log_format": "log_format",
}


def config_from_args(args: argparse.Namespace) -> ServerConfig:
    """Environment first, then every flag that was given on top."""
    config = ServerConfig.from_env()
    for arg_name, field_name in _OVERRIDES.items():
        value = getattr(args, arg_name)
        if value is not None:
            setattr(config, field_name, value)
    return config


def main(argv: Optional[List[str]] = None) -> None:
    """
    Main entry point for the CLI.

    Args:
        argv: Arguments (default: sys.argv[1:]).
    """
    args = build_parser().parse_args(argv)

    # =========================================================================
    # CREATE AND RUN SERVER
    # =========================================================================
    # Every startup failure (ValueError from validate(), HandlerLoadError,
    # OSError from bind/listen) and a dying event loop end up here.
    try:
        config = config_from_args(args)
        server = LineServer(config)
        server.use(LoggingMiddleware(log_format=config.log_format))
        server.run()
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


# =============================================================================
# ENTRY POINT
# =============================================================================
# This allows running: python -m lineserver

if __name__ == "__main__":
    main()
