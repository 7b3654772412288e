"""
Echo handler.

The default handler: every line a client sends comes straight back,
newline included. Handy for smoke tests:

    $ python -m lineserver --port 5000 &
    $ printf 'hello\\n' | nc localhost 5000
    hello
"""

import logging
from typing import TYPE_CHECKING, Optional

from .base import Handler, HandlerContext

if TYPE_CHECKING:
    from ..core.connection import Connection


logger = logging.getLogger(__name__)


class EchoContext(HandlerContext):
    """Sends each line back to its own connection."""

    def __init__(self, connection: "Connection", quit_command: Optional[bytes] = None):
        super().__init__(connection)
        self.quit_command = quit_command
        self.lines_echoed = 0

    def on_line(self, line: bytes) -> None:
        if self.quit_command is not None and line.rstrip(b"\r") == self.quit_command:
            logger.debug(f"[{self.connection.id}] Quit command received")
            self.disconnect()
            return

        self.send(line + b"\n")
        self.lines_echoed += 1


class EchoHandler(Handler):
    """
    Echo every line back to the sender.

    Args:
        greeting: Optional line sent as soon as a client connects.
        quit_command: Optional line (e.g. b"quit") that makes the server
                      close the connection instead of echoing.
    """

    def __init__(self, greeting: Optional[str] = None, quit_command: Optional[bytes] = None):
        self.greeting = greeting
        self.quit_command = quit_command

    def create_context(self, connection: "Connection") -> HandlerContext:
        context = EchoContext(connection, quit_command=self.quit_command)
        if self.greeting:
            context.send_line(self.greeting)
        return context
