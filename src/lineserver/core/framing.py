"""
=============================================================================
LINE FRAMING
=============================================================================

This module turns the raw byte stream of a TCP connection into discrete
lines. It has no socket dependency at all: you hand it bytes, it hands
you back lines.

=============================================================================
WHY WE NEED A FRAMER
=============================================================================

TCP does NOT preserve message boundaries. A client that writes

    send(b"hello\\n")
    send(b"world\\n")

may be read by the server as any of:

    recv() → b"hello\\nworld\\n"      (both lines in one read)
    recv() → b"hel"                  (a fragment)
    recv() → b"lo\\nwor"              (end of one line + start of next)

The framer keeps whatever arrived after the last newline in a partial
buffer, and only emits a line once its terminator has been seen:

    ┌──────────────────────────────────────────────────────────────────┐
    │  feed(b"he")        → (nothing)          partial = b"he"         │
    │  feed(b"llo\\nwo")   → b"hello"           partial = b"wo"         │
    │  feed(b"rld\\n")     → b"world"           partial = b""           │
    └──────────────────────────────────────────────────────────────────┘

The terminator itself is never part of the emitted line. A carriage
return before it is kept: b"hi\\r\\n" frames as b"hi\\r".

=============================================================================
OVERFLOW
=============================================================================

A client that never sends a newline would make the partial buffer grow
forever. Each line is therefore capped at `max_line_size` bytes. As soon
as a line's bytes EXCEED the cap, one of two policies applies:

    DELIVER (default)
        The first max_line_size bytes are emitted as an event WITHOUT a
        terminator, and framing carries on with the rest. This is lossy
        (the handler sees one long line as several pieces) but the
        connection survives.

    CLOSE
        LineOverflowError is raised. The caller closes the connection.

The rule is stated on the stream, not on the reads, so the output is the
same however the bytes were chunked:

    max_line_size = 4, stream b"abcdef\\n"

        feed(b"abcdef\\n")             → b"abcd", b"ef"
        feed(b"ab") + feed(b"cdef\\n") → b"abcd", b"ef"

After every feed() the partial buffer holds at most max_line_size bytes.

=============================================================================
"""

import logging
from enum import Enum
from typing import Iterator


logger = logging.getLogger(__name__)


class OverflowPolicy(Enum):
    """What to do with a line that grows past max_line_size."""
    DELIVER = "deliver"  # Emit the first max_line_size bytes as an event
    CLOSE = "close"      # Raise LineOverflowError, caller drops the connection


class LineOverflowError(Exception):
    """
    Raised by LineFramer.feed() under OverflowPolicy.CLOSE.

    Attributes:
        size: Number of unterminated bytes that triggered the overflow.
        limit: The configured max_line_size.
    """

    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(f"Line exceeds {limit} bytes without a terminator ({size} bytes)")


class LineFramer:
    """
    Incremental newline framer with a bounded partial-line buffer.

    One framer belongs to exactly one connection. It is not thread-safe;
    the event loop is the only caller.

    Usage:
        framer = LineFramer(max_line_size=4096)

        for line in framer.feed(chunk):
            handle(line)

    Attributes:
        max_line_size: Upper bound on the bytes of a single line.
        policy: OverflowPolicy applied when the bound is exceeded.
        overflows: Number of overflow events applied so far.
        pending_fragments: Reads that contributed to the partial buffer
                           since the last emitted line.
    """

    TERMINATOR = b"\n"

    def __init__(
        self,
        max_line_size: int = 4096,
        policy: OverflowPolicy = OverflowPolicy.DELIVER,
    ):
        if max_line_size < 1:
            raise ValueError("max_line_size must be >= 1")

        self.max_line_size = max_line_size
        self.policy = OverflowPolicy(policy)
        self.overflows = 0
        self.pending_fragments = 0

        self._partial = bytearray()

    @property
    def buffered(self) -> int:
        """Number of unterminated bytes waiting for a newline."""
        return len(self._partial)

    def feed(self, chunk: bytes) -> Iterator[bytes]:
        """
        Frame one read's worth of data.

        This is a generator: lines are produced lazily, in the order their
        terminators appear in the stream. Consume it fully to keep the
        partial buffer in sync with the bytes you passed in.

        Args:
            chunk: Bytes returned by a single recv().

        Yields:
            Complete lines (terminator excluded), plus overflow events
            under OverflowPolicy.DELIVER.

        Raises:
            LineOverflowError: Under OverflowPolicy.CLOSE, once a line
                               exceeds max_line_size.
        """
        if not chunk:
            return

        start = 0
        while True:
            end = chunk.find(self.TERMINATOR, start)
            if end == -1:
                break

            # ─────────────────────────────────────────────────────────────
            # COMPLETE LINE: partial buffer + bytes up to the newline
            # ─────────────────────────────────────────────────────────────
            self._partial += chunk[start:end]
            start = end + 1

            yield from self._drain_overflow()

            line = bytes(self._partial)
            self._partial.clear()
            self.pending_fragments = 0
            yield line

        # ─────────────────────────────────────────────────────────────────
        # TRAILING REMAINDER: no newline yet, keep it for the next read
        # ─────────────────────────────────────────────────────────────────
        if start < len(chunk):
            self._partial += chunk[start:]
            self.pending_fragments += 1
            yield from self._drain_overflow()

    def _drain_overflow(self) -> Iterator[bytes]:
        """Apply the overflow policy until the partial buffer fits the cap."""
        while len(self._partial) > self.max_line_size:
            self.overflows += 1

            if self.policy is OverflowPolicy.CLOSE:
                size = len(self._partial)
                self._partial.clear()
                self.pending_fragments = 0
                raise LineOverflowError(size, self.max_line_size)

            fragment = bytes(self._partial[:self.max_line_size])
            del self._partial[:self.max_line_size]
            logger.debug(
                f"Line overflow: delivering {len(fragment)} unterminated bytes "
                f"({len(self._partial)} still buffered)"
            )
            yield fragment

    def flush(self) -> bytes:
        """
        Return and clear the unterminated remainder.

        The server calls this when a connection goes away, only to report
        how many bytes were left without a terminator. The remainder is
        never dispatched as a line.
        """
        remainder = bytes(self._partial)
        self.reset()
        return remainder

    def reset(self):
        """Forget any buffered bytes."""
        self._partial.clear()
        self.pending_fragments = 0
