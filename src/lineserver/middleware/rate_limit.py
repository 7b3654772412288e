"""
=============================================================================
RATE LIMITING MIDDLEWARE
=============================================================================

Caps how many lines per second one connection may push into the handler,
using the Token Bucket algorithm.

    ┌─────────────────────────────────────────────────────────────────────┐
    │                        TOKEN BUCKET                                 │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │      ┌─────────────┐                                                │
    │      │ ● ● ● ● ●   │  ◄── tokens drip in at lines_per_second        │
    │      │ ● ● ●       │                                                │
    │      └──────┬──────┘      capacity = burst_size                     │
    │             │                                                        │
    │             ▼                                                        │
    │      each line takes one token                                      │
    │      no token → line dropped (or connection closed)                 │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

    Config: burst_size=10, lines_per_second=1

    t=0:  bucket=10/10  line → delivered (bucket=9)
    ...
    t=0:  bucket=0/10   line → DROPPED
    t=5:  bucket=5/10   line → delivered (bucket=4)

Buckets are keyed by connection id. Pool mode runs middleware on worker
threads, so the bucket table is guarded by a lock.

=============================================================================
"""

import time
import threading
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from .base import Middleware, NextHandler
from ..handlers.base import HandlerContext


logger = logging.getLogger(__name__)


@dataclass
class TokenBucket:
    """
    Line allowance for one connection.

    Attributes:
        capacity: Most lines that can arrive back to back (burst_size).
        rate: Lines credited back per second.
        level: Lines currently allowed. A new bucket starts full.
        updated_at: Monotonic time of the last top-up.
    """

    capacity: float
    rate: float
    level: Optional[float] = None
    updated_at: float = field(default_factory=time.monotonic)

    def __post_init__(self):
        if self.level is None:
            self.level = float(self.capacity)

    def _top_up(self) -> None:
        now = time.monotonic()
        self.level = min(self.capacity, self.level + (now - self.updated_at) * self.rate)
        self.updated_at = now

    def take(self, count: float = 1.0) -> bool:
        """Spend count tokens. False (and nothing spent) if there aren't enough."""
        self._top_up()
        if self.level < count:
            return False
        self.level -= count
        return True

    @property
    def available(self) -> float:
        self._top_up()
        return self.level

    def wait_time(self, count: float = 1.0) -> float:
        """Seconds until count tokens will be there."""
        missing = count - self.available
        return max(0.0, missing / self.rate)

    def idle_for(self, now: float) -> float:
        return now - self.updated_at


class RateLimitMiddleware(Middleware):
    """
    Per-connection line rate limiting.

    Usage:
        # 10 lines/sec sustained, bursts of 20, excess lines dropped
        server.use(RateLimitMiddleware(lines_per_second=10, burst_size=20))

        # Close connections that exceed the limit
        server.use(RateLimitMiddleware(lines_per_second=5, disconnect_on_limit=True))

        # Tell the client what happened
        server.use(RateLimitMiddleware(notice=b"ERR rate limited"))

    Attributes:
        lines_limited: Lines refused so far, across all connections.
    """

    def __init__(
        self,
        lines_per_second: float = 10.0,
        burst_size: int = 20,
        disconnect_on_limit: bool = False,
        notice: Optional[bytes] = None,
        cleanup_interval: float = 60.0,
        bucket_ttl: float = 300.0,
    ):
        """
        Args:
            lines_per_second: Sustained rate per connection.
            burst_size: Lines a connection may send back to back.
            disconnect_on_limit: Ask for the connection to be closed
                                 instead of dropping the line.
            notice: Line written back to the client when it is limited.
            cleanup_interval: Seconds between sweeps of unused buckets.
            bucket_ttl: A bucket untouched for this long is forgotten
                        (its connection is most likely gone).
        """
        if lines_per_second <= 0:
            raise ValueError("lines_per_second must be > 0")
        if burst_size < 1:
            raise ValueError("burst_size must be >= 1")

        self.lines_per_second = lines_per_second
        self.burst_size = burst_size
        self.disconnect_on_limit = disconnect_on_limit
        self.notice = notice
        self.cleanup_interval = cleanup_interval
        self.bucket_ttl = bucket_ttl
        self.lines_limited = 0

        # connection id → bucket; workers share it in pool mode
        self._buckets: Dict[str, TokenBucket] = {}
        self._lock = threading.Lock()
        self._swept_at = time.monotonic()

    def __call__(self, context: HandlerContext, line: bytes, next: NextHandler) -> None:
        connection = context.connection

        with self._lock:
            self._maybe_sweep()
            bucket = self._buckets.get(connection.id)
            if bucket is None:
                bucket = self._buckets[connection.id] = TokenBucket(self.burst_size, self.lines_per_second)
            allowed = bucket.take()
            retry_after = 0.0 if allowed else bucket.wait_time()
            if not allowed:
                self.lines_limited += 1

        if allowed:
            next(context, line)
            return

        # ═══════════════════════════════════════════════════════════════════
        # OVER THE LIMIT: notify, then drop the line or the connection
        # ═══════════════════════════════════════════════════════════════════
        if self.notice is not None:
            context.send(self.notice + b"\n")

        if self.disconnect_on_limit:
            logger.warning(f"[{connection.id}] Over {self.lines_per_second} lines/s, disconnecting")
            context.disconnect()
        else:
            logger.debug(
                f"[{connection.id}] Over {self.lines_per_second} lines/s, line dropped "
                f"(next token in {retry_after:.2f}s)"
            )

    def _maybe_sweep(self) -> None:
        """Forget buckets nobody has used for bucket_ttl. Caller holds the lock."""
        now = time.monotonic()
        if now - self._swept_at < self.cleanup_interval:
            return

        stale = [cid for cid, bucket in self._buckets.items() if bucket.idle_for(now) > self.bucket_ttl]
        for cid in stale:
            del self._buckets[cid]
        self._swept_at = now

        if stale:
            logger.debug(f"Dropped {len(stale)} idle rate limit bucket(s)")

    def reset(self, connection_id: Optional[str] = None) -> None:
        """Refill one connection's bucket, or every bucket if None."""
        with self._lock:
            if connection_id is None:
                self._buckets.clear()
            else:
                self._buckets.pop(connection_id, None)


# =============================================================================
# MODULE SUMMARY
# =============================================================================
#
# 1. TokenBucket: refills continuously at `rate`, never above `capacity`
# 2. RateLimitMiddleware: one bucket per connection id, over-limit lines
#    are dropped (optionally with a notice) or end the connection
# 3. Buckets of departed connections age out after bucket_ttl
# =============================================================================
