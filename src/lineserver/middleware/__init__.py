"""
=============================================================================
LINE MIDDLEWARE
=============================================================================

Middleware wraps the delivery of every line to its handler context:

    line → LoggingMiddleware → RateLimitMiddleware → context.on_line()

=============================================================================
AVAILABLE MIDDLEWARE
=============================================================================

1. LoggingMiddleware
   - One access record per line (text or JSON)
   - Duration, bytes sent, outcome

2. RateLimitMiddleware
   - Token bucket per connection
   - Drop the line or close the connection

=============================================================================
USAGE EXAMPLES
=============================================================================

    from lineserver.middleware import LoggingMiddleware, RateLimitMiddleware

    server = LineServer(config)
    server.use(LoggingMiddleware(log_format="json"))
    server.use(RateLimitMiddleware(lines_per_second=50, burst_size=100))

=============================================================================
"""

from .base import Middleware, MiddlewarePipeline, FunctionMiddleware, function_middleware
from .logging import LoggingMiddleware
from .rate_limit import RateLimitMiddleware, TokenBucket

__all__ = [
    "Middleware",
    "MiddlewarePipeline",
    "FunctionMiddleware",
    "function_middleware",
    "LoggingMiddleware",
    "RateLimitMiddleware",
    "TokenBucket",
]
