"""
Tree Chronicle Backend — Request Logging Middleware
=====================================================

What:  One access-log line per request: method, path, status, duration.
How:   Logs on response with a level chosen from the status code, and the
       request ID from RequestIDMiddleware for correlation.

What we log vs what we DON'T log:
    Log:       method, path, status, duration, client IP, request ID
    Don't log: request bodies (photos, backup archives), query strings

Typical durations:
    GET  /api/projects:       5-20ms
    GET  /api/backup/export:  proportional to library size (zip is built first)
    POST /api/backup/import:  seconds; other requests answer 503 meanwhile
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from tree_chronicle.middleware.request_id import request_id_var

logger = logging.getLogger("tree_chronicle.access")

# Polled by monitoring and fetched by every <img> tag respectively
QUIET_PATHS = ("/health",)
QUIET_PREFIXES = ("/uploads/",)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs structured information about each HTTP request and response.

    Level by status:
        5xx → ERROR, 4xx → WARNING, 503 from the store gate → WARNING,
        everything else → INFO (image fetches at DEBUG)
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path
        if path in QUIET_PATHS:
            return await call_next(request)

        start_time = time.perf_counter()
        client_ip = request.client.host if request.client else "unknown"
        method = request.method
        rid = request_id_var.get("")

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start_time) * 1000
        status = response.status_code
        if status == 503:
            # Expected while an import has the store closed
            log_level = logging.WARNING
        elif status >= 500:
            log_level = logging.ERROR
        elif status >= 400:
            log_level = logging.WARNING
        elif path.startswith(QUIET_PREFIXES):
            log_level = logging.DEBUG
        else:
            log_level = logging.INFO

        logger.log(
            log_level,
            "%s %s %d %.1fms [%s] from %s",
            method,
            path,
            status,
            duration_ms,
            rid,
            client_ip,
            extra={
                "request_id": rid,
                "method": method,
                "path": path,
                "status": status,
                "duration_ms": round(duration_ms, 2),
                "client_ip": client_ip,
            },
        )
        return response
