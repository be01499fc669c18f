# Middleware package init
"""
Tree Chronicle Backend — Middleware Package
=============================================

What:  Cross-cutting concerns applied to every request.

Middleware Chain (order matters!):
    Request → [Rate Limit] → [Request ID] → [Logging] → [GZip] → [CORS] → Route Handler

    1. Rate Limit first: reject abusive clients before any processing
    2. Request ID: correlation ID for every log line of the request
    3. Logging: method, path, status and duration with the request ID

    The store gate is NOT middleware: it is taken by the session dependency
    (and by the upload/backup handlers) so that /health, /docs and rejected
    requests never count as in flight.
"""
