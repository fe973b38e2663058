"""
Shared-secret authentication middleware for the worker.

UI-facing and operator endpoints require an X-Worker-Secret header matching
WORKER_SHARED_SECRET; the app backend attaches it when forwarding requests.
Provider webhooks under /callbacks cannot send it and stay open: an unknown
task id there is rejected by the callback handler itself.
"""

import secrets

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware


class WorkerAuthMiddleware(BaseHTTPMiddleware):
    """Reject unauthenticated requests outside the public and callback paths."""

    PUBLIC_PATHS = {"/health", "/metrics", "/docs", "/openapi.json", "/redoc"}
    PUBLIC_PREFIXES = ("/callbacks/",)

    def __init__(self, app, secret: str = "", environment: str = "development"):
        super().__init__(app)
        self.secret = secret
        self.environment = environment

    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        if path in self.PUBLIC_PATHS or path.startswith(self.PUBLIC_PREFIXES):
            return await call_next(request)

        if not self.secret:
            # In development without the secret set, allow all traffic
            if self.environment == "development":
                return await call_next(request)
            return JSONResponse(status_code=500, content={"detail": "WORKER_SHARED_SECRET not configured"})

        # Constant-time compare avoids timing attacks
        provided = request.headers.get("X-Worker-Secret", "")
        if not secrets.compare_digest(provided, self.secret):
            return JSONResponse(status_code=401, content={"detail": "Invalid or missing worker secret"})

        return await call_next(request)
