"""
Shared-secret authentication for the worker's mutating endpoints.

/webhook/* and /orders/sweep/* require an X-Worker-Secret header matching
WORKER_SHARED_SECRET. Without a configured secret, development lets
everything through and any other environment refuses.
"""

import secrets

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware


class WorkerAuthMiddleware(BaseHTTPMiddleware):
    PROTECTED_PREFIXES = ("/webhook", "/orders/sweep")

    def __init__(self, app, secret: str = "", environment: str = "development"):
        super().__init__(app)
        self.secret = secret
        self.environment = environment

    async def dispatch(self, request: Request, call_next):
        if not request.url.path.startswith(self.PROTECTED_PREFIXES):
            return await call_next(request)

        if not self.secret:
            if self.environment == "development":
                return await call_next(request)
            return JSONResponse(status_code=500, content={"detail": "WORKER_SHARED_SECRET not configured"})

        # Constant-time compare
        provided = request.headers.get("X-Worker-Secret", "")
        if not secrets.compare_digest(provided, self.secret):
            return JSONResponse(status_code=401, content={"detail": "Invalid or missing worker secret"})

        return await call_next(request)
