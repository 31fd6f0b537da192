"""
Shared-secret authentication middleware for the worker.

/jobs/* and /reconcile require an X-Worker-Secret header matching
WORKER_SHARED_SECRET. The web app attaches it when forwarding user actions,
and the scheduler attaches it when triggering a sweep. Provider webhooks are
checked by their own token, and the video proxy is public (players load it
directly).
"""

import secrets
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from . import services


class WorkerAuthMiddleware(BaseHTTPMiddleware):
    """Reject unauthenticated requests to protected paths."""

    PROTECTED_PREFIXES = ("/jobs", "/reconcile")

    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        if not path.startswith(self.PROTECTED_PREFIXES):
            return await call_next(request)

        settings = services.get_settings()
        if not settings.worker_shared_secret:
            # In development without the secret set, allow all traffic
            if settings.environment == "development":
                return await call_next(request)
            return JSONResponse({"detail": "WORKER_SHARED_SECRET not configured"}, status_code=500)

        # Constant-time compare avoids timing attacks
        provided = request.headers.get("X-Worker-Secret", "")
        if not secrets.compare_digest(provided, settings.worker_shared_secret):
            return JSONResponse({"detail": "Invalid or missing worker secret"}, status_code=401)

        return await call_next(request)
