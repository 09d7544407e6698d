"""API key authentication for the verification API.

Middleware that validates the ``X-API-Key`` header on all requests
except health probes.  Authentication is disabled when no keys are
configured (development mode).
"""
import hmac
import logging

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

import app.config as _config

log = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"

# Paths exempt from API key auth (health probes)
EXEMPT_PATHS: set[str] = {"/healthz"}


def _matches(candidate: str, keys: frozenset[str]) -> bool:
    return any(hmac.compare_digest(candidate, key) for key in keys)


class APIKeyMiddleware(BaseHTTPMiddleware):
    """Rejects requests without a configured API key.

    Reads the key set from app.config at request time (not import time)
    so tests can patch it.
    """

    async def dispatch(self, request: Request, call_next):
        if request.url.path in EXEMPT_PATHS:
            return await call_next(request)

        api_keys = _config.API_KEYS
        if not api_keys:
            return await call_next(request)

        candidate = request.headers.get(API_KEY_HEADER, "")
        if not candidate or not _matches(candidate, api_keys):
            client = request.client.host if request.client else "unknown"
            log.warning("Rejected request with invalid API key from %s", client)
            return JSONResponse(status_code=401, content={"error": "invalid API key"})

        return await call_next(request)
