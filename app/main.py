# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""FastAPI application for the verification code exchange API.

**HTTP Endpoints**

* ``POST /api/verify``: Exchange a verification code for a signed
  verification token.  The raw body is handed to the
  :class:`~app.verifyapi.issuer.TokenIssuer`, which decides both the
  status code and the JSON body (malformed requests are answered with
  200 and an ``error`` field, which existing clients depend on).

* ``GET /healthz``: Lightweight health check for orchestrator probes.

**Authentication**

When ``VERIFY_API_KEYS`` is set, every non-health request must carry a
matching ``X-API-Key`` header (see :mod:`app.auth`).

**Logging**

Structured JSON logging is configured at startup using the
``LOG_LEVEL`` setting.
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from app.auth import APIKeyMiddleware
from app.config import (
    CODE_STORE,
    HTTP_HOST,
    HTTP_PORT,
    LOG_LEVEL,
    load_token_config,
)
from app.db.session import init_database
from app.verifyapi.issuer import MSG_INTERNAL, TokenIssuer
from app.verifyapi.models import error_body
from app.verifyapi.signer import get_key_manager
from app.verifyapi.store import get_code_store


# ======================================================================
# Structured JSON logging
# ======================================================================


class _JSONFormatter(logging.Formatter):
    """One JSON object per log line.

    Fields: ``timestamp``, ``level``, ``logger``, ``message``, ``module``,
    ``funcName`` and, when the record carries one, ``exception``.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S%z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "funcName": record.funcName,
        }
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def _configure_logging() -> None:
    """Install a single JSON stream handler on the root logger.

    Existing handlers are removed first to prevent duplicate output
    under uvicorn.
    """
    root = logging.getLogger()

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_JSONFormatter())

    root.addHandler(handler)
    root.setLevel(getattr(logging, LOG_LEVEL.upper(), logging.INFO))

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


# ======================================================================
# Token issuer singleton
# ======================================================================

_token_issuer: Optional[TokenIssuer] = None


def get_token_issuer() -> TokenIssuer:
    """FastAPI dependency returning the process-wide token issuer."""
    global _token_issuer
    if _token_issuer is None:
        _token_issuer = TokenIssuer(
            config=load_token_config(),
            key_manager=get_key_manager(),
            store=get_code_store(),
        )
    return _token_issuer


def reset_token_issuer() -> None:
    global _token_issuer
    _token_issuer = None


# ======================================================================
# Application lifespan
# ======================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("verifyapi.main")

    _configure_logging()

    if CODE_STORE == "sql":
        init_database()

    issuer = get_token_issuer()
    logger.info(
        "Verification API starting: HTTP=%s:%d, issuer=%s, key=%s, duration=%s",
        HTTP_HOST, HTTP_PORT,
        issuer.config.issuer, issuer.config.signing_key_id, issuer.config.token_duration,
    )

    yield

    logger.info("Verification API shutdown complete")


# ======================================================================
# FastAPI application
# ======================================================================

app = FastAPI(
    title="Verification API",
    description=(
        "Exchanges single-use verification codes for signed "
        "verification tokens."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(APIKeyMiddleware)

logger = logging.getLogger("verifyapi.main")


@app.post(
    "/api/verify",
    summary="Exchange a verification code for a verification token",
    tags=["verification"],
)
async def verify_code(
    request: Request,
    issuer: TokenIssuer = Depends(get_token_issuer),
) -> JSONResponse:
    body = await request.body()
    try:
        result = await issuer.issue(body)
    except Exception:
        logger.exception("Unhandled exception in verification code exchange")
        return JSONResponse(status_code=500, content=error_body(MSG_INTERNAL))

    return JSONResponse(status_code=result.status_code, content=result.body)


@app.get("/healthz", summary="Health check", tags=["health"])
async def healthz(issuer: TokenIssuer = Depends(get_token_issuer)) -> JSONResponse:
    return JSONResponse(
        content={
            "status": "ok",
            "issuer": issuer.config.issuer,
            "key_id": issuer.config.signing_key_id,
        },
        status_code=200,
    )


# ======================================================================
# Application runner (for direct invocation)
# ======================================================================


def main() -> None:
    """Run the verification API using uvicorn.

    For production deployments, use uvicorn directly::

        uvicorn app.main:app --host 0.0.0.0 --port 8080
    """
    import uvicorn

    _configure_logging()

    uvicorn.run(
        "app.main:app",
        host=HTTP_HOST,
        port=HTTP_PORT,
        log_level=LOG_LEVEL.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
