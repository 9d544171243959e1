"""
OpsConnect HTTP surface: inbound vendor webhooks plus a read-only view of
the registrations they arrive on.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

import opsconnect.integrations.daytona  # noqa: F401
import opsconnect.integrations.incident  # noqa: F401
import opsconnect.integrations.octopus  # noqa: F401
import opsconnect.integrations.rootly  # noqa: F401
from opsconnect import __version__, config
from opsconnect.core.registry import IntegrationRegistry
from opsconnect.engine import Engine

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("opsconnect")

engine = Engine()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("OpsConnect starting, webhooks served under %s", config.BASE_URL)
    yield
    logger.info("Closing HTTP client...")
    await engine.aclose()


app = FastAPI(title="OpsConnect", version=__version__, lifespan=lifespan)

# ============================================================
# Error Handling - Consistent Error Format
# ============================================================

_HTTP_ERROR_CODES = {
    400: "BAD_REQUEST",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_SERVER_ERROR",
}


def _error_response(
    status: int,
    code: str,
    message: str,
    details: Optional[List[Dict[str, Any]]] = None,
) -> JSONResponse:
    body: Dict[str, Any] = {
        "error": {
            "code": code,
            "status": status,
            "message": message,
        }
    }
    if details is not None:
        body["error"]["details"] = details
    return JSONResponse(status_code=status, content=body)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    code = _HTTP_ERROR_CODES.get(exc.status_code, "ERROR")
    return _error_response(exc.status_code, code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    details = [
        {
            "field": ".".join(str(loc) for loc in err.get("loc", [])),
            "message": err.get("msg", ""),
            "type": err.get("type", ""),
        }
        for err in exc.errors()
    ]
    return _error_response(422, "VALIDATION_ERROR", "Request validation failed", details)


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled exception: %s", exc, exc_info=True)
    return _error_response(500, "INTERNAL_SERVER_ERROR", "An unexpected error occurred")


# ============================================================
# Health Check (unversioned)
# ============================================================

@app.get("/")
async def health():
    return {
        "status": "healthy",
        "service": "OpsConnect",
        "version": __version__,
        "integrations": IntegrationRegistry.list_global(),
    }


# ============================================================
# Webhooks
# ============================================================

@app.get("/api/v1/webhooks")
async def list_webhooks():
    return {"webhooks": engine.webhooks.list_hooks()}


@app.post("/api/v1/webhooks/{webhook_id}")
async def receive_webhook(webhook_id: str, request: Request):
    body = await request.body()
    response = await engine.handle_webhook(webhook_id, dict(request.headers), body)
    if not response.is_ok:
        code = _HTTP_ERROR_CODES.get(response.status_code, "ERROR")
        return _error_response(response.status_code, code, response.error or "")
    return {"status": "ok"}


# For direct execution
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
