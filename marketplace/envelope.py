"""
Response envelope: every outcome leaves the service as JSON with a status
code from the error taxonomy. Internal details never reach the body.
"""
import logging
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from marketplace.errors import MarketplaceError

logger = logging.getLogger(__name__)


def success(payload: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=jsonable_encoder(payload))


def failure(status_code: int, error: str, details: Any = None, message: Optional[str] = None) -> JSONResponse:
    body = {"error": error}
    if details is not None:
        body["details"] = jsonable_encoder(details)
    if message is not None:
        body["message"] = message
    return JSONResponse(status_code=status_code, content=body)


async def handle_marketplace_error(request: Request, exc: MarketplaceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return failure(exc.status_code, exc.error, message=exc.message)
    logger.info(f"{request.method} {request.url.path} rejected with {exc.status_code}: {exc.message}")
    return failure(exc.status_code, exc.message, details=exc.details)


async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {
            "field": ".".join(str(part) for part in error["loc"] if part != "body"),
            "message": error["msg"],
        }
        for error in exc.errors()
    ]
    return failure(400, "Validation failed", details=details)


async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return failure(500, "Internal server error", message="Failed to process request")


def register_exception_handlers(app: FastAPI):
    app.add_exception_handler(MarketplaceError, handle_marketplace_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation)
    app.add_exception_handler(Exception, handle_unexpected)
