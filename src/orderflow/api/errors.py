"""Map domain failures onto HTTP responses."""

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from protean.exceptions import ObjectNotFoundError, ValidationError
from protean.integrations.fastapi import register_exception_handlers

from orderflow.errors import OrderflowError

logger = structlog.get_logger(__name__)


async def _validation_error(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": exc.messages})


async def _not_found(request: Request, exc: ObjectNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": {"_entity": [str(exc)]}})


async def _orderflow_error(request: Request, exc: OrderflowError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("request_failed_upstream", path=request.url.path, error=exc.messages)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.messages})


async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
    # Bound contextvars (order_id, event_id, ...) are merged into this entry
    logger.exception("request_crashed", path=request.url.path, method=request.method)
    return JSONResponse(status_code=500, content={"error": {"_entity": ["Internal server error"]}})


def register_error_handlers(app: FastAPI) -> None:
    register_exception_handlers(app)
    app.add_exception_handler(ValidationError, _validation_error)
    app.add_exception_handler(ObjectNotFoundError, _not_found)
    app.add_exception_handler(OrderflowError, _orderflow_error)
    app.add_exception_handler(Exception, _unhandled)
