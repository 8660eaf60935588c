"""
Error taxonomy shared by the stores, the workflows and the HTTP layer.

Every externally visible failure carries a stable machine-readable ``kind``
plus a human message. Handlers registered by ``install_error_handlers``
render them as ``{"success": false, "error": {...}}``.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse

logger = logging.getLogger(__name__)


class AppError(Exception):
    kind = "error"
    status_code = 400
    retryable = False

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"kind": self.kind, "message": self.message}
        if self.details is not None:
            body["details"] = self.details
        if self.retryable:
            body["retryable"] = True
        return body


class ValidationError(AppError):
    kind = "validation_error"
    status_code = 400


class Unauthorized(AppError):
    kind = "unauthorized"
    status_code = 401


class ApiKeyMissing(Unauthorized):
    kind = "api_key_missing"


class Forbidden(AppError):
    kind = "forbidden"
    status_code = 403


class ApiKeyInvalid(Forbidden):
    kind = "api_key_invalid"


class NotFound(AppError):
    kind = "not_found"
    status_code = 404


class Conflict(AppError):
    kind = "conflict"
    status_code = 409


class InvalidSignature(AppError):
    kind = "invalid_signature"
    status_code = 400

    def __init__(self, message: str = "Invalid payment signature"):
        super().__init__(message)


class GatewayUnavailable(AppError):
    kind = "gateway_unavailable"
    status_code = 503
    retryable = True

    def __init__(self, message: str = "Payment gateway unavailable, "
                                      "please retry"):
        super().__init__(message)


def _fail(status_code: int, error: dict) -> ORJSONResponse:
    return ORJSONResponse(
        status_code=status_code,
        content={"success": False, "error": error},
    )


def install_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(AppError)
    async def _app_error(request: Request, exc: AppError):
        return _fail(exc.status_code, exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def _request_validation(request: Request,
                                  exc: RequestValidationError):
        fields = [
            {
                "field": ".".join(str(p) for p in err.get("loc", ())
                                  if p != "body"),
                "message": err.get("msg", ""),
            }
            for err in exc.errors()
        ]
        return _fail(400, {
            "kind": ValidationError.kind,
            "message": "Request validation failed",
            "details": fields,
        })

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        logger.exception("unhandled error on %s %s",
                         request.method, request.url.path)
        return _fail(500, {
            "kind": "internal_error",
            "message": "Something went wrong",
            "retryable": True,
        })
