"""
Error taxonomy shared by the services and the HTTP layer.

Services raise `AppError` subclasses carrying a lowercase error token; the
JSON API renders them as ``{"error": <code>, ...extra}`` and the webhook
renders the bare token as a text body.
"""
from __future__ import annotations
import logging
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.responses import ORJSONResponse

logger = logging.getLogger(__name__)


class ConfigError(RuntimeError):
    pass


class AppError(Exception):
    status_code = 500

    def __init__(self, code: str, **extra: Any) -> None:
        super().__init__(code)
        self.code = code
        self.extra: Dict[str, Any] = extra

    def payload(self) -> Dict[str, Any]:
        return {"error": self.code, **self.extra}


class ValidationError(AppError):
    status_code = 400


class AuthenticationError(AppError):
    status_code = 403


class NotFoundError(AppError):
    status_code = 404


class ConflictError(AppError):
    status_code = 409


class GoneError(AppError):
    status_code = 410


class UnauthorizedError(AppError):
    status_code = 401


class InternalError(AppError):
    status_code = 500


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def _app_error(request: Request, exc: AppError):
        return ORJSONResponse(exc.payload(), status_code=exc.status_code)

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception):
        logger.exception("unhandled error on %s %s",
                         request.method, request.url.path)
        return ORJSONResponse({"error": "server_error"}, status_code=500)
