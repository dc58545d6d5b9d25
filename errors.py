"""
Error handling

`AppError` is the operational error: raised on purpose, with a status code and a
message the client is allowed to see. Everything else is treated as an internal
fault. `global_error_handler` is the single place both kinds are turned into a
JSON response; known library failures are first normalized into AppErrors.
"""

import os
import re
import logging
import traceback
from typing import Any, Dict

import jwt
from bson.errors import InvalidId
from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from pymongo.errors import DuplicateKeyError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class AppError(Exception):
    """An anticipated failure whose message is safe to return to the client."""

    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.status = "fail" if 400 <= status_code < 500 else "error"
        self.is_operational = True


def is_development() -> bool:
    return os.getenv("APP_ENV", "production").lower() == "development"


def handle_invalid_id(exc: InvalidId) -> AppError:
    value = re.search(r"'(.*?)'", str(exc))
    return AppError(f"Invalid _id: {value.group(1) if value else exc}", 400)


def handle_duplicate_key(exc: DuplicateKeyError) -> AppError:
    details = exc.details or {}
    key_value = details.get("keyValue")
    if key_value:
        value = '"{}"'.format(next(iter(key_value.values())))
    else:
        match = re.search(r'"(.*?)"', str(exc))
        value = match.group(0) if match else "value"
    return AppError(f"Duplicate field value: {value}. Please use another value!", 400)


def _format_error(err: Dict[str, Any]) -> str:
    msg = err.get("msg", "")
    if msg.startswith("Value error, "):
        msg = msg[len("Value error, "):]
    field = ".".join(str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path"))
    return f"{field}: {msg}" if field else msg


def handle_validation(exc) -> AppError:
    messages = [_format_error(e) for e in exc.errors()]
    return AppError(f"Invalid input data: {'. '.join(messages)}", 400)


def handle_jwt_error(exc: jwt.PyJWTError) -> AppError:
    if isinstance(exc, jwt.ExpiredSignatureError):
        return AppError("Token Expired, Please login again!", 401)
    return AppError("Invalid Token, Please login again!", 401)


def handle_http_exception(request: Request, exc: StarletteHTTPException) -> AppError:
    if exc.status_code == 404 and exc.detail == "Not Found":
        return AppError(f"Can't find {request.url.path} on this server!", 404)
    return AppError(str(exc.detail), exc.status_code)


def normalize(request: Request, exc: Exception) -> Exception:
    if isinstance(exc, AppError):
        return exc
    if isinstance(exc, InvalidId):
        return handle_invalid_id(exc)
    if isinstance(exc, DuplicateKeyError):
        return handle_duplicate_key(exc)
    if isinstance(exc, (RequestValidationError, ValidationError)):
        return handle_validation(exc)
    if isinstance(exc, jwt.PyJWTError):
        return handle_jwt_error(exc)
    if isinstance(exc, StarletteHTTPException):
        return handle_http_exception(request, exc)
    return exc


async def global_error_handler(request: Request, exc: Exception) -> JSONResponse:
    error = normalize(request, exc)

    if isinstance(error, AppError):
        status_code, body = error.status_code, {"status": error.status, "message": error.message}
    else:
        logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
        status_code, body = 500, {"status": "error", "message": "Something went wrong!"}

    if is_development():
        if not isinstance(error, AppError):
            body["message"] = str(exc)
        body["error"] = {"name": type(exc).__name__, "detail": [str(arg) for arg in exc.args]}
        body["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))

    headers = getattr(exc, "headers", None)
    return JSONResponse(status_code=status_code, content=body, headers=headers)


HANDLED_EXCEPTIONS = (
    AppError,
    InvalidId,
    DuplicateKeyError,
    RequestValidationError,
    ValidationError,
    jwt.PyJWTError,
    StarletteHTTPException,
    Exception,
)


def install_error_handlers(app) -> None:
    for exc_class in HANDLED_EXCEPTIONS:
        app.add_exception_handler(exc_class, global_error_handler)
