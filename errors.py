import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)

FieldError = Dict[str, Any]


class ValidationFailed(HTTPException):
    def __init__(self, errors: List[FieldError], detail: str = "Validation failed"):
        super().__init__(status_code=400, detail=detail)
        self.errors = errors


class AuthenticationError(HTTPException):
    def __init__(self, detail: str = "Authentication required"):
        super().__init__(status_code=401, detail=detail, headers={"WWW-Authenticate": "Bearer"})


class AuthorizationError(HTTPException):
    def __init__(self, detail: str = "Access denied"):
        super().__init__(status_code=403, detail=detail)


class NotFoundError(HTTPException):
    def __init__(self, detail: str = "Not found"):
        super().__init__(status_code=404, detail=detail)


class ConflictError(HTTPException):
    def __init__(self, detail: str):
        super().__init__(status_code=409, detail=detail)


class InsufficientStockError(ConflictError):
    def __init__(self, detail: str, item: Optional[Dict[str, Any]] = None):
        super().__init__(detail)
        self.item = item or {}


class PersistenceError(HTTPException):
    def __init__(self, detail: str = "Server error, please try again"):
        super().__init__(status_code=500, detail=detail)


def field_error(field: str, message: str, value: Any = None) -> FieldError:
    return {"field": field, "message": message, "value": value}


def error_path(loc) -> str:
    path = ""
    for part in loc:
        if isinstance(part, int):
            path += f"[{part}]"
        else:
            path += f".{part}" if path else str(part)
    return path


def pydantic_errors(errors, skip: int = 0) -> List[FieldError]:
    """Convert pydantic error dicts into ``{field, message, value}`` entries.

    ``skip`` drops leading location parts (FastAPI prefixes ``body``/``query``).
    """
    out = []
    for err in errors:
        value = None if err.get("type") == "missing" else err.get("input")
        out.append(field_error(error_path(err["loc"][skip:]), err["msg"], value))
    return out


def _failure(status_code: int, message: str, headers=None, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "message": message, **extra},
        headers=headers,
    )


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    extra: Dict[str, Any] = {}
    if isinstance(exc, ValidationFailed):
        extra["errors"] = exc.errors
    if isinstance(exc, InsufficientStockError) and exc.item:
        extra["item"] = exc.item
    headers = getattr(exc, "headers", None)
    return _failure(exc.status_code, str(exc.detail), headers=headers, **extra)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = []
    for err in exc.errors():
        loc = err["loc"]
        skip = 1 if loc and loc[0] in ("body", "query", "path", "header", "cookie") else 0
        errors.extend(pydantic_errors([err], skip=skip))
    return _failure(400, "Validation failed", errors=errors)


async def database_error_handler(request: Request, exc: PyMongoError) -> JSONResponse:
    logger.exception("Database error on %s %s", request.method, request.url.path)
    return _failure(500, "Server error, please try again")


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(PyMongoError, database_error_handler)
