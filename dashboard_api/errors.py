"""Errores de la API y normalización a un único envelope JSON.

Todo error que sale de la API tiene la forma::

    {"success": false, "error": {"code": ..., "message": ..., **metadata}}

Los 5xx nunca exponen el mensaje original de la excepción.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError, OperationalError, TimeoutError as PoolTimeoutError
from starlette.exceptions import HTTPException as StarletteHTTPException


logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    BAD_REQUEST = "BAD_REQUEST"
    INVALID_INPUT = "INVALID_INPUT"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_QUERY_PARAM = "INVALID_QUERY_PARAM"
    INVALID_BODY = "INVALID_BODY"
    INVALID_FORMAT = "INVALID_FORMAT"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    DUPLICATE_RESOURCE = "DUPLICATE_RESOURCE"
    GONE = "GONE"
    PAYLOAD_TOO_LARGE = "PAYLOAD_TOO_LARGE"
    UNSUPPORTED_MEDIA_TYPE = "UNSUPPORTED_MEDIA_TYPE"
    UNPROCESSABLE_ENTITY = "UNPROCESSABLE_ENTITY"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"


ERROR_STATUS: Dict[ErrorCode, int] = {
    ErrorCode.BAD_REQUEST: 400,
    ErrorCode.INVALID_INPUT: 400,
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.INVALID_QUERY_PARAM: 400,
    ErrorCode.INVALID_BODY: 400,
    ErrorCode.INVALID_FORMAT: 400,
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.CONFLICT: 409,
    ErrorCode.DUPLICATE_RESOURCE: 409,
    ErrorCode.GONE: 410,
    ErrorCode.PAYLOAD_TOO_LARGE: 413,
    ErrorCode.UNSUPPORTED_MEDIA_TYPE: 415,
    ErrorCode.UNPROCESSABLE_ENTITY: 422,
    ErrorCode.RATE_LIMIT_EXCEEDED: 429,
    ErrorCode.INTERNAL_ERROR: 500,
    ErrorCode.DATABASE_ERROR: 500,
    ErrorCode.SERVICE_UNAVAILABLE: 503,
}

# Starlette HTTPException -> código de la API
_STATUS_CODES: Dict[int, ErrorCode] = {
    400: ErrorCode.BAD_REQUEST,
    401: ErrorCode.UNAUTHORIZED,
    403: ErrorCode.FORBIDDEN,
    404: ErrorCode.NOT_FOUND,
    405: ErrorCode.BAD_REQUEST,
    409: ErrorCode.CONFLICT,
    410: ErrorCode.GONE,
    413: ErrorCode.PAYLOAD_TOO_LARGE,
    415: ErrorCode.UNSUPPORTED_MEDIA_TYPE,
    422: ErrorCode.UNPROCESSABLE_ENTITY,
    429: ErrorCode.RATE_LIMIT_EXCEEDED,
    503: ErrorCode.SERVICE_UNAVAILABLE,
}


class ApiError(Exception):
    """Error tipado de la API.

    Attributes:
        code: Código legible por máquina (ErrorCode)
        status_code: Status HTTP
        message: Mensaje para el cliente
        metadata: Datos estructurados extra (field, errors, retry_after...)
        headers: Headers HTTP a añadir a la respuesta (ej: Retry-After)
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status_code: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(message)
        self.code = ErrorCode(code)
        self.status_code = status_code or ERROR_STATUS.get(self.code, 500)
        self.message = message
        self.metadata: Dict[str, Any] = dict(metadata or {})
        self.headers: Dict[str, str] = dict(headers or {})

    @property
    def is_server_error(self) -> bool:
        return self.status_code >= 500

    def to_dict(self) -> Dict[str, Any]:
        error: Dict[str, Any] = {"code": self.code.value, "message": self.message}
        for key, value in self.metadata.items():
            if key not in ("code", "message") and value is not None:
                error[key] = value
        return {
            "success": False,
            "error": error,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    def __repr__(self) -> str:
        return f"ApiError({self.code.value}, {self.status_code}, {self.message!r})"

    # ------------------------------------------------------------------
    # Factories
    # ------------------------------------------------------------------

    @classmethod
    def bad_request(cls, message: str, metadata: Optional[Dict[str, Any]] = None) -> "ApiError":
        return cls(ErrorCode.BAD_REQUEST, message, metadata=metadata)

    @classmethod
    def validation_error(cls, message: str, metadata: Optional[Dict[str, Any]] = None) -> "ApiError":
        return cls(ErrorCode.VALIDATION_ERROR, message, metadata=metadata)

    @classmethod
    def invalid_query(cls, message: str, metadata: Optional[Dict[str, Any]] = None) -> "ApiError":
        return cls(ErrorCode.INVALID_QUERY_PARAM, message, metadata=metadata)

    @classmethod
    def invalid_body(cls, message: str, metadata: Optional[Dict[str, Any]] = None) -> "ApiError":
        return cls(ErrorCode.INVALID_BODY, message, metadata=metadata)

    @classmethod
    def unauthorized(cls, message: str = "Authentication required") -> "ApiError":
        return cls(ErrorCode.UNAUTHORIZED, message)

    @classmethod
    def forbidden(
        cls,
        message: str = "You do not have permission to perform this action",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "ApiError":
        return cls(ErrorCode.FORBIDDEN, message, metadata=metadata)

    @classmethod
    def not_found(cls, resource: str, identifier: Optional[str] = None) -> "ApiError":
        message = f"{resource} not found" if identifier is None else f"{resource} '{identifier}' not found"
        return cls(ErrorCode.NOT_FOUND, message, metadata={"resource": resource, "id": identifier})

    @classmethod
    def gone(cls, resource: str, identifier: str) -> "ApiError":
        return cls(
            ErrorCode.GONE,
            f"{resource} '{identifier}' has been deleted",
            metadata={"resource": resource, "id": identifier},
        )

    @classmethod
    def conflict(cls, message: str, metadata: Optional[Dict[str, Any]] = None) -> "ApiError":
        return cls(ErrorCode.CONFLICT, message, metadata=metadata)

    @classmethod
    def duplicate(cls, field: str, value: Any) -> "ApiError":
        return cls(
            ErrorCode.DUPLICATE_RESOURCE,
            f"A resource with {field} '{value}' already exists",
            metadata={"field": field, "value": str(value)},
        )

    @classmethod
    def unprocessable(cls, message: str, metadata: Optional[Dict[str, Any]] = None) -> "ApiError":
        return cls(ErrorCode.UNPROCESSABLE_ENTITY, message, metadata=metadata)

    @classmethod
    def rate_limit_exceeded(cls, retry_after: int, metadata: Optional[Dict[str, Any]] = None) -> "ApiError":
        data = {"retry_after": retry_after}
        data.update(metadata or {})
        return cls(
            ErrorCode.RATE_LIMIT_EXCEEDED,
            f"Rate limit exceeded. Try again in {retry_after} seconds.",
            metadata=data,
            headers={"Retry-After": str(retry_after)},
        )

    @classmethod
    def payload_too_large(cls, message: str, metadata: Optional[Dict[str, Any]] = None) -> "ApiError":
        return cls(ErrorCode.PAYLOAD_TOO_LARGE, message, metadata=metadata)

    @classmethod
    def unsupported_media_type(cls, message: str, metadata: Optional[Dict[str, Any]] = None) -> "ApiError":
        return cls(ErrorCode.UNSUPPORTED_MEDIA_TYPE, message, metadata=metadata)

    @classmethod
    def internal_error(cls, message: str = "An unexpected error occurred") -> "ApiError":
        return cls(ErrorCode.INTERNAL_ERROR, message)

    @classmethod
    def database_error(cls) -> "ApiError":
        return cls(ErrorCode.DATABASE_ERROR, "A database error occurred")

    @classmethod
    def service_unavailable(cls, message: str = "Service temporarily unavailable") -> "ApiError":
        return cls(ErrorCode.SERVICE_UNAVAILABLE, message)


def _pydantic_errors(errors) -> ApiError:
    # Import tardío: validation.validator importa este módulo
    from .validation.validator import build_validation_error, errors_from_pydantic

    return build_validation_error(errors_from_pydantic(errors), context="")


# SQLSTATE 23505 y los mensajes de sqlite, PostgreSQL, SQL Server y MySQL
_UNIQUE_SQLSTATE = "23505"
_UNIQUE_MARKERS = ("unique constraint", "duplicate key", "unique key", "duplicate entry")


def is_unique_violation(exc: IntegrityError) -> bool:
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate:
        return sqlstate == _UNIQUE_SQLSTATE
    text = str(orig).lower()
    return any(marker in text for marker in _UNIQUE_MARKERS)


def normalize_error(exc: BaseException) -> ApiError:
    """Convierte cualquier excepción en un ApiError.

    Args:
        exc: Excepción capturada en el borde del request

    Returns:
        ApiError listo para renderizar
    """
    if isinstance(exc, ApiError):
        return exc

    if isinstance(exc, RequestValidationError):
        return _pydantic_errors(exc.errors())

    if isinstance(exc, PydanticValidationError):
        return _pydantic_errors(exc.errors())

    if isinstance(exc, StarletteHTTPException):
        code = _STATUS_CODES.get(exc.status_code)
        if code is None:
            code = ErrorCode.INTERNAL_ERROR if exc.status_code >= 500 else ErrorCode.BAD_REQUEST
        message = str(exc.detail) if exc.status_code < 500 else "An unexpected error occurred"
        return ApiError(code, message, status_code=exc.status_code, headers=dict(exc.headers or {}))

    if isinstance(exc, IntegrityError):
        if is_unique_violation(exc):
            return ApiError(ErrorCode.DUPLICATE_RESOURCE, "The resource conflicts with an existing one")
        return ApiError.bad_request("The request violates a data constraint")

    if isinstance(exc, (OperationalError, PoolTimeoutError)):
        return ApiError.database_error()

    return ApiError.internal_error()


def error_response(err: ApiError, headers: Optional[Mapping[str, str]] = None) -> JSONResponse:
    merged = dict(err.headers)
    if headers:
        merged.update(headers)
    return JSONResponse(status_code=err.status_code, content=err.to_dict(), headers=merged)


def register_error_handlers(app: FastAPI) -> None:
    """Registra handlers para que FastAPI use el mismo envelope."""

    async def _handle(request: Request, exc: Exception) -> JSONResponse:
        err = normalize_error(exc)
        if err.is_server_error:
            logger.error(
                "[API] Unhandled error method=%s path=%s code=%s",
                request.method,
                request.url.path,
                err.code.value,
                exc_info=exc,
            )
        return error_response(err)

    app.add_exception_handler(ApiError, _handle)
    app.add_exception_handler(RequestValidationError, _handle)
    app.add_exception_handler(StarletteHTTPException, _handle)
    app.add_exception_handler(Exception, _handle)
