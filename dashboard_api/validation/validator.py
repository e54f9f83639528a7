"""Validación de esquemas (pydantic) con errores agregados.

Todas las violaciones se recogen en una lista de ``FieldError`` en lugar
de fallar en la primera, para que el cliente pueda corregir todo en un
solo intento.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, Iterable, List, Mapping, Optional, Sequence, Tuple, TypeVar

from pydantic import BaseModel, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from ..errors import ApiError, ErrorCode
from .sanitizer import sanitize_input

T = TypeVar("T")

_MAX_LISTED_ERRORS = 3

# Prefijos que FastAPI añade al loc de sus errores
_LOC_SOURCES = ("body", "query", "path", "header")


@dataclass
class FieldError:
    path: str
    message: str
    code: str
    expected: Optional[str] = None
    received: Optional[str] = None

    def to_dict(self) -> Dict[str, str]:
        data = {"path": self.path, "message": self.message, "code": self.code}
        if self.expected:
            data["expected"] = self.expected
        if self.received:
            data["received"] = self.received
        return data


@dataclass
class ValidationResult(Generic[T]):
    success: bool
    data: Optional[T] = None
    errors: List[FieldError] = field(default_factory=list)


def _bound(value: Any) -> str:
    # 100.0 y 100 se muestran igual
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return f"{value:g}"
    return str(value)


def _expected_for(err_type: str, ctx: Mapping[str, Any]) -> Optional[str]:
    if "expected" in ctx:
        return str(ctx["expected"])
    for key in ("ge", "gt", "min_length"):
        if key in ctx:
            bound = _bound(ctx[key])
            return f"at least {bound}" if key != "gt" else f"greater than {bound}"
    for key in ("le", "lt", "max_length"):
        if key in ctx:
            bound = _bound(ctx[key])
            return f"at most {bound}" if key != "lt" else f"less than {bound}"
    if err_type.endswith("_type") or err_type.endswith("_parsing"):
        return err_type.rsplit("_", 1)[0]
    return None


def _received_for(err_type: str, value: Any) -> Optional[str]:
    if err_type == "missing":
        return None
    if isinstance(value, (dict, list)):
        return type(value).__name__
    return str(value)


def errors_from_pydantic(errors: Iterable[Mapping[str, Any]]) -> List[FieldError]:
    result: List[FieldError] = []
    for err in errors:
        loc: Sequence[Any] = tuple(err.get("loc") or ())
        if loc and loc[0] in _LOC_SOURCES:
            loc = loc[1:]
        ctx = err.get("ctx") or {}
        path = ".".join(str(part) for part in loc) or str(ctx.get("field") or "root")
        err_type = str(err.get("type", "custom"))
        result.append(
            FieldError(
                path=path,
                message=str(err.get("msg", "Invalid value")),
                code=err_type,
                expected=_expected_for(err_type, ctx),
                received=_received_for(err_type, err.get("input")),
            )
        )
    return result


def _describe(error: FieldError) -> str:
    if error.path and error.path != "root":
        return f"{error.path}: {error.message}"
    return error.message


def format_error_message(errors: Sequence[FieldError], context: Optional[str] = None) -> str:
    """Mensaje legible a partir de la lista de errores.

    Un error: ``"<context>: path: message"``. Varios: resume los 3
    primeros y añade ``(and N more)``.
    """
    if not errors:
        return "Validation failed"

    if len(errors) == 1:
        prefix = f"{context}: " if context else ""
        return f"{prefix}{_describe(errors[0])}"

    prefix = f"{context} " if context else ""
    listed = "; ".join(_describe(e) for e in errors[:_MAX_LISTED_ERRORS])
    remaining = len(errors) - _MAX_LISTED_ERRORS
    suffix = f" (and {remaining} more)" if remaining > 0 else ""
    return f"{prefix}Validation failed: {listed}{suffix}"


def error_metadata(errors: Sequence[FieldError]) -> Dict[str, Any]:
    first = errors[0] if errors else None
    return {
        "field": first.path if first is not None and first.path != "root" else None,
        "errors": [e.to_dict() for e in errors],
    }


def build_validation_error(
    errors: Sequence[FieldError],
    context: Optional[str] = None,
    code: ErrorCode = ErrorCode.VALIDATION_ERROR,
) -> ApiError:
    return ApiError(code, format_error_message(errors, context), metadata=error_metadata(errors))


def _parse(model: Any, data: Any) -> Any:
    if isinstance(model, type) and issubclass(model, BaseModel):
        return model.model_validate(data)
    adapter = model if isinstance(model, TypeAdapter) else TypeAdapter(model)
    return adapter.validate_python(data)


def validate_input(data: Any, model: Any, *, sanitize: bool = True) -> ValidationResult:
    """Valida ``data`` contra un modelo pydantic (o un tipo vía TypeAdapter).

    Args:
        data: Datos ya parseados (dict, list o escalar)
        model: Subclase de BaseModel, TypeAdapter o tipo
        sanitize: Sanitiza dict/list antes de validar

    Returns:
        ValidationResult con ``data`` o con todos los errores
    """
    if sanitize and isinstance(data, (dict, list)):
        data = sanitize_input(data)

    try:
        return ValidationResult(success=True, data=_parse(model, data))
    except PydanticValidationError as exc:
        return ValidationResult(success=False, errors=errors_from_pydantic(exc.errors()))


def validate_or_throw(data: Any, model: Any, *, context: Optional[str] = None, sanitize: bool = True) -> Any:
    result = validate_input(data, model, sanitize=sanitize)
    if not result.success:
        raise build_validation_error(result.errors, context)
    return result.data


def query_to_dict(items: Iterable[Tuple[str, str]]) -> Dict[str, Any]:
    """Agrupa pares de query string; las claves repetidas pasan a lista."""
    query: Dict[str, Any] = {}
    for key, value in items:
        if key in query:
            existing = query[key]
            if isinstance(existing, list):
                existing.append(value)
            else:
                query[key] = [existing, value]
        else:
            query[key] = value
    return query


def validate_query(items: Iterable[Tuple[str, str]], model: Any) -> ValidationResult:
    return validate_input(query_to_dict(items), model)


def validate_query_or_throw(items: Iterable[Tuple[str, str]], model: Any) -> Any:
    result = validate_query(items, model)
    if not result.success:
        raise build_validation_error(result.errors, "Query parameter", ErrorCode.INVALID_QUERY_PARAM)
    return result.data


def parse_json_body(raw: bytes) -> Tuple[Any, List[FieldError]]:
    if not raw or not raw.strip():
        return None, [FieldError(path="root", message="Request body is required", code="invalid_json")]
    try:
        return json.loads(raw), []
    except (UnicodeDecodeError, ValueError):
        return None, [FieldError(path="root", message="Invalid JSON in request body", code="invalid_json")]


def validate_body(raw: bytes, model: Any) -> ValidationResult:
    data, errors = parse_json_body(raw)
    if errors:
        return ValidationResult(success=False, errors=errors)
    return validate_input(data, model)


def validate_body_or_throw(raw: bytes, model: Any) -> Any:
    result = validate_body(raw, model)
    if not result.success:
        code = ErrorCode.INVALID_BODY if result.errors[0].code == "invalid_json" else ErrorCode.VALIDATION_ERROR
        raise build_validation_error(result.errors, "Request body", code)
    return result.data


def validate_value(value: Any, model: Any, field_name: str) -> ValidationResult:
    result = validate_input(value, model, sanitize=False)
    if not result.success:
        for error in result.errors:
            error.path = field_name
    return result
