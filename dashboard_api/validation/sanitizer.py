"""Sanitizador de entradas.

Limpia cualquier valor JSON no confiable antes de validarlo o de que
llegue a la base de datos:
- Elimina claves de prototype pollution y operadores de consulta ($where, $gt...)
- Recorta y quita caracteres de control de los strings
- Convierte NaN/Infinity en 0

Nunca lanza excepciones: la validación de esquema posterior es la que
rechaza datos inválidos.
"""

from __future__ import annotations

import math
import re
from datetime import date, datetime, timezone
from typing import Any, Iterable, Optional

from ..errors import ApiError, ErrorCode


QUERY_OPERATORS = frozenset(
    {
        "$where",
        "$gt",
        "$gte",
        "$lt",
        "$lte",
        "$ne",
        "$in",
        "$nin",
        "$or",
        "$and",
        "$not",
        "$nor",
        "$exists",
        "$type",
        "$mod",
        "$regex",
        "$text",
        "$search",
        "$elemMatch",
        "$size",
        "$all",
        "$expr",
        "$jsonSchema",
        "$comment",
    }
)

DANGEROUS_KEYS = frozenset(
    {
        "__proto__",
        "constructor",
        "prototype",
        "__defineGetter__",
        "__defineSetter__",
        "__lookupGetter__",
        "__lookupSetter__",
    }
)

DEFAULT_MAX_DEPTH = 10

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_REGEX_SPECIAL_CHARS = re.compile(r"[.*+?^${}()|\[\]\\]")
_WHITESPACE_RUN = re.compile(r"\s+")
_DEVICE_ID = re.compile(r"^[a-zA-Z0-9_-]+$")

_HTML_ESCAPE = {
    "&": "&amp;",
    "<": "&lt;",
    ">": "&gt;",
    '"': "&quot;",
    "'": "&#x27;",
    "/": "&#x2F;",
    "`": "&#x60;",
    "=": "&#x3D;",
}
_HTML_CHARS = re.compile(r"[&<>\"'`=/]")


def is_operator_key(key: str) -> bool:
    return key.startswith("$") or key in QUERY_OPERATORS


def is_dangerous_key(key: str) -> bool:
    return key in DANGEROUS_KEYS


def sanitize_string(
    value: Any,
    *,
    escape_html: bool = False,
    max_length: Optional[int] = None,
    lowercase: bool = False,
    allow_empty: bool = True,
) -> str:
    """Recorta y limpia un string.

    Con las opciones por defecto es idempotente. ``escape_html`` no lo es
    (``&`` -> ``&amp;`` -> ``&amp;amp;``), por eso está desactivado por defecto.

    Raises:
        ApiError: INVALID_INPUT si ``allow_empty`` es False y queda vacío
    """
    if not isinstance(value, str):
        value = "" if value is None else str(value)

    # Primero quitar control chars, luego trim: así un control char
    # entre espacios no deja espacios sueltos en los bordes.
    sanitized = _CONTROL_CHARS.sub("", value).strip()

    if not allow_empty and not sanitized:
        raise ApiError(ErrorCode.INVALID_INPUT, "Input cannot be empty")

    if max_length and len(sanitized) > max_length:
        sanitized = sanitized[:max_length].rstrip()

    if escape_html:
        sanitized = _HTML_CHARS.sub(lambda m: _HTML_ESCAPE[m.group(0)], sanitized)

    if lowercase:
        sanitized = sanitized.lower()

    return sanitized


def sanitize_for_regex(value: Any) -> str:
    if not isinstance(value, str):
        value = "" if value is None else str(value)
    return _REGEX_SPECIAL_CHARS.sub(lambda m: "\\" + m.group(0), value.strip())


def sanitize_search_query(query: Any) -> str:
    if not isinstance(query, str):
        return ""

    sanitized = _WHITESPACE_RUN.sub(" ", query.strip())
    for op in QUERY_OPERATORS:
        sanitized = re.sub(re.escape(op), "", sanitized, flags=re.IGNORECASE)

    return sanitize_for_regex(sanitized)


def sanitize_input(
    value: Any,
    *,
    remove_operators: bool = True,
    sanitize_strings: bool = True,
    max_depth: int = DEFAULT_MAX_DEPTH,
    skip_fields: Iterable[str] = (),
) -> Any:
    """Sanitiza recursivamente un valor JSON.

    Args:
        value: dict/list/escalar a limpiar
        remove_operators: Elimina claves que empiezan por ``$`` o son operadores
        sanitize_strings: Aplica ``sanitize_string`` a las hojas string
        max_depth: Profundidad máxima; por debajo el valor se devuelve tal cual
        skip_fields: Claves cuyo valor se copia sin sanitizar

    Returns:
        Copia sanitizada; la entrada no se modifica
    """
    skipped = frozenset(skip_fields)

    def _walk(item: Any, depth: int) -> Any:
        if depth > max_depth:
            return item

        if item is None:
            return None

        if isinstance(item, str):
            return sanitize_string(item) if sanitize_strings else item

        # bool es subclase de int
        if isinstance(item, bool):
            return item

        if isinstance(item, float):
            return item if math.isfinite(item) else 0

        if isinstance(item, int):
            return item

        if isinstance(item, (datetime, date)):
            return item

        if isinstance(item, list):
            return [_walk(v, depth + 1) for v in item]

        if isinstance(item, tuple):
            return tuple(_walk(v, depth + 1) for v in item)

        if isinstance(item, dict):
            cleaned = {}
            for key, val in item.items():
                key_str = str(key)
                if is_dangerous_key(key_str):
                    continue
                if remove_operators and is_operator_key(key_str):
                    continue
                if key_str in skipped:
                    cleaned[key] = val
                    continue
                cleaned[key] = _walk(val, depth + 1)
            return cleaned

        return item

    return _walk(value, 0)


def sanitize_number(
    value: Any,
    *,
    minimum: Optional[float] = None,
    maximum: Optional[float] = None,
    integer: bool = False,
    default: Optional[float] = None,
) -> Optional[float]:
    if isinstance(value, bool):
        return default

    if isinstance(value, (int, float)):
        num = value
    elif isinstance(value, str):
        try:
            num = int(value.strip(), 10) if integer else float(value.strip())
        except ValueError:
            return default
    else:
        return default

    if not math.isfinite(num):
        return default
    if minimum is not None and num < minimum:
        return default
    if maximum is not None and num > maximum:
        return default
    return num


def sanitize_datetime(
    value: Any,
    *,
    min_date: Optional[datetime] = None,
    max_date: Optional[datetime] = None,
    default: Optional[datetime] = None,
) -> Optional[datetime]:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        candidate = value.strip()
        if candidate.endswith("Z"):
            candidate = candidate[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(candidate)
        except ValueError:
            return default
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        # Epoch en milisegundos
        try:
            parsed = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return default
    else:
        return default

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)

    if min_date is not None and parsed < min_date:
        return default
    if max_date is not None and parsed > max_date:
        return default
    return parsed


def validate_device_id(device_id: Any) -> bool:
    if not isinstance(device_id, str):
        return False
    return 1 <= len(device_id) <= 100 and bool(_DEVICE_ID.match(device_id))


def assert_device_id(device_id: Any, field_name: str = "device_id") -> str:
    if not validate_device_id(device_id):
        raise ApiError(
            ErrorCode.INVALID_FORMAT,
            f"Invalid device ID format for '{field_name}'. Must be 1-100 alphanumeric "
            "characters, underscores, or hyphens",
            metadata={"field": field_name, "value": str(device_id)},
        )
    return device_id
