from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Tuple

from ..errors import ApiError

MUTATION_METHODS = frozenset({"POST", "PUT", "PATCH"})


@dataclass(frozen=True)
class HeaderValidationOptions:
    require_content_type: bool = True
    allowed_content_types: Tuple[str, ...] = ("application/json",)
    required_headers: Tuple[str, ...] = ()


def normalize_content_type(value: str) -> str:
    return value.split(";")[0].strip().lower()


def validate_headers(method: str, headers: Mapping[str, str], options: HeaderValidationOptions) -> None:
    """Content-Type obligatorio en mutaciones y headers extra requeridos.

    Raises:
        ApiError: 400 si falta un header, 415 si el Content-Type no está permitido
    """
    method = method.upper()
    expected = " or ".join(options.allowed_content_types)

    if options.require_content_type and method in MUTATION_METHODS:
        content_type = headers.get("content-type")
        if not content_type:
            raise ApiError.bad_request(
                "Content-Type header is required for this request",
                metadata={"method": method, "expected": expected},
            )

        normalized = normalize_content_type(content_type)
        allowed = {c.lower() for c in options.allowed_content_types}
        if normalized not in allowed:
            raise ApiError.unsupported_media_type(
                f"Unsupported Content-Type: {normalized}",
                metadata={"received": normalized, "expected": expected},
            )

    for header in options.required_headers:
        if not headers.get(header.lower()):
            raise ApiError.bad_request(f"Missing required header: {header}", metadata={"header": header})
