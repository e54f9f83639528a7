from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional, Tuple

from ..errors import ApiError
from .body_size import MB, BodySizeConfig, validate_body_size
from .headers import MUTATION_METHODS, HeaderValidationOptions, validate_headers


@dataclass(frozen=True)
class RequestValidationOptions:
    """Opciones por endpoint.

    Attributes:
        headers: Reglas de Content-Type y headers requeridos
        body_size: Límites de tamaño
        allowed_query_params: Lista blanca de query params (None = sin lista)
        skip: Desactiva todas las comprobaciones
    """
    headers: HeaderValidationOptions = field(default_factory=HeaderValidationOptions)
    body_size: BodySizeConfig = field(default_factory=BodySizeConfig)
    allowed_query_params: Optional[Tuple[str, ...]] = None
    skip: bool = False

    def with_query_params(self, *names: str) -> "RequestValidationOptions":
        return RequestValidationOptions(
            headers=self.headers,
            body_size=self.body_size,
            allowed_query_params=tuple(names),
            skip=self.skip,
        )


PRESETS = {
    "json_api": RequestValidationOptions(),
    "bulk_ingestion": RequestValidationOptions(body_size=BodySizeConfig(default=10 * MB, bulk=10 * MB)),
    "read_only": RequestValidationOptions(headers=HeaderValidationOptions(require_content_type=False)),
}


def validate_query_keys(keys: Iterable[str], allowed: Tuple[str, ...]) -> None:
    # Un único error con todas las claves desconocidas
    unknown = []
    for key in keys:
        if key not in allowed and key not in unknown:
            unknown.append(key)
    if unknown:
        plural = "s" if len(unknown) > 1 else ""
        raise ApiError.invalid_query(
            f"Unknown query parameter{plural}: {', '.join(unknown)}",
            metadata={"unknown": unknown, "allowed": list(allowed)},
        )


def validate_request(
    method: str,
    path: str,
    headers: Mapping[str, str],
    query_keys: Iterable[str],
    options: RequestValidationOptions,
) -> None:
    """Headers, tamaño de body y query params; lanza ApiError en el primer fallo."""
    if options.skip:
        return

    validate_headers(method, headers, options.headers)

    if method.upper() in MUTATION_METHODS:
        validate_body_size(headers, path, options.body_size)

    if options.allowed_query_params is not None:
        validate_query_keys(query_keys, options.allowed_query_params)
