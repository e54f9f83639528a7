"""Validación previa a la lógica de negocio: headers, tamaño de body y query."""

from .request_validation import PRESETS, RequestValidationOptions, validate_request

__all__ = ["PRESETS", "RequestValidationOptions", "validate_request"]
