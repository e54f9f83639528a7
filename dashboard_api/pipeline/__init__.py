"""Pipeline de request: validación -> auth -> rate limit -> esquema -> handler."""

from .context import RequestContext
from .driver import Pipeline
from .stages import (
    AuthStage,
    BodySchemaStage,
    QuerySchemaStage,
    RateLimitStage,
    RequestValidationStage,
    Stage,
    with_auth,
    with_optional_auth,
    with_permission,
    with_rate_limit,
    with_request_validation,
)

__all__ = [
    "AuthStage",
    "BodySchemaStage",
    "Pipeline",
    "QuerySchemaStage",
    "RateLimitStage",
    "RequestContext",
    "RequestValidationStage",
    "Stage",
    "with_auth",
    "with_optional_auth",
    "with_permission",
    "with_rate_limit",
    "with_request_validation",
]
