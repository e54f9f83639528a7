"""Módulo de endpoints HTTP.

Contiene todos los endpoints de la API organizados por recurso.
"""

from .admin import router as admin_router
from .audit import router as audit_router
from .devices import router as devices_router
from .health import router as health_router
from .metadata import router as metadata_router
from .readings import router as readings_router
from .schedules import router as schedules_router

__all__ = [
    "admin_router",
    "audit_router",
    "devices_router",
    "health_router",
    "metadata_router",
    "readings_router",
    "schedules_router",
]
