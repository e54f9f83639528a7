"""Authorization - Roles y permisos (RBAC).

Define roles, la tabla de permisos y la resolución método + path ->
permiso requerido.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple


class Role(str, Enum):
    """Roles de API key."""
    ADMIN = "admin"  # Acceso total
    OPERATOR = "operator"  # Lectura y escritura, sin borrado ni administración
    VIEWER = "viewer"  # Solo lectura


class OrgTier(str, Enum):
    """Niveles de organización en modo sesión."""
    ADMIN = "admin"
    MEMBER = "member"


_ALL = frozenset({Role.ADMIN, Role.OPERATOR, Role.VIEWER})
_WRITERS = frozenset({Role.ADMIN, Role.OPERATOR})
_ADMINS = frozenset({Role.ADMIN})

PERMISSIONS: Dict[str, FrozenSet[Role]] = {
    "devices:read": _ALL,
    "devices:create": _WRITERS,
    "devices:update": _WRITERS,
    "devices:delete": _ADMINS,
    "readings:read": _ALL,
    "readings:create": _WRITERS,
    "schedules:read": _ALL,
    "schedules:create": _WRITERS,
    "schedules:update": _WRITERS,
    "schedules:delete": _ADMINS,
    "analytics:read": _ALL,
    "audit:read": _WRITERS,
    "admin:keys": _ADMINS,
    "admin:settings": _ADMINS,
}

_METHOD_ACTIONS = {
    "GET": "read",
    "HEAD": "read",
    "POST": "create",
    "PUT": "update",
    "PATCH": "update",
    "DELETE": "delete",
}

# Segmento de path -> recurso (None = el permiso es fijo)
_PATH_RESOURCES: Tuple[Tuple[str, str, Optional[str]], ...] = (
    ("/devices", "devices", None),
    ("/readings", "readings", None),
    ("/schedules", "schedules", None),
    ("/analytics", "analytics", "analytics:read"),
    ("/audit", "audit", "audit:read"),
    ("/admin", "admin", "admin:settings"),
    ("/metadata", "devices", "devices:read"),
)


def has_permission(role: Role, permission: str) -> bool:
    allowed = PERMISSIONS.get(permission)
    if allowed is None:
        return False
    return Role(role) in allowed


def permissions_for_role(role: Role) -> FrozenSet[str]:
    role = Role(role)
    return frozenset(p for p, roles in PERMISSIONS.items() if role in roles)


def method_action(method: str) -> str:
    return _METHOD_ACTIONS.get(method.upper(), "read")


def required_permission(method: str, path: str) -> Optional[str]:
    """Permiso requerido para ``method`` + ``path``.

    Returns:
        Nombre del permiso, o None si la ruta no está mapeada
    """
    action = method_action(method)
    for segment, resource, fixed in _PATH_RESOURCES:
        if segment not in path:
            continue
        if fixed is not None:
            return fixed
        if resource == "readings":
            return "readings:create" if action != "read" else "readings:read"
        permission = f"{resource}:{action}"
        return permission if permission in PERMISSIONS else None
    return None


def requires_admin_tier(permission: str) -> bool:
    return permission.endswith(":delete") or permission.startswith("admin:") or permission == "audit:read"


def tier_allows(tier: OrgTier, permission: Optional[str]) -> bool:
    if permission is None:
        return True
    if OrgTier(tier) is OrgTier.ADMIN:
        return True
    return not requires_admin_tier(permission)
