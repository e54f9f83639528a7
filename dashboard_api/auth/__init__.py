"""Autenticación y autorización.

- API key (``API_KEYS``) o sesión de organización (proveedor externo)
- RBAC: rol -> permisos, método + path -> permiso requerido
- Metadatos de auditoría
"""

from .api_key import ApiKeyInfo, ApiKeyRegistry, extract_api_key, hash_api_key
from .audit import create_audit_metadata, get_audit_user
from .authorization import OrgTier, Role, has_permission, permissions_for_role, required_permission
from .context import AuthContext
from .resolver import AuthResolver

__all__ = [
    "ApiKeyInfo",
    "ApiKeyRegistry",
    "AuthContext",
    "AuthResolver",
    "OrgTier",
    "Role",
    "create_audit_metadata",
    "extract_api_key",
    "get_audit_user",
    "has_permission",
    "hash_api_key",
    "permissions_for_role",
    "required_permission",
]
