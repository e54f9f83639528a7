"""Contexto de autenticación de un request."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .authorization import OrgTier, Role

SYSTEM_IDENTITY = "sys-unauthenticated"
AUDIT_SYSTEM_IDENTITY = "sys-migration-agent"


@dataclass(frozen=True)
class AuthContext:
    """Identidad resuelta para un request.

    Un contexto con ``is_authenticated=False`` nunca recibe permisos.
    """
    name: Optional[str]
    role: Optional[Role]
    is_authenticated: bool
    org_id: Optional[str] = None
    tier: Optional[OrgTier] = None
    auth_type: str = "api_key"

    @classmethod
    def anonymous(cls, org_id: Optional[str] = None) -> "AuthContext":
        return cls(name=None, role=None, is_authenticated=False, org_id=org_id, auth_type="anonymous")

    @classmethod
    def system(cls, org_id: Optional[str] = None) -> "AuthContext":
        # Auth deshabilitada (sin keys): identidad implícita de admin
        return cls(name=SYSTEM_IDENTITY, role=Role.ADMIN, is_authenticated=True, org_id=org_id, auth_type="system")
