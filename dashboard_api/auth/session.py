"""Autenticación por sesión de organización (proveedor de identidad externo)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from .authorization import OrgTier

logger = logging.getLogger(__name__)

_ORG_ROLES = {
    "org:admin": OrgTier.ADMIN,
    "admin": OrgTier.ADMIN,
    "org:member": OrgTier.MEMBER,
    "member": OrgTier.MEMBER,
}


class IdentityProviderError(Exception):
    """El proveedor respondió 200 con un cuerpo que no es un objeto JSON."""


@dataclass(frozen=True)
class SessionClaims:
    user_id: str
    email: Optional[str]
    org_id: Optional[str]
    org_slug: Optional[str]
    org_role: Optional[str]

    @property
    def audit_identity(self) -> str:
        return self.email or self.user_id


class IdentityProvider(Protocol):
    async def resolve(self, token: str) -> Optional[SessionClaims]: ...


def map_org_role(org_role: Optional[str]) -> Optional[OrgTier]:
    if not org_role:
        return None
    return _ORG_ROLES.get(org_role.strip().lower())


class HttpIdentityProvider:
    """Consulta ``IDENTITY_PROVIDER_URL`` con el token de sesión como bearer.

    Respuesta esperada (200)::

        {"user_id": ..., "email": ..., "org_id": ..., "org_slug": ..., "org_role": ...}

    401/403 del proveedor equivalen a sesión inválida.
    """

    def __init__(self, url: str, *, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        self._url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def resolve(self, token: str) -> Optional[SessionClaims]:
        response = await self._client.get(self._url, headers={"Authorization": f"Bearer {token}"})
        if response.status_code in (401, 403, 404):
            return None
        response.raise_for_status()

        try:
            data = response.json()
        except ValueError as e:
            raise IdentityProviderError(f"Invalid JSON from identity provider: {e}") from e
        if not isinstance(data, dict):
            raise IdentityProviderError(f"Expected a JSON object, got {type(data).__name__}")

        user_id = data.get("user_id")
        if not user_id:
            return None
        return SessionClaims(
            user_id=str(user_id),
            email=data.get("email"),
            org_id=data.get("org_id"),
            org_slug=data.get("org_slug"),
            org_role=data.get("org_role"),
        )

    async def close(self) -> None:
        await self._client.aclose()
