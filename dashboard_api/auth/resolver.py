"""Resolución de identidad y autorización por request.

Modos:
- ``api_key``: Bearer / X-API-Key contra la tabla de ``API_KEYS``. Sin keys
  configuradas la auth está deshabilitada y todo request recibe una
  identidad implícita de admin (uso local/dev). Con al menos una key,
  un request sin credenciales es 401.
- ``session``: token de sesión validado por el proveedor de identidad;
  el rol de organización se mapea a ``OrgTier``.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional, Set, Tuple

import httpx
from starlette.requests import Request

from common.config import Settings

from ..errors import ApiError
from ..monitoring.metrics import AUTH_EVENTS
from .api_key import ApiKeyRegistry, extract_api_key
from .authorization import OrgTier, Role, has_permission, required_permission, tier_allows
from .context import AuthContext
from .session import IdentityProvider, IdentityProviderError, map_org_role

logger = logging.getLogger(__name__)

MODE_API_KEY = "api_key"
MODE_SESSION = "session"

SESSION_COOKIE = "__session"


class AuthResolver:
    def __init__(
        self,
        *,
        registry: ApiKeyRegistry,
        mode: str = MODE_API_KEY,
        identity_provider: Optional[IdentityProvider] = None,
        default_org_id: str = "default",
        allowed_org_slugs: Iterable[str] = ("users",),
        deny_unmapped_routes: bool = False,
    ):
        if mode not in (MODE_API_KEY, MODE_SESSION):
            raise ValueError(f"Unknown auth mode: {mode}")
        if mode == MODE_SESSION and identity_provider is None:
            raise ValueError("Session auth mode requires an identity provider")

        self.registry = registry
        self.mode = mode
        self._provider = identity_provider
        self._default_org_id = default_org_id
        self._allowed_slugs = frozenset(s.lower() for s in allowed_org_slugs)
        self._deny_unmapped = deny_unmapped_routes
        self._unmapped_seen: Set[Tuple[str, str]] = set()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        identity_provider: Optional[IdentityProvider] = None,
    ) -> "AuthResolver":
        return cls(
            registry=ApiKeyRegistry(settings.api_keys),
            mode=settings.auth_mode,
            identity_provider=identity_provider,
            default_org_id=settings.default_org_id,
            allowed_org_slugs=settings.allowed_org_slugs,
            deny_unmapped_routes=settings.deny_unmapped_routes,
        )

    # ------------------------------------------------------------------
    # Autenticación
    # ------------------------------------------------------------------

    async def authenticate(self, request: Request) -> AuthContext:
        """Identidad obligatoria.

        Raises:
            ApiError: 401 sin credenciales o inválidas, 403 en sesión sin
                organización permitida o con rol no soportado
        """
        if self.mode == MODE_SESSION:
            return await self._authenticate_session(request)

        if not self.registry.is_auth_required:
            return AuthContext.system(self._default_org_id)

        api_key = extract_api_key(request.headers)
        if not api_key:
            AUTH_EVENTS.labels(outcome="missing").inc()
            raise ApiError.unauthorized("API key required")

        info = self.registry.validate(api_key)
        if info is None:
            AUTH_EVENTS.labels(outcome="invalid").inc()
            raise ApiError.unauthorized("Invalid API key")

        AUTH_EVENTS.labels(outcome="success").inc()
        logger.debug("[Auth] API key authenticated - name=%s role=%s", info.name, info.role.value)
        return AuthContext(name=info.name, role=info.role, is_authenticated=True, org_id=self._default_org_id)

    async def authenticate_optional(self, request: Request) -> AuthContext:
        """Como ``authenticate`` pero credenciales ausentes o inválidas -> anónimo."""
        if self.mode == MODE_API_KEY and not self.registry.is_auth_required:
            return AuthContext.system(self._default_org_id)
        try:
            return await self.authenticate(request)
        except ApiError as e:
            if e.status_code == 401 or e.status_code == 403:
                return AuthContext.anonymous(self._default_org_id if self.mode == MODE_API_KEY else None)
            raise

    async def _authenticate_session(self, request: Request) -> AuthContext:
        token = extract_api_key(request.headers) or request.cookies.get(SESSION_COOKIE)
        if not token:
            AUTH_EVENTS.labels(outcome="missing").inc()
            raise ApiError.unauthorized("Authentication required")

        try:
            claims = await self._provider.resolve(token)
        except (httpx.HTTPError, IdentityProviderError) as e:
            logger.error("[Auth] Identity provider unavailable: %s", e)
            raise ApiError.service_unavailable("Authentication service unavailable")

        if claims is None:
            AUTH_EVENTS.labels(outcome="invalid").inc()
            raise ApiError.unauthorized("Invalid session")

        if not claims.org_id:
            AUTH_EVENTS.labels(outcome="forbidden").inc()
            raise ApiError.forbidden("Organization membership required")

        if (claims.org_slug or "").lower() not in self._allowed_slugs:
            AUTH_EVENTS.labels(outcome="forbidden").inc()
            logger.warning("[Auth] Organization not allowed - slug=%s user=%s", claims.org_slug, claims.user_id)
            raise ApiError.forbidden("Organization not allowed")

        tier = map_org_role(claims.org_role)
        if tier is None:
            AUTH_EVENTS.labels(outcome="forbidden").inc()
            raise ApiError.forbidden("Unsupported organization role", metadata={"role": claims.org_role})

        AUTH_EVENTS.labels(outcome="success").inc()
        return AuthContext(
            name=claims.audit_identity,
            role=Role.ADMIN if tier is OrgTier.ADMIN else Role.OPERATOR,
            is_authenticated=True,
            org_id=claims.org_id,
            tier=tier,
            auth_type="session",
        )

    # ------------------------------------------------------------------
    # Autorización
    # ------------------------------------------------------------------

    def permission_for(self, method: str, path: str) -> Optional[str]:
        """Permiso requerido por la ruta; rutas sin mapear según configuración.

        Raises:
            ApiError: 403 si la ruta no está mapeada y ``deny_unmapped_routes``
        """
        permission = required_permission(method, path)
        if permission is not None:
            return permission

        route = (method.upper(), path)
        if self._deny_unmapped:
            raise ApiError.forbidden("No permission is mapped for this route", metadata={"path": path})
        if route not in self._unmapped_seen:
            self._unmapped_seen.add(route)
            logger.warning("[Auth] Unmapped route allowed without permission - method=%s path=%s", *route)
        return None

    def authorize(
        self,
        ctx: AuthContext,
        permission: Optional[str],
        *,
        minimum_tier: Optional[OrgTier] = None,
    ) -> None:
        """Verifica permiso y nivel mínimo.

        Raises:
            ApiError: 401 si el contexto es anónimo, 403 si no alcanza
        """
        if not ctx.is_authenticated:
            raise ApiError.unauthorized("Authentication required")

        if minimum_tier is OrgTier.ADMIN:
            is_admin = ctx.tier is OrgTier.ADMIN if ctx.tier is not None else ctx.role is Role.ADMIN
            if not is_admin:
                AUTH_EVENTS.labels(outcome="forbidden").inc()
                raise ApiError.forbidden(
                    "Administrator access required",
                    metadata={"required_tier": OrgTier.ADMIN.value},
                )

        if permission is None:
            return

        allowed = tier_allows(ctx.tier, permission) if ctx.tier is not None else has_permission(ctx.role, permission)
        if not allowed:
            AUTH_EVENTS.labels(outcome="forbidden").inc()
            logger.warning(
                "[Auth] Forbidden - identity=%s role=%s permission=%s",
                ctx.name,
                ctx.role.value if ctx.role else None,
                permission,
            )
            raise ApiError.forbidden(
                f"Insufficient permissions. Required: {permission}",
                metadata={"required_permission": permission},
            )
