"""Tests de autenticación, RBAC y auditoría."""

from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
import pytest

from dashboard_api.auth import (
    ApiKeyRegistry,
    AuthContext,
    AuthResolver,
    OrgTier,
    Role,
    create_audit_metadata,
    extract_api_key,
    get_audit_user,
    has_permission,
    hash_api_key,
    permissions_for_role,
    required_permission,
)
from dashboard_api.auth.api_key import parse_api_keys
from dashboard_api.auth.authorization import tier_allows
from dashboard_api.auth.context import AUDIT_SYSTEM_IDENTITY
from dashboard_api.auth.session import HttpIdentityProvider, IdentityProviderError, SessionClaims, map_org_role
from dashboard_api.errors import ApiError, ErrorCode

from .conftest import ADMIN_KEY, API_KEYS, OPERATOR_KEY, VIEWER_KEY, make_request, make_settings


class FakeIdentityProvider:
    def __init__(self, claims: Optional[SessionClaims] = None, error: Optional[Exception] = None):
        self.claims = claims
        self.error = error
        self.tokens = []

    async def resolve(self, token: str) -> Optional[SessionClaims]:
        self.tokens.append(token)
        if self.error is not None:
            raise self.error
        return self.claims


def claims(org_role: str = "org:admin", org_slug: str = "users", org_id: Optional[str] = "org_1") -> SessionClaims:
    return SessionClaims(user_id="user_1", email="ana@example.com", org_id=org_id, org_slug=org_slug, org_role=org_role)


def session_resolver(provider, **kwargs) -> AuthResolver:
    return AuthResolver(registry=ApiKeyRegistry(""), mode="session", identity_provider=provider, **kwargs)


@pytest.fixture
def resolver():
    return AuthResolver.from_settings(make_settings(api_keys=API_KEYS))


# =============================================================================
# API KEYS
# =============================================================================

class TestApiKeyParsing:

    def test_parses_entries(self):
        keys = parse_api_keys(API_KEYS)
        assert [(k.name, k.role) for k in keys] == [
            ("ops-admin", Role.ADMIN),
            ("ops-bot", Role.OPERATOR),
            ("dashboard", Role.VIEWER),
        ]

    def test_skips_malformed_and_unknown_roles(self):
        keys = parse_api_keys("good:k1:viewer, broken ,x:k2:superuser,missing:role:")
        assert [k.name for k in keys] == ["good"]

    def test_empty(self):
        assert parse_api_keys("") == []
        assert parse_api_keys(None) == []

    def test_masked_never_shows_full_key(self):
        info = parse_api_keys(f"a:{ADMIN_KEY}:admin")[0]
        assert ADMIN_KEY not in info.masked

    def test_hash_is_stable_sha256(self):
        digest = hash_api_key(ADMIN_KEY)
        assert digest == hash_api_key(ADMIN_KEY)
        assert len(digest) == 64
        assert ADMIN_KEY not in digest


class TestExtractApiKey:

    def test_bearer(self):
        assert extract_api_key({"authorization": "Bearer abc"}) == "abc"

    def test_bearer_case_insensitive(self):
        assert extract_api_key({"authorization": "bearer abc"}) == "abc"

    def test_x_api_key_fallback(self):
        assert extract_api_key({"x-api-key": " abc "}) == "abc"

    def test_bearer_wins(self):
        assert extract_api_key({"authorization": "Bearer one", "x-api-key": "two"}) == "one"

    def test_missing(self):
        assert extract_api_key({"authorization": "Basic xyz"}) is None


class TestRegistry:

    def test_validate(self):
        registry = ApiKeyRegistry(API_KEYS)
        assert registry.validate(VIEWER_KEY).role == Role.VIEWER
        assert registry.validate("wrong-key") is None
        assert registry.validate("") is None

    def test_auth_required_only_with_keys(self):
        assert ApiKeyRegistry(API_KEYS).is_auth_required
        assert not ApiKeyRegistry("").is_auth_required

    def test_reload_rotates_keys(self):
        registry = ApiKeyRegistry(API_KEYS)
        registry.reload("new:fresh-key-123456:operator")
        assert registry.validate(ADMIN_KEY) is None
        assert registry.validate("fresh-key-123456").name == "new"


# =============================================================================
# PERMISOS
# =============================================================================

class TestPermissions:

    @pytest.mark.parametrize(
        "method,path,expected",
        [
            ("GET", "/api/v2/devices", "devices:read"),
            ("POST", "/api/v2/devices", "devices:create"),
            ("PATCH", "/api/v2/devices/d1", "devices:update"),
            ("DELETE", "/api/v2/devices/d1", "devices:delete"),
            ("POST", "/api/v2/readings/ingest", "readings:create"),
            ("GET", "/api/v2/readings/latest", "readings:read"),
            ("DELETE", "/api/v2/schedules/s1", "schedules:delete"),
            ("GET", "/api/v2/metadata", "devices:read"),
            ("DELETE", "/api/v2/admin/cache", "admin:settings"),
            ("GET", "/api/v2/unknown", None),
        ],
    )
    def test_required_permission(self, method, path, expected):
        assert required_permission(method, path) == expected

    def test_viewer_is_read_only(self):
        perms = permissions_for_role(Role.VIEWER)
        assert all(p.endswith(":read") for p in perms)
        assert "audit:read" not in perms

    def test_operator_cannot_delete(self):
        assert has_permission(Role.OPERATOR, "devices:update")
        assert not has_permission(Role.OPERATOR, "devices:delete")
        assert not has_permission(Role.OPERATOR, "admin:settings")

    def test_admin_has_everything(self):
        assert has_permission(Role.ADMIN, "schedules:delete")
        assert has_permission(Role.ADMIN, "admin:keys")

    def test_unknown_permission_denied(self):
        assert not has_permission(Role.ADMIN, "rockets:launch")

    def test_tier_rules(self):
        assert tier_allows(OrgTier.MEMBER, "devices:update")
        assert not tier_allows(OrgTier.MEMBER, "devices:delete")
        assert not tier_allows(OrgTier.MEMBER, "admin:settings")
        assert not tier_allows(OrgTier.MEMBER, "audit:read")
        assert tier_allows(OrgTier.ADMIN, "devices:delete")

    def test_org_role_mapping(self):
        assert map_org_role("org:admin") is OrgTier.ADMIN
        assert map_org_role("Member") is OrgTier.MEMBER
        assert map_org_role("org:billing") is None
        assert map_org_role(None) is None


# =============================================================================
# RESOLVER: MODO API KEY
# =============================================================================

class TestApiKeyMode:

    @pytest.mark.asyncio
    async def test_no_keys_means_open_access(self):
        resolver = AuthResolver.from_settings(make_settings(api_keys=""))
        ctx = await resolver.authenticate(make_request())
        assert ctx.is_authenticated
        assert ctx.role is Role.ADMIN
        assert ctx.auth_type == "system"

    @pytest.mark.asyncio
    async def test_missing_key_is_401(self, resolver):
        with pytest.raises(ApiError) as exc_info:
            await resolver.authenticate(make_request())
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_invalid_key_is_401(self, resolver):
        with pytest.raises(ApiError) as exc_info:
            await resolver.authenticate(make_request(headers={"X-API-Key": "nope"}))
        assert exc_info.value.code == ErrorCode.UNAUTHORIZED

    @pytest.mark.asyncio
    async def test_valid_key(self, resolver):
        ctx = await resolver.authenticate(make_request(headers={"Authorization": f"Bearer {OPERATOR_KEY}"}))
        assert ctx.name == "ops-bot"
        assert ctx.role is Role.OPERATOR
        assert ctx.org_id == "org_test"

    @pytest.mark.asyncio
    async def test_optional_auth_returns_anonymous(self, resolver):
        ctx = await resolver.authenticate_optional(make_request())
        assert not ctx.is_authenticated

    def test_viewer_cannot_delete(self, resolver):
        ctx = AuthContext(name="dashboard", role=Role.VIEWER, is_authenticated=True)
        with pytest.raises(ApiError) as exc_info:
            resolver.authorize(ctx, "devices:delete")
        assert exc_info.value.status_code == 403
        assert exc_info.value.metadata["required_permission"] == "devices:delete"

    def test_anonymous_is_401(self, resolver):
        with pytest.raises(ApiError) as exc_info:
            resolver.authorize(AuthContext.anonymous(), "devices:read")
        assert exc_info.value.status_code == 401

    def test_minimum_admin_tier_with_api_key(self, resolver):
        operator = AuthContext(name="ops-bot", role=Role.OPERATOR, is_authenticated=True)
        with pytest.raises(ApiError):
            resolver.authorize(operator, None, minimum_tier=OrgTier.ADMIN)
        admin = AuthContext(name="ops-admin", role=Role.ADMIN, is_authenticated=True)
        resolver.authorize(admin, "admin:settings", minimum_tier=OrgTier.ADMIN)

    def test_unmapped_route_allowed_by_default(self, resolver):
        assert resolver.permission_for("GET", "/api/v2/unknown") is None

    def test_unmapped_route_denied_when_configured(self):
        resolver = AuthResolver.from_settings(make_settings(api_keys=API_KEYS, deny_unmapped_routes=True))
        with pytest.raises(ApiError) as exc_info:
            resolver.permission_for("GET", "/api/v2/unknown")
        assert exc_info.value.status_code == 403

    def test_unknown_mode_rejected(self):
        with pytest.raises(ValueError):
            AuthResolver(registry=ApiKeyRegistry(""), mode="oauth")

    def test_session_mode_requires_provider(self):
        with pytest.raises(ValueError):
            AuthResolver(registry=ApiKeyRegistry(""), mode="session")


# =============================================================================
# RESOLVER: MODO SESIÓN
# =============================================================================

class TestSessionMode:

    @pytest.mark.asyncio
    async def test_admin_session(self):
        provider = FakeIdentityProvider(claims("org:admin"))
        ctx = await session_resolver(provider).authenticate(make_request(headers={"Authorization": "Bearer tok"}))

        assert provider.tokens == ["tok"]
        assert ctx.tier is OrgTier.ADMIN
        assert ctx.org_id == "org_1"
        assert ctx.name == "ana@example.com"

    @pytest.mark.asyncio
    async def test_token_from_cookie(self):
        provider = FakeIdentityProvider(claims("org:member"))
        ctx = await session_resolver(provider).authenticate(make_request(headers={"Cookie": "__session=cookie-tok"}))
        assert provider.tokens == ["cookie-tok"]
        assert ctx.tier is OrgTier.MEMBER

    @pytest.mark.asyncio
    async def test_member_cannot_delete(self):
        resolver = session_resolver(FakeIdentityProvider(claims("org:member")))
        ctx = await resolver.authenticate(make_request(headers={"Authorization": "Bearer tok"}))

        resolver.authorize(ctx, "devices:update")
        with pytest.raises(ApiError) as exc_info:
            resolver.authorize(ctx, "devices:delete")
        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_invalid_session_is_401(self):
        resolver = session_resolver(FakeIdentityProvider(None))
        with pytest.raises(ApiError) as exc_info:
            await resolver.authenticate(make_request(headers={"Authorization": "Bearer tok"}))
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_missing_token_is_401(self):
        resolver = session_resolver(FakeIdentityProvider(claims()))
        with pytest.raises(ApiError) as exc_info:
            await resolver.authenticate(make_request())
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "session_claims",
        [claims(org_id=None), claims(org_slug="other"), claims(org_role="org:billing")],
    )
    async def test_forbidden_sessions(self, session_claims):
        resolver = session_resolver(FakeIdentityProvider(session_claims))
        with pytest.raises(ApiError) as exc_info:
            await resolver.authenticate(make_request(headers={"Authorization": "Bearer tok"}))
        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_provider_down_is_503(self):
        provider = FakeIdentityProvider(error=httpx.ConnectError("refused"))
        with pytest.raises(ApiError) as exc_info:
            await session_resolver(provider).authenticate(make_request(headers={"Authorization": "Bearer tok"}))
        assert exc_info.value.status_code == 503


class TestHttpIdentityProvider:

    @pytest.mark.asyncio
    async def test_resolves_claims(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.headers["authorization"] == "Bearer tok"
            return httpx.Response(
                200,
                json={"user_id": "u1", "email": None, "org_id": "o1", "org_slug": "users", "org_role": "org:admin"},
            )

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        provider = HttpIdentityProvider("https://idp.example.com/session", client=client)

        result = await provider.resolve("tok")
        await provider.close()

        assert result.user_id == "u1"
        assert result.audit_identity == "u1"

    @pytest.mark.asyncio
    async def test_rejected_token(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(401)))
        provider = HttpIdentityProvider("https://idp.example.com/session", client=client)
        assert await provider.resolve("tok") is None
        await provider.close()

    @pytest.mark.asyncio
    async def test_server_error_raises(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(502)))
        provider = HttpIdentityProvider("https://idp.example.com/session", client=client)
        with pytest.raises(httpx.HTTPStatusError):
            await provider.resolve("tok")
        await provider.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(200, text="<html>maintenance</html>"),
            httpx.Response(200, json=[{"user_id": "u1"}]),
            httpx.Response(200, json="u1"),
        ],
        ids=["html", "list", "string"],
    )
    async def test_malformed_body_raises(self, response):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: response))
        provider = HttpIdentityProvider("https://idp.example.com/session", client=client)
        with pytest.raises(IdentityProviderError):
            await provider.resolve("tok")
        await provider.close()

    @pytest.mark.asyncio
    async def test_malformed_body_is_503_through_resolver(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, text="not json")))
        resolver = session_resolver(HttpIdentityProvider("https://idp.example.com/session", client=client))

        with pytest.raises(ApiError) as exc_info:
            await resolver.authenticate(make_request(headers={"Authorization": "Bearer tok"}))
        await client.aclose()

        assert exc_info.value.status_code == 503
        assert exc_info.value.code == ErrorCode.SERVICE_UNAVAILABLE


# =============================================================================
# AUDITORÍA
# =============================================================================

class TestAudit:

    NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def test_create_sets_same_timestamp(self):
        ctx = AuthContext(name="ops-bot", role=Role.OPERATOR, is_authenticated=True)
        fields = create_audit_metadata(ctx, "create", now=self.NOW)
        assert fields["created_by"] == fields["updated_by"] == "ops-bot"
        assert fields["created_at"] == fields["updated_at"] == self.NOW

    def test_unauthenticated_uses_system_identity(self):
        assert get_audit_user(None) == AUDIT_SYSTEM_IDENTITY
        assert get_audit_user(AuthContext.anonymous()) == AUDIT_SYSTEM_IDENTITY

    @pytest.mark.parametrize(
        "action,by_field",
        [("delete", "deleted_by"), ("complete", "completed_by"), ("cancel", "cancelled_by")],
    )
    def test_action_fields(self, action, by_field):
        fields = create_audit_metadata(None, action, now=self.NOW)
        assert fields[by_field] == AUDIT_SYSTEM_IDENTITY
        assert "created_by" not in fields

    def test_updated_at_never_goes_backwards(self):
        later = self.NOW + timedelta(minutes=5)
        fields = create_audit_metadata(None, "update", previous_updated_at=later, now=self.NOW)
        assert fields["updated_at"] == later

    def test_unknown_action(self):
        with pytest.raises(ValueError):
            create_audit_metadata(None, "archive")

