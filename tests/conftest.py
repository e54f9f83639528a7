"""Fixtures compartidas: settings, SQLite en memoria, fakeredis y TestClient."""

import dataclasses
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import fakeredis
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool
from starlette.requests import Request

from common.config import Settings
from common.db import init_schema
from dashboard_api.core.redis import RedisConnection
from dashboard_api.main import create_app


BASE_SETTINGS = Settings(
    database_url="sqlite://",
    db_timeout_seconds=5.0,
    redis_url=None,
    redis_timeout_seconds=1.0,
    log_level="WARNING",
    auth_mode="api_key",
    api_keys="",
    deny_unmapped_routes=False,
    default_org_id="org_test",
    allowed_org_slugs=("users",),
    identity_provider_url=None,
    error_report_url=None,
    rate_limit_enabled=True,
    rate_limit_window_seconds=60,
    rate_limit_ingest_per_device=1000,
    rate_limit_ingest_per_ip=10000,
    rate_limit_mutations_per_ip=100,
    rate_limit_reads_per_ip=1000,
    cache_enabled=True,
    cache_metadata_ttl=600,
    cache_health_ttl=30,
    cache_device_ttl=300,
    cache_devices_list_ttl=30,
    cache_readings_latest_ttl=10,
    cache_analytics_ttl=60,
)

ADMIN_KEY = "admin-key-0123456789"
OPERATOR_KEY = "operator-key-0123456789"
VIEWER_KEY = "viewer-key-0123456789"
API_KEYS = f"ops-admin:{ADMIN_KEY}:admin,ops-bot:{OPERATOR_KEY}:operator,dashboard:{VIEWER_KEY}:viewer"


def make_settings(**overrides: Any) -> Settings:
    return dataclasses.replace(BASE_SETTINGS, **overrides)


def make_request(
    method: str = "GET",
    path: str = "/api/v2/devices",
    headers: Optional[Dict[str, str]] = None,
    query_string: bytes = b"",
    body_chunks: Tuple[bytes, ...] = (),
    client: Tuple[str, int] = ("203.0.113.42", 50000),
) -> Request:
    """Request de Starlette construido a mano (sin servidor)."""
    raw_headers: List[Tuple[bytes, bytes]] = [
        (k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in (headers or {}).items()
    ]
    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "raw_path": path.encode(),
        "query_string": query_string,
        "headers": raw_headers,
        "client": client,
        "server": ("testserver", 80),
        "scheme": "http",
        "root_path": "",
        "http_version": "1.1",
    }
    messages = [{"type": "http.request", "body": chunk, "more_body": True} for chunk in body_chunks]
    messages.append({"type": "http.request", "body": b"", "more_body": False})

    async def receive():
        return messages.pop(0)

    return Request(scope, receive)


def device_payload(device_id: str = "device_001", serial: str = "SN-001", **overrides: Any) -> Dict[str, Any]:
    payload = {
        "id": device_id,
        "serial_number": serial,
        "manufacturer": "Acme",
        "model": "T-1000",
        "firmware_version": "1.2.3",
        "type": "temperature",
        "location": {"building_id": "HQ", "floor": 3, "room_name": "Lab 3", "zone": "north"},
        "metadata": {"tags": ["lab"], "department": "facilities"},
    }
    payload.update(overrides)
    return payload


def reading_payload(device_id: str = "device_001", value: float = 21.5, **overrides: Any) -> Dict[str, Any]:
    reading = {
        "device_id": device_id,
        "type": "temperature",
        "value": value,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    reading.update(overrides)
    return reading


def auth_headers(key: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {key}"}


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def fake_redis():
    """Redis en memoria, aislado por test."""
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def redis_connection(fake_redis) -> RedisConnection:
    return RedisConnection(client=fake_redis)


@pytest.fixture
def engine():
    """SQLite en memoria compartido entre hilos (StaticPool)."""
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    init_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def make_client(fake_redis, engine):
    """Factory de TestClient con settings sobreescribibles.

    Usar una sola vez por test: el cliente fakeredis queda ligado al event
    loop del TestClient.
    """

    @contextmanager
    def _make(**overrides: Any):
        app = create_app(make_settings(**overrides), redis_client=fake_redis, engine=engine)
        with TestClient(app) as client:
            yield client

    return _make
