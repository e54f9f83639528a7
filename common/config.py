from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv


def _default_env_file() -> str:
    repo_root = Path(__file__).resolve().parents[1]
    return str(repo_root / ".env")


def _read_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or default


def _read_optional(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return None
    candidate = value.strip()
    return candidate or None


def _read_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _read_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        parsed = float(value.strip())
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _read_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _read_csv(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    value = os.getenv(name)
    if value is None:
        return default
    return tuple(part.strip().lower() for part in value.split(",") if part.strip())


@dataclass(frozen=True)
class Settings:
    database_url: str
    db_timeout_seconds: float

    redis_url: Optional[str]
    redis_timeout_seconds: float

    log_level: str

    # Auth
    auth_mode: str
    api_keys: str
    deny_unmapped_routes: bool
    default_org_id: str
    allowed_org_slugs: Tuple[str, ...]
    identity_provider_url: Optional[str]

    error_report_url: Optional[str]

    # Rate limiting
    rate_limit_enabled: bool
    rate_limit_window_seconds: int
    rate_limit_ingest_per_device: int
    rate_limit_ingest_per_ip: int
    rate_limit_mutations_per_ip: int
    rate_limit_reads_per_ip: int

    # Cache
    cache_enabled: bool
    cache_metadata_ttl: int
    cache_health_ttl: int
    cache_device_ttl: int
    cache_devices_list_ttl: int
    cache_readings_latest_ttl: int
    cache_analytics_ttl: int


@lru_cache
def get_settings() -> Settings:
    # El archivo .env es opcional; las variables reales del entorno tienen prioridad.
    env_file = os.getenv("DASHBOARD_ENV_FILE", _default_env_file())
    if env_file and Path(env_file).exists():
        load_dotenv(env_file, override=False)

    return Settings(
        database_url=_read_str("DATABASE_URL", "sqlite:///./dashboard.db"),
        db_timeout_seconds=_read_float("DB_TIMEOUT_SECONDS", 5.0),
        redis_url=_read_optional("REDIS_URL"),
        redis_timeout_seconds=_read_float("REDIS_TIMEOUT_SECONDS", 5.0),
        log_level=_read_str("LOG_LEVEL", "INFO").upper(),
        auth_mode=_read_str("AUTH_MODE", "api_key").lower(),
        api_keys=os.getenv("API_KEYS", ""),
        deny_unmapped_routes=_read_bool("AUTH_DENY_UNMAPPED_ROUTES", False),
        default_org_id=_read_str("DEFAULT_ORG_ID", "default"),
        allowed_org_slugs=_read_csv("ALLOWED_ORG_SLUGS", ("users",)),
        identity_provider_url=_read_optional("IDENTITY_PROVIDER_URL"),
        error_report_url=_read_optional("ERROR_REPORT_URL"),
        rate_limit_enabled=_read_bool("RATE_LIMIT_ENABLED", True),
        rate_limit_window_seconds=_read_int("RATE_LIMIT_WINDOW_SECONDS", 60),
        rate_limit_ingest_per_device=_read_int("RATE_LIMIT_INGEST_PER_DEVICE", 1000),
        rate_limit_ingest_per_ip=_read_int("RATE_LIMIT_INGEST_PER_IP", 10000),
        rate_limit_mutations_per_ip=_read_int("RATE_LIMIT_MUTATIONS_PER_IP", 100),
        rate_limit_reads_per_ip=_read_int("RATE_LIMIT_READS_PER_IP", 1000),
        cache_enabled=_read_bool("CACHE_ENABLED", True),
        cache_metadata_ttl=_read_int("CACHE_METADATA_TTL", 600),
        cache_health_ttl=_read_int("CACHE_HEALTH_TTL", 30),
        cache_device_ttl=_read_int("CACHE_DEVICE_TTL", 300),
        cache_devices_list_ttl=_read_int("CACHE_DEVICES_LIST_TTL", 30),
        cache_readings_latest_ttl=_read_int("CACHE_READINGS_LATEST_TTL", 10),
        cache_analytics_ttl=_read_int("CACHE_ANALYTICS_TTL", 60),
    )
