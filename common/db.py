from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from .config import Settings, get_settings


logger = logging.getLogger(__name__)

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS devices (
        id VARCHAR(100) PRIMARY KEY,
        org_id VARCHAR(100) NOT NULL,
        serial_number VARCHAR(100) NOT NULL,
        type VARCHAR(50) NOT NULL,
        manufacturer VARCHAR(100),
        device_model VARCHAR(100),
        firmware_version VARCHAR(50),
        status VARCHAR(30) NOT NULL,
        status_reason VARCHAR(500),
        building_id VARCHAR(100),
        floor INTEGER,
        room_name VARCHAR(200),
        zone VARCHAR(100),
        department VARCHAR(100),
        tags TEXT,
        battery_level FLOAT,
        last_seen VARCHAR(40),
        created_by VARCHAR(200) NOT NULL,
        created_at VARCHAR(40) NOT NULL,
        updated_by VARCHAR(200) NOT NULL,
        updated_at VARCHAR(40) NOT NULL,
        deleted_by VARCHAR(200),
        deleted_at VARCHAR(40),
        UNIQUE (org_id, serial_number)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS readings (
        id VARCHAR(40) PRIMARY KEY,
        org_id VARCHAR(100) NOT NULL,
        device_id VARCHAR(100) NOT NULL,
        type VARCHAR(50) NOT NULL,
        unit VARCHAR(50) NOT NULL,
        value FLOAT NOT NULL,
        timestamp VARCHAR(40) NOT NULL,
        source VARCHAR(30) NOT NULL,
        ingested_at VARCHAR(40) NOT NULL,
        created_by VARCHAR(200) NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_readings_device_ts ON readings (org_id, device_id, timestamp)",
    """
    CREATE TABLE IF NOT EXISTS schedules (
        id VARCHAR(40) PRIMARY KEY,
        org_id VARCHAR(100) NOT NULL,
        device_id VARCHAR(100) NOT NULL,
        service_type VARCHAR(50) NOT NULL,
        status VARCHAR(20) NOT NULL,
        scheduled_date VARCHAR(40) NOT NULL,
        notes VARCHAR(1000),
        created_by VARCHAR(200) NOT NULL,
        created_at VARCHAR(40) NOT NULL,
        updated_by VARCHAR(200) NOT NULL,
        updated_at VARCHAR(40) NOT NULL,
        completed_by VARCHAR(200),
        completed_at VARCHAR(40),
        cancelled_by VARCHAR(200),
        cancelled_at VARCHAR(40)
    )
    """,
)


def to_db_timestamp(value: Optional[datetime]) -> Optional[str]:
    # Ancho fijo en UTC: las comparaciones de texto respetan el orden temporal.
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_TS_FORMAT)


def from_db_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.fromisoformat(value)


def get_engine(settings: Optional[Settings] = None) -> Engine:
    settings = settings or get_settings()
    url = settings.database_url

    # Log básico del destino (sin credenciales)
    logger.info("[DB] Crear engine url=%s", url.split("@")[-1])

    connect_args: dict = {}
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": settings.db_timeout_seconds}
    elif url.startswith("postgresql"):
        connect_args = {"connect_timeout": int(settings.db_timeout_seconds)}

    return create_engine(url, pool_pre_ping=True, future=True, connect_args=connect_args)


def init_schema(engine: Engine) -> None:
    with engine.begin() as conn:
        for statement in _SCHEMA:
            conn.execute(text(statement))
    logger.info("[DB] Schema OK")
