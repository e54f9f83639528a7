"""Construcción determinista de claves de cache.

Formato: ``org:{org_id}:{prefijo}:{params}``. Los parámetros se ordenan
por nombre, se descartan los ``None`` y cada nombre/valor se codifica
con ``quote(safe="")``: un ``:`` o un ``*`` dentro de un valor nunca
colisiona con otro conjunto de parámetros ni actúa como glob en SCAN.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional, Tuple
from urllib.parse import quote

DEVICE = "device"
DEVICES_LIST = "devices:list"
METADATA = "metadata"
HEALTH = "health"
READINGS_LATEST = "readings:latest"
ANALYTICS = "analytics"

_EMPTY = "default"


def _q(value: Any) -> str:
    return quote(str(value), safe="")


def _value(value: Any) -> str:
    if isinstance(value, (list, tuple, set, frozenset)):
        return ",".join(sorted(_q(v) for v in value))
    if isinstance(value, bool):
        return "true" if value else "false"
    if hasattr(value, "isoformat"):
        return _q(value.isoformat())
    if hasattr(value, "value") and isinstance(getattr(value, "value"), str):
        # Enums
        return _q(value.value)
    return _q(value)


def serialize_params(params: Optional[Mapping[str, Any]] = None) -> str:
    if not params:
        return _EMPTY
    parts = [f"{_q(k)}:{_value(params[k])}" for k in sorted(params) if params[k] is not None]
    return ":".join(parts) or _EMPTY


def org_prefix(org_id: str) -> str:
    return f"org:{_q(org_id)}"


def device_key(org_id: str, device_id: str) -> str:
    return f"{org_prefix(org_id)}:{DEVICE}:{_q(device_id)}"


def devices_list_key(org_id: str, filters: Optional[Mapping[str, Any]] = None) -> str:
    return f"{org_prefix(org_id)}:{DEVICES_LIST}:{serialize_params(filters)}"


def metadata_key(org_id: str, params: Optional[Mapping[str, Any]] = None) -> str:
    return f"{org_prefix(org_id)}:{METADATA}:{serialize_params(params)}"


def health_key(org_id: str, filters: Optional[Mapping[str, Any]] = None) -> str:
    return f"{org_prefix(org_id)}:{HEALTH}:{serialize_params(filters)}"


def latest_readings_key(org_id: str, device_ids=(), types=()) -> str:
    params = {
        "devices": sorted(device_ids) if device_ids else "all",
        "types": sorted(types) if types else "all",
    }
    return f"{org_prefix(org_id)}:{READINGS_LATEST}:{serialize_params(params)}"


def analytics_key(org_id: str, endpoint: str, params: Optional[Mapping[str, Any]] = None) -> str:
    return f"{org_prefix(org_id)}:{ANALYTICS}:{_q(endpoint)}:{serialize_params(params)}"


# Patrones para invalidación (SCAN MATCH)

def device_pattern(org_id: str) -> str:
    return f"{org_prefix(org_id)}:{DEVICE}:*"


def devices_list_pattern(org_id: str) -> str:
    return f"{org_prefix(org_id)}:{DEVICES_LIST}:*"


def metadata_pattern(org_id: str) -> str:
    return f"{org_prefix(org_id)}:{METADATA}:*"


def health_pattern(org_id: str) -> str:
    return f"{org_prefix(org_id)}:{HEALTH}:*"


def readings_pattern(org_id: str) -> str:
    return f"{org_prefix(org_id)}:{READINGS_LATEST}:*"


def device_readings_patterns(org_id: str, device_id: str) -> Tuple[str, ...]:
    """Patrones de las claves de lecturas cuyo filtro incluye ``device_id``.

    Los ids van codificados con ``quote``, así que nunca contienen
    caracteres glob ni separadores.
    """
    base = f"{org_prefix(org_id)}:{READINGS_LATEST}:devices"
    d = _q(device_id)
    return (
        f"{base}:all:*",
        f"{base}:{d}:types:*",
        f"{base}:{d},*",
        f"{base}:*,{d}:types:*",
        f"{base}:*,{d},*",
    )


def analytics_pattern(org_id: str) -> str:
    return f"{org_prefix(org_id)}:{ANALYTICS}:*"


ALL_TENANT_PATTERNS = (
    f"org:*:{DEVICE}:*",
    "org:*:devices:*",
    f"org:*:{METADATA}:*",
    f"org:*:{HEALTH}:*",
    "org:*:readings:*",
    f"org:*:{ANALYTICS}:*",
)
