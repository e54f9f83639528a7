"""Persistencia de dispositivos (tabla ``devices``).

Los borrados son lógicos (``deleted_at``); las consultas de listado y
metadata ignoran los dispositivos borrados.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from sqlalchemy import bindparam, text

from common.db import to_db_timestamp

from ..schemas import DeviceCreate, DeviceListQuery
from .base import Repository, escape_like, ts

logger = logging.getLogger(__name__)

STALE_AFTER = timedelta(minutes=15)
LOW_BATTERY_LEVEL = 20.0

_SORT_COLUMNS = {
    "created_at": "created_at",
    "updated_at": "updated_at",
    "last_seen": "last_seen",
    "serial_number": "serial_number",
    "status": "status",
    "floor": "floor",
    "building_id": "building_id",
    "manufacturer": "manufacturer",
    "battery_level": "battery_level",
}

# Columnas editables por PATCH (nombre de campo plano -> columna)
UPDATABLE_COLUMNS = (
    "serial_number",
    "manufacturer",
    "device_model",
    "firmware_version",
    "status",
    "status_reason",
    "building_id",
    "floor",
    "room_name",
    "zone",
    "department",
    "tags",
    "battery_level",
)


def device_to_dict(row: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "serial_number": row["serial_number"],
        "manufacturer": row["manufacturer"],
        "model": row["device_model"],
        "firmware_version": row["firmware_version"],
        "type": row["type"],
        "status": row["status"],
        "status_reason": row["status_reason"],
        "location": {
            "building_id": row["building_id"],
            "floor": row["floor"],
            "room_name": row["room_name"],
            "zone": row["zone"],
        },
        "metadata": {
            "tags": json.loads(row["tags"]) if row["tags"] else [],
            "department": row["department"],
        },
        "health": {
            "last_seen": ts(row["last_seen"]),
            "battery_level": row["battery_level"],
        },
        "audit": {
            "created_by": row["created_by"],
            "created_at": ts(row["created_at"]),
            "updated_by": row["updated_by"],
            "updated_at": ts(row["updated_at"]),
            "deleted_by": row["deleted_by"],
            "deleted_at": ts(row["deleted_at"]),
        },
    }


def flatten_update(changes: Mapping[str, Any]) -> Dict[str, Any]:
    """Convierte el PATCH anidado (location/metadata) en columnas planas."""
    flat: Dict[str, Any] = {}
    for key, value in changes.items():
        if key == "location" and value:
            flat.update(value)
        elif key == "metadata" and value:
            flat.update(value)
        elif key == "model":
            flat["device_model"] = value
        else:
            flat[key] = value
    if "tags" in flat:
        flat["tags"] = json.dumps(flat["tags"] or [])
    return {k: v for k, v in flat.items() if k in UPDATABLE_COLUMNS}


class DeviceRepository(Repository):
    def list(self, org_id: str, query: DeviceListQuery) -> Tuple[List[Dict[str, Any]], int]:
        clauses = ["org_id = :org_id", "deleted_at IS NULL"]
        params: Dict[str, Any] = {"org_id": org_id}
        expanding = []

        if query.status:
            clauses.append("status IN :statuses")
            params["statuses"] = [s.value for s in query.status]
            expanding.append("statuses")
        if query.type:
            clauses.append("type IN :types")
            params["types"] = [t.value for t in query.type]
            expanding.append("types")
        for field in ("building_id", "floor", "zone", "department"):
            value = getattr(query, field)
            if value is not None:
                clauses.append(f"{field} = :{field}")
                params[field] = value
        if query.search:
            clauses.append(
                "(serial_number LIKE :search ESCAPE '\\' OR manufacturer LIKE :search ESCAPE '\\' "
                "OR device_model LIKE :search ESCAPE '\\' OR room_name LIKE :search ESCAPE '\\')"
            )
            params["search"] = f"%{escape_like(query.search)}%"

        where = " AND ".join(clauses)
        order = f"{_SORT_COLUMNS[query.sort_by.value]} {query.sort_order.value.upper()}, id ASC"

        count_stmt = text(f"SELECT COUNT(*) FROM devices WHERE {where}")
        list_stmt = text(f"SELECT * FROM devices WHERE {where} ORDER BY {order} LIMIT :limit OFFSET :offset")
        if expanding:
            count_stmt = count_stmt.bindparams(*(bindparam(n, expanding=True) for n in expanding))
            list_stmt = list_stmt.bindparams(*(bindparam(n, expanding=True) for n in expanding))

        with self._engine.begin() as conn:
            total = int(conn.execute(count_stmt, params).scalar_one())
            rows = conn.execute(
                list_stmt,
                {**params, "limit": query.limit, "offset": (query.page - 1) * query.limit},
            ).mappings()
            items = [device_to_dict(row) for row in rows]
        return items, total

    def get(self, org_id: str, device_id: str) -> Optional[Dict[str, Any]]:
        """Dispositivo por id, incluidos los borrados (el llamante decide 404/410)."""
        with self._engine.begin() as conn:
            row = (
                conn.execute(
                    text("SELECT * FROM devices WHERE org_id = :org_id AND id = :id"),
                    {"org_id": org_id, "id": device_id},
                )
                .mappings()
                .first()
            )
        return device_to_dict(row) if row else None

    def id_exists(self, device_id: str) -> bool:
        # Los ids son globales (clave primaria), no por organización
        with self._engine.begin() as conn:
            return conn.execute(text("SELECT 1 FROM devices WHERE id = :id"), {"id": device_id}).first() is not None

    def serial_exists(self, org_id: str, serial_number: str, exclude_id: Optional[str] = None) -> bool:
        sql = "SELECT 1 FROM devices WHERE org_id = :org_id AND serial_number = :serial"
        params: Dict[str, Any] = {"org_id": org_id, "serial": serial_number}
        if exclude_id:
            sql += " AND id <> :exclude_id"
            params["exclude_id"] = exclude_id
        with self._engine.begin() as conn:
            return conn.execute(text(sql), params).first() is not None

    def existing_ids(self, org_id: str, device_ids: Iterable[str]) -> Set[str]:
        ids = sorted(set(device_ids))
        if not ids:
            return set()
        stmt = text(
            "SELECT id FROM devices WHERE org_id = :org_id AND deleted_at IS NULL AND id IN :ids"
        ).bindparams(bindparam("ids", expanding=True))
        with self._engine.begin() as conn:
            return {row[0] for row in conn.execute(stmt, {"org_id": org_id, "ids": ids})}

    def create(self, org_id: str, data: DeviceCreate, audit: Mapping[str, Any]) -> Dict[str, Any]:
        params = {
            "id": data.id,
            "org_id": org_id,
            "serial_number": data.serial_number,
            "type": data.type.value,
            "manufacturer": data.manufacturer,
            "device_model": data.model,
            "firmware_version": data.firmware_version,
            "status": data.status.value,
            "status_reason": data.status_reason,
            "building_id": data.location.building_id,
            "floor": data.location.floor,
            "room_name": data.location.room_name,
            "zone": data.location.zone,
            "department": data.metadata.department,
            "tags": json.dumps(data.metadata.tags),
            "battery_level": data.battery_level,
            "created_by": audit["created_by"],
            "created_at": to_db_timestamp(audit["created_at"]),
            "updated_by": audit["updated_by"],
            "updated_at": to_db_timestamp(audit["updated_at"]),
        }
        columns = ", ".join(params)
        values = ", ".join(f":{name}" for name in params)
        with self._engine.begin() as conn:
            conn.execute(text(f"INSERT INTO devices ({columns}) VALUES ({values})"), params)
        logger.info("[DB] DEVICE_CREATED id=%s org=%s by=%s", data.id, org_id, audit["created_by"])
        return self.get(org_id, data.id)

    def update(self, org_id: str, device_id: str, changes: Mapping[str, Any], audit: Mapping[str, Any]) -> bool:
        columns = dict(changes)
        columns["updated_by"] = audit["updated_by"]
        columns["updated_at"] = to_db_timestamp(audit["updated_at"])
        assignments = ", ".join(f"{name} = :{name}" for name in columns)
        with self._engine.begin() as conn:
            result = conn.execute(
                text(
                    f"UPDATE devices SET {assignments} "
                    "WHERE org_id = :org_id AND id = :id AND deleted_at IS NULL"
                ),
                {**columns, "org_id": org_id, "id": device_id},
            )
        return result.rowcount > 0

    def soft_delete(self, org_id: str, device_id: str, audit: Mapping[str, Any]) -> bool:
        with self._engine.begin() as conn:
            result = conn.execute(
                text(
                    "UPDATE devices SET deleted_by = :deleted_by, deleted_at = :deleted_at, "
                    "updated_by = :updated_by, updated_at = :updated_at, status = 'decommissioned' "
                    "WHERE org_id = :org_id AND id = :id AND deleted_at IS NULL"
                ),
                {
                    "deleted_by": audit["deleted_by"],
                    "deleted_at": to_db_timestamp(audit["deleted_at"]),
                    "updated_by": audit["updated_by"],
                    "updated_at": to_db_timestamp(audit["updated_at"]),
                    "org_id": org_id,
                    "id": device_id,
                },
            )
        return result.rowcount > 0

    def touch_last_seen(self, org_id: str, device_ids: Iterable[str], seen_at: datetime) -> int:
        ids = sorted(set(device_ids))
        if not ids:
            return 0
        stmt = text(
            "UPDATE devices SET last_seen = :seen_at WHERE org_id = :org_id AND id IN :ids"
        ).bindparams(bindparam("ids", expanding=True))
        with self._engine.begin() as conn:
            result = conn.execute(stmt, {"seen_at": to_db_timestamp(seen_at), "org_id": org_id, "ids": ids})
        return result.rowcount

    def health_summary(
        self,
        org_id: str,
        now: datetime,
        stale_after: timedelta = STALE_AFTER,
        low_battery: float = LOW_BATTERY_LEVEL,
    ) -> Dict[str, Any]:
        """Conectividad y batería de los dispositivos no borrados.

        ``online``: visto en los últimos ``stale_after``; ``stale``: visto
        antes; ``never_seen``: sin lecturas.
        """
        with self._engine.begin() as conn:
            rows = conn.execute(
                text(
                    "SELECT id, status, last_seen, battery_level FROM devices "
                    "WHERE org_id = :org_id AND deleted_at IS NULL"
                ),
                {"org_id": org_id},
            ).mappings().all()

        summary = {"total": len(rows), "online": 0, "stale": 0, "never_seen": 0, "low_battery": [], "by_status": {}}
        for row in rows:
            summary["by_status"][row["status"]] = summary["by_status"].get(row["status"], 0) + 1
            last_seen = ts(row["last_seen"])
            if last_seen is None:
                summary["never_seen"] += 1
            elif now - last_seen <= stale_after:
                summary["online"] += 1
            else:
                summary["stale"] += 1
            if row["battery_level"] is not None and row["battery_level"] < low_battery:
                summary["low_battery"].append(row["id"])
        summary["low_battery"].sort()
        return summary

    def metadata(self, org_id: str) -> Dict[str, Any]:
        """Conteos de dispositivos activos por estado, tipo y fabricante."""
        summary: Dict[str, Any] = {"total": 0}
        with self._engine.begin() as conn:
            for column in ("status", "type", "manufacturer"):
                rows = conn.execute(
                    text(
                        f"SELECT {column} AS value, COUNT(*) AS n FROM devices "
                        f"WHERE org_id = :org_id AND deleted_at IS NULL GROUP BY {column} ORDER BY {column}"
                    ),
                    {"org_id": org_id},
                )
                summary[f"by_{column}"] = {str(row.value): int(row.n) for row in rows}
            summary["total"] = sum(summary["by_status"].values())
            buildings = conn.execute(
                text(
                    "SELECT DISTINCT building_id FROM devices "
                    "WHERE org_id = :org_id AND deleted_at IS NULL AND building_id IS NOT NULL ORDER BY building_id"
                ),
                {"org_id": org_id},
            )
            summary["buildings"] = [row[0] for row in buildings]
        return summary
