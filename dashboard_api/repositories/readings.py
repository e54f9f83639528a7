from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Mapping, Sequence, Tuple

from sqlalchemy import bindparam, text

from common.db import to_db_timestamp

from ..schemas import ReadingsQuery
from .base import Repository, ts

logger = logging.getLogger(__name__)

INSERT_BATCH_SIZE = 100

_INSERT = text(
    """
    INSERT INTO readings (id, org_id, device_id, type, unit, value, timestamp, source, ingested_at, created_by)
    VALUES (:id, :org_id, :device_id, :type, :unit, :value, :timestamp, :source, :ingested_at, :created_by)
    """
)


def reading_to_dict(row: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "device_id": row["device_id"],
        "type": row["type"],
        "unit": row["unit"],
        "value": row["value"],
        "timestamp": ts(row["timestamp"]),
        "source": row["source"],
        "ingested_at": ts(row["ingested_at"]),
    }


class ReadingRepository(Repository):
    def insert_many(self, org_id: str, readings: Sequence[Mapping[str, Any]], created_by: str, ingested_at) -> int:
        """Inserta en lotes de ``INSERT_BATCH_SIZE`` dentro de una transacción.

        Args:
            readings: dicts con device_id, type, unit, value, timestamp, source
        """
        rows = [
            {
                "id": uuid.uuid4().hex,
                "org_id": org_id,
                "device_id": r["device_id"],
                "type": r["type"],
                "unit": r["unit"],
                "value": float(r["value"]),
                "timestamp": to_db_timestamp(r["timestamp"]),
                "source": r["source"],
                "ingested_at": to_db_timestamp(ingested_at),
                "created_by": created_by,
            }
            for r in readings
        ]
        with self._engine.begin() as conn:
            for start in range(0, len(rows), INSERT_BATCH_SIZE):
                conn.execute(_INSERT, rows[start : start + INSERT_BATCH_SIZE])
        logger.info("[DB] READINGS_INSERTED org=%s count=%d", org_id, len(rows))
        return len(rows)

    def query(self, org_id: str, query: ReadingsQuery) -> Tuple[List[Dict[str, Any]], int]:
        clauses = ["org_id = :org_id"]
        params: Dict[str, Any] = {"org_id": org_id}
        expanding = []

        devices = query.selected_devices
        if devices:
            clauses.append("device_id IN :device_ids")
            params["device_ids"] = devices
            expanding.append("device_ids")
        if query.type:
            clauses.append("type IN :types")
            params["types"] = list(query.type)
            expanding.append("types")
        if query.min_value is not None:
            clauses.append("value >= :min_value")
            params["min_value"] = query.min_value
        if query.max_value is not None:
            clauses.append("value <= :max_value")
            params["max_value"] = query.max_value
        if query.start_date is not None:
            clauses.append("timestamp >= :start_date")
            params["start_date"] = to_db_timestamp(query.start_date)
        if query.end_date is not None:
            clauses.append("timestamp <= :end_date")
            params["end_date"] = to_db_timestamp(query.end_date)

        where = " AND ".join(clauses)
        order = "ASC" if query.sort_order.value == "asc" else "DESC"
        count_stmt = text(f"SELECT COUNT(*) FROM readings WHERE {where}")
        list_stmt = text(
            f"SELECT * FROM readings WHERE {where} ORDER BY timestamp {order}, id ASC LIMIT :limit OFFSET :offset"
        )
        if expanding:
            count_stmt = count_stmt.bindparams(*(bindparam(n, expanding=True) for n in expanding))
            list_stmt = list_stmt.bindparams(*(bindparam(n, expanding=True) for n in expanding))

        with self._engine.begin() as conn:
            total = int(conn.execute(count_stmt, params).scalar_one())
            rows = conn.execute(
                list_stmt,
                {**params, "limit": query.limit, "offset": (query.page - 1) * query.limit},
            ).mappings()
            items = [reading_to_dict(row) for row in rows]
        return items, total

    def latest(self, org_id: str, device_ids: Sequence[str] = (), types: Sequence[str] = ()) -> List[Dict[str, Any]]:
        """Última lectura por (dispositivo, tipo)."""
        filters = ["org_id = :org_id"]
        params: Dict[str, Any] = {"org_id": org_id}
        expanding = []
        if device_ids:
            filters.append("device_id IN :device_ids")
            params["device_ids"] = list(device_ids)
            expanding.append("device_ids")
        if types:
            filters.append("type IN :types")
            params["types"] = list(types)
            expanding.append("types")
        where = " AND ".join(filters)

        stmt = text(
            f"""
            SELECT r.* FROM readings r
            JOIN (
                SELECT device_id, type, MAX(timestamp) AS max_ts
                FROM readings WHERE {where}
                GROUP BY device_id, type
            ) m ON r.device_id = m.device_id AND r.type = m.type AND r.timestamp = m.max_ts
            WHERE r.org_id = :org_id
            ORDER BY r.device_id, r.type
            """
        )
        if expanding:
            stmt = stmt.bindparams(*(bindparam(n, expanding=True) for n in expanding))

        with self._engine.begin() as conn:
            rows = conn.execute(stmt, params).mappings()
            latest: Dict[Tuple[str, str], Dict[str, Any]] = {}
            for row in rows:
                # Empates de timestamp: se queda la primera
                latest.setdefault((row["device_id"], row["type"]), reading_to_dict(row))
        return list(latest.values())
