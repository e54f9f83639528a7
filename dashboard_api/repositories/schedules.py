from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import bindparam, text

from common.db import to_db_timestamp

from ..schemas import ScheduleCreate, ScheduleListQuery
from .base import Repository, ts

logger = logging.getLogger(__name__)

_AUDIT_COLUMNS = ("updated_by", "updated_at", "completed_by", "completed_at", "cancelled_by", "cancelled_at")


def schedule_to_dict(row: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "device_id": row["device_id"],
        "service_type": row["service_type"],
        "status": row["status"],
        "scheduled_date": ts(row["scheduled_date"]),
        "notes": row["notes"],
        "audit": {
            "created_by": row["created_by"],
            "created_at": ts(row["created_at"]),
            "updated_by": row["updated_by"],
            "updated_at": ts(row["updated_at"]),
            "completed_by": row["completed_by"],
            "completed_at": ts(row["completed_at"]),
            "cancelled_by": row["cancelled_by"],
            "cancelled_at": ts(row["cancelled_at"]),
        },
    }


class ScheduleRepository(Repository):
    def list(self, org_id: str, query: ScheduleListQuery) -> Tuple[List[Dict[str, Any]], int]:
        clauses = ["org_id = :org_id"]
        params: Dict[str, Any] = {"org_id": org_id}
        expanding = []

        statuses = query.effective_statuses
        if statuses:
            clauses.append("status IN :statuses")
            params["statuses"] = statuses
            expanding.append("statuses")
        if query.service_type:
            clauses.append("service_type IN :service_types")
            params["service_types"] = [s.value for s in query.service_type]
            expanding.append("service_types")
        if query.device_id:
            clauses.append("device_id = :device_id")
            params["device_id"] = query.device_id
        if query.start_date is not None:
            clauses.append("scheduled_date >= :start_date")
            params["start_date"] = to_db_timestamp(query.start_date)
        if query.end_date is not None:
            clauses.append("scheduled_date <= :end_date")
            params["end_date"] = to_db_timestamp(query.end_date)

        where = " AND ".join(clauses)
        order = "ASC" if query.sort_order.value == "asc" else "DESC"
        count_stmt = text(f"SELECT COUNT(*) FROM schedules WHERE {where}")
        list_stmt = text(
            f"SELECT * FROM schedules WHERE {where} ORDER BY scheduled_date {order}, id ASC LIMIT :limit OFFSET :offset"
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
            items = [schedule_to_dict(row) for row in rows]
        return items, total

    def get(self, org_id: str, schedule_id: str) -> Optional[Dict[str, Any]]:
        with self._engine.begin() as conn:
            row = (
                conn.execute(
                    text("SELECT * FROM schedules WHERE org_id = :org_id AND id = :id"),
                    {"org_id": org_id, "id": schedule_id},
                )
                .mappings()
                .first()
            )
        return schedule_to_dict(row) if row else None

    def create_many(self, org_id: str, data: ScheduleCreate, audit: Mapping[str, Any]) -> List[Dict[str, Any]]:
        """Un schedule por dispositivo, todos en la misma transacción."""
        rows = [
            {
                "id": uuid.uuid4().hex,
                "org_id": org_id,
                "device_id": device_id,
                "service_type": data.service_type.value,
                "status": "scheduled",
                "scheduled_date": to_db_timestamp(data.scheduled_date),
                "notes": data.notes,
                "created_by": audit["created_by"],
                "created_at": to_db_timestamp(audit["created_at"]),
                "updated_by": audit["updated_by"],
                "updated_at": to_db_timestamp(audit["updated_at"]),
            }
            for device_id in dict.fromkeys(data.device_ids)
        ]
        with self._engine.begin() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO schedules (id, org_id, device_id, service_type, status, scheduled_date, notes,
                                           created_by, created_at, updated_by, updated_at)
                    VALUES (:id, :org_id, :device_id, :service_type, :status, :scheduled_date, :notes,
                            :created_by, :created_at, :updated_by, :updated_at)
                    """
                ),
                rows,
            )
        logger.info("[DB] SCHEDULES_CREATED org=%s count=%d by=%s", org_id, len(rows), audit["created_by"])
        return [self.get(org_id, row["id"]) for row in rows]

    def update(
        self,
        org_id: str,
        schedule_id: str,
        changes: Mapping[str, Any],
        audit: Mapping[str, Any],
        *,
        expected_status: str = "scheduled",
    ) -> bool:
        """Actualiza solo si el estado sigue siendo ``expected_status``.

        La condición sobre el estado evita que dos transiciones concurrentes
        (completar y cancelar) se apliquen ambas.
        """
        columns: Dict[str, Any] = dict(changes)
        if "scheduled_date" in columns:
            columns["scheduled_date"] = to_db_timestamp(columns["scheduled_date"])
        for name in _AUDIT_COLUMNS:
            if name in audit:
                value = audit[name]
                columns[name] = to_db_timestamp(value) if name.endswith("_at") else value

        assignments = ", ".join(f"{name} = :{name}" for name in columns)
        with self._engine.begin() as conn:
            result = conn.execute(
                text(
                    f"UPDATE schedules SET {assignments} "
                    "WHERE org_id = :org_id AND id = :id AND status = :expected_status"
                ),
                {**columns, "org_id": org_id, "id": schedule_id, "expected_status": expected_status},
            )
        return result.rowcount > 0
