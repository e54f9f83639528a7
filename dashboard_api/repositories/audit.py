"""Trail de auditoría derivado de las columnas ``*_by`` / ``*_at``.

No hay tabla de eventos: cada fila de ``devices`` y ``schedules`` guarda
quién la creó, quién la tocó por última vez y, si aplica, quién la borró,
completó o canceló. Este repositorio expone esas marcas como eventos.
Una actualización que otra posterior sobrescribe ya no aparece.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import bindparam, text

from common.db import to_db_timestamp

from ..schemas import AuditFilters, AuditQuery, AuditResource, DeviceHistoryQuery, SortOrder
from .base import Repository, escape_like, ts

# El update se omite cuando coincide con la marca de la transición que lo produjo
_EVENTS = """
    SELECT 'device' AS resource_type, id AS resource_id, id AS device_id,
           'create' AS action, created_by AS performed_by, created_at AS performed_at
    FROM devices WHERE org_id = :org_id
    UNION ALL
    SELECT 'device', id, id, 'update', updated_by, updated_at
    FROM devices
    WHERE org_id = :org_id AND updated_at <> created_at
      AND (deleted_at IS NULL OR updated_at <> deleted_at)
    UNION ALL
    SELECT 'device', id, id, 'delete', deleted_by, deleted_at
    FROM devices WHERE org_id = :org_id AND deleted_at IS NOT NULL
    UNION ALL
    SELECT 'schedule', id, device_id, 'create', created_by, created_at
    FROM schedules WHERE org_id = :org_id
    UNION ALL
    SELECT 'schedule', id, device_id, 'update', updated_by, updated_at
    FROM schedules
    WHERE org_id = :org_id AND updated_at <> created_at
      AND (completed_at IS NULL OR updated_at <> completed_at)
      AND (cancelled_at IS NULL OR updated_at <> cancelled_at)
    UNION ALL
    SELECT 'schedule', id, device_id, 'complete', completed_by, completed_at
    FROM schedules WHERE org_id = :org_id AND completed_at IS NOT NULL
    UNION ALL
    SELECT 'schedule', id, device_id, 'cancel', cancelled_by, cancelled_at
    FROM schedules WHERE org_id = :org_id AND cancelled_at IS NOT NULL
"""

# Mismo timestamp: create antes que update, y ambos antes de la transición final
_ACTION_RANK = "CASE action WHEN 'create' THEN 0 WHEN 'update' THEN 1 ELSE 2 END"


def _expand(stmt, expanding: Sequence[str]):
    if not expanding:
        return stmt
    return stmt.bindparams(*(bindparam(n, expanding=True) for n in expanding))


def event_to_dict(row: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "resource_type": row["resource_type"],
        "resource_id": row["resource_id"],
        "device_id": row["device_id"],
        "action": row["action"],
        "user": row["performed_by"],
        "timestamp": ts(row["performed_at"]),
    }


class AuditRepository(Repository):
    TOP_USERS = 10

    def list(self, org_id: str, query: AuditQuery) -> Tuple[List[Dict[str, Any]], int]:
        return self._page(self._trail_where(org_id, query), query)

    def summary(self, org_id: str, query: AuditQuery) -> Dict[str, Any]:
        """Conteo por acción y usuarios más activos sobre el mismo filtro que ``list``."""
        clauses, params, expanding = self._trail_where(org_id, query)
        source = f"({_EVENTS}) AS events WHERE {' AND '.join(clauses)}"
        by_action_stmt = _expand(text(f"SELECT action, COUNT(*) AS n FROM {source} GROUP BY action"), expanding)
        users_stmt = _expand(
            text(
                f"SELECT performed_by, COUNT(*) AS n FROM {source} "
                "GROUP BY performed_by ORDER BY n DESC, performed_by ASC LIMIT :top"
            ),
            expanding,
        )
        with self._engine.begin() as conn:
            by_action = {row.action: int(row.n) for row in conn.execute(by_action_stmt, params)}
            top_users = [
                {"user": row.performed_by, "count": int(row.n)}
                for row in conn.execute(users_stmt, {**params, "top": self.TOP_USERS})
            ]
        return {"total_entries": sum(by_action.values()), "by_action": by_action, "top_users": top_users}

    def device_history(
        self, org_id: str, device_id: str, query: DeviceHistoryQuery
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Eventos de un dispositivo; los de sus schedules solo con ``include_schedules``."""
        where = self._where(
            org_id,
            query,
            resource_type=None if query.include_schedules else AuditResource.DEVICE.value,
            device_ids=[device_id],
        )
        return self._page(where, query)

    def _trail_where(self, org_id: str, query: AuditQuery):
        return self._where(
            org_id,
            query,
            resource_type=query.resource_type.value if query.resource_type else None,
            device_ids=query.device_id or (),
            include_deleted=query.include_deleted,
        )

    def _where(
        self,
        org_id: str,
        filters: AuditFilters,
        *,
        resource_type: Optional[str] = None,
        device_ids: Sequence[str] = (),
        include_deleted: bool = True,
    ) -> Tuple[List[str], Dict[str, Any], List[str]]:
        clauses = ["performed_at IS NOT NULL"]
        params: Dict[str, Any] = {"org_id": org_id}
        expanding = []

        if filters.action:
            clauses.append("action IN :actions")
            params["actions"] = filters.action_values
            expanding.append("actions")
        if resource_type:
            clauses.append("resource_type = :resource_type")
            params["resource_type"] = resource_type
        if filters.user:
            clauses.append("LOWER(performed_by) LIKE :user ESCAPE '\\'")
            params["user"] = f"%{escape_like(filters.user.lower())}%"
        if device_ids:
            clauses.append("device_id IN :device_ids")
            params["device_ids"] = sorted(set(device_ids))
            expanding.append("device_ids")
        if not include_deleted:
            clauses.append(
                "device_id NOT IN (SELECT id FROM devices WHERE org_id = :org_id AND deleted_at IS NOT NULL)"
            )
        if filters.start_date is not None:
            clauses.append("performed_at >= :start_date")
            params["start_date"] = to_db_timestamp(filters.start_date)
        if filters.end_date is not None:
            clauses.append("performed_at <= :end_date")
            params["end_date"] = to_db_timestamp(filters.end_date)
        return clauses, params, expanding

    def _page(
        self, where: Tuple[List[str], Dict[str, Any], List[str]], filters: AuditFilters
    ) -> Tuple[List[Dict[str, Any]], int]:
        clauses, params, expanding = where
        source = f"({_EVENTS}) AS events WHERE {' AND '.join(clauses)}"
        order = "ASC" if filters.sort_order is SortOrder.ASC else "DESC"
        count_stmt = _expand(text(f"SELECT COUNT(*) FROM {source}"), expanding)
        list_stmt = _expand(
            text(
                f"SELECT * FROM {source} "
                f"ORDER BY performed_at {order}, {_ACTION_RANK} {order}, resource_id ASC "
                "LIMIT :limit OFFSET :offset"
            ),
            expanding,
        )
        offset = (filters.page - 1) * filters.limit
        with self._engine.begin() as conn:
            total = int(conn.execute(count_stmt, params).scalar_one())
            rows = conn.execute(list_stmt, {**params, "limit": filters.limit, "offset": offset}).mappings()
            items = [event_to_dict(row) for row in rows]
        return items, total
